"""
Target registry and result storage for Uptime Monitor.

The monitoring engine only talks to the abstract ``TargetRegistry`` and
``ResultSink`` interfaces. ``ConfigTargetRegistry`` and ``ResultStore`` are
the implementations used by the standalone service.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from uptime_monitor.config import Config, TargetConfig
from uptime_monitor.logger import get_logger
from uptime_monitor.models import CertificateRecord, Observation, Target


class TargetRegistry(ABC):
    """Read-only view of the monitored targets."""

    @abstractmethod
    async def list_targets(self, owner_ref: Optional[str] = None) -> List[Target]:
        """List targets, optionally only those belonging to ``owner_ref``."""


class ResultSink(ABC):
    """Durable storage for observations and certificate records."""

    @abstractmethod
    async def append_observation(self, observation: Observation) -> None: ...

    @abstractmethod
    async def list_observations(self, target_id: str, limit: int = 500) -> List[Observation]:
        """Observations for one target, newest first."""

    @abstractmethod
    async def list_all_observations(self) -> List[Observation]: ...

    @abstractmethod
    async def upsert_certificate(self, record: CertificateRecord) -> None: ...

    @abstractmethod
    async def get_certificate(self, target_id: str) -> Optional[CertificateRecord]: ...

    @abstractmethod
    async def delete_observations_older_than(self, cutoff: int) -> int:
        """Delete observations with ``checked_at < cutoff``. Returns the count."""

    @abstractmethod
    async def delete_observations_with_target_not_in(self, valid_ids: Iterable[str]) -> int:
        """Delete observations of unknown targets. Returns the count."""


def target_from_config(target: TargetConfig) -> Target:
    return Target(
        id=target.id,
        display_name=target.name or target.id,
        url=target.url,
        check_interval_seconds=target.interval,
        owner_ref=target.owner,
    )


class ConfigTargetRegistry(TargetRegistry):
    """
    Registry backed by the ``targets`` section of the configuration.

    The target list is swapped atomically by ``replace`` (used by hot reload);
    readers always get a consistent list.
    """

    def __init__(self, targets: Iterable[TargetConfig]):
        self.logger = get_logger("registry")
        self._targets: List[Target] = [target_from_config(t) for t in targets]

    def replace(self, targets: Iterable[TargetConfig]) -> None:
        new_targets = [target_from_config(t) for t in targets]
        old_ids = {t.id for t in self._targets}
        new_ids = {t.id for t in new_targets}
        self._targets = new_targets
        self.logger.info(
            f"Target list replaced - {len(new_targets)} targets "
            f"({len(new_ids - old_ids)} added, {len(old_ids - new_ids)} removed)"
        )

    async def list_targets(self, owner_ref: Optional[str] = None) -> List[Target]:
        targets = list(self._targets)
        if owner_ref is not None:
            targets = [t for t in targets if t.owner_ref == owner_ref]
        return targets


class ResultStore(ResultSink):
    """
    In-memory result store with optional JSON snapshot persistence.

    Snapshots are written to a temporary file and renamed into place. A
    read-only store loads the snapshot but never writes or removes it.
    """

    def __init__(self, config: Config, read_only: bool = False):
        self.config = config
        self.read_only = read_only
        self.logger = get_logger("storage")
        self.storage_file = Path(config.storage_file) if config.storage_file else None

        self._observations: Dict[str, List[Observation]] = {}
        self._certificates: Dict[str, CertificateRecord] = {}
        self._dirty = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the storage directory and load the last snapshot."""
        if self.storage_file:
            if not self.read_only:
                self.storage_file.parent.mkdir(parents=True, exist_ok=True)
            await self._load_snapshot()
        self.logger.info(
            f"Result store initialized - Snapshot: {self.storage_file or 'disabled (memory only)'}"
            f"{' (read-only)' if self.read_only else ''}"
        )

    async def append_observation(self, observation: Observation) -> None:
        async with self._lock:
            self._observations.setdefault(observation.target_id, []).append(observation)
            self._dirty = True

    async def list_observations(self, target_id: str, limit: int = 500) -> List[Observation]:
        async with self._lock:
            observations = list(self._observations.get(target_id, []))
        observations.sort(key=lambda o: o.checked_at, reverse=True)
        return observations[:limit]

    async def list_all_observations(self) -> List[Observation]:
        async with self._lock:
            return [o for observations in self._observations.values() for o in observations]

    async def upsert_certificate(self, record: CertificateRecord) -> None:
        async with self._lock:
            self._certificates[record.target_id] = record
            self._dirty = True

    async def get_certificate(self, target_id: str) -> Optional[CertificateRecord]:
        async with self._lock:
            return self._certificates.get(target_id)

    async def delete_observations_older_than(self, cutoff: int) -> int:
        async with self._lock:
            deleted = 0
            for target_id, observations in list(self._observations.items()):
                kept = [o for o in observations if o.checked_at >= cutoff]
                deleted += len(observations) - len(kept)
                if kept:
                    self._observations[target_id] = kept
                else:
                    del self._observations[target_id]
            if deleted:
                self._dirty = True
            return deleted

    async def delete_observations_with_target_not_in(self, valid_ids: Iterable[str]) -> int:
        valid = set(valid_ids)
        async with self._lock:
            orphaned = [target_id for target_id in self._observations if target_id not in valid]
            deleted = sum(len(self._observations.pop(target_id)) for target_id in orphaned)
            if deleted:
                self._dirty = True
            return deleted

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "observations_total": sum(len(o) for o in self._observations.values()),
                "targets_with_observations": len(self._observations),
                "certificates_total": len(self._certificates),
            }

    async def save_to_disk(self) -> None:
        """Write a snapshot if anything changed since the last one."""
        if not self.storage_file or self.read_only:
            return

        try:
            async with self._lock:
                if not self._dirty:
                    return
                snapshot = {
                    "observations": [
                        o.to_dict()
                        for observations in self._observations.values()
                        for o in observations
                    ],
                    "certificates": [r.to_dict() for r in self._certificates.values()],
                }
                self._dirty = False

            temp_file = self.storage_file.with_suffix(".tmp")
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False)

            temp_file.replace(self.storage_file)
            self.logger.debug("Result snapshot saved to disk")

        except Exception as e:
            self._dirty = True
            self.logger.error(f"Failed to save result snapshot: {e}")

    async def _load_snapshot(self) -> None:
        if not self.storage_file or not self.storage_file.exists():
            return

        try:
            with open(self.storage_file, "r", encoding="utf-8") as f:
                snapshot = json.load(f)

            for data in snapshot.get("observations", []):
                observation = Observation.from_dict(data)
                self._observations.setdefault(observation.target_id, []).append(observation)

            for data in snapshot.get("certificates", []):
                record = CertificateRecord.from_dict(data)
                self._certificates[record.target_id] = record

            self.logger.info(
                f"Loaded {sum(len(o) for o in self._observations.values())} observations and "
                f"{len(self._certificates)} certificate records from snapshot"
            )

        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Failed to load result snapshot: {e}")
            self._observations.clear()
            self._certificates.clear()
            if self.read_only:
                return
            try:
                self.storage_file.unlink()
                self.logger.info("Removed corrupted snapshot file")
            except OSError as os_error:
                self.logger.warning(f"Could not remove corrupted snapshot file: {os_error}")

    async def close(self) -> None:
        """Flush the final snapshot."""
        await self.save_to_disk()
        self.logger.info("Result store closed")

    async def get_health_status(self) -> Dict[str, Any]:
        stats = await self.get_stats()
        writable = False
        if self.storage_file and self.storage_file.parent.exists():
            writable = os.access(self.storage_file.parent, os.W_OK)

        return {
            "storage_file": str(self.storage_file) if self.storage_file else None,
            "storage_file_writable": writable,
            **stats,
        }


async def storage_flush_task(store: ResultStore, interval: int = 60) -> None:
    """
    Background task that periodically snapshots the result store.

    Args:
        store: Result store instance
        interval: Flush interval in seconds
    """
    logger = get_logger("storage.flush")

    while True:
        try:
            await asyncio.sleep(interval)
            await store.save_to_disk()
        except asyncio.CancelledError:
            logger.info("Storage flush task cancelled")
            break
        except Exception as e:
            logger.error(f"Storage flush error: {e}")
