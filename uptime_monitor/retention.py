"""
Retention policy for historical observations.
"""

import time
from typing import Dict, Iterable, Optional, Set

from uptime_monitor.logger import get_logger
from uptime_monitor.models import Observation
from uptime_monitor.storage import ResultSink, TargetRegistry

SECONDS_PER_DAY = 86400


def retention_cutoff(window_days: int, now: Optional[float] = None) -> int:
    """
    Return the exclusive cutoff for the age rule.

    Observations with ``checked_at < cutoff`` are expired. The boundary is
    inclusive: an observation exactly ``window_days`` old is expired too.
    """
    now = int(now if now is not None else time.time())
    return now - window_days * SECONDS_PER_DAY + 1


def select_for_deletion(
    observations: Iterable[Observation],
    window_days: int,
    valid_target_ids: Iterable[str],
    now: Optional[float] = None,
) -> Set[str]:
    """
    Select observations eligible for deletion.

    An observation is selected when it is at least ``window_days`` old or
    when its target is not in ``valid_target_ids``. Either rule is enough.

    Returns:
        Ids of the selected observations
    """
    cutoff = retention_cutoff(window_days, now)
    valid = set(valid_target_ids)
    return {
        o.id for o in observations if o.checked_at < cutoff or o.target_id not in valid
    }


class RetentionPolicy:
    """Applies the age and orphan rules against a result sink."""

    def __init__(self, window_days: int):
        self.window_days = window_days
        self.logger = get_logger("retention")

    async def apply(self, sink: ResultSink, registry: TargetRegistry) -> Dict[str, int]:
        """
        Delete expired and orphaned observations.

        The target list is read first; an empty list orphans every stored
        observation. A registry failure propagates before anything is deleted.

        Returns:
            Deletion counts per rule
        """
        targets = await registry.list_targets()

        cutoff = retention_cutoff(self.window_days)
        expired = await sink.delete_observations_older_than(cutoff)
        self.logger.info(
            f"Cleaned up {expired} old observations (older than {self.window_days} days)"
        )

        if not targets:
            self.logger.warning("Target registry is empty, every observation is orphaned")
        orphaned = await sink.delete_observations_with_target_not_in(t.id for t in targets)
        self.logger.info(f"Cleaned up {orphaned} orphaned observations")

        return {"expired": expired, "orphaned": orphaned}

    async def plan(self, sink: ResultSink, registry: TargetRegistry) -> Dict[str, int]:
        """Count what ``apply`` would delete without deleting anything."""
        observations = await sink.list_all_observations()
        targets = await registry.list_targets()

        selected = select_for_deletion(observations, self.window_days, (t.id for t in targets))
        return {"observations_total": len(observations), "selected": len(selected)}
