"""
Periodic scheduling of uptime probes, certificate inspections and cleanup.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from uptime_monitor.alerts import AlertStateTracker
from uptime_monitor.certificate import CertificateInspector, InvalidTargetError
from uptime_monitor.config import Config
from uptime_monitor.logger import get_logger, log_cycle_complete
from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.models import AlertDecision, Observation, Target
from uptime_monitor.notifier import NotificationDispatcher
from uptime_monitor.probe import ProbeExecutor
from uptime_monitor.retention import RetentionPolicy
from uptime_monitor.storage import ResultSink, TargetRegistry

# Tolerance when deciding whether a target is due, so that a target whose
# interval equals the uptime cadence is not pushed back by tick jitter.
SCHEDULE_SLACK_SECONDS = 1.0

UPTIME_CYCLE = "uptime"
CERTIFICATE_CYCLE = "certificate"
CLEANUP_CYCLE = "cleanup"


class MonitorScheduler:
    """
    Drives three independent cadences: uptime probing, certificate inspection
    and retention cleanup.

    Every tick launches its cycle as a separate task, so a slow cycle never
    delays the next tick. Overlap is resolved per target: a target whose
    previous probe (or inspection) is still running is skipped for the new
    tick. A cleanup tick is skipped entirely while the previous cleanup runs.
    """

    def __init__(
        self,
        config: Config,
        registry: TargetRegistry,
        sink: ResultSink,
        probe_executor: ProbeExecutor,
        inspector: CertificateInspector,
        tracker: AlertStateTracker,
        dispatcher: NotificationDispatcher,
        retention: RetentionPolicy,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.registry = registry
        self.sink = sink
        self.probe_executor = probe_executor
        self.inspector = inspector
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.retention = retention
        self.metrics = metrics
        self.logger = get_logger("scheduler")

        self._running = False
        self._loop_tasks: Dict[str, asyncio.Task] = {}
        self._cycle_tasks: Set[asyncio.Task] = set()

        self._probe_semaphore = asyncio.Semaphore(config.workers)
        self._inspection_semaphore = asyncio.Semaphore(config.workers)
        self._cleanup_lock = asyncio.Lock()

        self._inflight_probes: Set[str] = set()
        self._inflight_inspections: Set[str] = set()
        self._last_probe_started: Dict[str, float] = {}
        self._last_summaries: Dict[str, Dict[str, Any]] = {}

        self.logger.info(f"Scheduler initialized - Workers: {config.workers}")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the three periodic loops."""
        if self._running:
            self.logger.warning("Scheduler is already running")
            return

        self._running = True
        self._loop_tasks = {
            UPTIME_CYCLE: asyncio.create_task(
                self._cadence_loop(
                    UPTIME_CYCLE, self.config.uptime_interval_seconds, self.run_uptime_cycle, True
                )
            ),
            CERTIFICATE_CYCLE: asyncio.create_task(
                self._cadence_loop(
                    CERTIFICATE_CYCLE,
                    self.config.certificate_interval_seconds,
                    self.run_certificate_cycle,
                    True,
                )
            ),
            CLEANUP_CYCLE: asyncio.create_task(
                self._cadence_loop(
                    CLEANUP_CYCLE,
                    self.config.cleanup_interval_seconds,
                    self.run_cleanup_cycle,
                    False,
                )
            ),
        }
        self.logger.info(
            f"Started monitoring - Uptime: {self.config.uptime_interval}, "
            f"Certificates: {self.config.certificate_interval}, "
            f"Cleanup: {self.config.cleanup_interval}"
        )

    async def stop(self) -> None:
        """Stop the loops and abandon any cycle still running."""
        self._running = False

        tasks = list(self._loop_tasks.values()) + list(self._cycle_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._loop_tasks = {}
        self._cycle_tasks.clear()
        self.logger.info("Scheduler stopped")

    async def _cadence_loop(
        self,
        name: str,
        interval: int,
        cycle: Callable[[], Awaitable[Dict[str, Any]]],
        run_immediately: bool,
    ) -> None:
        """Fire ``cycle`` every ``interval`` seconds on a fixed-rate schedule."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() if run_immediately else loop.time() + interval

        while self._running:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

            self._launch(name, cycle)

            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                # Missed ticks (event loop stalled or process suspended) are not replayed
                missed = int((now - next_tick) // interval) + 1
                next_tick += missed * interval
                self.logger.warning(f"{name.capitalize()} loop fell behind, skipped {missed} ticks")

    def _launch(self, name: str, cycle: Callable[[], Awaitable[Dict[str, Any]]]) -> None:
        task = asyncio.create_task(self._run_cycle(name, cycle))
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def _run_cycle(self, name: str, cycle: Callable[[], Awaitable[Dict[str, Any]]]) -> None:
        try:
            await cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"{name.capitalize()} cycle aborted: {e}", exc_info=True)

    def _finish_cycle(self, name: str, start_time: float, summary: Dict[str, Any]) -> None:
        duration = time.time() - start_time
        summary["duration"] = round(duration, 3)
        summary["timestamp"] = start_time
        self._last_summaries[name] = summary

        if self.metrics:
            self.metrics.record_cycle(name, duration)
        log_cycle_complete(self.logger, name, duration, summary)

    # Uptime

    async def run_uptime_cycle(self, force: bool = False) -> Dict[str, Any]:
        """
        Probe every due target once.

        Args:
            force: Probe every target regardless of its check interval

        Returns:
            Cycle summary
        """
        start_time = time.time()
        targets = await self.registry.list_targets()
        self._forget_removed(targets)

        now = asyncio.get_running_loop().time()
        due: List[Target] = []
        in_flight = 0
        not_due = 0

        for target in targets:
            if target.id in self._inflight_probes:
                in_flight += 1
                self.logger.debug(f"Previous probe of {target.id} still running, skipping")
                continue
            if not force and not self._is_due(target, now):
                not_due += 1
                continue
            self._inflight_probes.add(target.id)
            self._last_probe_started[target.id] = now
            due.append(target)

        results = await asyncio.gather(
            *(self._check_target(target) for target in due), return_exceptions=True
        )

        summary: Dict[str, Any] = {
            "targets": len(targets),
            "probed": 0,
            "up": 0,
            "down": 0,
            "alerts": 0,
            "in_flight": in_flight,
            "not_due": not_due,
            "sink_errors": 0,
            "errors": 0,
        }

        for target, result in zip(due, results):
            if isinstance(result, BaseException):
                summary["errors"] += 1
                self.logger.error(f"Uptime check for {target.id} failed: {result}")
                continue

            observation, decision, persisted = result
            summary["probed"] += 1
            summary["up" if observation.is_up else "down"] += 1
            if decision.should_alert:
                summary["alerts"] += 1
            if not persisted:
                summary["sink_errors"] += 1

        self._finish_cycle(UPTIME_CYCLE, start_time, summary)
        return summary

    def _is_due(self, target: Target, now: float) -> bool:
        last_started = self._last_probe_started.get(target.id)
        if last_started is None:
            return True
        interval = target.effective_interval(self.config.min_check_interval)
        return now - last_started >= interval - SCHEDULE_SLACK_SECONDS

    def _forget_removed(self, targets: List[Target]) -> None:
        valid_ids = {target.id for target in targets}
        for target_id in self.tracker.prune(valid_ids):
            self._last_probe_started.pop(target_id, None)
            if self.metrics:
                self.metrics.forget_target(target_id)

    async def _check_target(self, target: Target) -> tuple[Observation, AlertDecision, bool]:
        """Probe one target, evaluate it, persist the observation and alert if needed."""
        try:
            async with self._probe_semaphore:
                observation = await self.probe_executor.probe(target)

            decision = await self.tracker.evaluate(target.id, observation)
            if self.metrics:
                self.metrics.record_observation(target, observation)

            persisted = True
            try:
                await self.sink.append_observation(observation)
            except Exception as e:
                persisted = False
                self.logger.error(f"Failed to save observation for {target.id}: {e}")

            if decision.should_alert:
                if self.metrics:
                    self.metrics.record_alert(decision)
                self.dispatcher.submit(target, observation.is_up, observation.response_time_ms)

            return observation, decision, persisted
        finally:
            self._inflight_probes.discard(target.id)

    # Certificates

    async def run_certificate_cycle(self) -> Dict[str, Any]:
        """
        Inspect and store the certificate of every target.

        Returns:
            Cycle summary
        """
        start_time = time.time()
        targets = await self.registry.list_targets()

        candidates = []
        in_flight = 0
        for target in targets:
            if target.id in self._inflight_inspections:
                in_flight += 1
                continue
            self._inflight_inspections.add(target.id)
            candidates.append(target)

        results = await asyncio.gather(
            *(self._inspect_target(target) for target in candidates), return_exceptions=True
        )

        summary: Dict[str, Any] = {
            "targets": len(targets),
            "ok": 0,
            "error": 0,
            "invalid": 0,
            "sink_error": 0,
            "in_flight": in_flight,
        }
        for target, result in zip(candidates, results):
            if isinstance(result, BaseException):
                summary["error"] += 1
                self.logger.error(f"Certificate check for {target.id} failed: {result}")
            else:
                summary[result] += 1

        self._finish_cycle(CERTIFICATE_CYCLE, start_time, summary)
        return summary

    async def _inspect_target(self, target: Target) -> str:
        try:
            async with self._inspection_semaphore:
                record = await self.inspector.inspect(target.url, target_id=target.id)
        except InvalidTargetError as e:
            self.logger.warning(f"Skipping certificate check for {target.id}: {e}")
            return "invalid"
        finally:
            self._inflight_inspections.discard(target.id)

        try:
            await self.sink.upsert_certificate(record)
        except Exception as e:
            self.logger.error(f"Failed to save certificate record for {target.id}: {e}")
            return "sink_error"

        if self.metrics:
            self.metrics.record_certificate(record)
        return "error" if record.error else "ok"

    # Cleanup

    async def run_cleanup_cycle(self) -> Dict[str, Any]:
        """
        Apply the retention policy.

        Returns:
            Cycle summary
        """
        if self._cleanup_lock.locked():
            self.logger.warning("Previous cleanup still running, skipping this tick")
            return {"skipped": True}

        async with self._cleanup_lock:
            start_time = time.time()
            counts = await self.retention.apply(self.sink, self.registry)
            if self.metrics:
                self.metrics.record_retention(counts)

            summary: Dict[str, Any] = {"skipped": False, **counts}
            self._finish_cycle(CLEANUP_CYCLE, start_time, summary)
            return summary

    async def get_health_status(self) -> Dict[str, Any]:
        """Get scheduler health status."""
        return {
            "scheduler_status": "running" if self._running else "stopped",
            "uptime_interval": self.config.uptime_interval,
            "certificate_interval": self.config.certificate_interval,
            "cleanup_interval": self.config.cleanup_interval,
            "worker_pool_size": self.config.workers,
            "probes_in_flight": len(self._inflight_probes),
            "target_states": self.tracker.snapshot(),
            "last_cycles": dict(self._last_summaries),
        }
