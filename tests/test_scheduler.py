"""
Tests for the monitor scheduler.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from uptime_monitor.alerts import AlertStateTracker
from uptime_monitor.certificate import CertificateInspector, InvalidTargetError
from uptime_monitor.config import Config, TargetConfig
from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.models import AlertDecision, CertificateRecord, Observation, Target
from uptime_monitor.notifier import NotificationDispatcher
from uptime_monitor.probe import ProbeExecutor
from uptime_monitor.retention import RetentionPolicy
from uptime_monitor.scheduler import MonitorScheduler
from uptime_monitor.storage import ConfigTargetRegistry, ResultSink, ResultStore, TargetRegistry


def _targets(*ids, interval=60):
    return [
        TargetConfig(id=i, name=i.upper(), url=f"https://{i}.example.com", interval=interval)
        for i in ids
    ]


class FakeProbe:
    """Probe double returning configurable up/down states."""

    def __init__(self):
        self.states = {}
        self.calls = []

    async def probe(self, target: Target) -> Observation:
        self.calls.append(target.id)
        is_up = self.states.get(target.id, True)
        return Observation(target.id, is_up, 200 if is_up else 0, 7)


@pytest.fixture
def config():
    return Config(storage_file=None, workers=4)


@pytest.fixture
def registry():
    return ConfigTargetRegistry(_targets("a", "b"))


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest_asyncio.fixture
async def store():
    store = ResultStore(Config(storage_file=None))
    await store.initialize()
    return store


@pytest.fixture
def mock_inspector():
    inspector = AsyncMock(spec=CertificateInspector)

    async def inspect(url, target_id=""):
        return CertificateRecord(target_id, url, valid_to=2_000_000_000, issuer="CA", days_left=30)

    inspector.inspect.side_effect = inspect
    return inspector


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock(spec=NotificationDispatcher)
    dispatcher.submit.return_value = True
    return dispatcher


@pytest.fixture
def mock_metrics():
    return MagicMock(spec=MetricsCollector)


def build_scheduler(config, registry, sink, fake_probe, inspector, dispatcher, metrics):
    probe_executor = AsyncMock(spec=ProbeExecutor)
    probe_executor.probe.side_effect = fake_probe.probe
    return MonitorScheduler(
        config=config,
        registry=registry,
        sink=sink,
        probe_executor=probe_executor,
        inspector=inspector,
        tracker=AlertStateTracker(),
        dispatcher=dispatcher,
        retention=RetentionPolicy(config.retention_days),
        metrics=metrics,
    )


@pytest.fixture
def scheduler(config, registry, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics):
    return build_scheduler(
        config, registry, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
    )


class TestUptimeCycle:
    """Test the uptime probing cycle."""

    @pytest.mark.asyncio
    async def test_first_cycle_probes_everything(self, scheduler, store, fake_probe):
        summary = await scheduler.run_uptime_cycle()

        assert sorted(fake_probe.calls) == ["a", "b"]
        assert summary["probed"] == 2
        assert summary["up"] == 2
        assert summary["alerts"] == 0
        assert len(await store.list_observations("a")) == 1
        assert len(await store.list_observations("b")) == 1

    @pytest.mark.asyncio
    async def test_first_observation_down_alerts(
        self, scheduler, fake_probe, mock_dispatcher, mock_metrics
    ):
        fake_probe.states["b"] = False

        summary = await scheduler.run_uptime_cycle()

        assert summary["alerts"] == 1
        assert summary["down"] == 1
        mock_dispatcher.submit.assert_called_once()
        target, is_up, response_time_ms = mock_dispatcher.submit.call_args.args
        assert target.id == "b"
        assert is_up is False
        assert response_time_ms == 7
        mock_metrics.record_alert.assert_called_once_with(AlertDecision.FIRST_OBSERVATION_DOWN)

    @pytest.mark.asyncio
    async def test_alerts_only_on_transitions(self, scheduler, fake_probe, mock_dispatcher):
        """Test up, up, down, down, up over five cycles alerts twice."""
        for is_up in (True, True, False, False, True):
            fake_probe.states["a"] = is_up
            await scheduler.run_uptime_cycle(force=True)

        alerts = [
            (call.args[0].id, call.args[1]) for call in mock_dispatcher.submit.call_args_list
        ]
        assert alerts == [("a", False), ("a", True)]

    @pytest.mark.asyncio
    async def test_not_due_targets_skipped(self, scheduler, fake_probe):
        await scheduler.run_uptime_cycle()
        summary = await scheduler.run_uptime_cycle()

        assert summary["probed"] == 0
        assert summary["not_due"] == 2
        assert len(fake_probe.calls) == 2

    @pytest.mark.asyncio
    async def test_force_ignores_intervals(self, scheduler, fake_probe):
        await scheduler.run_uptime_cycle()
        summary = await scheduler.run_uptime_cycle(force=True)

        assert summary["probed"] == 2
        assert len(fake_probe.calls) == 4

    @pytest.mark.asyncio
    async def test_observation_persisted_for_transport_errors(self, scheduler, store, fake_probe):
        fake_probe.states["a"] = False

        await scheduler.run_uptime_cycle()

        observations = await store.list_observations("a")
        assert observations[0].status_code == 0
        assert observations[0].is_up is False

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_cycle(
        self, config, registry, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
    ):
        """Test a failing sink is logged and the alert still goes out."""
        sink = AsyncMock(spec=ResultSink)
        sink.append_observation.side_effect = RuntimeError("disk full")
        scheduler = build_scheduler(
            config, registry, sink, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
        )
        fake_probe.states["a"] = False

        summary = await scheduler.run_uptime_cycle()

        assert summary["probed"] == 2
        assert summary["sink_errors"] == 2
        mock_dispatcher.submit.assert_called_once()

    @pytest.mark.asyncio
    async def test_registry_failure_aborts_tick(
        self, config, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
    ):
        registry = AsyncMock(spec=TargetRegistry)
        registry.list_targets.side_effect = RuntimeError("database unavailable")
        scheduler = build_scheduler(
            config, registry, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
        )

        with pytest.raises(RuntimeError):
            await scheduler.run_uptime_cycle()

        # The loop wrapper logs and survives
        await scheduler._run_cycle("uptime", scheduler.run_uptime_cycle)
        assert fake_probe.calls == []

    @pytest.mark.asyncio
    async def test_in_flight_target_skipped(self, scheduler, fake_probe):
        """Test a target still being probed is not probed again."""
        release = asyncio.Event()
        original = fake_probe.probe

        async def slow_probe(target):
            if target.id == "a":
                await release.wait()
            return await original(target)

        scheduler.probe_executor.probe.side_effect = slow_probe

        first = asyncio.create_task(scheduler.run_uptime_cycle())
        await asyncio.sleep(0.01)
        summary = await scheduler.run_uptime_cycle(force=True)

        assert summary["in_flight"] == 1
        assert summary["probed"] == 1

        release.set()
        await first
        assert fake_probe.calls.count("a") == 1

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(
        self, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
    ):
        config = Config(storage_file=None, workers=2)
        registry = ConfigTargetRegistry(_targets("a", "b", "c", "d", "e"))
        scheduler = build_scheduler(
            config, registry, store, fake_probe, mock_inspector, mock_dispatcher, mock_metrics
        )
        active = 0
        peak = 0

        async def tracked_probe(target):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await fake_probe.probe(target)

        scheduler.probe_executor.probe.side_effect = tracked_probe

        summary = await scheduler.run_uptime_cycle()

        assert summary["probed"] == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_removed_targets_forgotten(self, scheduler, registry, mock_metrics):
        await scheduler.run_uptime_cycle()
        registry.replace(_targets("a"))

        await scheduler.run_uptime_cycle()

        assert scheduler.tracker.get_state("b") is None
        assert "b" not in scheduler._last_probe_started
        mock_metrics.forget_target.assert_called_once_with("b")

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, scheduler, mock_metrics):
        await scheduler.run_uptime_cycle()

        assert mock_metrics.record_observation.call_count == 2
        mock_metrics.record_cycle.assert_called_once()
        assert mock_metrics.record_cycle.call_args.args[0] == "uptime"


class TestDueness:
    """Test per-target check intervals."""

    def test_interval_respected(self, scheduler):
        target = Target(
            id="a", display_name="A", url="https://a.example.com", check_interval_seconds=300
        )
        scheduler._last_probe_started["a"] = 1000.0

        assert not scheduler._is_due(target, 1200.0)
        assert scheduler._is_due(target, 1300.0)

    def test_interval_floor(self, scheduler):
        """Test intervals below the configured minimum are raised to it."""
        target = Target(
            id="a", display_name="A", url="https://a.example.com", check_interval_seconds=0
        )
        scheduler._last_probe_started["a"] = 1000.0

        assert not scheduler._is_due(target, 1030.0)
        assert scheduler._is_due(target, 1060.0)

    def test_never_probed_is_due(self, scheduler):
        target = Target(id="new", display_name="New", url="https://new.example.com")

        assert scheduler._is_due(target, 0.0)


class TestCertificateCycle:
    """Test the certificate inspection cycle."""

    @pytest.mark.asyncio
    async def test_records_stored(self, scheduler, store, mock_metrics):
        summary = await scheduler.run_certificate_cycle()

        assert summary["ok"] == 2
        record = await store.get_certificate("a")
        assert record.days_left == 30
        assert mock_metrics.record_certificate.call_count == 2

    @pytest.mark.asyncio
    async def test_repeated_cycles_keep_one_record_per_target(
        self, scheduler, store, mock_inspector
    ):
        """Test a second cycle replaces each stored record instead of adding one."""
        checks = {"count": 0}

        async def inspect(url, target_id=""):
            checks["count"] += 1
            return CertificateRecord(
                target_id,
                url,
                valid_to=2_000_000_000,
                issuer="CA",
                days_left=30,
                checked_at=checks["count"],
            )

        mock_inspector.inspect.side_effect = inspect

        await scheduler.run_certificate_cycle()
        first = {target_id: await store.get_certificate(target_id) for target_id in ("a", "b")}
        await scheduler.run_certificate_cycle()

        stats = await store.get_stats()
        assert stats["certificates_total"] == 2
        for target_id in ("a", "b"):
            record = await store.get_certificate(target_id)
            assert record.checked_at > first[target_id].checked_at
            assert record.days_left == first[target_id].days_left

    @pytest.mark.asyncio
    async def test_invalid_target_skipped(self, scheduler, store, mock_inspector):
        async def inspect(url, target_id=""):
            if target_id == "a":
                raise InvalidTargetError("invalid url")
            return CertificateRecord(target_id, url, days_left=30)

        mock_inspector.inspect.side_effect = inspect

        summary = await scheduler.run_certificate_cycle()

        assert summary["invalid"] == 1
        assert summary["ok"] == 1
        assert await store.get_certificate("a") is None
        assert await store.get_certificate("b") is not None

    @pytest.mark.asyncio
    async def test_handshake_errors_stored(self, scheduler, store, mock_inspector):
        async def inspect(url, target_id=""):
            return CertificateRecord(target_id, url, error="no peer certificates")

        mock_inspector.inspect.side_effect = inspect

        summary = await scheduler.run_certificate_cycle()

        assert summary["error"] == 2
        assert (await store.get_certificate("a")).error == "no peer certificates"


class TestCleanupCycle:
    """Test the retention cleanup cycle."""

    @pytest.mark.asyncio
    async def test_cleanup(self, scheduler, store, mock_metrics):
        await store.append_observation(Observation("gone", True, 200, 5))

        summary = await scheduler.run_cleanup_cycle()

        assert summary["skipped"] is False
        assert summary["orphaned"] == 1
        mock_metrics.record_retention.assert_called_once_with({"expired": 0, "orphaned": 1})

    @pytest.mark.asyncio
    async def test_overlapping_cleanup_skipped(self, scheduler):
        async with scheduler._cleanup_lock:
            summary = await scheduler.run_cleanup_cycle()

        assert summary == {"skipped": True}


class TestSchedulerLifecycle:
    """Test starting and stopping the loops."""

    @pytest.mark.asyncio
    async def test_start_runs_uptime_and_certificate_cycles(
        self, scheduler, fake_probe, mock_inspector
    ):
        await scheduler.start()
        try:
            assert scheduler.running
            await asyncio.sleep(0.05)

            assert sorted(fake_probe.calls) == ["a", "b"]
            assert mock_inspector.inspect.await_count == 2
        finally:
            await scheduler.stop()

        assert not scheduler.running
        assert scheduler._loop_tasks == {}

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, scheduler):
        await scheduler.start()
        tasks = dict(scheduler._loop_tasks)
        try:
            await scheduler.start()
            assert scheduler._loop_tasks == tasks
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_health_status(self, scheduler):
        await scheduler.run_uptime_cycle()

        health = await scheduler.get_health_status()

        assert health["scheduler_status"] == "stopped"
        assert health["target_states"] == {"a": "up", "b": "up"}
        assert "uptime" in health["last_cycles"]
