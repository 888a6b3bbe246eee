"""
Tests for metrics collection.
"""

import pytest

from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.models import AlertDecision, CertificateRecord, Observation, Target

TARGET = Target(id="web", display_name="Web", url="https://example.com")
HOST_LABELS = {"target_id": "web", "host": "example.com"}


class TestMetricsCollector:
    """Test Prometheus metrics collector."""

    @pytest.fixture
    def metrics(self):
        """Create a metrics collector with its own registry."""
        return MetricsCollector()

    def _value(self, metrics, name, labels=None):
        return metrics.registry.get_sample_value(name, labels or {})

    def test_record_observation(self, metrics):
        metrics.record_observation(TARGET, Observation("web", False, 503, 250))

        assert self._value(
            metrics,
            "uptime_target_up",
            {"target_id": "web", "name": "Web", "url": "https://example.com"},
        ) == 0
        assert self._value(metrics, "uptime_target_status_code", {"target_id": "web"}) == 503
        assert (
            self._value(metrics, "uptime_target_response_time_ms", {"target_id": "web"}) == 250
        )
        assert self._value(metrics, "uptime_probe_duration_seconds_count") == 1

    def test_record_alert(self, metrics):
        metrics.record_alert(AlertDecision.BECAME_DOWN)
        metrics.record_alert(AlertDecision.BECAME_DOWN)

        assert self._value(metrics, "uptime_alerts_total", {"decision": "became_down"}) == 2

    def test_record_certificate(self, metrics):
        record = CertificateRecord(
            "web", "example.com", valid_to=1_800_000_000, issuer="Test CA", days_left=42
        )

        metrics.record_certificate(record)

        assert (
            self._value(
                metrics,
                "ssl_cert_days_left",
                {"target_id": "web", "host": "example.com", "issuer": "Test CA"},
            )
            == 42
        )
        assert self._value(metrics, "ssl_cert_check_error", HOST_LABELS) == 0

    def test_record_certificate_error(self, metrics):
        metrics.record_certificate(CertificateRecord("web", "example.com", error="refused"))

        assert self._value(metrics, "ssl_cert_check_error", HOST_LABELS) == 1
        assert (
            self._value(
                metrics,
                "ssl_cert_expiration_timestamp",
                {"target_id": "web", "host": "example.com"},
            )
            is None
        )

    def test_record_retention(self, metrics):
        metrics.record_retention({"expired": 3, "orphaned": 0})

        name = "retention_deleted_observations_total"
        assert self._value(metrics, name, {"rule": "expired"}) == 3
        assert self._value(metrics, name, {"rule": "orphaned"}) is None

    def test_record_cycle(self, metrics):
        metrics.record_cycle("uptime", 1.5)

        assert self._value(metrics, "uptime_cycle_duration_seconds_count", {"cycle": "uptime"}) == 1
        assert self._value(metrics, "uptime_cycle_last_run_timestamp", {"cycle": "uptime"}) > 0

    def test_forget_target(self, metrics):
        """Test per-target series are removed."""
        metrics.record_observation(TARGET, Observation("web", True, 200, 10))
        metrics.record_certificate(CertificateRecord("web", "example.com", days_left=5))
        other = Target(id="api", display_name="API", url="https://api.example.com")
        metrics.record_observation(other, Observation("api", True, 200, 10))

        metrics.forget_target("web")

        assert self._value(metrics, "uptime_target_status_code", {"target_id": "web"}) is None
        assert self._value(metrics, "ssl_cert_check_error", HOST_LABELS) is None
        assert self._value(metrics, "uptime_target_status_code", {"target_id": "api"}) == 200

    def test_edited_target_replaces_series(self, metrics):
        """Test a renamed or moved target leaves a single up series."""
        metrics.record_observation(TARGET, Observation("web", False, 503, 10))
        moved = Target(id="web", display_name="Website", url="https://new.example.com")
        metrics.record_observation(moved, Observation("web", True, 200, 10))

        text = metrics.get_metrics()

        assert text.count("uptime_target_up{") == 1
        assert (
            self._value(
                metrics,
                "uptime_target_up",
                {"target_id": "web", "name": "Web", "url": "https://example.com"},
            )
            is None
        )
        assert (
            self._value(
                metrics,
                "uptime_target_up",
                {"target_id": "web", "name": "Website", "url": "https://new.example.com"},
            )
            == 1
        )

    def test_new_issuer_replaces_series(self, metrics):
        metrics.record_certificate(CertificateRecord("web", "example.com", issuer="Old CA"))
        metrics.record_certificate(
            CertificateRecord("web", "example.com", issuer="New CA", days_left=90)
        )

        labels = {"target_id": "web", "host": "example.com"}
        assert self._value(metrics, "ssl_cert_days_left", {**labels, "issuer": "Old CA"}) is None
        assert self._value(metrics, "ssl_cert_days_left", {**labels, "issuer": "New CA"}) == 90
        assert metrics.get_metrics().count("ssl_cert_days_left{") == 1

    def test_forget_unknown_target(self, metrics):
        metrics.forget_target("never-seen")

        assert self._value(metrics, "uptime_target_status_code", {"target_id": "web"}) is None

    def test_get_metrics_text(self, metrics):
        """Test integer metrics are rendered without a trailing '.0'."""
        metrics.record_observation(TARGET, Observation("web", True, 200, 10))
        metrics.record_certificate(CertificateRecord("web", "example.com", error="refused"))

        text = metrics.get_metrics()

        lines = text.splitlines()
        assert 'uptime_target_status_code{target_id="web"} 200' in lines
        up_lines = [line for line in lines if line.startswith("uptime_target_up{")]
        assert len(up_lines) == 1 and up_lines[0].endswith("} 1")
        error_lines = [line for line in lines if line.startswith("ssl_cert_check_error{")]
        assert len(error_lines) == 1 and error_lines[0].endswith("} 1")
        assert "app_memory_bytes" in text

    def test_content_type(self, metrics):
        assert metrics.get_content_type().startswith("text/plain")

    def test_registry_status(self, metrics):
        status = metrics.get_registry_status()

        assert status["prometheus_registry"]["status"] == "healthy"
        assert status["prometheus_registry"]["metrics_count"] > 0
