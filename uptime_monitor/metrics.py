"""
Prometheus metrics collection for Uptime Monitor.
"""

import re
import socket
import sys
import time
from typing import Any, Dict, Tuple

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from uptime_monitor.logger import get_logger, log_metrics_collection
from uptime_monitor.models import AlertDecision, CertificateRecord, Observation, Target

# Metrics rendered as integers instead of floats
INTEGER_METRICS = (
    "uptime_target_up",
    "uptime_target_status_code",
    "uptime_target_response_time_ms",
    "uptime_cycle_last_run_timestamp",
    "ssl_cert_days_left",
    "ssl_cert_expiration_timestamp",
    "ssl_cert_check_error",
    "app_memory_bytes",
    "app_thread_count",
)


class MetricsCollector:
    """Prometheus metrics collector for probes, certificates and the application."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Probe metrics
        self.uptime_target_up = Gauge(
            "uptime_target_up",
            "Whether the last probe classified the target as up (1) or down (0)",
            ["target_id", "name", "url"],
            registry=self.registry,
        )

        self.uptime_target_response_time_ms = Gauge(
            "uptime_target_response_time_ms",
            "Response time of the last probe in milliseconds",
            ["target_id"],
            registry=self.registry,
        )

        self.uptime_target_status_code = Gauge(
            "uptime_target_status_code",
            "HTTP status code of the last probe (0 on transport error)",
            ["target_id"],
            registry=self.registry,
        )

        self.uptime_probe_duration_seconds = Histogram(
            "uptime_probe_duration_seconds",
            "Probe duration",
            registry=self.registry,
        )

        self.uptime_alerts_total = Counter(
            "uptime_alerts_total",
            "Alert-worthy state transitions",
            ["decision"],
            registry=self.registry,
        )

        self.uptime_notification_failures_total = Counter(
            "uptime_notification_failures_total",
            "Alerts that could not be delivered",
            ["target_id"],
            registry=self.registry,
        )

        # Certificate metrics
        self.ssl_cert_days_left = Gauge(
            "ssl_cert_days_left",
            "Days until the target's certificate expires",
            ["target_id", "host", "issuer"],
            registry=self.registry,
        )

        self.ssl_cert_expiration_timestamp = Gauge(
            "ssl_cert_expiration_timestamp",
            "Certificate expiration time (Unix timestamp)",
            ["target_id", "host"],
            registry=self.registry,
        )

        self.ssl_cert_check_error = Gauge(
            "ssl_cert_check_error",
            "Whether the last certificate inspection failed (1) or not (0)",
            ["target_id", "host"],
            registry=self.registry,
        )

        # Retention metrics
        self.retention_deleted_total = Counter(
            "retention_deleted_observations_total",
            "Observations deleted by the retention policy",
            ["rule"],
            registry=self.registry,
        )

        # Scheduler metrics
        self.uptime_cycle_duration_seconds = Histogram(
            "uptime_cycle_duration_seconds",
            "Scheduler cycle duration",
            ["cycle"],
            registry=self.registry,
        )

        self.uptime_cycle_last_run_timestamp = Gauge(
            "uptime_cycle_last_run_timestamp",
            "Last completed scheduler cycle",
            ["cycle"],
            registry=self.registry,
        )

        # Application metrics
        self.app_memory_bytes = Gauge(
            "app_memory_bytes",
            "Application memory usage in bytes",
            ["type"],
            registry=self.registry,
        )

        self.app_cpu_percent = Gauge(
            "app_cpu_percent", "Application CPU usage percentage", registry=self.registry
        )

        self.app_thread_count = Gauge(
            "app_thread_count", "Number of application threads", registry=self.registry
        )

        self.app_info = Info(
            "app_info",
            "Application information",
            ["hostname", "version", "python_version"],
            registry=self.registry,
        )

        # Label values last set per target and gauge
        self._target_series: Dict[str, Dict[Gauge, Tuple[str, ...]]] = {}

        self._last_system_update = 0.0
        self._system_update_interval = 30

        self.logger.info("Metrics collector initialized")

    def record_observation(self, target: Target, observation: Observation) -> None:
        """
        Update probe metrics from an observation.

        Args:
            target: Probed target
            observation: Probe outcome
        """
        try:
            self._set_target_gauge(
                self.uptime_target_up,
                target.id,
                (target.id, target.display_name, target.url),
                1 if observation.is_up else 0,
            )
            self._set_target_gauge(
                self.uptime_target_response_time_ms,
                target.id,
                (target.id,),
                observation.response_time_ms,
            )
            self._set_target_gauge(
                self.uptime_target_status_code, target.id, (target.id,), observation.status_code
            )
            self.uptime_probe_duration_seconds.observe(observation.response_time_ms / 1000)
        except Exception as e:
            self.logger.error(f"Failed to update probe metrics: {e}")

    def record_alert(self, decision: AlertDecision) -> None:
        self.uptime_alerts_total.labels(decision=decision.value).inc()

    def record_notification_failure(self, target_id: str) -> None:
        self.uptime_notification_failures_total.labels(target_id=target_id).inc()

    def record_certificate(self, record: CertificateRecord) -> None:
        """
        Update certificate metrics from an inspection record.

        Args:
            record: Certificate record
        """
        try:
            target_id = record.target_id
            self._set_target_gauge(
                self.ssl_cert_check_error,
                target_id,
                (target_id, record.host),
                1 if record.error else 0,
            )
            if record.error:
                return

            self._set_target_gauge(
                self.ssl_cert_days_left,
                target_id,
                (target_id, record.host, record.issuer),
                record.days_left,
            )
            self._set_target_gauge(
                self.ssl_cert_expiration_timestamp,
                target_id,
                (target_id, record.host),
                record.valid_to,
            )

            log_metrics_collection(
                self.logger,
                "ssl_cert_days_left",
                record.days_left,
                {"target_id": record.target_id, "host": record.host},
            )
        except Exception as e:
            self.logger.error(f"Failed to update certificate metrics: {e}")

    def record_retention(self, counts: Dict[str, int]) -> None:
        for rule, count in counts.items():
            if count:
                self.retention_deleted_total.labels(rule=rule).inc(count)

    def record_cycle(self, cycle: str, duration: float) -> None:
        """
        Update scheduler cycle metrics.

        Args:
            cycle: Cycle name (uptime, certificate, cleanup)
            duration: Cycle duration in seconds
        """
        try:
            self.uptime_cycle_duration_seconds.labels(cycle=cycle).observe(duration)
            self.uptime_cycle_last_run_timestamp.labels(cycle=cycle).set(int(time.time()))
            log_metrics_collection(self.logger, "cycle_completed", duration, {"cycle": cycle})
        except Exception as e:
            self.logger.error(f"Failed to update cycle metrics: {e}")

    def _set_target_gauge(
        self, gauge: Gauge, target_id: str, label_values: Tuple[str, ...], value: float
    ) -> None:
        """Set a per-target gauge, dropping the series left behind by changed label values."""
        series = self._target_series.setdefault(target_id, {})
        previous = series.get(gauge)
        if previous is not None and previous != label_values:
            gauge.remove(*previous)

        gauge.labels(*label_values).set(value)
        series[gauge] = label_values

    def forget_target(self, target_id: str) -> None:
        """Drop per-target series for a target that left the registry."""
        for gauge, label_values in self._target_series.pop(target_id, {}).items():
            gauge.remove(*label_values)

    def update_system_metrics(self) -> None:
        """Update system and application metrics."""
        current_time = time.time()

        if current_time - self._last_system_update < self._system_update_interval:
            return

        try:
            process = psutil.Process()

            memory_info = process.memory_info()
            self.app_memory_bytes.labels(type="rss").set(int(memory_info.rss))
            self.app_memory_bytes.labels(type="vms").set(int(memory_info.vms))

            self.app_cpu_percent.set(process.cpu_percent())
            self.app_thread_count.set(int(process.num_threads()))

            from uptime_monitor import __version__

            major, minor, micro = sys.version_info[:3]
            self.app_info.labels(
                hostname=socket.gethostname(),
                version=__version__,
                python_version=f"{major}.{minor}.{micro}",
            ).info({"platform": sys.platform, "process_id": str(process.pid)})

            self._last_system_update = current_time

        except Exception as e:
            self.logger.error(f"Failed to update system metrics: {e}")

    def get_metrics(self) -> str:
        """
        Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        self.update_system_metrics()
        raw_metrics = generate_latest(self.registry).decode("utf-8")
        return self._format_numeric_values(raw_metrics)

    def _format_numeric_values(self, metrics_text: str) -> str:
        """Render integer-valued metrics without scientific notation or trailing '.0'."""
        formatted_lines = []

        for line in metrics_text.split("\n"):
            if line.startswith("#") or not line.strip():
                formatted_lines.append(line)
                continue

            match = re.match(r"^([^}]+})\s+(.+)$", line) or re.match(r"^([^\s]+)\s+(.+)$", line)
            if not match or not any(name in match.group(1) for name in INTEGER_METRICS):
                formatted_lines.append(line)
                continue

            metric_name, value = match.group(1), match.group(2)
            try:
                float_value = float(value)
                if float_value.is_integer():
                    formatted_lines.append(f"{metric_name} {int(float_value)}")
                else:
                    formatted_lines.append(line)
            except (ValueError, OverflowError):
                formatted_lines.append(line)

        return "\n".join(formatted_lines)

    def get_content_type(self) -> str:
        """Get content type for metrics endpoint."""
        return CONTENT_TYPE_LATEST

    def get_registry_status(self) -> Dict[str, Any]:
        """Get Prometheus registry status for health checks."""
        try:
            metrics_count = len(list(self.registry._collector_to_names.keys()))
            return {
                "prometheus_registry": {
                    "status": "healthy",
                    "metrics_count": metrics_count,
                    "last_update": self._last_system_update,
                }
            }
        except Exception as e:
            return {"prometheus_registry": {"status": "error", "error": str(e)}}
