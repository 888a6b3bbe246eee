"""
Uptime Monitor

Periodically probes HTTP endpoints, inspects their TLS certificates,
alerts on up/down transitions and exposes results as Prometheus metrics.
"""

__version__ = "1.0.0"
__author__ = "Uptime Monitor Team"
__description__ = "HTTP uptime and TLS certificate monitoring service"

from uptime_monitor.config import Config
from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.scheduler import MonitorScheduler

__all__ = [
    "Config",
    "MetricsCollector",
    "MonitorScheduler",
]
