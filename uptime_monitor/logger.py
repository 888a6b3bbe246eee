"""
Standardized logging configuration for Uptime Monitor.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from uptime_monitor.config import Config


class CustomFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True) -> None:
        self.use_color = use_color
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with optional colors."""
        if self.use_color and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            reset = self.COLORS["RESET"]
            level_name = f"{color}{record.levelname:<8}{reset}"
        else:
            level_name = f"{record.levelname:<8}"

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        if record.exc_info:
            if not message.endswith("\n"):
                message += "\n"
            message += self.formatException(record.exc_info)

        return f"{timestamp} | {level_name} | {record.name:<28} | {message}"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        "target_id",
        "url",
        "status_code",
        "response_time_ms",
        "decision",
        "error_type",
        "cycle",
        "duration",
        "days_left",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        import json
        from datetime import datetime

        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field_name in self.EXTRA_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(config: Config) -> None:
    """
    Setup logging configuration.

    Args:
        config: Configuration object
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))

    # Colors only when attached to a terminal
    use_color = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler.setFormatter(CustomFormatter(use_color=use_color))
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"  # 10MB
        )
        file_handler.setLevel(getattr(logging, config.log_level))
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    app_logger = logging.getLogger("uptime_monitor")
    app_logger.info(f"Logging initialized - Level: {config.log_level}")

    if config.log_file:
        app_logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"uptime_monitor.{name}")


# Logging helpers for monitoring operations
def log_probe_result(
    logger: logging.Logger,
    target_id: str,
    url: str,
    is_up: bool,
    status_code: int,
    response_time_ms: int,
) -> None:
    """Log a classified probe result."""
    logger.debug(
        f"{url} {'UP' if is_up else 'DOWN'} {response_time_ms}ms (Code: {status_code})",
        extra={
            "target_id": target_id,
            "url": url,
            "status_code": status_code,
            "response_time_ms": response_time_ms,
        },
    )


def log_probe_error(
    logger: logging.Logger, target_id: str, url: str, error: BaseException, response_time_ms: int
) -> None:
    """Log a transport-level probe failure."""
    logger.info(
        f"{url} FAILED after {response_time_ms}ms: {type(error).__name__}: {error}",
        extra={
            "target_id": target_id,
            "url": url,
            "response_time_ms": response_time_ms,
            "error_type": type(error).__name__,
        },
    )


def log_certificate_inspected(
    logger: logging.Logger, target_id: str, host: str, days_left: int, error: Optional[str]
) -> None:
    """Log a certificate inspection outcome."""
    if error:
        logger.warning(
            f"Certificate inspection for {host} reported an error: {error}",
            extra={"target_id": target_id, "url": host, "error_type": "handshake_error"},
        )
    else:
        logger.debug(
            f"Certificate for {host} expires in {days_left} days",
            extra={"target_id": target_id, "url": host, "days_left": days_left},
        )


def log_alert_decision(logger: logging.Logger, target_id: str, decision: str) -> None:
    """Log an alert-worthy state transition."""
    logger.info(
        f"State transition for target {target_id}: {decision}",
        extra={"target_id": target_id, "decision": decision},
    )


def log_cycle_complete(logger: logging.Logger, cycle: str, duration: float, summary: dict) -> None:
    """Log completion of a scheduler cycle."""
    details = ", ".join(f"{key}={value}" for key, value in summary.items() if key != "duration")
    logger.info(
        f"{cycle.capitalize()} cycle completed in {duration:.2f}s - {details}",
        extra={"cycle": cycle, "duration": duration},
    )


def log_hot_reload(logger: logging.Logger, file_path: str, event_type: str) -> None:
    """Log hot reload events."""
    logger.debug(
        f"Hot reload triggered: {event_type}",
        extra={"file_path": file_path, "reload_event": event_type},
    )


def log_metrics_collection(
    logger: logging.Logger, metric_name: str, value: float, labels: Optional[dict] = None
) -> None:
    """Log metrics collection."""
    extra = {"metric_name": metric_name, "metric_value": value}
    if labels:
        extra["metric_labels"] = labels

    logger.debug(f"Metric collected: {metric_name}={value}", extra=extra)
