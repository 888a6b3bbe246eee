"""
Configuration management for Uptime Monitor.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class TargetConfig(BaseModel):
    """A monitored endpoint declared in the configuration file."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    url: str = Field(min_length=1)
    interval: int = Field(default=60)
    owner: str = Field(default="")


class Config(BaseModel):
    """Configuration model for Uptime Monitor."""

    # Server settings
    port: int = Field(default=8080, ge=1, le=65535)
    bind_address: str = Field(default="0.0.0.0")  # nosec B104

    # TLS settings for the status endpoint
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    # Monitored targets
    targets: List[TargetConfig] = Field(default_factory=list)

    # Cadences
    uptime_interval: str = Field(default="1m")
    certificate_interval: str = Field(default="1d")
    cleanup_interval: str = Field(default="7d")
    min_check_interval: int = Field(default=60, ge=1)

    # Probing
    probe_timeout: str = Field(default="30s")
    handshake_timeout: str = Field(default="10s")
    workers: int = Field(default=10, ge=1, le=256)
    user_agent: str = Field(default="UptimeMonitor/1.0")

    # Retention
    retention_days: int = Field(default=30, ge=1)

    # Notifications
    discord_webhook_url: Optional[str] = None
    owner_webhooks: Dict[str, str] = Field(default_factory=dict)
    notification_workers: int = Field(default=2, ge=1, le=32)
    notification_queue_size: int = Field(default=1000, ge=1)
    notification_timeout: str = Field(default="10s")

    # Storage
    storage_file: Optional[str] = Field(default="./data/results.json")
    storage_flush_interval: str = Field(default="1m")
    max_observations_per_target: int = Field(default=500, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    # Operation modes
    dry_run: bool = Field(default=False)
    hot_reload: bool = Field(default=True)

    # Security settings
    allowed_ips: List[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])
    enable_ip_whitelist: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("targets")
    @classmethod
    def validate_unique_target_ids(cls, v: List[TargetConfig]) -> List[TargetConfig]:
        """Reject duplicate target ids."""
        seen = set()
        for target in v:
            if target.id in seen:
                raise ValueError(f"Duplicate target id: {target.id}")
            seen.add(target.id)
        return v

    @field_validator("allowed_ips")
    @classmethod
    def validate_allowed_ips(cls, v: List[str]) -> List[str]:
        """Validate IP addresses and CIDR blocks in allowed_ips list."""
        import ipaddress

        validated_ips = []
        for ip_str in v:
            try:
                if "/" in ip_str:
                    ipaddress.ip_network(ip_str, strict=False)
                else:
                    ipaddress.ip_address(ip_str)
                validated_ips.append(ip_str)
            except (ipaddress.AddressValueError, ValueError) as e:
                logging.error(f"Invalid IP address or network '{ip_str}': {e}")

        # Localhost always reaches the health endpoint
        for localhost in ["127.0.0.1", "::1"]:
            if localhost not in validated_ips:
                validated_ips.append(localhost)
                logging.info(f"Added {localhost} to allowed IPs for localhost access")

        return validated_ips

    @field_validator(
        "uptime_interval",
        "certificate_interval",
        "cleanup_interval",
        "probe_timeout",
        "handshake_timeout",
        "notification_timeout",
        "storage_flush_interval",
    )
    @classmethod
    def validate_duration(cls, v: str) -> str:
        """Validate duration format (e.g., '5m', '1h', '30s')."""
        if not v:
            raise ValueError("Duration cannot be empty")

        pattern = r"^\d+[smhd]$"
        if not re.match(pattern, v):
            raise ValueError("Duration must be in format like '5m', '1h', '30s', '1d'")
        if int(v[:-1]) == 0:
            raise ValueError("Duration must be greater than zero")
        return v

    def parse_duration_seconds(self, duration: str) -> int:
        """Parse duration string to seconds."""
        match = re.match(r"^(\d+)([smhd])$", duration)
        if not match:
            raise ValueError(f"Invalid duration format: {duration}")

        value, unit = match.groups()
        multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}

        return int(value) * multipliers[unit]

    @property
    def uptime_interval_seconds(self) -> int:
        return self.parse_duration_seconds(self.uptime_interval)

    @property
    def certificate_interval_seconds(self) -> int:
        return self.parse_duration_seconds(self.certificate_interval)

    @property
    def cleanup_interval_seconds(self) -> int:
        return self.parse_duration_seconds(self.cleanup_interval)

    @property
    def probe_timeout_seconds(self) -> int:
        return self.parse_duration_seconds(self.probe_timeout)

    @property
    def handshake_timeout_seconds(self) -> int:
        return self.parse_duration_seconds(self.handshake_timeout)

    @property
    def notification_timeout_seconds(self) -> int:
        return self.parse_duration_seconds(self.notification_timeout)

    @property
    def storage_flush_interval_seconds(self) -> int:
        return self.parse_duration_seconds(self.storage_flush_interval)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Config object
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        else:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config_data.update(_get_env_overrides())

    return Config(**config_data)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _get_env_overrides() -> dict:
    """Get configuration overrides from environment variables."""
    env_mapping: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "UPTIME_MONITOR_PORT": ("port", int),
        "UPTIME_MONITOR_BIND_ADDRESS": ("bind_address", str),
        "UPTIME_MONITOR_TLS_CERT": ("tls_cert", str),
        "UPTIME_MONITOR_TLS_KEY": ("tls_key", str),
        "UPTIME_MONITOR_UPTIME_INTERVAL": ("uptime_interval", str),
        "UPTIME_MONITOR_CERTIFICATE_INTERVAL": ("certificate_interval", str),
        "UPTIME_MONITOR_CLEANUP_INTERVAL": ("cleanup_interval", str),
        "UPTIME_MONITOR_PROBE_TIMEOUT": ("probe_timeout", str),
        "UPTIME_MONITOR_HANDSHAKE_TIMEOUT": ("handshake_timeout", str),
        "UPTIME_MONITOR_WORKERS": ("workers", int),
        "UPTIME_MONITOR_RETENTION_DAYS": ("retention_days", int),
        "UPTIME_MONITOR_DISCORD_WEBHOOK_URL": ("discord_webhook_url", str),
        "UPTIME_MONITOR_STORAGE_FILE": ("storage_file", str),
        "UPTIME_MONITOR_LOG_LEVEL": ("log_level", str),
        "UPTIME_MONITOR_LOG_FILE": ("log_file", str),
        "UPTIME_MONITOR_DRY_RUN": ("dry_run", _parse_bool),
        "UPTIME_MONITOR_HOT_RELOAD": ("hot_reload", _parse_bool),
        "UPTIME_MONITOR_ENABLE_IP_WHITELIST": ("enable_ip_whitelist", _parse_bool),
    }

    overrides = {}
    for env_var, (config_key, converter) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    allowed_ips = os.getenv("UPTIME_MONITOR_ALLOWED_IPS")
    if allowed_ips:
        overrides["allowed_ips"] = [ip.strip() for ip in allowed_ips.split(",")]

    return overrides


def create_example_config(output_path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example_config = {
        "port": 8080,
        "bind_address": "0.0.0.0",  # nosec B104
        "targets": [
            {
                "id": "google",
                "name": "Google",
                "url": "https://www.google.com",
                "interval": 60,
                "owner": "ops",
            },
            {
                "id": "github",
                "name": "GitHub",
                "url": "https://github.com",
                "interval": 60,
                "owner": "ops",
            },
        ],
        "uptime_interval": "1m",
        "certificate_interval": "1d",
        "cleanup_interval": "7d",
        "retention_days": 30,
        "probe_timeout": "30s",
        "handshake_timeout": "10s",
        "workers": 10,
        "discord_webhook_url": None,
        "owner_webhooks": {},
        "storage_file": "./data/results.json",
        "log_level": "INFO",
        "dry_run": False,
        "hot_reload": True,
        "allowed_ips": ["127.0.0.1", "::1", "192.168.1.0/24"],
        "enable_ip_whitelist": True,
    }

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)
