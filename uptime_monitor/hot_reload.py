"""
Hot reload of the configuration file for Uptime Monitor.
"""

import asyncio
from pathlib import Path
from typing import Any, Coroutine, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from uptime_monitor.config import Config, load_config
from uptime_monitor.logger import get_logger, log_hot_reload
from uptime_monitor.scheduler import MonitorScheduler
from uptime_monitor.storage import ConfigTargetRegistry

# Settings read once at startup; a change is reported but not applied
RESTART_REQUIRED_FIELDS = (
    "port",
    "bind_address",
    "tls_cert",
    "tls_key",
    "uptime_interval",
    "certificate_interval",
    "cleanup_interval",
    "workers",
    "probe_timeout",
    "handshake_timeout",
    "user_agent",
    "notification_workers",
    "notification_queue_size",
    "storage_file",
    "storage_flush_interval",
)


class ConfigFileHandler(FileSystemEventHandler):
    """Handler for configuration file system events."""

    def __init__(self, hot_reload_manager: "HotReloadManager"):
        self.manager = hot_reload_manager
        self.logger = get_logger("hot_reload.config")

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle configuration file modification."""
        if event.is_directory:
            return

        file_path = Path(event.src_path)

        # Skip temporary files created by editors
        if file_path.name.startswith(".") or ".tmp" in file_path.name:
            return

        try:
            if (
                self.manager.config_path
                and file_path.exists()
                and file_path.samefile(self.manager.config_path)
            ):
                self.logger.info(f"Configuration file modified: {file_path}")
                self.manager._schedule_coro(self.manager._handle_config_change())
        except OSError:
            # Editors may replace the file between the event and the check
            pass

    on_created = on_modified


class HotReloadManager:
    """
    Watches the configuration file and applies changes while running.

    Target list changes take effect on the next scheduler tick. Alert state
    and metrics of removed targets are dropped by the scheduler itself.
    """

    def __init__(
        self,
        config: Config,
        scheduler: MonitorScheduler,
        registry: ConfigTargetRegistry,
        config_path: Optional[str] = None,
        debounce_seconds: float = 2.0,
    ):
        self.config = config
        self.scheduler = scheduler
        self.registry = registry
        self.config_path = Path(config_path) if config_path else None
        self.debounce_seconds = debounce_seconds
        self.logger = get_logger("hot_reload")

        self._observer = Observer()
        self._watching = False
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None
        self._config_handler = ConfigFileHandler(self)
        self._config_change_task: Optional[asyncio.Task] = None
        self._reload_count = 0

        self.logger.info("Hot reload manager initialized")

    def _schedule_coro(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Schedule a coroutine from the watchdog thread."""
        if self._event_loop and not self._event_loop.is_closed():
            asyncio.run_coroutine_threadsafe(coro, self._event_loop)
        else:
            coro.close()
            self.logger.warning("Cannot schedule coroutine: event loop not available")

    async def start(self) -> None:
        """Start watching the configuration file."""
        if not self.config.hot_reload:
            self.logger.info("Hot reload disabled in configuration")
            return

        if self._watching:
            self.logger.warning("Hot reload already started")
            return

        if not self.config_path or not self.config_path.exists():
            self.logger.info("No configuration file to watch, hot reload inactive")
            return

        self._event_loop = asyncio.get_running_loop()

        try:
            config_dir = self.config_path.parent
            self._observer.schedule(self._config_handler, str(config_dir), recursive=False)
            self._observer.start()
            self._watching = True
            self.logger.info(f"Watching configuration file: {self.config_path}")
        except Exception as e:
            self.logger.error(f"Failed to start hot reload: {e}")
            raise

    async def stop(self) -> None:
        """Stop watching."""
        if not self._watching:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)

            if self._config_change_task:
                self._config_change_task.cancel()

            self._watching = False
            self.logger.info("Hot reload stopped")

        except Exception as e:
            self.logger.error(f"Error stopping hot reload: {e}")

    async def _handle_config_change(self) -> None:
        """Restart the debounce timer for a configuration change."""
        if self._config_change_task and not self._config_change_task.done():
            self._config_change_task.cancel()

        self._config_change_task = asyncio.create_task(self._debounced_config_change())

    async def _debounced_config_change(self) -> None:
        try:
            await asyncio.sleep(self.debounce_seconds)
            await self.reload()
        except asyncio.CancelledError:
            self.logger.debug("Configuration change handling cancelled")

    async def reload(self) -> bool:
        """
        Reload the configuration file and apply it.

        Returns:
            True if the new configuration was applied, False if it was rejected
        """
        self.logger.info("Reloading configuration due to file change")

        try:
            new_config = load_config(str(self.config_path) if self.config_path else None)
        except Exception as e:
            self.logger.error(f"Ignoring invalid configuration file: {e}")
            return False

        old_config = self.config
        changes = self._describe_changes(old_config, new_config)

        self.config = new_config
        self.scheduler.config = new_config
        self.registry.replace(new_config.targets)
        self.scheduler.retention.window_days = new_config.retention_days

        notifier = self.scheduler.dispatcher.notifier
        if hasattr(notifier, "config"):
            notifier.config = new_config

        for field in RESTART_REQUIRED_FIELDS:
            if getattr(old_config, field) != getattr(new_config, field):
                self.logger.warning(f"Change of '{field}' takes effect after a restart")

        if changes:
            self.logger.info(f"Configuration updated: {'; '.join(changes)}")
        else:
            self.logger.info("Configuration reloaded (no significant changes detected)")

        self._reload_count += 1
        log_hot_reload(self.logger, str(self.config_path), "config_reloaded")
        return True

    @staticmethod
    def _describe_changes(old_config: Config, new_config: Config) -> List[str]:
        changes = []

        old_targets = {t.id: t for t in old_config.targets}
        new_targets = {t.id: t for t in new_config.targets}
        added = sorted(new_targets.keys() - old_targets.keys())
        removed = sorted(old_targets.keys() - new_targets.keys())
        modified = sorted(
            target_id
            for target_id in old_targets.keys() & new_targets.keys()
            if old_targets[target_id] != new_targets[target_id]
        )

        if added:
            changes.append(f"Added targets: {added}")
        if removed:
            changes.append(f"Removed targets: {removed}")
        if modified:
            changes.append(f"Modified targets: {modified}")
        if old_config.min_check_interval != new_config.min_check_interval:
            changes.append(
                f"Minimum check interval: {old_config.min_check_interval} -> "
                f"{new_config.min_check_interval}"
            )
        if old_config.retention_days != new_config.retention_days:
            changes.append(
                f"Retention: {old_config.retention_days} -> {new_config.retention_days} days"
            )
        if (
            old_config.discord_webhook_url != new_config.discord_webhook_url
            or old_config.owner_webhooks != new_config.owner_webhooks
        ):
            changes.append("Webhooks updated")

        return changes

    def get_status(self) -> dict:
        """Get hot reload status information."""
        return {
            "enabled": self.config.hot_reload,
            "watching": self._watching,
            "config_path": str(self.config_path) if self.config_path else None,
            "reload_count": self._reload_count,
            "active_config_task": (
                self._config_change_task is not None and not self._config_change_task.done()
            ),
        }
