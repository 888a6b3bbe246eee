#!/usr/bin/env python3
"""
Uptime Monitor - Main Application Entry Point
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import uvicorn
from fastapi import FastAPI

from uptime_monitor import __version__
from uptime_monitor.alerts import AlertStateTracker
from uptime_monitor.api import create_app
from uptime_monitor.certificate import CertificateInspector
from uptime_monitor.config import Config, create_example_config, load_config
from uptime_monitor.hot_reload import HotReloadManager
from uptime_monitor.logger import setup_logging
from uptime_monitor.metrics import MetricsCollector
from uptime_monitor.notifier import (
    DiscordNotifier,
    LogNotifier,
    NotificationDispatcher,
    Notifier,
)
from uptime_monitor.probe import ProbeExecutor
from uptime_monitor.retention import RetentionPolicy
from uptime_monitor.scheduler import MonitorScheduler
from uptime_monitor.storage import ConfigTargetRegistry, ResultStore, storage_flush_task


class UptimeMonitor:
    """Main application class for Uptime Monitor."""

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        self.config: Optional[Config] = None
        self.registry: Optional[ConfigTargetRegistry] = None
        self.store: Optional[ResultStore] = None
        self.metrics: Optional[MetricsCollector] = None
        self.probe_executor: Optional[ProbeExecutor] = None
        self.dispatcher: Optional[NotificationDispatcher] = None
        self.scheduler: Optional[MonitorScheduler] = None
        self.hot_reload: Optional[HotReloadManager] = None
        self.app: Optional[FastAPI] = None
        self.config_path = config_path
        self.dry_run = dry_run
        self._flush_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        # Initialize logger early to avoid AttributeError
        self.logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Initialize all application components."""
        try:
            self.config = load_config(self.config_path)
            if self.dry_run:
                self.config.dry_run = True

            setup_logging(self.config)
            self.logger.info("Initializing Uptime Monitor")

            # Dry-run reads the snapshot for the retention plan but never writes it
            self.store = ResultStore(self.config, read_only=self.config.dry_run)
            await self.store.initialize()

            self.metrics = MetricsCollector()
            self.registry = ConfigTargetRegistry(self.config.targets)
            self.probe_executor = ProbeExecutor(self.config)

            notifier: Notifier
            if self.config.dry_run:
                notifier = LogNotifier()
            else:
                notifier = DiscordNotifier(self.config)
            self.dispatcher = NotificationDispatcher(notifier, self.config, metrics=self.metrics)
            await self.dispatcher.start()

            self.scheduler = MonitorScheduler(
                config=self.config,
                registry=self.registry,
                sink=self.store,
                probe_executor=self.probe_executor,
                inspector=CertificateInspector(self.config),
                tracker=AlertStateTracker(),
                dispatcher=self.dispatcher,
                retention=RetentionPolicy(self.config.retention_days),
                metrics=self.metrics,
            )

            if self.config.dry_run:
                self.logger.info("Uptime Monitor initialized for dry-run")
                return

            if self.config.hot_reload:
                self.hot_reload = HotReloadManager(
                    config=self.config,
                    scheduler=self.scheduler,
                    registry=self.registry,
                    config_path=self.config_path,
                )
                await self.hot_reload.start()

            self.app = create_app(
                scheduler=self.scheduler,
                metrics=self.metrics,
                store=self.store,
                dispatcher=self.dispatcher,
                config_path=self.config_path,
            )

            self._flush_task = asyncio.create_task(
                storage_flush_task(self.store, self.config.storage_flush_interval_seconds)
            )
            await self.scheduler.start()

            self.logger.info(
                f"Uptime Monitor initialized successfully - {len(self.config.targets)} targets"
            )

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            raise

    async def run_dry(self) -> Dict[str, Any]:
        """
        Run one uptime cycle and one certificate cycle, then report what the
        retention policy would delete. Nothing is deleted.
        """
        assert self.scheduler is not None and self.store is not None

        uptime_summary = await self.scheduler.run_uptime_cycle(force=True)
        certificate_summary = await self.scheduler.run_certificate_cycle()
        retention_plan = await self.scheduler.retention.plan(self.store, self.registry)

        self.logger.info(
            f"Dry-run retention plan: {retention_plan['selected']} of "
            f"{retention_plan['observations_total']} observations would be deleted"
        )
        return {
            "uptime": uptime_summary,
            "certificates": certificate_summary,
            "retention": retention_plan,
        }

    async def run(self) -> None:
        """Run the application server or perform a dry-run."""
        if not self.scheduler:
            await self.initialize()

        # At this point, config is guaranteed to be set by initialize()
        assert self.config is not None, "Config should be initialized"

        if self.config.dry_run:
            self.logger.info("Running in dry-run mode - single check, no server")
            try:
                await self.run_dry()
                self.logger.info("Dry-run completed")
            finally:
                await self.shutdown()
            return

        config_dict = {
            "app": self.app,
            "host": self.config.bind_address,
            "port": self.config.port,
            "log_level": self.config.log_level.lower(),
            "access_log": True,
        }

        if self.config.tls_cert and self.config.tls_key:
            config_dict.update(
                {
                    "ssl_keyfile": self.config.tls_key,
                    "ssl_certfile": self.config.tls_cert,
                }
            )
            self.logger.info(
                f"Starting HTTPS server on {self.config.bind_address}:{self.config.port}"
            )
        else:
            self.logger.info(
                f"Starting HTTP server on {self.config.bind_address}:{self.config.port}"
            )

        for sig in [signal.SIGTERM, signal.SIGINT]:
            signal.signal(sig, self._signal_handler)

        server = uvicorn.Server(uvicorn.Config(**config_dict))  # type: ignore[arg-type]

        try:
            await server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal")
        finally:
            await self.shutdown()

    def _signal_handler(self, signum: int, frame: Optional[object]) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        self.logger.info("Starting graceful shutdown")

        if self.hot_reload:
            await self.hot_reload.stop()

        if self.scheduler:
            await self.scheduler.stop()

        if self._flush_task:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None

        if self.dispatcher:
            await self.dispatcher.stop()

        if self.probe_executor:
            await self.probe_executor.close()

        if self.store:
            await self.store.close()

        self.logger.info("Graceful shutdown completed")


@click.command()
@click.option(
    "--config",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--version", "-v", is_flag=True, help="Show version information")
@click.option(
    "--dry-run", is_flag=True, help="Run one check of every target and exit (no server)"
)
@click.option(
    "--init-config",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write an example configuration file to PATH and exit",
)
def main(
    config: Optional[Path], version: bool, dry_run: bool, init_config: Optional[Path]
) -> None:
    """Uptime Monitor - Probe HTTP endpoints, track TLS certificates and alert on outages."""

    if version:
        click.echo(f"Uptime Monitor v{__version__}")
        return

    if init_config:
        create_example_config(str(init_config))
        click.echo(f"Example configuration written to {init_config}")
        return

    try:
        monitor = UptimeMonitor(str(config) if config else None, dry_run=dry_run)
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        click.echo("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        click.echo(f"Application failed: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
