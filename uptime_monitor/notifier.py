"""
Alert delivery for Uptime Monitor.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from uptime_monitor.config import Config
from uptime_monitor.logger import get_logger
from uptime_monitor.models import Target

if TYPE_CHECKING:
    from uptime_monitor.metrics import MetricsCollector

COLOR_UP = 0x00FF00
COLOR_DOWN = 0xFF0000


class NotificationError(RuntimeError):
    """Raised when an alert could not be delivered."""


class Notifier(ABC):
    """Delivers one alert for one target."""

    @abstractmethod
    async def notify(self, target: Target, is_up: bool, response_time_ms: int) -> None: ...

    async def close(self) -> None:
        """Release any resources held by the notifier."""


class LogNotifier(Notifier):
    """Notifier that only writes alerts to the log."""

    def __init__(self) -> None:
        self.logger = get_logger("notifier.log")

    async def notify(self, target: Target, is_up: bool, response_time_ms: int) -> None:
        status = "ONLINE" if is_up else "OFFLINE"
        self.logger.warning(f"ALERT: {target.display_name} ({target.url}) is {status}")


def build_discord_payload(
    target: Target, is_up: bool, response_time_ms: int, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Build a Discord webhook embed for an up/down alert."""
    now = now or datetime.now(timezone.utc)
    if is_up:
        color, status, emoji = COLOR_UP, "ONLINE", "✅"
    else:
        color, status, emoji = COLOR_DOWN, "OFFLINE", "❌"

    return {
        "embeds": [
            {
                "title": f"{emoji} {target.display_name} is {status}",
                "description": (
                    f"**URL:** {target.url}\n**Response Time:** {response_time_ms}ms"
                ),
                "color": color,
                "timestamp": now.isoformat(),
            }
        ]
    }


class DiscordNotifier(Notifier):
    """
    Posts alerts to a Discord webhook.

    The webhook is chosen per target owner (``owner_webhooks``), falling
    back to ``discord_webhook_url``. Targets without any webhook are only
    logged.
    """

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.logger = get_logger("notifier.discord")
        self._fallback = LogNotifier()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.notification_timeout_seconds), transport=transport
        )

    def webhook_for(self, target: Target) -> Optional[str]:
        return self.config.owner_webhooks.get(target.owner_ref) or self.config.discord_webhook_url

    async def notify(self, target: Target, is_up: bool, response_time_ms: int) -> None:
        webhook_url = self.webhook_for(target)
        if not webhook_url:
            await self._fallback.notify(target, is_up, response_time_ms)
            return

        payload = build_discord_payload(target, is_up, response_time_ms)
        try:
            response = await self._client.post(webhook_url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"failed to send Discord webhook: {e}") from e

        if response.status_code != 204:
            raise NotificationError(f"Discord webhook returned status {response.status_code}")

        self.logger.info(f"Alert delivered for {target.display_name} (up={is_up})")

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class PendingNotification:
    target: Target
    is_up: bool
    response_time_ms: int


class NotificationDispatcher:
    """
    Bounded queue plus a fixed pool of delivery workers.

    ``submit`` never blocks the caller; a full queue drops the alert with a
    warning. ``stop`` waits (bounded) for queued alerts before cancelling
    the workers. Delivery failures are logged and counted, never raised.
    """

    def __init__(
        self,
        notifier: Notifier,
        config: Config,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.notifier = notifier
        self.metrics = metrics
        self.worker_count = config.notification_workers
        self.logger = get_logger("notifier")

        self._queue: asyncio.Queue[PendingNotification] = asyncio.Queue(
            maxsize=config.notification_queue_size
        )
        self._workers: List[asyncio.Task] = []
        self._delivered = 0
        self._failed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Start the delivery workers."""
        if self._workers:
            self.logger.warning("Notification dispatcher is already running")
            return

        self._workers = [
            asyncio.create_task(self._worker()) for _ in range(self.worker_count)
        ]
        self.logger.info(f"Notification dispatcher started - Workers: {self.worker_count}")

    def submit(self, target: Target, is_up: bool, response_time_ms: int) -> bool:
        """
        Queue an alert for delivery.

        Returns:
            True if queued, False if the queue was full
        """
        try:
            self._queue.put_nowait(PendingNotification(target, is_up, response_time_ms))
            return True
        except asyncio.QueueFull:
            self._dropped += 1
            self.logger.warning(
                f"Notification queue is full ({self._queue.maxsize}), "
                f"dropping alert for {target.display_name}"
            )
            return False

    async def stop(self, timeout: float = 10.0) -> None:
        """Drain queued alerts for up to ``timeout`` seconds, then stop the workers."""
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Gave up waiting for {self._queue.qsize()} queued notifications"
                )

            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []

        await self.notifier.close()
        self.logger.info("Notification dispatcher stopped")

    async def _worker(self) -> None:
        while True:
            pending = await self._queue.get()
            try:
                await self.notifier.notify(
                    pending.target, pending.is_up, pending.response_time_ms
                )
                self._delivered += 1
            except Exception as e:
                self._failed += 1
                self.logger.error(
                    f"Failed to deliver alert for {pending.target.display_name}: {e}"
                )
                if self.metrics:
                    self.metrics.record_notification_failure(pending.target.id)
            finally:
                self._queue.task_done()

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "notification_status": "running" if self.running else "stopped",
            "notification_queue_size": self._queue.qsize(),
            "notifications_delivered": self._delivered,
            "notifications_failed": self._failed,
            "notifications_dropped": self._dropped,
        }
