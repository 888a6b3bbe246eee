"""
HTTP probe executor for Uptime Monitor.
"""

import asyncio
import ssl
import time
from typing import Optional

import httpx

from uptime_monitor.config import Config
from uptime_monitor.logger import get_logger, log_probe_error, log_probe_result
from uptime_monitor.models import Observation, Target


def classify_status(status_code: int) -> bool:
    """
    Classify an HTTP status code as up or down.

    2xx and 3xx are up. 403 and 429 also count as up.
    """
    return 200 <= status_code < 400 or status_code in (403, 429)


class ProbeExecutor:
    """
    Performs one GET against a target and turns the outcome into an Observation.

    Transport failures (DNS, refused connections, TLS errors, timeouts,
    malformed URLs) never raise; they produce a down observation with
    status code 0.
    """

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.timeout = config.probe_timeout_seconds
        self.user_agent = config.user_agent
        self.logger = get_logger("probe")

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
                limits=httpx.Limits(max_connections=self.config.workers),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client and its pooled connections."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def probe(self, target: Target) -> Observation:
        """
        Probe a single target.

        Args:
            target: Target to check

        Returns:
            Observation for this probe
        """
        checked_at = int(time.time())
        start_time = time.perf_counter()

        try:
            status_code = await asyncio.wait_for(self._fetch_status(target.url), self.timeout)
        except (
            httpx.HTTPError,
            httpx.InvalidURL,
            asyncio.TimeoutError,
            ssl.SSLError,
            OSError,
            ValueError,
        ) as e:
            response_time_ms = self._elapsed_ms(start_time)
            log_probe_error(self.logger, target.id, target.url, e, response_time_ms)
            return Observation(
                target_id=target.id,
                is_up=False,
                status_code=0,
                response_time_ms=response_time_ms,
                checked_at=checked_at,
            )

        response_time_ms = self._elapsed_ms(start_time)
        is_up = classify_status(status_code)
        log_probe_result(self.logger, target.id, target.url, is_up, status_code, response_time_ms)

        return Observation(
            target_id=target.id,
            is_up=is_up,
            status_code=status_code,
            response_time_ms=response_time_ms,
            checked_at=checked_at,
        )

    async def _fetch_status(self, url: str) -> int:
        # Streaming stops the clock at response headers; the body is never read.
        client = self._get_client()
        async with client.stream("GET", url) as response:
            return response.status_code

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)
