"""
TLS certificate inspection for Uptime Monitor.
"""

import asyncio
import math
import ssl
import time
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID

from uptime_monitor.config import Config
from uptime_monitor.logger import get_logger, log_certificate_inspected
from uptime_monitor.models import CertificateRecord

DEFAULT_TLS_PORT = 443
NO_PEER_CERTIFICATES = "no peer certificates"


class InvalidTargetError(ValueError):
    """Raised when a target URL carries no usable host."""


def parse_target_address(url: str) -> Tuple[str, str, int]:
    """
    Split a target URL into the pieces a TLS handshake needs.

    Args:
        url: Target URL

    Returns:
        (server_name, host, port) where ``host`` keeps an explicit port
        when the URL has one

    Raises:
        InvalidTargetError: the URL has no host or an unparseable port
    """
    parsed = urlsplit(url.strip())
    if not parsed.hostname:
        raise InvalidTargetError(f"invalid url: {url!r}")

    try:
        port = parsed.port or DEFAULT_TLS_PORT
    except ValueError as e:
        raise InvalidTargetError(f"invalid port in url {url!r}: {e}") from e

    host = parsed.netloc.rpartition("@")[2]
    return parsed.hostname, host, port


def _issuer_name(cert: x509.Certificate) -> str:
    cn_attrs = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        value = cn_attrs[0].value
        common_name = value if isinstance(value, str) else value.decode("utf-8")
        if common_name:
            return common_name
    return cert.issuer.rfc4514_string()


def build_certificate_record(
    target_id: str,
    host: str,
    der_bytes: bytes,
    now: Optional[datetime] = None,
) -> CertificateRecord:
    """
    Build a certificate record from the leaf certificate in DER form.

    ``days_left`` is floor(hours until not-after / 24), so it turns
    negative as soon as the certificate expires.
    """
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der_bytes)

    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    hours_left = (not_after - now).total_seconds() / 3600

    return CertificateRecord(
        target_id=target_id,
        host=host,
        valid_from=int(not_before.timestamp()),
        valid_to=int(not_after.timestamp()),
        issuer=_issuer_name(cert),
        error=None,
        checked_at=int(now.timestamp()),
        days_left=math.floor(hours_left / 24),
    )


class CertificateInspector:
    """
    Performs a TLS handshake against a target's host and records the leaf
    certificate's validity window.

    Handshake failures are returned as records with ``error`` set so that
    callers can persist them like any other result.
    """

    def __init__(self, config: Config, ssl_context: Optional[ssl.SSLContext] = None):
        self.config = config
        self.timeout = config.handshake_timeout_seconds
        self.ssl_context = ssl_context or ssl.create_default_context()
        self.logger = get_logger("certificate")

    async def inspect(self, url: str, target_id: str = "") -> CertificateRecord:
        """
        Inspect the certificate presented by the host in ``url``.

        Raises:
            InvalidTargetError: the URL has no host
        """
        server_name, host, port = parse_target_address(url)
        checked_at = int(time.time())

        try:
            der_bytes = await asyncio.wait_for(
                self._fetch_peer_certificate(server_name, port), self.timeout
            )
        except asyncio.TimeoutError:
            error = f"handshake timed out after {self.timeout}s"
            return self._failed(target_id, host, error, checked_at)
        except (ssl.SSLError, ssl.CertificateError, OSError) as e:
            return self._failed(target_id, host, str(e) or type(e).__name__, checked_at)

        if not der_bytes:
            return self._failed(target_id, host, NO_PEER_CERTIFICATES, checked_at)

        try:
            record = build_certificate_record(target_id, host, der_bytes)
        except ValueError as e:
            return self._failed(target_id, host, f"unparseable certificate: {e}", checked_at)

        log_certificate_inspected(self.logger, target_id, host, record.days_left, None)
        return record

    async def _fetch_peer_certificate(self, server_name: str, port: int) -> Optional[bytes]:
        _, writer = await asyncio.open_connection(
            server_name,
            port,
            ssl=self.ssl_context,
            server_hostname=server_name,
            ssl_handshake_timeout=self.timeout,
        )
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            if ssl_object is None:
                return None
            return ssl_object.getpeercert(binary_form=True)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ssl.SSLError, OSError) as e:
                self.logger.debug(f"Error closing TLS connection to {server_name}:{port}: {e}")

    def _failed(self, target_id: str, host: str, error: str, checked_at: int) -> CertificateRecord:
        log_certificate_inspected(self.logger, target_id, host, 0, error)
        return CertificateRecord(target_id=target_id, host=host, error=error, checked_at=checked_at)
