"""Certificate fetcher that reads a host's certificate from a TLS handshake."""

from __future__ import annotations

import asyncio
import ssl
from datetime import datetime, timezone

import structlog

log = structlog.get_logger()

DEFAULT_TLS_PORT = 443


def parse_host_key(host_key: str) -> tuple[str, int]:
    """Split ``host`` or ``host:port`` (IPv6 in brackets) into its parts."""
    if host_key.startswith("["):
        host, _, rest = host_key[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else DEFAULT_TLS_PORT
    host, sep, port = host_key.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return host_key, DEFAULT_TLS_PORT


class TLSCertificateFetcher:
    """Connects to the host, verifies its chain and returns the leaf (DER)."""

    def __init__(self, context: ssl.SSLContext | None = None):
        self._context = context or ssl.create_default_context()

    async def fetch(self, host_key: str) -> tuple[bytes, datetime, datetime]:
        host, port = parse_host_key(host_key)
        reader, writer = await asyncio.open_connection(
            host, port, ssl=self._context, server_hostname=host
        )
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            der = ssl_object.getpeercert(binary_form=True)
            info = ssl_object.getpeercert()
        finally:
            writer.close()
            await writer.wait_closed()

        if not der or not info:
            raise ssl.SSLError(f"{host_key} presented no certificate")
        not_before = _cert_time(info["notBefore"])
        not_after = _cert_time(info["notAfter"])
        log.debug("tls_fetcher.fetched", host=host_key, not_after=not_after.isoformat())
        return der, not_before, not_after


def _cert_time(value: str) -> datetime:
    return datetime.fromtimestamp(ssl.cert_time_to_seconds(value), tz=timezone.utc)
