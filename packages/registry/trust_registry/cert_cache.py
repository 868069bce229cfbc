"""
In-memory TLS certificate cache with single-flight fetching.

- Fresh entries (``not_after`` beyond now + renewal margin) are served directly;
  the margin is capped at a third of the certificate lifetime
- Otherwise one fetch per host runs at a time; concurrent callers await it
- A failed fetch falls back to a cached entry that is still within
  ``not_after``; with nothing valid cached, FetchFailedError reaches every waiter
- LRU eviction past ``max_entries``, regardless of expiry

The entry and in-flight maps are only touched between awaits, so each
check-then-install runs atomically on the event loop.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from .clock import Clock
from .errors import FetchFailedError

log = structlog.get_logger()


class CertificateFetcher(Protocol):
    async def fetch(self, host_key: str) -> tuple[bytes, datetime, datetime]:
        """Return (certificate, not_before, not_after) or raise."""
        ...


@dataclass(frozen=True)
class CachedCertificate:
    host_key: str
    certificate: bytes
    not_before: datetime
    not_after: datetime
    fetched_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.not_after

    def needs_renewal(self, now: datetime, margin: timedelta) -> bool:
        # Short-lived certificates renew in the last third of their lifetime
        margin = min(margin, (self.not_after - self.not_before) / 3)
        return now + margin >= self.not_after


class CertCache:
    def __init__(
        self,
        fetcher: CertificateFetcher,
        clock: Clock,
        *,
        renewal_margin: timedelta = timedelta(days=30),
        max_entries: int = 1000,
        fetch_timeout: float = 30.0,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._fetcher = fetcher
        self._clock = clock
        self._renewal_margin = renewal_margin
        self._max_entries = max_entries
        self._fetch_timeout = fetch_timeout

        self._entries: OrderedDict[str, CachedCertificate] = OrderedDict()
        self._inflight: dict[str, asyncio.Task] = {}

        self._hits = 0
        self._misses = 0
        self._fetches = 0
        self._failures = 0
        self._stale_served = 0

    async def get(self, host_key: str) -> bytes:
        """Certificate bytes for ``host_key``, fetching at most once concurrently."""
        entry = self._entries.get(host_key)
        if entry is not None and not entry.needs_renewal(
            self._clock.now(), self._renewal_margin
        ):
            self._entries.move_to_end(host_key)
            self._hits += 1
            return entry.certificate

        self._misses += 1
        task = self._inflight.get(host_key)
        if task is None:
            task = asyncio.create_task(self._refresh(host_key))
            task.add_done_callback(_consume_result)
            self._inflight[host_key] = task
        # A cancelled waiter must not cancel the fetch other waiters share
        return await asyncio.shield(task)

    def invalidate(self, host_key: str) -> None:
        """Drop the entry; the next get() fetches afresh.

        An in-flight fetch is detached: its current waiters still receive its
        result, but it will not be installed or joined by later callers.
        """
        self._entries.pop(host_key, None)
        self._inflight.pop(host_key, None)
        log.info("cert_cache.invalidated", host=host_key)

    def put(
        self,
        host_key: str,
        certificate: bytes,
        not_before: datetime,
        not_after: datetime,
    ) -> None:
        """Install a certificate obtained out of band."""
        self._install(
            CachedCertificate(
                host_key=host_key,
                certificate=certificate,
                not_before=not_before,
                not_after=not_after,
                fetched_at=self._clock.now(),
            )
        )

    def peek(self, host_key: str) -> CachedCertificate | None:
        """Cached entry without fetching or touching LRU order."""
        return self._entries.get(host_key)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "fetches": self._fetches,
            "failures": self._failures,
            "stale_served": self._stale_served,
        }

    async def _refresh(self, host_key: str) -> bytes:
        """Leader body: fetch, install, or fall back to a still-valid entry."""
        me = asyncio.current_task()
        self._fetches += 1
        try:
            try:
                certificate, not_before, not_after = await asyncio.wait_for(
                    self._fetcher.fetch(host_key), timeout=self._fetch_timeout
                )
                if not_after <= self._clock.now():
                    raise ValueError(f"fetched certificate expired at {not_after.isoformat()}")
            except Exception as exc:
                self._failures += 1
                stale = self._entries.get(host_key)
                if stale is not None and stale.is_valid(self._clock.now()):
                    self._stale_served += 1
                    log.warning(
                        "cert_cache.serving_stale",
                        host=host_key,
                        not_after=stale.not_after.isoformat(),
                        error=str(exc) or type(exc).__name__,
                    )
                    return stale.certificate
                if stale is not None:
                    self._entries.pop(host_key, None)
                log.error(
                    "cert_cache.fetch_failed",
                    host=host_key,
                    error=str(exc) or type(exc).__name__,
                )
                raise FetchFailedError(host_key) from exc

            entry = CachedCertificate(
                host_key=host_key,
                certificate=certificate,
                not_before=not_before,
                not_after=not_after,
                fetched_at=self._clock.now(),
            )
            if self._inflight.get(host_key) is me:
                self._install(entry)
            log.info("cert_cache.fetched", host=host_key, not_after=not_after.isoformat())
            return certificate
        finally:
            if self._inflight.get(host_key) is me:
                del self._inflight[host_key]

    def _install(self, entry: CachedCertificate) -> None:
        self._entries[entry.host_key] = entry
        self._entries.move_to_end(entry.host_key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("cert_cache.evicted", host=evicted)


def _consume_result(task: asyncio.Task) -> None:
    # Every waiter may have gone away; mark the outcome as retrieved
    if not task.cancelled():
        task.exception()
