"""
Shared fixtures for trust registry tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import structlog

from trust_registry.config import Settings
from trust_registry.gateway import MemoryGateway
from trust_registry.registry import IdentityRegistry
from trust_registry.sqlite_gateway import SqliteGateway

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime = T0):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class CountingSecrets:
    """Deterministic secrets, distinct per call."""

    def __init__(self):
        self.calls = 0

    def generate(self, nbytes: int) -> bytes:
        self.calls += 1
        return self.calls.to_bytes(nbytes, "big")


class ScriptedFetcher:
    """Certificate fetcher driven by the test.

    Each fetch waits on ``gate`` (open by default) and then either returns the
    next scripted certificate or raises ``error``.
    """

    def __init__(self, clock: FrozenClock, lifetime: timedelta = timedelta(days=90)):
        self._clock = clock
        self.lifetime = lifetime
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.started = asyncio.Event()
        self.error: Exception | None = None

    async def fetch(self, host_key: str):
        self.calls.append(host_key)
        call_number = len(self.calls)
        self.started.set()
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        now = self._clock.now()
        return f"{host_key}#{call_number}".encode(), now, now + self.lifetime


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        token_allowed_scopes=["read", "write", "user:all"],
        token_last_used_interval_seconds=60,
    )


@pytest.fixture(params=["memory", "sqlite"])
async def gateway(request, tmp_path):
    if request.param == "memory":
        gw = MemoryGateway()
    else:
        gw = SqliteGateway(str(tmp_path / "registry.db"))
    await gw.open()
    yield gw
    await gw.close()


@pytest.fixture
def fetcher(clock):
    return ScriptedFetcher(clock)


@pytest.fixture
def registry(gateway, settings, clock, fetcher):
    return IdentityRegistry(
        gateway,
        settings=settings,
        clock=clock,
        secrets=CountingSecrets(),
        fetcher=fetcher,
    )
