"""Injectable time and randomness sources."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...


class SecretGenerator(Protocol):
    def generate(self, nbytes: int) -> bytes:
        """Return ``nbytes`` cryptographically secure random bytes."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemSecretGenerator:
    def generate(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)
