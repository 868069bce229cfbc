"""
Persistence gateway contract and the in-memory backend.

Records are JSON documents addressed by string keys. Every write stamps the
record with a fresh version drawn from a gateway-wide increasing sequence, so
a version is never reused even after a delete. Version 0 stands for
"absent": a compare-and-set with ``expected_version=0`` is an insert-if-absent.

Backends:
- MemoryGateway: process-local, for tests and development
- SqliteGateway: aiosqlite (trust_registry.sqlite_gateway)
- RedisGateway: redis.asyncio (trust_registry.redis_gateway)
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Protocol, Sequence, Union
from urllib.parse import quote

ABSENT = 0


def make_key(kind: str, *parts: str) -> str:
    """Build a record key; components are quoted so ':' only ever delimits."""
    return ":".join([kind, *(quote(str(p), safe="") for p in parts)])


def key_prefix(kind: str, *parts: str) -> str:
    """Prefix matching every key under ``kind`` and the given components."""
    return make_key(kind, *parts) + ":"


@dataclass(frozen=True)
class Record:
    key: str
    value: dict[str, Any]
    version: int


# --- Transaction operations ---

@dataclass(frozen=True)
class Put:
    """Unconditional write."""
    key: str
    value: dict[str, Any]


@dataclass(frozen=True)
class CompareAndSet:
    """Write only if the stored version equals ``expected_version``."""
    key: str
    expected_version: int
    value: dict[str, Any]


@dataclass(frozen=True)
class Delete:
    """Remove a key; with ``expected_version`` set, only at that version."""
    key: str
    expected_version: int | None = None


Operation = Union[Put, CompareAndSet, Delete]


class PersistenceGateway(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> Record | None: ...

    async def put(self, key: str, value: dict[str, Any]) -> int: ...

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool: ...

    async def delete(self, key: str, expected_version: int | None = None) -> bool: ...

    async def transaction(self, ops: Sequence[Operation]) -> bool:
        """Apply all ops atomically. Returns False (nothing applied) if any
        version condition fails."""
        ...

    async def scan(self, prefix: str) -> list[Record]: ...


def check_conditions(ops: Sequence[Operation], versions: dict[str, int]) -> bool:
    """True if every conditional op matches the current versions."""
    for op in ops:
        if isinstance(op, CompareAndSet):
            if versions.get(op.key, ABSENT) != op.expected_version:
                return False
        elif isinstance(op, Delete) and op.expected_version is not None:
            if versions.get(op.key, ABSENT) != op.expected_version:
                return False
    return True


class MemoryGateway:
    """Dict-backed gateway. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[int, dict[str, Any]]] = {}
        self._seq = 0

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # Each operation yields to the loop first, as real I/O would, and then
    # runs to completion without awaiting.

    async def get(self, key: str) -> Record | None:
        await asyncio.sleep(0)
        entry = self._data.get(key)
        if entry is None:
            return None
        version, value = entry
        return Record(key, copy.deepcopy(value), version)

    async def put(self, key: str, value: dict[str, Any]) -> int:
        await asyncio.sleep(0)
        return self._write(key, value)

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        await asyncio.sleep(0)
        if self._version(key) != expected_version:
            return False
        self._write(key, value)
        return True

    async def delete(self, key: str, expected_version: int | None = None) -> bool:
        await asyncio.sleep(0)
        if key not in self._data:
            return expected_version in (None, ABSENT)
        if expected_version is not None and self._version(key) != expected_version:
            return False
        del self._data[key]
        return True

    async def transaction(self, ops: Sequence[Operation]) -> bool:
        await asyncio.sleep(0)
        versions = {op.key: self._version(op.key) for op in ops}
        if not check_conditions(ops, versions):
            return False
        for op in ops:
            if isinstance(op, Delete):
                self._data.pop(op.key, None)
            else:
                self._write(op.key, op.value)
        return True

    async def scan(self, prefix: str) -> list[Record]:
        await asyncio.sleep(0)
        return [
            Record(key, copy.deepcopy(value), version)
            for key, (version, value) in sorted(self._data.items())
            if key.startswith(prefix)
        ]

    def _version(self, key: str) -> int:
        entry = self._data.get(key)
        return entry[0] if entry else ABSENT

    def _write(self, key: str, value: dict[str, Any]) -> int:
        self._seq += 1
        self._data[key] = (self._seq, copy.deepcopy(value))
        return self._seq
