"""
Redis persistence gateway.

Each record is a hash ``{version, value}`` under ``<key_prefix><key>``.
Conditional writes use WATCH/MULTI: a concurrent change to any watched key
aborts the transaction, which is reported as a failed condition.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

import redis.asyncio as redis
from redis.exceptions import WatchError

from .gateway import ABSENT, CompareAndSet, Delete, Operation, Record, check_conditions

_VERSION_COUNTER = "__version_seq__"


class RedisGateway:
    """Gateway backed by a Redis server (``redis.asyncio``)."""

    def __init__(self, url: str, key_prefix: str = "trust:"):
        self._url = url
        self._prefix = key_prefix
        self._redis: redis.Redis | None = None

    async def open(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._url, decode_responses=True)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def get(self, key: str) -> Record | None:
        assert self._redis is not None
        data = await self._redis.hgetall(self._prefix + key)
        return self._to_record(key, data)

    async def put(self, key: str, value: dict[str, Any]) -> int:
        assert self._redis is not None
        version = await self._next_version()
        await self._redis.hset(
            self._prefix + key, mapping={"version": version, "value": json.dumps(value)}
        )
        return version

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        return await self.transaction([CompareAndSet(key, expected_version, value)])

    async def delete(self, key: str, expected_version: int | None = None) -> bool:
        if expected_version is None:
            assert self._redis is not None
            await self._redis.delete(self._prefix + key)
            return True
        return await self.transaction([Delete(key, expected_version)])

    async def transaction(self, ops: Sequence[Operation]) -> bool:
        assert self._redis is not None
        keys = [self._prefix + op.key for op in ops]
        # Versions for the writes are reserved up front; numbers burnt by an
        # aborted transaction are simply skipped.
        new_versions = {
            op.key: await self._next_version() for op in ops if not isinstance(op, Delete)
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(*keys)
                versions: dict[str, int] = {}
                for op in ops:
                    raw = await pipe.hget(self._prefix + op.key, "version")
                    versions[op.key] = int(raw) if raw is not None else ABSENT
                if not check_conditions(ops, versions):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                for op in ops:
                    full_key = self._prefix + op.key
                    if isinstance(op, Delete):
                        pipe.delete(full_key)
                    else:
                        pipe.hset(
                            full_key,
                            mapping={
                                "version": new_versions[op.key],
                                "value": json.dumps(op.value),
                            },
                        )
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def scan(self, prefix: str) -> list[Record]:
        assert self._redis is not None
        pattern = _escape_glob(self._prefix + prefix) + "*"
        keys = sorted([k async for k in self._redis.scan_iter(match=pattern)])
        records = []
        for full_key in keys:
            key = full_key[len(self._prefix):]
            record = self._to_record(key, await self._redis.hgetall(full_key))
            if record is not None:
                records.append(record)
        return records

    async def _next_version(self) -> int:
        assert self._redis is not None
        return int(await self._redis.incr(self._prefix + _VERSION_COUNTER))

    @staticmethod
    def _to_record(key: str, data: dict[str, str]) -> Record | None:
        if not data or "value" not in data:
            return None
        return Record(key, json.loads(data["value"]), int(data["version"]))


def _escape_glob(text: str) -> str:
    out = []
    for ch in text:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)
