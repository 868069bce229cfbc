"""
SQLite persistence gateway.

Stores every record as a JSON document in a single table:
- records: key → (version, value)
- counters: the gateway-wide version sequence
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Sequence

import aiosqlite

from .gateway import ABSENT, CompareAndSet, Delete, Operation, Record, check_conditions

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    key     TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    value   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS counters (
    name  TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

INSERT OR IGNORE INTO counters (name, value) VALUES ('version', 0);
"""


class SqliteGateway:
    """Async SQLite gateway over one connection.

    Statements on the shared connection are serialized by ``_lock``; every
    write runs inside ``BEGIN IMMEDIATE`` so multi-key transactions are
    all-or-nothing, including across a process restart.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # --- Reads ---

    async def get(self, key: str) -> Record | None:
        assert self._db
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT key, version, value FROM records WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        return _to_record(row) if row else None

    async def scan(self, prefix: str) -> list[Record]:
        assert self._db
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT key, version, value FROM records "
                "WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            rows = await cursor.fetchall()
        return [_to_record(r) for r in rows]

    # --- Writes ---

    async def put(self, key: str, value: dict[str, Any]) -> int:
        async with self._write() as db:
            return await self._store(db, key, value)

    async def compare_and_set(
        self, key: str, expected_version: int, value: dict[str, Any]
    ) -> bool:
        return await self.transaction([CompareAndSet(key, expected_version, value)])

    async def delete(self, key: str, expected_version: int | None = None) -> bool:
        return await self.transaction([Delete(key, expected_version)])

    async def transaction(self, ops: Sequence[Operation]) -> bool:
        async with self._write() as db:
            versions: dict[str, int] = {}
            for op in ops:
                cursor = await db.execute(
                    "SELECT version FROM records WHERE key = ?", (op.key,)
                )
                row = await cursor.fetchone()
                versions[op.key] = row["version"] if row else ABSENT
            if not check_conditions(ops, versions):
                return False
            for op in ops:
                if isinstance(op, Delete):
                    await db.execute("DELETE FROM records WHERE key = ?", (op.key,))
                else:
                    await self._store(db, op.key, op.value)
            return True

    def _write(self) -> "_WriteTransaction":
        assert self._db
        return _WriteTransaction(self._db, self._lock)

    @staticmethod
    async def _store(db: aiosqlite.Connection, key: str, value: dict[str, Any]) -> int:
        await db.execute("UPDATE counters SET value = value + 1 WHERE name = 'version'")
        cursor = await db.execute("SELECT value FROM counters WHERE name = 'version'")
        version = (await cursor.fetchone())["value"]
        await db.execute(
            """INSERT INTO records (key, version, value) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET version = excluded.version,
                                              value = excluded.value""",
            (key, version, json.dumps(value)),
        )
        return version


class _WriteTransaction:
    """Holds the connection lock for one BEGIN IMMEDIATE transaction.

    Rolls back when the block raises; storage errors propagate unchanged.
    """

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def __aenter__(self) -> aiosqlite.Connection:
        await self._lock.acquire()
        try:
            await self._db.execute("BEGIN IMMEDIATE")
        except BaseException:
            self._lock.release()
            raise
        return self._db

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                await self._db.execute("COMMIT")
            else:
                await self._db.execute("ROLLBACK")
        finally:
            self._lock.release()


def _to_record(row: aiosqlite.Row) -> Record:
    return Record(row["key"], json.loads(row["value"]), row["version"])
