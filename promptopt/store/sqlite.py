# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""SQLite-backed key-value store: persistent across restarts."""
import logging
import os
import time
from typing import Iterable, List, Optional, Tuple

import aiosqlite

from promptopt.store.kv import KVStore

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL
);
"""


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLiteKVStore(KVStore):
    """Async SQLite key-value store: drop-in replacement for InMemoryKVStore."""

    def __init__(self, db_path: str = "~/.promptopt/state.db") -> None:
        self._db_path = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open database and create tables."""
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.init()
        return self._db

    async def put(self, key: str, value: str) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, time.time()),
        )
        await db.commit()

    async def get(self, key: str) -> Optional[str]:
        db = await self._ensure_db()
        cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def delete(self, key: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await db.commit()
        return cursor.rowcount > 0

    async def list_by_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        db = await self._ensure_db()
        cursor = await db.execute(
            "SELECT key, value FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key ASC",
            (_escape_like(prefix) + "%",),
        )
        rows = await cursor.fetchall()
        # LIKE is case-insensitive for ASCII
        return [(k, v) for k, v in rows if k.startswith(prefix)]

    async def put_many(self, items: Iterable[Tuple[str, str]]) -> None:
        """Write all records in one transaction."""
        db = await self._ensure_db()
        now = time.time()
        await db.executemany(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            [(k, v, now) for k, v in items],
        )
        await db.commit()

    async def delete_many(self, keys: Iterable[str]) -> None:
        db = await self._ensure_db()
        await db.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in keys])
        await db.commit()

    async def count(self) -> int:
        db = await self._ensure_db()
        cursor = await db.execute("SELECT COUNT(*) FROM kv")
        row = await cursor.fetchone()
        return row[0] if row else 0
