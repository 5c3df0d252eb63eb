"""Connection handling for SQLite-backed storage adapters."""

import asyncio
import json
import sqlite3
import threading
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import aiosqlite

from gcwatch.core.exceptions import StoreCorrupted

MEMORY = ":memory:"


def _load_json_payload(data: str, *, source: str) -> dict[str, Any]:
    """Parse a persisted JSON object.

    Raises:
        StoreCorrupted: The payload is not a JSON object.
    """
    try:
        result = json.loads(data)
    except json.JSONDecodeError as exc:
        raise StoreCorrupted(f"unreadable payload in {source}: {exc}") from exc
    if not isinstance(result, dict):
        raise StoreCorrupted(f"unexpected payload type in {source}: {type(result).__name__}")
    return result


class SQLiteStorageBase:
    """Opens aiosqlite and sqlite3 connections to one database.

    The schema is applied on the first connection of each access path.
    File databases get a fresh connection per use, closed afterwards.
    A ``:memory:`` database only lives as long as its connection, so one
    connection per path is kept open until ``close``; the async and sync
    paths then see separate databases.
    """

    def __init__(self, db_path: str, schema: str) -> None:
        self._db_path = db_path
        self._schema = schema
        self._async_ready = False
        self._async_lock: asyncio.Lock | None = None
        self._async_memory: aiosqlite.Connection | None = None
        self._sync_ready = False
        self._sync_lock = threading.Lock()
        self._sync_memory: sqlite3.Connection | None = None

    @property
    def in_memory(self) -> bool:
        return self._db_path == MEMORY

    async def _open_async(self) -> aiosqlite.Connection:
        if self._async_lock is None:
            self._async_lock = asyncio.Lock()
        async with self._async_lock:
            if self.in_memory:
                if self._async_memory is None:
                    self._async_memory = await aiosqlite.connect(MEMORY)
                    await self._async_memory.executescript(self._schema)
                return self._async_memory
            db = await aiosqlite.connect(self._db_path)
            if not self._async_ready:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.executescript(self._schema)
                self._async_ready = True
            return db

    def _open_sync(self) -> sqlite3.Connection:
        with self._sync_lock:
            if self.in_memory:
                if self._sync_memory is None:
                    self._sync_memory = sqlite3.connect(MEMORY, check_same_thread=False)
                    self._sync_memory.executescript(self._schema)
                return self._sync_memory
            conn = sqlite3.connect(self._db_path)
            if not self._sync_ready:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(self._schema)
                self._sync_ready = True
            return conn

    @asynccontextmanager
    async def async_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await self._open_async()
        try:
            yield db
        finally:
            if not self.in_memory:
                await db.close()

    @contextmanager
    def sync_connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._open_sync()
        try:
            yield conn
        finally:
            if not self.in_memory:
                conn.close()

    async def close(self) -> None:
        """Close the connections kept open for ``:memory:`` databases."""
        if self._async_memory is not None:
            await self._async_memory.close()
            self._async_memory = None
        if self._sync_memory is not None:
            self._sync_memory.close()
            self._sync_memory = None
