"""
SQLite persistence for the order ledger and trading locks.

One autocommitted connection shared across worker threads; every write is a
single statement so no transaction ever spans an exchange call. Async
callers go through `run` / `all` / `get`, which execute in a worker thread
to keep the event loop free.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Optional, Sequence

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        bot_id TEXT NOT NULL,
        external_order_id TEXT UNIQUE,
        symbol TEXT NOT NULL,
        side TEXT NOT NULL,
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        order_type TEXT NOT NULL,
        timestamp_ms INTEGER NOT NULL,
        status TEXT NOT NULL,
        client_id TEXT,
        exchange_created_at INTEGER,
        close_price REAL,
        close_time INTEGER,
        close_quantity REAL,
        close_type TEXT,
        pnl REAL,
        pnl_pct REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_bot_status ON orders (bot_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_bot_symbol ON orders (bot_id, symbol)",
    """
    CREATE TABLE IF NOT EXISTS trading_locks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        bot_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        lock_type TEXT NOT NULL,
        lock_reason TEXT,
        position_id TEXT,
        locked_at INTEGER NOT NULL,
        unlock_at INTEGER,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        metadata TEXT,
        UNIQUE (bot_id, symbol, lock_type)
    )
    """,
)


class Database:
    """SQLite handle. `path=":memory:"` gives a private in-memory database."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            for stmt in SCHEMA:
                self._conn.execute(stmt)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement; returns the number of rows changed."""
        with self._lock:
            cur = self._conn.execute(sql, params)
            return cur.rowcount

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    async def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await asyncio.to_thread(self.execute, sql, params)

    async def all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return await asyncio.to_thread(self.fetchall, sql, params)

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return await asyncio.to_thread(self.fetchone, sql, params)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
