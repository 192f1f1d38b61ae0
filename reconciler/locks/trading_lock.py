"""
TradingLockManager: durable (bot, symbol, purpose) mutual exclusion.

Rows live in the shared `trading_locks` table, so they survive restarts
and coordinate every bot process pointed at the same database. At most one
row exists per tuple; acquire() is a single UPSERT that only takes over a
RELEASED row. Locks never expire on their own: a crash mid-section leaves
the row ACTIVE until release(), release_all() or prune_stale() clears it.

critical_section() layers the in-process FifoSemaphore on top: the permit
is taken first (cheap, FIFO within the process), then the durable row.
Both are released on every exit path.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from reconciler.core.utils import now_ms
from reconciler.errors import LockBusyError
from reconciler.ledger.database import Database
from reconciler.ledger.models import POSITION_TRACKING_LOCKS, LockStatus, TradingLock
from reconciler.ledger.order_ledger import OrderLedger
from reconciler.locks.semaphore import FifoSemaphore

log = logging.getLogger("reconciler")

STALE_PRUNED = "STALE_PRUNED"


class TradingLockManager:
    def __init__(
        self,
        db: Database,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.db = db
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    async def acquire(
        self,
        bot_id: str,
        symbol: str,
        lock_type: str,
        reason: str,
        position_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Take the lock for (bot_id, symbol, lock_type).

        Returns:
            True if the row was absent or RELEASED and is now ACTIVE for this
            caller; False if it was already ACTIVE (row left untouched).
        """
        changed = await self.db.run(
            """
            INSERT INTO trading_locks (
                bot_id, symbol, lock_type, lock_reason, position_id, locked_at, unlock_at, status, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, NULL, 'ACTIVE', ?)
            ON CONFLICT (bot_id, symbol, lock_type) DO UPDATE SET
                lock_reason = excluded.lock_reason,
                position_id = excluded.position_id,
                locked_at = excluded.locked_at,
                unlock_at = NULL,
                status = 'ACTIVE',
                metadata = excluded.metadata
            WHERE trading_locks.status = 'RELEASED'
            """,
            (
                bot_id, symbol, lock_type, reason, position_id, now_ms(),
                json.dumps(metadata) if metadata else None,
            ),
        )
        acquired = changed == 1
        self._log_event(
            "trading_lock_acquired" if acquired else "trading_lock_busy",
            bot_id=bot_id,
            symbol=symbol,
            lock_type=lock_type,
            reason=reason,
        )
        return acquired

    async def has_active(self, bot_id: str, symbol: str, lock_type: str) -> bool:
        row = await self.db.get(
            """
            SELECT 1 FROM trading_locks
            WHERE bot_id = ? AND symbol = ? AND lock_type = ? AND status = 'ACTIVE'
            """,
            (bot_id, symbol, lock_type),
        )
        return row is not None

    async def get(self, bot_id: str, symbol: str, lock_type: str) -> Optional[TradingLock]:
        row = await self.db.get(
            "SELECT * FROM trading_locks WHERE bot_id = ? AND symbol = ? AND lock_type = ?",
            (bot_id, symbol, lock_type),
        )
        return TradingLock.from_row(row) if row else None

    async def release(self, bot_id: str, symbol: str, lock_type: str, reason: Optional[str] = None) -> bool:
        changed = await self.db.run(
            """
            UPDATE trading_locks
            SET status = 'RELEASED', unlock_at = ?, lock_reason = COALESCE(?, lock_reason)
            WHERE bot_id = ? AND symbol = ? AND lock_type = ? AND status = 'ACTIVE'
            """,
            (now_ms(), reason, bot_id, symbol, lock_type),
        )
        if changed:
            self._log_event(
                "trading_lock_released", bot_id=bot_id, symbol=symbol, lock_type=lock_type, reason=reason
            )
        return changed == 1

    async def release_all(self, bot_id: Optional[str] = None) -> int:
        """Release every ACTIVE lock (of one bot, or all); used at startup and shutdown."""
        sql = "UPDATE trading_locks SET status = 'RELEASED', unlock_at = ? WHERE status = 'ACTIVE'"
        params: list = [now_ms()]
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        released = await self.db.run(sql, params)
        if released:
            self._log_event("trading_locks_released_all", bot_id=bot_id, count=released)
        return released

    async def active_locks(self, bot_id: Optional[str] = None) -> List[TradingLock]:
        sql = "SELECT * FROM trading_locks WHERE status = ?"
        params: list = [LockStatus.ACTIVE.value]
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        sql += " ORDER BY locked_at ASC"
        return [TradingLock.from_row(r) for r in await self.db.all(sql, params)]

    async def prune_stale(self, bot_id: str, ledger: OrderLedger) -> int:
        """
        Release position-tracking locks whose symbol no longer has an open
        position or a pending entry order.
        """
        pruned = 0
        for lock in await self.active_locks(bot_id):
            if lock.lock_type not in POSITION_TRACKING_LOCKS:
                continue
            if await ledger.has_open_activity(bot_id, lock.symbol):
                continue
            if await self.release(bot_id, lock.symbol, lock.lock_type, reason=STALE_PRUNED):
                pruned += 1
        return pruned

    @asynccontextmanager
    async def critical_section(
        self,
        semaphore: FifoSemaphore,
        bot_id: str,
        symbol: str,
        lock_type: str,
        reason: str,
        position_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[None]:
        """
        Hold the semaphore permit and the durable lock for the block.

        Raises:
            LockBusyError: the durable lock is ACTIVE under another owner
        """
        async with semaphore.hold(f"{lock_type}:{symbol}"):
            if not await self.acquire(bot_id, symbol, lock_type, reason, position_id, metadata):
                raise LockBusyError(bot_id, symbol, lock_type)
            try:
                yield
            finally:
                await self.release(bot_id, symbol, lock_type)
