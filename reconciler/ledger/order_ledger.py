"""
OrderLedger: durable record of locally known orders.

The ledger is "what we believe we did". Reconciliation moves rows along the
order state machine as exchange state is observed:

- record() creates PENDING (or FILLED, for executed market orders) rows
- transition() applies legal edges only, as a compare-and-set on the
  status it observed, so two concurrent passes apply an edge exactly once
- repair_interrupted_closes() finishes closes that crashed mid-write
- purge_terminal() is the only path that deletes rows
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from reconciler.core.utils import now_ms
from reconciler.errors import DuplicateOrderError
from reconciler.ledger.database import Database
from reconciler.ledger.models import Order, OrderStatus, is_protective_type
from reconciler.ledger.order_state_machine import INITIAL_STATES, transition_error

log = logging.getLogger("reconciler")

StatusFilter = Union[OrderStatus, Iterable[OrderStatus], None]

SYSTEM_CORRECTION = "SYSTEM_CORRECTION"


class OrderLedger:
    def __init__(
        self,
        db: Database,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.db = db
        self._log_event = log_event or self._default_log
        self.stats: Dict[str, int] = {
            "recorded": 0,
            "transitions": 0,
            "invalid_transitions": 0,
            "lost_races": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(json.dumps(payload, default=str))

    async def record(self, order: Order) -> Order:
        """
        Insert a newly accepted order.

        Raises:
            ValueError: status is not an initial status
            DuplicateOrderError: external_order_id already recorded
        """
        if order.status not in INITIAL_STATES:
            raise ValueError(f"cannot record order in status {order.status.value}")
        if not order.timestamp_ms:
            order.timestamp_ms = now_ms()
        try:
            await self.db.run(
                """
                INSERT INTO orders (
                    bot_id, external_order_id, symbol, side, quantity, price, order_type,
                    timestamp_ms, status, client_id, exchange_created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.bot_id, order.external_order_id, order.symbol, order.side,
                    order.quantity, order.price, order.order_type, order.timestamp_ms,
                    order.status.value, order.client_id, order.exchange_created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateOrderError(order.external_order_id) from exc
        self.stats["recorded"] += 1
        self._log_event(
            "order_recorded",
            bot_id=order.bot_id,
            symbol=order.symbol,
            order_id=order.external_order_id,
            side=order.side,
            qty=order.quantity,
            px=order.price,
            order_type=order.order_type,
            status=order.status.value,
        )
        return await self.get(order.external_order_id) or order

    async def get(self, external_order_id: str) -> Optional[Order]:
        row = await self.db.get(
            "SELECT * FROM orders WHERE external_order_id = ?", (external_order_id,)
        )
        return Order.from_row(row) if row else None

    async def query(
        self,
        bot_id: Optional[str] = None,
        symbol: Optional[str] = None,
        status: StatusFilter = None,
    ) -> List[Order]:
        """Orders matching every given filter, oldest first."""
        sql = "SELECT * FROM orders WHERE 1 = 1"
        params: list = []
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        if symbol is not None:
            sql += " AND symbol = ?"
            params.append(symbol)
        if status is not None:
            statuses = [status] if isinstance(status, OrderStatus) else list(status)
            if not statuses:
                return []
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        sql += " ORDER BY timestamp_ms ASC, id ASC"
        rows = await self.db.all(sql, params)
        return [Order.from_row(r) for r in rows]

    async def open_positions(self, bot_id: str, symbol: Optional[str] = None) -> List[Order]:
        """FILLED entry orders without close_time."""
        orders = await self.query(bot_id=bot_id, symbol=symbol, status=OrderStatus.FILLED)
        return [o for o in orders if o.is_open_position]

    async def pending_orders(self, bot_id: str, symbol: Optional[str] = None) -> List[Order]:
        return await self.query(bot_id=bot_id, symbol=symbol, status=OrderStatus.PENDING)

    async def has_open_activity(self, bot_id: str, symbol: str) -> bool:
        """True while the symbol has an open position or a pending entry order."""
        rows = await self.db.all(
            """
            SELECT order_type FROM orders
            WHERE bot_id = ? AND symbol = ?
              AND (status = 'PENDING' OR (status = 'FILLED' AND close_time IS NULL))
            """,
            (bot_id, symbol),
        )
        return any(not is_protective_type(r["order_type"]) for r in rows)

    async def transition(
        self,
        external_order_id: str,
        new_status: OrderStatus,
        reason: str,
        *,
        pnl: Optional[float] = None,
        pnl_pct: Optional[float] = None,
        close_price: Optional[float] = None,
        close_quantity: Optional[float] = None,
        close_time: Optional[int] = None,
    ) -> bool:
        """
        Move an order along a legal edge.

        Illegal edges (and CLOSED without pnl) are logged and ignored. The
        UPDATE is conditioned on the observed status; losing a race to a
        concurrent writer is also a no-op.

        Returns:
            True when this call applied the transition
        """
        order = await self.get(external_order_id)
        if order is None:
            self._log_event("order_transition_unknown", order_id=external_order_id, to=new_status.value)
            return False

        problem = transition_error(order.status, new_status, pnl)
        if problem:
            self.stats["invalid_transitions"] += 1
            log.warning(json.dumps({
                "event": "order_invalid_transition",
                "bot_id": order.bot_id,
                "order_id": external_order_id,
                "from": order.status.value,
                "to": new_status.value,
                "reason": reason,
                "problem": problem,
            }))
            return False

        if new_status == OrderStatus.FILLED:
            changed = await self.db.run(
                "UPDATE orders SET status = ? WHERE external_order_id = ? AND status = ?",
                (new_status.value, external_order_id, order.status.value),
            )
        elif new_status == OrderStatus.CANCELLED:
            changed = await self.db.run(
                """
                UPDATE orders SET status = ?, close_time = ?, close_type = ?
                WHERE external_order_id = ? AND status = ?
                """,
                (new_status.value, close_time or now_ms(), reason, external_order_id, order.status.value),
            )
        else:
            changed = await self.db.run(
                """
                UPDATE orders SET status = ?, pnl = ?, pnl_pct = ?, close_price = ?,
                    close_quantity = ?, close_time = ?, close_type = ?
                WHERE external_order_id = ? AND status = ?
                """,
                (
                    new_status.value, pnl, pnl_pct, close_price,
                    close_quantity if close_quantity is not None else order.quantity,
                    close_time or now_ms(), reason, external_order_id, order.status.value,
                ),
            )

        if changed != 1:
            self.stats["lost_races"] += 1
            self._log_event(
                "order_transition_lost_race",
                order_id=external_order_id,
                expected=order.status.value,
                to=new_status.value,
            )
            return False

        self.stats["transitions"] += 1
        self._log_event(
            "order_transition",
            bot_id=order.bot_id,
            symbol=order.symbol,
            order_id=external_order_id,
            **{"from": order.status.value},
            to=new_status.value,
            reason=reason,
            pnl=pnl,
        )
        return True

    async def repair_interrupted_closes(self, bot_id: Optional[str] = None) -> int:
        """
        Close FILLED orders that already carry a close_time.

        A close interrupted between writing close fields and status leaves
        the row looking like an open position; pnl defaults to 0 only when
        it was never written.
        """
        sql = """
            UPDATE orders
            SET status = 'CLOSED', pnl = COALESCE(pnl, 0), close_type = COALESCE(close_type, ?)
            WHERE status = 'FILLED' AND close_time IS NOT NULL
        """
        params: list = [SYSTEM_CORRECTION]
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        fixed = await self.db.run(sql, params)
        if fixed:
            self._log_event("orders_close_repaired", bot_id=bot_id, count=fixed)
        return fixed

    async def purge_terminal(self, older_than_ms: int, bot_id: Optional[str] = None) -> int:
        """Retention cleanup: delete CLOSED/CANCELLED rows closed before the cutoff."""
        sql = """
            DELETE FROM orders
            WHERE status IN ('CLOSED', 'CANCELLED')
              AND COALESCE(close_time, timestamp_ms) < ?
        """
        params: list = [older_than_ms]
        if bot_id is not None:
            sql += " AND bot_id = ?"
            params.append(bot_id)
        purged = await self.db.run(sql, params)
        if purged:
            self._log_event("orders_purged", bot_id=bot_id, count=purged, cutoff_ms=older_than_ms)
        return purged
