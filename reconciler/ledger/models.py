"""
Ledger records: orders and trading locks.

Timestamps are epoch milliseconds throughout.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

BUY = "BUY"
SELL = "SELL"


PROTECTIVE_ORDER_TYPES = frozenset({"STOP_MARKET", "TAKE_PROFIT_MARKET"})


def opposite_side(side: str) -> str:
    return SELL if side == BUY else BUY


def is_protective_type(order_type: str) -> bool:
    """Conditional reduce orders (stops, take-profits, trigger variants)."""
    return order_type in PROTECTIVE_ORDER_TYPES or "TRIGGER" in (order_type or "").upper()


class OrderStatus(str, Enum):
    PENDING = "PENDING"      # Submitted, not yet observed filled
    FILLED = "FILLED"        # Filled; open position while close_time is NULL
    CANCELLED = "CANCELLED"  # Terminal
    CLOSED = "CLOSED"        # Position closed, pnl recorded (terminal)


class LockStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class LockType:
    POSITION_OPEN = "POSITION_OPEN"
    STOP_LOSS = "STOP_LOSS"
    GHOST_RESOLUTION = "GHOST_RESOLUTION"
    ORDER_CANCEL = "ORDER_CANCEL"
    POSITION_CLOSE = "POSITION_CLOSE"


# Lock types that track a live position and go stale once it is gone
POSITION_TRACKING_LOCKS = frozenset({LockType.POSITION_OPEN})


@dataclass
class Order:
    external_order_id: str
    bot_id: str
    symbol: str
    side: str
    quantity: float
    price: float
    order_type: str = "LIMIT"
    client_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    timestamp_ms: int = 0
    exchange_created_at: Optional[int] = None

    close_price: Optional[float] = None
    close_time: Optional[int] = None
    close_quantity: Optional[float] = None
    close_type: Optional[str] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None

    id: Optional[int] = None

    @property
    def is_open_position(self) -> bool:
        return self.status == OrderStatus.FILLED and self.close_time is None and not self.is_protective

    @property
    def opened_at_ms(self) -> int:
        return self.exchange_created_at or self.timestamp_ms

    @property
    def is_protective(self) -> bool:
        return is_protective_type(self.order_type)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Order":
        return cls(
            id=row["id"],
            external_order_id=row["external_order_id"],
            bot_id=row["bot_id"],
            symbol=row["symbol"],
            side=row["side"],
            quantity=row["quantity"],
            price=row["price"],
            order_type=row["order_type"],
            client_id=row["client_id"],
            status=OrderStatus(row["status"]),
            timestamp_ms=row["timestamp_ms"],
            exchange_created_at=row["exchange_created_at"],
            close_price=row["close_price"],
            close_time=row["close_time"],
            close_quantity=row["close_quantity"],
            close_type=row["close_type"],
            pnl=row["pnl"],
            pnl_pct=row["pnl_pct"],
        )


@dataclass
class TradingLock:
    bot_id: str
    symbol: str
    lock_type: str
    status: LockStatus
    lock_reason: Optional[str] = None
    position_id: Optional[str] = None
    locked_at: Optional[int] = None
    unlock_at: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TradingLock":
        raw = row["metadata"]
        return cls(
            bot_id=row["bot_id"],
            symbol=row["symbol"],
            lock_type=row["lock_type"],
            status=LockStatus(row["status"]),
            lock_reason=row["lock_reason"],
            position_id=row["position_id"],
            locked_at=row["locked_at"],
            unlock_at=row["unlock_at"],
            metadata=json.loads(raw) if raw else {},
        )
