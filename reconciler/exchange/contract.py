"""
Exchange collaborator contract and strict result types.

The raw client is duck-typed (Backpack-style payloads: Bid/Ask sides,
numeric strings, ISO or epoch timestamps). Everything past the gateway
sees parsed dataclasses wrapped in an ExchangeResult, never raw dicts or
bare None.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar

from reconciler.core.utils import parse_timestamp_ms, to_float
from reconciler.ledger.models import BUY, SELL

T = TypeVar("T")


class ExchangeClient(Protocol):
    """Raw exchange collaborator. `None` from a lookup means unknown."""

    async def get_open_orders(self, symbol: Optional[str], market_type: str) -> Optional[List[Dict[str, Any]]]: ...

    async def get_open_trigger_orders(self, symbol: Optional[str], market_type: str) -> Optional[List[Dict[str, Any]]]: ...

    async def get_order_history(
        self,
        order_id: Optional[str],
        symbol: Optional[str],
        limit: int,
        offset: int,
        market_type: str,
    ) -> Optional[List[Dict[str, Any]]]: ...

    async def get_fill_history(
        self,
        symbol: Optional[str],
        order_id: Optional[str],
        from_ts: int,
        to_ts: int,
        limit: int,
        offset: int,
        fill_type: Optional[str],
        market_type: str,
        sort_direction: Optional[str],
    ) -> Optional[List[Dict[str, Any]]]: ...

    async def execute_order(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def cancel_open_order(self, symbol: str, order_id: str) -> Optional[Dict[str, Any]]: ...


@dataclass(frozen=True)
class ExchangeError:
    kind: str  # "unknown" | "rejected" | "exception"
    message: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class ExchangeResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[ExchangeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "ExchangeResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: str, message: str, status_code: Optional[int] = None) -> "ExchangeResult[T]":
        return cls(error=ExchangeError(kind=kind, message=message, status_code=status_code))


def normalize_side(raw: Any) -> str:
    """Bid/Buy/Long -> BUY, everything else -> SELL."""
    text = str(raw or "").strip().lower()
    return BUY if text in {"bid", "buy", "long", "b"} else SELL


def exchange_side(side: str) -> str:
    return "Bid" if side == BUY else "Ask"


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class ExchangeOrder:
    id: str
    symbol: str
    side: str
    quantity: float
    price: float
    status: str
    order_type: str
    client_id: Optional[str] = None
    trigger_price: Optional[float] = None
    created_at: Optional[int] = None

    @property
    def is_trigger(self) -> bool:
        return (
            self.trigger_price is not None
            or self.order_type in {"STOP_MARKET", "TAKE_PROFIT_MARKET"}
            or "TRIGGER" in self.order_type.upper()
        )

    @classmethod
    def parse(cls, raw: Dict[str, Any]) -> "ExchangeOrder":
        trigger = (
            raw.get("triggerPrice")
            or raw.get("stopLossTriggerPrice")
            or raw.get("takeProfitTriggerPrice")
        )
        return cls(
            id=str(raw.get("id") or raw.get("orderId") or ""),
            symbol=str(raw.get("symbol", "")),
            side=normalize_side(raw.get("side")),
            quantity=to_float(raw.get("quantity") or raw.get("triggerQuantity")),
            price=to_float(raw.get("price")),
            status=str(raw.get("status", "")),
            order_type=str(raw.get("orderType", "")),
            client_id=_str_or_none(raw.get("clientId")),
            trigger_price=to_float(trigger) if trigger is not None else None,
            created_at=parse_timestamp_ms(raw.get("createdAt")),
        )


@dataclass(frozen=True)
class HistoryRecord:
    id: str
    status: str
    symbol: str = ""
    client_id: Optional[str] = None
    created_at: Optional[int] = None

    @classmethod
    def parse(cls, raw: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            id=str(raw.get("id") or raw.get("orderId") or ""),
            status=str(raw.get("status", "")),
            symbol=str(raw.get("symbol", "")),
            client_id=_str_or_none(raw.get("clientId")),
            created_at=parse_timestamp_ms(raw.get("createdAt")),
        )


@dataclass(frozen=True)
class Fill:
    symbol: str
    side: str
    quantity: float
    price: float
    order_id: str
    timestamp_ms: int
    client_id: Optional[str] = None
    trade_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Identity for de-duplication and attribution bookkeeping."""
        if self.trade_id:
            return f"t:{self.trade_id}"
        return f"o:{self.order_id}:{self.timestamp_ms}:{self.price}:{self.quantity}"

    @classmethod
    def parse(cls, raw: Dict[str, Any]) -> "Fill":
        return cls(
            symbol=str(raw.get("symbol", "")),
            side=normalize_side(raw.get("side")),
            quantity=to_float(raw.get("quantity")),
            price=to_float(raw.get("price")),
            order_id=str(raw.get("orderId") or ""),
            timestamp_ms=parse_timestamp_ms(raw.get("timestamp")) or 0,
            client_id=_str_or_none(raw.get("clientId")),
            trade_id=_str_or_none(raw.get("tradeId")),
        )
