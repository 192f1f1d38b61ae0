"""
ExchangeGateway: strict-result facade over the raw exchange client.

Every call returns an ExchangeResult:
- raw None (or a non-list where a list is expected) -> failure("unknown")
- payload with an `error` field                       -> failure("rejected")
- any other exception                                 -> failure("exception")

Rate limiting is the one condition that is raised instead of returned
(RateLimitError), so a duty aborts its pass and the scheduler backs off.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from reconciler.errors import RateLimitError
from reconciler.exchange.contract import (
    ExchangeClient,
    ExchangeOrder,
    ExchangeResult,
    Fill,
    HistoryRecord,
)
from reconciler.exchange.rate_limit import is_rate_limit_error, looks_rate_limited

log = logging.getLogger("reconciler")


class ExchangeGateway:
    def __init__(
        self,
        client: ExchangeClient,
        market_type: str = "PERP",
        bot_id: str = "",
        fill_page_limit: int = 1000,
        fill_max_pages: int = 5,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.client = client
        self.market_type = market_type
        self.bot_id = bot_id
        self.fill_page_limit = fill_page_limit
        self.fill_max_pages = fill_max_pages
        self._log_event = log_event or self._default_log
        self.stats: Dict[str, int] = {"calls": 0, "failures": 0, "rate_limited": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, "bot_id": self.bot_id, **kwargs}
        log.warning(json.dumps(payload, default=str))

    async def _call(self, name: str, fn: Callable[[], Awaitable[Any]]) -> ExchangeResult[Any]:
        self.stats["calls"] += 1
        try:
            raw = await fn()
        except RateLimitError:
            self.stats["rate_limited"] += 1
            raise
        except Exception as exc:
            if is_rate_limit_error(exc):
                self.stats["rate_limited"] += 1
                raise RateLimitError(f"{name}: {exc}") from exc
            self.stats["failures"] += 1
            self._log_event("exchange_call_failed", call=name, err=str(exc), err_type=type(exc).__name__)
            return ExchangeResult.failure("exception", str(exc))

        if raw is None:
            self.stats["failures"] += 1
            return ExchangeResult.failure("unknown", f"{name}: no response")
        if isinstance(raw, dict) and raw.get("error"):
            message = str(raw.get("error"))
            if looks_rate_limited(message) or raw.get("code") == 429:
                self.stats["rate_limited"] += 1
                raise RateLimitError(f"{name}: {message}")
            self.stats["failures"] += 1
            self._log_event("exchange_call_rejected", call=name, err=message)
            return ExchangeResult.failure("rejected", message)
        return ExchangeResult.success(raw)

    @staticmethod
    def _as_list(result: ExchangeResult[Any], name: str) -> Optional[ExchangeResult[Any]]:
        if result.ok and not isinstance(result.value, list):
            return ExchangeResult.failure("unknown", f"{name}: expected a list")
        return None

    async def open_orders(self, symbol: Optional[str] = None) -> ExchangeResult[List[ExchangeOrder]]:
        res = await self._call("get_open_orders", lambda: self.client.get_open_orders(symbol, self.market_type))
        bad = self._as_list(res, "get_open_orders")
        if bad is not None or not res.ok:
            return bad or res
        return ExchangeResult.success([ExchangeOrder.parse(o) for o in res.value if isinstance(o, dict)])

    async def open_trigger_orders(self, symbol: Optional[str] = None) -> ExchangeResult[List[ExchangeOrder]]:
        res = await self._call(
            "get_open_trigger_orders",
            lambda: self.client.get_open_trigger_orders(symbol, self.market_type),
        )
        bad = self._as_list(res, "get_open_trigger_orders")
        if bad is not None or not res.ok:
            return bad or res
        return ExchangeResult.success([ExchangeOrder.parse(o) for o in res.value if isinstance(o, dict)])

    async def order_history(
        self,
        order_id: str,
        symbol: Optional[str] = None,
        limit: int = 10,
    ) -> ExchangeResult[List[HistoryRecord]]:
        """History records for one order; an empty list is a definite 'not found'."""
        res = await self._call(
            "get_order_history",
            lambda: self.client.get_order_history(order_id, symbol, limit, 0, self.market_type),
        )
        bad = self._as_list(res, "get_order_history")
        if bad is not None or not res.ok:
            return bad or res
        return ExchangeResult.success([HistoryRecord.parse(r) for r in res.value if isinstance(r, dict)])

    async def fill_history(
        self,
        from_ts: int,
        to_ts: int,
        symbol: Optional[str] = None,
    ) -> ExchangeResult[List[Fill]]:
        """
        All fills in [from_ts, to_ts], following pages up to fill_max_pages.

        A failed page, or running out of pages while they still come back
        full, makes the whole result unknown: a partial fill set would
        misstate net position.
        """
        fills: List[Fill] = []
        seen: set[str] = set()
        offset = 0
        for _ in range(self.fill_max_pages):
            page_offset = offset
            res = await self._call(
                "get_fill_history",
                lambda: self.client.get_fill_history(
                    symbol, None, from_ts, to_ts, self.fill_page_limit, page_offset,
                    None, self.market_type, None,
                ),
            )
            bad = self._as_list(res, "get_fill_history")
            if bad is not None or not res.ok:
                return bad or res
            for raw in res.value:
                if not isinstance(raw, dict):
                    continue
                fill = Fill.parse(raw)
                if fill.key in seen:
                    continue
                seen.add(fill.key)
                fills.append(fill)
            if len(res.value) < self.fill_page_limit:
                break
            offset += self.fill_page_limit
        else:
            self.stats["failures"] += 1
            self._log_event("fill_history_truncated", pages=self.fill_max_pages, fills=len(fills))
            return ExchangeResult.failure("unknown", "fill history truncated")
        fills.sort(key=lambda f: f.timestamp_ms)
        return ExchangeResult.success(fills)

    async def execute_order(self, body: Dict[str, Any]) -> ExchangeResult[str]:
        """Submit an order; success carries the exchange order id."""
        res = await self._call("execute_order", lambda: self.client.execute_order(body))
        if not res.ok:
            return res
        raw = res.value
        order_id = (raw.get("id") or raw.get("orderId")) if isinstance(raw, dict) else None
        if not order_id:
            return ExchangeResult.failure("unknown", "execute_order: response without order id")
        return ExchangeResult.success(str(order_id))

    async def cancel_order(self, symbol: str, order_id: str) -> ExchangeResult[bool]:
        res = await self._call("cancel_open_order", lambda: self.client.cancel_open_order(symbol, order_id))
        if not res.ok:
            return res
        return ExchangeResult.success(True)
