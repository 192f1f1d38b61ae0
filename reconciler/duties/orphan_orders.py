"""
Orphan-order sweep.

Cancels the bot's open trigger orders (stops / take-profits) on symbols
where the ledger shows neither an open position nor a pending entry order,
e.g. a stop left behind after its position was closed from fills. Only
orders carrying the bot's client-id prefix are touched.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING, Dict, List

from reconciler.errors import LockBusyError, RateLimitError
from reconciler.exchange.contract import ExchangeOrder
from reconciler.ledger.models import LockType, OrderStatus
from reconciler.reconciliation.matching import filter_bot_items

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext

ORPHAN_ORDER_CANCELLED = "ORPHAN_ORDER_CANCELLED"


class OrphanOrdersDuty:
    def __init__(self, ctx: "BotContext") -> None:
        self.ctx = ctx

    async def run(self) -> int:
        ctx = self.ctx
        gateway = ctx.require_gateway()
        res = await gateway.open_trigger_orders(None)
        if not res.ok:
            ctx.warning("open_orders_unknown", call="open_trigger_orders", err=res.error.message if res.error else None)
            return 0

        by_symbol: Dict[str, List[ExchangeOrder]] = defaultdict(list)
        for order in filter_bot_items(res.value, ctx.config.client_id_prefix):
            by_symbol[order.symbol].append(order)

        cancelled = 0
        for symbol, orders in by_symbol.items():
            try:
                if await ctx.ledger.has_open_activity(ctx.bot_id, symbol):
                    continue
                cancelled += await self._sweep(symbol, orders)
            except (RateLimitError, asyncio.CancelledError):
                raise
            except LockBusyError as exc:
                ctx.debug("orphan_sweep_lock_busy", symbol=symbol, err=str(exc))
            except Exception as exc:
                ctx.error("orphan_sweep_error", symbol=symbol, err=str(exc), err_type=type(exc).__name__)
        return cancelled

    async def _sweep(self, symbol: str, orders: List[ExchangeOrder]) -> int:
        ctx = self.ctx
        gateway = ctx.require_gateway()
        cancelled = 0
        async with ctx.critical_section(symbol, LockType.ORDER_CANCEL, "orphan_order_sweep"):
            # A position may have opened while we waited for the lock
            if await ctx.ledger.has_open_activity(ctx.bot_id, symbol):
                return 0
            for order in orders:
                res = await gateway.cancel_order(symbol, order.id)
                if not res.ok:
                    ctx.warning(
                        "orphan_cancel_failed",
                        symbol=symbol,
                        order_id=order.id,
                        err=res.error.message if res.error else None,
                    )
                    continue
                cancelled += 1
                local = await ctx.ledger.get(order.id)
                if local is not None and local.status == OrderStatus.PENDING:
                    await ctx.ledger.transition(order.id, OrderStatus.CANCELLED, ORPHAN_ORDER_CANCELLED)
                ctx.info("orphan_order_cancelled", symbol=symbol, order_id=order.id, order_type=order.order_type)
                if ctx.metrics:
                    ctx.metrics.orders_cancelled.labels(bot_id=ctx.bot_id, reason=ORPHAN_ORDER_CANCELLED).inc()
        return cancelled
