"""
Pending-order monitor.

Each pass syncs PENDING orders with exchange truth (status mapping plus
ghost resolution), then cancels entry orders left resting longer than the
bot's pending_order_timeout_sec. A timed-out row becomes CANCELLED only
after the exchange confirms the cancel; otherwise the next sync decides.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Sequence

from reconciler.core.utils import now_ms
from reconciler.errors import LockBusyError, RateLimitError
from reconciler.ledger.models import LockType, Order, OrderStatus
from reconciler.reconciliation.reconciliation_service import ReconciliationService

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext

PENDING_TIMEOUT = "PENDING_TIMEOUT"


@dataclass
class PendingOrdersResult:
    success: bool
    statuses_synced: int = 0
    ghost_orders_cleaned: int = 0
    timed_out_cancelled: int = 0


def timed_out(orders: Sequence[Order], timeout_sec: float, now: int) -> List[Order]:
    if timeout_sec <= 0:
        return []
    cutoff = now - int(timeout_sec * 1000)
    return [
        o for o in orders
        if o.status == OrderStatus.PENDING and not o.is_protective and o.timestamp_ms < cutoff
    ]


class PendingOrdersDuty:
    def __init__(self, ctx: "BotContext", service: ReconciliationService) -> None:
        self.ctx = ctx
        self.service = service

    async def run(self) -> PendingOrdersResult:
        ctx = self.ctx
        sync = await self.service.sync_order_statuses(ctx)
        result = PendingOrdersResult(
            success=sync.success,
            statuses_synced=sync.statuses_synced,
            ghost_orders_cleaned=sync.ghost_orders_cleaned,
        )
        pending = await ctx.ledger.pending_orders(ctx.bot_id)
        for order in timed_out(pending, ctx.config.pending_order_timeout_sec, now_ms()):
            try:
                if await self._cancel(order):
                    result.timed_out_cancelled += 1
            except (RateLimitError, asyncio.CancelledError):
                raise
            except LockBusyError as exc:
                ctx.debug("pending_cancel_lock_busy", symbol=order.symbol, err=str(exc))
            except Exception as exc:
                ctx.error(
                    "pending_cancel_error",
                    symbol=order.symbol,
                    order_id=order.external_order_id,
                    err=str(exc),
                )
        return result

    async def _cancel(self, order: Order) -> bool:
        ctx = self.ctx
        gateway = ctx.require_gateway()
        async with ctx.critical_section(order.symbol, LockType.ORDER_CANCEL, "pending_timeout"):
            current = await ctx.ledger.get(order.external_order_id)
            if current is None or current.status != OrderStatus.PENDING:
                return False
            res = await gateway.cancel_order(order.symbol, order.external_order_id)
            if not res.ok:
                ctx.warning(
                    "pending_cancel_failed",
                    symbol=order.symbol,
                    order_id=order.external_order_id,
                    err=res.error.message if res.error else None,
                )
                return False
            applied = await ctx.ledger.transition(order.external_order_id, OrderStatus.CANCELLED, PENDING_TIMEOUT)
        if applied:
            ctx.info("pending_order_timed_out", symbol=order.symbol, order_id=order.external_order_id)
            if ctx.metrics:
                ctx.metrics.orders_cancelled.labels(bot_id=ctx.bot_id, reason=PENDING_TIMEOUT).inc()
        return applied
