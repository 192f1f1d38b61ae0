"""
Ghost-order detection and resolution.

A ghost is a local PENDING order whose exchange id is missing from the
bot's live order set (regular plus trigger orders, filtered by client-id
prefix). Each ghost is resolved from order history inside its symbol's
critical section:

- history unknown (lookup failed) -> untouched, retried next pass
- Filled / PartiallyFilled        -> FILLED
- Cancelled / Rejected / Expired  -> CANCELLED
- anything else, empty history,
  or no record for the order      -> CANCELLED

FILLED orders are never candidates: they mark open positions.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set

from reconciler.errors import LockBusyError, RateLimitError
from reconciler.exchange.contract import ExchangeOrder
from reconciler.ledger.models import LockType, Order, OrderStatus
from reconciler.reconciliation.matching import filter_bot_items, ghost_resolution

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext

PROTECTIVE_FILLED = "PROTECTIVE_ORDER_FILLED"


def find_ghost_candidates(local_orders: Sequence[Order], live_ids: Set[str]) -> List[Order]:
    return [
        o for o in local_orders
        if o.status == OrderStatus.PENDING
        and o.external_order_id
        and o.external_order_id not in live_ids
    ]


async def fetch_live_orders(ctx: "BotContext") -> Optional[List[ExchangeOrder]]:
    """
    The bot's live regular and trigger orders, or None when either listing
    is unknown (an incomplete live set would turn resting orders into ghosts).
    """
    gateway = ctx.require_gateway()
    regular = await gateway.open_orders(None)
    trigger = await gateway.open_trigger_orders(None)
    if not regular.ok or not trigger.ok:
        err = regular.error or trigger.error
        ctx.warning("open_orders_unknown", kind=err.kind if err else None, err=err.message if err else None)
        return None
    return filter_bot_items(list(regular.value) + list(trigger.value), ctx.config.client_id_prefix)


async def apply_exchange_status(
    ctx: "BotContext",
    order: Order,
    status: OrderStatus,
    reason: str,
) -> bool:
    """
    Transition `order` to an exchange-observed status.

    A filled protective order is closed right away with zero pnl: it reduces
    a position rather than opening one, and pnl is booked on the entry orders.
    """
    applied = await ctx.ledger.transition(order.external_order_id, status, reason)
    if applied and status == OrderStatus.FILLED and order.is_protective:
        await ctx.ledger.transition(
            order.external_order_id, OrderStatus.CLOSED, PROTECTIVE_FILLED, pnl=0.0, pnl_pct=0.0
        )
    return applied


async def resolve_ghost(ctx: "BotContext", order: Order) -> Optional[OrderStatus]:
    """Resolve one ghost; returns the status applied, or None if left as is."""
    gateway = ctx.require_gateway()
    async with ctx.critical_section(order.symbol, LockType.GHOST_RESOLUTION, "ghost_resolution"):
        current = await ctx.ledger.get(order.external_order_id)
        if current is None or current.status != OrderStatus.PENDING:
            return None
        history = await gateway.order_history(order.external_order_id, order.symbol)
        if not history.ok:
            ctx.info(
                "ghost_order_history_unknown",
                symbol=order.symbol,
                order_id=order.external_order_id,
                err=history.error.message if history.error else None,
            )
            return None
        status, reason = ghost_resolution(order.external_order_id, history.value)
        if not await apply_exchange_status(ctx, current, status, reason):
            return None
        ctx.info(
            "ghost_order_cleaned",
            symbol=order.symbol,
            order_id=order.external_order_id,
            status=status.value,
            reason=reason,
        )
        if ctx.metrics:
            ctx.metrics.ghost_orders_cleaned.labels(bot_id=ctx.bot_id, outcome=status.value).inc()
        return status


async def resolve_ghosts(ctx: "BotContext", candidates: Sequence[Order]) -> Dict[str, OrderStatus]:
    """
    Resolve candidates one by one. Per-order failures are logged and left
    for the next pass; rate limiting aborts the batch.
    """
    resolved: Dict[str, OrderStatus] = {}
    for order in candidates:
        try:
            status = await resolve_ghost(ctx, order)
        except (RateLimitError, asyncio.CancelledError):
            raise
        except LockBusyError as exc:
            ctx.debug("ghost_order_lock_busy", symbol=order.symbol, order_id=order.external_order_id, err=str(exc))
            continue
        except Exception as exc:
            ctx.error(
                "ghost_order_resolution_error",
                symbol=order.symbol,
                order_id=order.external_order_id,
                err=str(exc),
                err_type=type(exc).__name__,
            )
            continue
        if status is not None:
            resolved[order.external_order_id] = status
    return resolved


async def clean_ghost_orders(ctx: "BotContext") -> int:
    """One ghost-detection pass over the bot's PENDING orders."""
    pending = await ctx.ledger.pending_orders(ctx.bot_id)
    if not pending:
        return 0
    live = await fetch_live_orders(ctx)
    if live is None:
        return 0
    candidates = find_ghost_candidates(pending, {o.id for o in live})
    if not candidates:
        return 0
    ctx.info("ghost_orders_detected", count=len(candidates), pending=len(pending), live=len(live))
    return len(await resolve_ghosts(ctx, candidates))
