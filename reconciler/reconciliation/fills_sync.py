"""
Fills-based position closing.

For every symbol with open positions in the ledger, rebuild the position
from exchange fills (the bot's own fills plus attributed orphan fills) and
close the ledger orders once the net quantity is flat:

    fills = bot fills + orphan fills, restricted to
            t >= earliest open order - skew
    position = FIFO(fills)
    flat and not suspicious -> every open order CLOSED (FILLS_BASED_CLOSE),
                               pnl split by quantity, close_time = last fill

Suspicious results (zero pnl over identical prices) are logged and left
open for the next pass.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Sequence

from reconciler.core.utils import now_ms
from reconciler.errors import LockBusyError, RateLimitError
from reconciler.exchange.contract import Fill
from reconciler.ledger.models import LockType, Order, OrderStatus
from reconciler.reconciliation.matching import filter_bot_items
from reconciler.reconciliation.orphan_fills import DEFAULT_TOLERANCE, Attribution, attribute_orphan_fills
from reconciler.reconciliation.pnl import calculate_position, distribute_pnl

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext

FILLS_BASED_CLOSE = "FILLS_BASED_CLOSE"
DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class FillsSyncConfig:
    orphan_tolerance: float = DEFAULT_TOLERANCE
    fill_skew_ms: int = 5000
    fill_lookback_days: int = 30


def fill_window_start(orders: Sequence[Order], skew_ms: int) -> int:
    return min(o.opened_at_ms for o in orders) - skew_ms


def symbol_fill_set(
    symbol: str,
    orders: Sequence[Order],
    bot_fills: Sequence[Fill],
    attribution: Attribution,
    skew_ms: int,
) -> List[Fill]:
    start = fill_window_start(orders, skew_ms)
    merged = [f for f in bot_fills if f.symbol == symbol] + attribution.for_symbol(symbol)
    return sorted((f for f in merged if f.timestamp_ms >= start), key=lambda f: f.timestamp_ms)


class FillsPositionSync:
    def __init__(self, config: FillsSyncConfig | None = None) -> None:
        self.config = config or FillsSyncConfig()

    def _from_ts(self, ctx: "BotContext") -> int:
        if ctx.config.created_at_ms:
            return ctx.config.created_at_ms
        return now_ms() - self.config.fill_lookback_days * DAY_MS

    async def close_positions(self, ctx: "BotContext") -> int:
        """Returns the number of symbols whose position was closed."""
        open_orders = await ctx.ledger.open_positions(ctx.bot_id)
        if not open_orders:
            return 0

        gateway = ctx.require_gateway()
        res = await gateway.fill_history(self._from_ts(ctx), now_ms())
        if not res.ok:
            ctx.warning("fills_unknown", err=res.error.message if res.error else None)
            return 0

        fills = res.value
        bot_fills = filter_bot_items(fills, ctx.config.client_id_prefix)
        attribution = attribute_orphan_fills(open_orders, fills, bot_fills, self.config.orphan_tolerance)
        if attribution.fills:
            ctx.info(
                "orphan_fills_attributed",
                count=len(attribution.fills),
                orders=sorted(attribution.by_order),
            )

        by_symbol: Dict[str, List[Order]] = defaultdict(list)
        for order in open_orders:
            by_symbol[order.symbol].append(order)

        closed = 0
        for symbol, orders in by_symbol.items():
            try:
                if await self._close_symbol(ctx, symbol, orders, bot_fills, attribution):
                    closed += 1
            except (RateLimitError, asyncio.CancelledError):
                raise
            except LockBusyError as exc:
                ctx.debug("position_close_lock_busy", symbol=symbol, err=str(exc))
            except Exception as exc:
                ctx.error("position_close_error", symbol=symbol, err=str(exc), err_type=type(exc).__name__)
        return closed

    async def _close_symbol(
        self,
        ctx: "BotContext",
        symbol: str,
        orders: Sequence[Order],
        bot_fills: Sequence[Fill],
        attribution: Attribution,
    ) -> bool:
        fill_set = symbol_fill_set(symbol, orders, bot_fills, attribution, self.config.fill_skew_ms)
        if not fill_set:
            return False

        orphan_count = len(attribution.for_symbol(symbol))
        if orphan_count and ctx.metrics:
            ctx.metrics.orphan_fills_attributed.labels(bot_id=ctx.bot_id, symbol=symbol).inc(orphan_count)

        position = calculate_position(fill_set)
        if not position.is_flat:
            ctx.debug("position_still_open", symbol=symbol, net_qty=position.net_quantity, fills=len(fill_set))
            return False
        if position.suspicious:
            ctx.warning(
                "position_close_suspicious",
                symbol=symbol,
                pnl=position.total_pnl,
                fills=[f"{f.side} {f.quantity}@{f.price}" for f in fill_set],
            )
            if ctx.metrics:
                ctx.metrics.suspicious_closes.labels(bot_id=ctx.bot_id, symbol=symbol).inc()
            return False

        evaluated = {o.external_order_id for o in orders}
        async with ctx.critical_section(symbol, LockType.POSITION_CLOSE, "fills_based_close"):
            # Re-read under the lock: another pass may have closed some already
            current = [
                o for o in await ctx.ledger.open_positions(ctx.bot_id, symbol)
                if o.external_order_id in evaluated
            ]
            if not current:
                return False
            applied = 0
            for order, share in zip(current, distribute_pnl(position.total_pnl, current)):
                if await ctx.ledger.transition(
                    order.external_order_id,
                    OrderStatus.CLOSED,
                    FILLS_BASED_CLOSE,
                    pnl=share.pnl,
                    pnl_pct=share.pnl_pct,
                    close_price=position.close_price,
                    close_quantity=order.quantity,
                    close_time=position.last_fill_ms,
                ):
                    applied += 1
            await ctx.locks.release(ctx.bot_id, symbol, LockType.POSITION_OPEN, reason="position_closed")

        ctx.info(
            "position_closed_from_fills",
            symbol=symbol,
            pnl=position.total_pnl,
            orders=applied,
            fills=position.fill_count,
            orphan_fills=orphan_count,
        )
        if applied and ctx.metrics:
            ctx.metrics.positions_closed.labels(bot_id=ctx.bot_id, symbol=symbol).inc()
            sign = "profit" if position.total_pnl > 0 else "loss" if position.total_pnl < 0 else "flat"
            ctx.metrics.realized_pnl.labels(bot_id=ctx.bot_id, sign=sign).inc()
        return applied > 0
