"""
Protective-stop maintenance.

Every open position must carry a reduce-only stop on its closing side for
its full quantity. Stops on the exchange (the bot's own or one moved by
hand) and PENDING stops recorded locally are summed; whatever quantity is
left uncovered gets a stop-market trigger at entry * (1 - pct) for longs /
entry * (1 + pct) for shorts, snapped to the market tick, and is recorded.
Placement happens inside the (bot, symbol, STOP_LOSS) critical section so
two passes can never double-place.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from reconciler.config.bots import MarketInfo
from reconciler.core.utils import format_decimal, round_price
from reconciler.errors import LockBusyError, PreconditionError, RateLimitError
from reconciler.exchange.contract import ExchangeOrder, exchange_side
from reconciler.ledger.models import BUY, SELL, LockType, Order, OrderStatus
from reconciler.reconciliation.matching import belongs_to_bot

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext

STOP_MARKET = "STOP_MARKET"
# Uncovered quantity below this counts as fully protected
COVERAGE_EPSILON = 1e-9


@dataclass(frozen=True)
class PositionView:
    symbol: str
    side: str
    quantity: float
    avg_entry: float

    @property
    def closing_side(self) -> str:
        return SELL if self.side == BUY else BUY


def aggregate_positions(orders: Sequence[Order]) -> Dict[str, PositionView]:
    """Net open entry orders per symbol; flat symbols are dropped."""
    by_symbol: Dict[str, List[Order]] = {}
    for order in orders:
        by_symbol.setdefault(order.symbol, []).append(order)

    out: Dict[str, PositionView] = {}
    for symbol, group in by_symbol.items():
        net = sum(o.quantity if o.side == BUY else -o.quantity for o in group)
        if abs(net) < 1e-9:
            continue
        side = BUY if net > 0 else SELL
        same_side = [o for o in group if o.side == side]
        qty = sum(o.quantity for o in same_side)
        avg = sum(o.quantity * o.price for o in same_side) / qty
        out[symbol] = PositionView(symbol=symbol, side=side, quantity=abs(net), avg_entry=avg)
    return out


def stop_trigger_price(
    position: PositionView,
    stop_loss_pct: float,
    price_decimals: int,
    tick_size: Optional[float] = None,
) -> float:
    factor = 1 - stop_loss_pct if position.side == BUY else 1 + stop_loss_pct
    price = position.avg_entry * factor
    if tick_size:
        price = round(price / tick_size) * tick_size
    return round_price(price, price_decimals)


def build_stop_body(
    position: PositionView,
    trigger_price: float,
    market: MarketInfo,
    client_id: str,
) -> Dict[str, Any]:
    qty = format_decimal(position.quantity, market.quantity_decimals)
    return {
        "symbol": position.symbol,
        "side": exchange_side(position.closing_side),
        "orderType": "Market",
        "quantity": qty,
        "triggerPrice": format_decimal(trigger_price, market.price_decimals),
        "triggerQuantity": qty,
        "reduceOnly": True,
        "timeInForce": "GTC",
        "clientId": int(client_id) if client_id.isdigit() else client_id,
    }


def live_stops(position: PositionView, triggers: Sequence[ExchangeOrder], prefix: str) -> List[ExchangeOrder]:
    """
    Closing-side triggers on the symbol that protect this bot: its own, or
    one the user moved by hand (no client id). Another bot's stops never count.
    """
    return [
        t for t in triggers
        if t.symbol == position.symbol
        and t.side == position.closing_side
        and t.is_trigger
        and (t.client_id is None or belongs_to_bot(t.client_id, prefix))
    ]


def uncovered_quantity(
    position: PositionView,
    triggers: Sequence[ExchangeOrder],
    pending: Sequence[Order],
    prefix: str,
) -> float:
    """
    Position quantity not yet covered by a stop.

    Local PENDING protective orders count only while absent from the live
    listing, so a stop visible in both places is not counted twice.
    """
    live = live_stops(position, triggers, prefix)
    live_ids = {t.id for t in live}
    covered = sum(t.quantity for t in live)
    covered += sum(
        o.quantity for o in pending
        if o.symbol == position.symbol
        and o.side == position.closing_side
        and o.is_protective
        and o.external_order_id not in live_ids
    )
    remaining = position.quantity - covered
    return remaining if remaining > COVERAGE_EPSILON else 0.0


class ProtectiveStopDuty:
    def __init__(self, ctx: "BotContext") -> None:
        self.ctx = ctx

    async def run(self) -> int:
        ctx = self.ctx
        pct = ctx.config.stop_loss_pct
        if pct is None:
            return 0
        open_orders = await ctx.ledger.open_positions(ctx.bot_id)
        if not open_orders:
            return 0

        gateway = ctx.require_gateway()
        triggers = await gateway.open_trigger_orders(None)
        if not triggers.ok:
            # Unknown live set: placing now could duplicate an existing stop
            ctx.warning("protective_stops_triggers_unknown", err=triggers.error.message if triggers.error else None)
            return 0

        prefix = ctx.config.client_id_prefix
        placed = 0
        for symbol, position in aggregate_positions(open_orders).items():
            if not uncovered_quantity(position, triggers.value, [], prefix):
                continue
            try:
                if await self._protect(position, pct, triggers.value):
                    placed += 1
            except (RateLimitError, asyncio.CancelledError):
                raise
            except PreconditionError as exc:
                ctx.warn_once(exc.key, "protective_stop_skipped", symbol=symbol, reason=str(exc))
            except LockBusyError as exc:
                ctx.debug("protective_stop_lock_busy", symbol=symbol, err=str(exc))
            except Exception as exc:
                ctx.error("protective_stop_error", symbol=symbol, err=str(exc), err_type=type(exc).__name__)
        return placed

    async def _protect(self, position: PositionView, pct: float, triggers: Sequence[ExchangeOrder]) -> bool:
        ctx = self.ctx
        market = ctx.require_market(position.symbol)
        gateway = ctx.require_gateway()
        async with ctx.critical_section(position.symbol, LockType.STOP_LOSS, "protective_stop"):
            pending = await ctx.ledger.pending_orders(ctx.bot_id, position.symbol)
            missing = uncovered_quantity(position, triggers, pending, ctx.config.client_id_prefix)
            missing = round(missing, market.quantity_decimals)
            if missing <= 0:
                return False

            stop = replace(position, quantity=missing)
            trigger = stop_trigger_price(position, pct, market.price_decimals, market.tick_size)
            client_id = ctx.next_client_id()
            body = build_stop_body(stop, trigger, market, client_id)
            res = await gateway.execute_order(body)
            if not res.ok:
                ctx.error(
                    "protective_stop_failed",
                    symbol=position.symbol,
                    err=res.error.message if res.error else None,
                    body=body,
                )
                return False

            await ctx.ledger.record(Order(
                external_order_id=res.value,
                bot_id=ctx.bot_id,
                symbol=position.symbol,
                side=position.closing_side,
                quantity=stop.quantity,
                price=trigger,
                order_type=STOP_MARKET,
                client_id=client_id,
                status=OrderStatus.PENDING,
            ))

        ctx.info(
            "protective_stop_placed",
            symbol=position.symbol,
            side=position.closing_side,
            qty=stop.quantity,
            position_qty=position.quantity,
            entry=position.avg_entry,
            trigger=trigger,
            order_id=res.value,
        )
        if ctx.metrics:
            ctx.metrics.stops_placed.labels(bot_id=ctx.bot_id, symbol=position.symbol).inc()
        return True
