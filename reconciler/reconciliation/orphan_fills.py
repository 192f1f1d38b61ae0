"""
Orphan-fill attribution.

An orphan fill is an exchange execution without our client id, typically a
take-profit or stop the user moved by hand on the exchange (the exchange
cancels our order and the replacement carries no correlation id). For each
open position we claim such fills on the closing side, oldest first, until
the position's outstanding quantity is covered.

Tolerances:
- a fill is accepted when its quantity is at most outstanding + tolerance
  (default 0.1 unit), so a slightly larger manual close still matches
- attribution stops once outstanding drops to 0.01 or below
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from reconciler.exchange.contract import Fill
from reconciler.ledger.models import Order, opposite_side

DEFAULT_TOLERANCE = 0.1
REMAINING_EPSILON = 0.01


@dataclass
class Attribution:
    fills: List[Fill] = field(default_factory=list)
    by_order: Dict[str, List[Fill]] = field(default_factory=dict)

    def for_symbol(self, symbol: str) -> List[Fill]:
        return [f for f in self.fills if f.symbol == symbol]


def orphan_candidates(order: Order, fills: Iterable[Fill], claimed: Set[str]) -> List[Fill]:
    """Same symbol, closing side, later than the order, no client id, unclaimed."""
    closing_side = opposite_side(order.side)
    return [
        f for f in fills
        if f.symbol == order.symbol
        and f.side == closing_side
        and not f.client_id
        and f.timestamp_ms > order.opened_at_ms
        and f.key not in claimed
    ]


def open_quantity_from_fills(side: str, fills: Sequence[Fill]) -> float:
    """Net quantity still open on `side` according to the bot's own fills."""
    net = 0.0
    for fill in fills:
        net += fill.quantity if fill.side == side else -fill.quantity
    return max(0.0, net)


def validate_orphan_fills(
    outstanding: float,
    candidates: Sequence[Fill],
    tolerance: float = DEFAULT_TOLERANCE,
) -> List[Fill]:
    """Accept candidates oldest first while outstanding quantity remains."""
    if outstanding <= REMAINING_EPSILON:
        return []
    accepted: List[Fill] = []
    remaining = outstanding
    for fill in sorted(candidates, key=lambda f: f.timestamp_ms):
        if fill.quantity > remaining + tolerance:
            continue
        accepted.append(fill)
        remaining -= fill.quantity
        if remaining <= REMAINING_EPSILON:
            break
    return accepted


def attribute_orphan_fills(
    open_orders: Sequence[Order],
    all_fills: Sequence[Fill],
    bot_fills: Sequence[Fill],
    tolerance: float = DEFAULT_TOLERANCE,
) -> Attribution:
    """
    Claim orphan fills for each open position.

    An order's outstanding quantity is its own quantity, capped by what the
    bot's fills say is still open on that symbol and side minus what earlier
    orders already claimed. A fill is attributed to at most one order.
    """
    claimed: Set[str] = {f.key for f in bot_fills}
    attributed_qty: Dict[tuple, float] = {}
    result = Attribution()

    for order in sorted(open_orders, key=lambda o: o.opened_at_ms):
        symbol_fills = [f for f in bot_fills if f.symbol == order.symbol]
        cap: Optional[float] = None
        if symbol_fills:
            cap = open_quantity_from_fills(order.side, symbol_fills)
        slot = (order.symbol, order.side)
        outstanding = order.quantity
        if cap is not None:
            outstanding = min(outstanding, cap - attributed_qty.get(slot, 0.0))

        candidates = orphan_candidates(order, all_fills, claimed)
        if not candidates:
            continue
        accepted = validate_orphan_fills(outstanding, candidates, tolerance)
        if not accepted:
            continue
        for fill in accepted:
            claimed.add(fill.key)
        attributed_qty[slot] = attributed_qty.get(slot, 0.0) + sum(f.quantity for f in accepted)
        result.fills.extend(accepted)
        result.by_order[order.external_order_id] = accepted
    return result
