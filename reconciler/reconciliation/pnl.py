"""
FIFO position P&L from a fill set.

Walks fills in timestamp order keeping a signed net quantity and the cost
basis of the open quantity. A closing fill realizes pnl against the
average cost; a fill that crosses zero closes the old side and opens the
remainder on the other side at its own price.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from reconciler.exchange.contract import Fill
from reconciler.ledger.models import BUY, Order
from reconciler.reconciliation.matching import is_suspicious_close

# |net quantity| below this is a flat position
FLAT_EPSILON = 0.01
_ZERO = 1e-12


@dataclass
class PositionResult:
    net_quantity: float
    total_pnl: float
    quantity_processed: float
    is_flat: bool
    suspicious: bool
    closed_quantity: float = 0.0
    close_price: Optional[float] = None
    last_fill_ms: Optional[int] = None
    fill_count: int = 0

    @property
    def is_closed(self) -> bool:
        return self.is_flat and not self.suspicious


def calculate_position(fills: Sequence[Fill]) -> PositionResult:
    ordered = sorted(fills, key=lambda f: f.timestamp_ms)

    net = 0.0
    cost = 0.0
    pnl = 0.0
    processed = 0.0
    closed_qty = 0.0
    closed_notional = 0.0

    for fill in ordered:
        qty = fill.quantity
        price = fill.price
        processed += qty
        signed = qty if fill.side == BUY else -qty

        if abs(net) < _ZERO or (net > 0) == (signed > 0):
            net += signed
            cost += qty * price
            continue

        direction = 1.0 if net > 0 else -1.0
        open_abs = abs(net)
        avg_cost = cost / open_abs
        closing = min(qty, open_abs)
        pnl += (price - avg_cost) * closing * direction
        closed_qty += closing
        closed_notional += closing * price

        remaining = open_abs - closing
        net = direction * remaining
        cost = avg_cost * remaining

        leftover = qty - closing
        if leftover > _ZERO:
            net = -direction * leftover
            cost = leftover * price

    is_flat = abs(net) < FLAT_EPSILON
    suspicious = is_flat and is_suspicious_close(pnl, [f.price for f in ordered])
    return PositionResult(
        net_quantity=net,
        total_pnl=pnl,
        quantity_processed=processed,
        is_flat=is_flat,
        suspicious=suspicious,
        closed_quantity=closed_qty,
        close_price=closed_notional / closed_qty if closed_qty > 0 else None,
        last_fill_ms=ordered[-1].timestamp_ms if ordered else None,
        fill_count=len(ordered),
    )


@dataclass(frozen=True)
class OrderPnl:
    external_order_id: str
    pnl: float
    pnl_pct: float


def distribute_pnl(total_pnl: float, orders: Sequence[Order]) -> List[OrderPnl]:
    """Split total pnl across orders proportionally to quantity."""
    total_qty = sum(o.quantity for o in orders)
    out: List[OrderPnl] = []
    for order in orders:
        share = total_pnl if len(orders) == 1 or total_qty <= 0 else total_pnl * order.quantity / total_qty
        notional = order.quantity * order.price
        pct = share / notional * 100.0 if notional > 0 else 0.0
        out.append(OrderPnl(order.external_order_id, share, pct))
    return out
