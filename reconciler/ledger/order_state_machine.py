"""
Order status state machine.

    PENDING ──────> FILLED ──────> CLOSED
       │
       └──────────> CANCELLED

FILLED without close fields marks an open position. CLOSED and CANCELLED
are terminal. Every CLOSED order carries pnl and close_time.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from reconciler.ledger.models import OrderStatus

VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED}),
    OrderStatus.FILLED: frozenset({OrderStatus.CLOSED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.CLOSED: frozenset(),
}

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.CANCELLED, OrderStatus.CLOSED})

# Statuses an order may be created in ("executed" market orders start FILLED)
INITIAL_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.PENDING, OrderStatus.FILLED})


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, frozenset())


def transition_error(
    current: OrderStatus,
    new: OrderStatus,
    pnl: Optional[float] = None,
) -> Optional[str]:
    """
    Why `current -> new` must be refused, or None when it is allowed.
    """
    if not is_valid_transition(current, new):
        return f"illegal_edge:{current.value}->{new.value}"
    if new == OrderStatus.CLOSED and pnl is None:
        return "closed_requires_pnl"
    return None
