"""
Heuristic matching rules, kept pure so each tolerance is testable alone.

- Ownership: an order or fill belongs to a bot when its client id starts
  with the bot's client-id prefix.
- Status mapping: exchange history / live statuses onto ledger statuses.
- Suspicion: a flat position whose fills all share one price and whose
  pnl is zero is more likely a data error than a real round trip.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from reconciler.ledger.models import OrderStatus

# |pnl| below this counts as zero
PNL_ZERO_TOLERANCE = 1e-4
# max - min price below this counts as identical prices
PRICE_IDENTITY_TOLERANCE = 1e-4

FILLED_STATUSES = frozenset({"filled", "partiallyfilled"})
CANCELLED_STATUSES = frozenset({"cancelled", "canceled", "rejected", "expired"})
LIVE_STATUSES = frozenset({"open", "new", "triggerpending", "pending"})

GHOST_FILLED = "GHOST_ORDER_FILLED"
GHOST_CANCELLED = "GHOST_ORDER_CANCELLED"
GHOST_MISSING = "GHOST_ORDER_MISSING"
GHOST_NOT_FOUND = "GHOST_ORDER_NOT_FOUND"
GHOST_NO_HISTORY = "GHOST_ORDER_NO_HISTORY"

T = TypeVar("T")


def _norm(status: Optional[str]) -> str:
    return (status or "").replace("_", "").replace(" ", "").lower()


def belongs_to_bot(client_id: Optional[object], prefix: str) -> bool:
    if not prefix or client_id is None:
        return False
    return str(client_id).startswith(prefix)


def filter_bot_items(items: Iterable[T], prefix: str) -> List[T]:
    """Keep items (orders or fills) whose `client_id` carries the prefix."""
    return [it for it in items if belongs_to_bot(getattr(it, "client_id", None), prefix)]


def ghost_resolution(order_id: str, history: Sequence[object]) -> Tuple[OrderStatus, str]:
    """
    Target status and reason for a ghost given a *known* history lookup.

    Empty history or no record for the order resolves to CANCELLED; a
    record still reporting a live status also resolves to CANCELLED since
    the order has vanished from the live set.
    """
    if not history:
        return OrderStatus.CANCELLED, GHOST_NO_HISTORY
    record = next((r for r in history if str(getattr(r, "id", "")) == str(order_id)), None)
    if record is None:
        return OrderStatus.CANCELLED, GHOST_NOT_FOUND
    status = _norm(getattr(record, "status", ""))
    if status in FILLED_STATUSES:
        return OrderStatus.FILLED, GHOST_FILLED
    if status in CANCELLED_STATUSES:
        return OrderStatus.CANCELLED, GHOST_CANCELLED
    return OrderStatus.CANCELLED, GHOST_MISSING


def map_exchange_status(status: Optional[str]) -> Optional[OrderStatus]:
    """Ledger status for a live/history exchange status; None if unrecognised."""
    norm = _norm(status)
    if norm in LIVE_STATUSES:
        return OrderStatus.PENDING
    if norm in FILLED_STATUSES:
        return OrderStatus.FILLED
    if norm in CANCELLED_STATUSES:
        return OrderStatus.CANCELLED
    return None


def prices_identical(prices: Sequence[float], tolerance: float = PRICE_IDENTITY_TOLERANCE) -> bool:
    return len(prices) > 1 and max(prices) - min(prices) < tolerance


def is_suspicious_close(
    total_pnl: float,
    prices: Sequence[float],
    pnl_tolerance: float = PNL_ZERO_TOLERANCE,
    price_tolerance: float = PRICE_IDENTITY_TOLERANCE,
) -> bool:
    """Zero pnl AND identical prices AND more than one fill."""
    return (
        abs(total_pnl) < pnl_tolerance
        and len(prices) > 1
        and prices_identical(prices, price_tolerance)
    )
