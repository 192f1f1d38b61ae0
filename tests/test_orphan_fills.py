"""
Tests for orphan-fill attribution.
"""
import pytest

from conftest import SYMBOL, T0, make_order
from reconciler.exchange.contract import Fill
from reconciler.ledger.models import BUY, SELL, OrderStatus
from reconciler.reconciliation.orphan_fills import (
    DEFAULT_TOLERANCE,
    attribute_orphan_fills,
    open_quantity_from_fills,
    orphan_candidates,
    validate_orphan_fills,
)


def fill(side, qty, offset, client_id=None, symbol=SYMBOL, price=100.0):
    return Fill(
        symbol=symbol,
        side=side,
        quantity=qty,
        price=price,
        order_id=f"x{offset}",
        timestamp_ms=T0 + offset,
        client_id=client_id,
    )


def open_order(order_id="A", side=BUY, quantity=1.0, ts=T0):
    return make_order(order_id, side=side, quantity=quantity, status=OrderStatus.FILLED, ts=ts)


class TestCandidates:
    def test_filters(self):
        order = open_order()
        good = fill(SELL, 1, 10)
        fills = [
            good,
            fill(SELL, 1, 11, client_id="1234000002"),  # ours
            fill(BUY, 1, 12),                           # same side
            fill(SELL, 1, -5),                          # before the order
            fill(SELL, 1, 13, symbol="BTC_USDC_PERP"),  # other symbol
        ]
        assert orphan_candidates(order, fills, set()) == [good]
        assert orphan_candidates(order, fills, {good.key}) == []

    def test_short_position_closes_with_buys(self):
        order = open_order(side=SELL)
        buy = fill(BUY, 1, 10)
        assert orphan_candidates(order, [buy, fill(SELL, 1, 11)], set()) == [buy]


class TestValidate:
    def test_accepts_until_covered(self):
        fills = [fill(SELL, 0.5, 1), fill(SELL, 0.5, 2), fill(SELL, 0.5, 3)]
        assert validate_orphan_fills(1.0, fills) == fills[:2]

    def test_tolerance_allows_slightly_larger_close(self):
        fills = [fill(SELL, 1.05, 1)]
        assert validate_orphan_fills(1.0, fills) == fills
        assert validate_orphan_fills(1.0, [fill(SELL, 1.2, 1)]) == []

    def test_nothing_outstanding(self):
        assert validate_orphan_fills(0.005, [fill(SELL, 0.005, 1)]) == []

    @pytest.mark.parametrize("sizes", [
        [0.6, 0.6, 0.6],
        [0.3, 0.3, 0.3, 0.3],
        [0.5, 0.55, 0.2],
        [1.1],
        [0.95, 0.14, 0.1],
    ])
    def test_never_exceeds_outstanding_plus_tolerance(self, sizes):
        fills = [fill(SELL, q, i + 1) for i, q in enumerate(sizes)]
        accepted = validate_orphan_fills(1.0, fills)
        assert sum(f.quantity for f in accepted) <= 1.0 + DEFAULT_TOLERANCE + 1e-9


class TestAttribute:
    def test_manual_close_attributed(self):
        order = open_order()
        ours = fill(BUY, 1, 1, client_id="1234000001")
        manual = fill(SELL, 1, 10, price=110.0)
        result = attribute_orphan_fills([order], [ours, manual], [ours])
        assert result.by_order == {"A": [manual]}
        assert result.for_symbol(SYMBOL) == [manual]

    def test_fill_attributed_to_one_order_only(self):
        first = open_order("A", ts=T0)
        second = open_order("B", ts=T0 + 1)
        manual = fill(SELL, 1, 10)
        result = attribute_orphan_fills([second, first], [manual], [])
        assert result.by_order == {"A": [manual]}
        assert result.fills == [manual]

    def test_outstanding_capped_by_bot_fills(self):
        order = open_order(quantity=2.0)
        entry = fill(BUY, 2, 1, client_id="1234000001")
        partial_exit = fill(SELL, 1, 2, client_id="1234000003")
        manual_a = fill(SELL, 1, 10)
        manual_b = fill(SELL, 1, 11)
        result = attribute_orphan_fills(
            [order],
            [entry, partial_exit, manual_a, manual_b],
            [entry, partial_exit],
        )
        assert result.fills == [manual_a]

    def test_bot_fills_never_claimed(self):
        order = open_order()
        ours = fill(SELL, 1, 10, client_id="1234000009")
        result = attribute_orphan_fills([order], [ours], [ours])
        assert result.fills == []

    def test_open_quantity_from_fills(self):
        fills = [fill(BUY, 2, 1), fill(SELL, 0.5, 2)]
        assert open_quantity_from_fills(BUY, fills) == pytest.approx(1.5)
        assert open_quantity_from_fills(SELL, fills) == 0.0
