"""
Tests for the order status state machine.
"""
import pytest

from reconciler.ledger.models import OrderStatus
from reconciler.ledger.order_state_machine import (
    INITIAL_STATES,
    TERMINAL_STATES,
    is_terminal,
    is_valid_transition,
    transition_error,
)


class TestTransitions:
    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.FILLED),
        (OrderStatus.PENDING, OrderStatus.CANCELLED),
        (OrderStatus.FILLED, OrderStatus.CLOSED),
    ])
    def test_legal_edges(self, current, new):
        assert is_valid_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.CLOSED),
        (OrderStatus.FILLED, OrderStatus.CANCELLED),
        (OrderStatus.FILLED, OrderStatus.PENDING),
        (OrderStatus.CANCELLED, OrderStatus.FILLED),
        (OrderStatus.CLOSED, OrderStatus.FILLED),
        (OrderStatus.PENDING, OrderStatus.PENDING),
    ])
    def test_illegal_edges(self, current, new):
        assert not is_valid_transition(current, new)
        assert transition_error(current, new, pnl=0.0).startswith("illegal_edge:")

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATES:
            assert is_terminal(status)
            for target in OrderStatus:
                assert not is_valid_transition(status, target)

    def test_closed_requires_pnl(self):
        assert transition_error(OrderStatus.FILLED, OrderStatus.CLOSED) == "closed_requires_pnl"
        assert transition_error(OrderStatus.FILLED, OrderStatus.CLOSED, pnl=0.0) is None

    def test_initial_states(self):
        assert INITIAL_STATES == {OrderStatus.PENDING, OrderStatus.FILLED}
