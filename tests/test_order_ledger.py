"""
Tests for the SQLite-backed order ledger.
"""
import asyncio

import pytest

from conftest import SYMBOL, T0, make_order
from reconciler.errors import DuplicateOrderError
from reconciler.ledger.models import OrderStatus


class TestRecord:
    @pytest.mark.asyncio
    async def test_record_and_get(self, ledger):
        saved = await ledger.record(make_order("A1", client_id="1234000001"))
        assert saved.id is not None
        got = await ledger.get("A1")
        assert got.status == OrderStatus.PENDING
        assert got.client_id == "1234000001"
        assert got.timestamp_ms == T0

    @pytest.mark.asyncio
    async def test_duplicate_external_id_rejected(self, ledger):
        await ledger.record(make_order("A1"))
        with pytest.raises(DuplicateOrderError) as info:
            await ledger.record(make_order("A1"))
        assert info.value.external_order_id == "A1"

    @pytest.mark.asyncio
    async def test_record_in_terminal_status_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record(make_order("A1", status=OrderStatus.CLOSED))

    @pytest.mark.asyncio
    async def test_filled_initial_status_is_open_position(self, ledger):
        await ledger.record(make_order("A1", status=OrderStatus.FILLED))
        opens = await ledger.open_positions("7")
        assert [o.external_order_id for o in opens] == ["A1"]

    @pytest.mark.asyncio
    async def test_missing_timestamp_defaults_to_now(self, ledger):
        await ledger.record(make_order("A1", ts=0))
        assert (await ledger.get("A1")).timestamp_ms > T0


class TestQuery:
    @pytest.mark.asyncio
    async def test_filters_and_order(self, ledger):
        await ledger.record(make_order("B", ts=T0 + 2))
        await ledger.record(make_order("A", ts=T0 + 1))
        await ledger.record(make_order("C", ts=T0 + 3, status=OrderStatus.FILLED))
        await ledger.record(make_order("D", ts=T0 + 4, bot_id="8"))
        await ledger.record(make_order("E", ts=T0 + 5, symbol="BTC_USDC_PERP"))

        pending = await ledger.pending_orders("7")
        assert [o.external_order_id for o in pending] == ["A", "B", "E"]
        by_symbol = await ledger.query(bot_id="7", symbol=SYMBOL)
        assert [o.external_order_id for o in by_symbol] == ["A", "B", "C"]
        multi = await ledger.query(status=[OrderStatus.FILLED, OrderStatus.PENDING], bot_id="8")
        assert [o.external_order_id for o in multi] == ["D"]
        assert await ledger.query(status=[]) == []

    @pytest.mark.asyncio
    async def test_protective_orders_are_not_open_positions(self, ledger):
        await ledger.record(make_order("S1", order_type="STOP_MARKET", status=OrderStatus.FILLED))
        assert await ledger.open_positions("7") == []
        assert not await ledger.has_open_activity("7", SYMBOL)

    @pytest.mark.asyncio
    async def test_has_open_activity(self, ledger):
        assert not await ledger.has_open_activity("7", SYMBOL)
        await ledger.record(make_order("A1"))
        assert await ledger.has_open_activity("7", SYMBOL)
        await ledger.transition("A1", OrderStatus.CANCELLED, "test")
        assert not await ledger.has_open_activity("7", SYMBOL)


class TestTransition:
    @pytest.mark.asyncio
    async def test_pending_to_filled_to_closed(self, ledger):
        await ledger.record(make_order("A1", quantity=2.0))
        assert await ledger.transition("A1", OrderStatus.FILLED, "exchange")
        assert await ledger.transition(
            "A1", OrderStatus.CLOSED, "FILLS_BASED_CLOSE",
            pnl=5.0, pnl_pct=2.5, close_price=102.5, close_time=T0 + 10,
        )
        row = await ledger.get("A1")
        assert row.status == OrderStatus.CLOSED
        assert row.pnl == 5.0
        assert row.close_price == 102.5
        assert row.close_quantity == 2.0
        assert row.close_time == T0 + 10
        assert row.close_type == "FILLS_BASED_CLOSE"
        assert ledger.stats["transitions"] == 2

    @pytest.mark.asyncio
    async def test_cancel_sets_close_time_and_reason(self, ledger):
        await ledger.record(make_order("A1"))
        assert await ledger.transition("A1", OrderStatus.CANCELLED, "GHOST_ORDER_NOT_FOUND")
        row = await ledger.get("A1")
        assert row.close_time is not None
        assert row.close_type == "GHOST_ORDER_NOT_FOUND"
        assert row.pnl is None

    @pytest.mark.asyncio
    async def test_illegal_transition_is_noop(self, ledger):
        await ledger.record(make_order("A1"))
        await ledger.transition("A1", OrderStatus.CANCELLED, "test")
        assert not await ledger.transition("A1", OrderStatus.FILLED, "late fill")
        assert (await ledger.get("A1")).status == OrderStatus.CANCELLED
        assert ledger.stats["invalid_transitions"] == 1

    @pytest.mark.asyncio
    async def test_closed_without_pnl_refused(self, ledger):
        await ledger.record(make_order("A1", status=OrderStatus.FILLED))
        assert not await ledger.transition("A1", OrderStatus.CLOSED, "no pnl")
        assert (await ledger.get("A1")).status == OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_unknown_order(self, ledger):
        assert not await ledger.transition("nope", OrderStatus.FILLED, "x")

    @pytest.mark.asyncio
    async def test_concurrent_transitions_apply_once(self, ledger):
        await ledger.record(make_order("A1"))
        results = await asyncio.gather(*(
            ledger.transition("A1", OrderStatus.CANCELLED, f"pass-{i}") for i in range(5)
        ))
        assert results.count(True) == 1
        assert (await ledger.get("A1")).status == OrderStatus.CANCELLED


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_repair_interrupted_close(self, ledger, db):
        await ledger.record(make_order("A1", status=OrderStatus.FILLED))
        await ledger.record(make_order("A2", status=OrderStatus.FILLED))
        await db.run("UPDATE orders SET close_time = ? WHERE external_order_id = 'A1'", (T0 + 5,))

        assert await ledger.repair_interrupted_closes("7") == 1
        row = await ledger.get("A1")
        assert row.status == OrderStatus.CLOSED
        assert row.pnl == 0
        assert row.close_type == "SYSTEM_CORRECTION"
        assert (await ledger.get("A2")).status == OrderStatus.FILLED
        assert await ledger.repair_interrupted_closes("7") == 0

    @pytest.mark.asyncio
    async def test_repair_keeps_written_pnl(self, ledger, db):
        await ledger.record(make_order("A1", status=OrderStatus.FILLED))
        await db.run(
            "UPDATE orders SET close_time = ?, pnl = 3.5, close_type = 'FILLS_BASED_CLOSE' "
            "WHERE external_order_id = 'A1'",
            (T0 + 5,),
        )
        await ledger.repair_interrupted_closes()
        row = await ledger.get("A1")
        assert row.pnl == 3.5
        assert row.close_type == "FILLS_BASED_CLOSE"

    @pytest.mark.asyncio
    async def test_purge_only_old_terminal_rows(self, ledger):
        await ledger.record(make_order("old"))
        await ledger.transition("old", OrderStatus.CANCELLED, "x", close_time=T0)
        await ledger.record(make_order("new"))
        await ledger.transition("new", OrderStatus.CANCELLED, "x", close_time=T0 + 10_000)
        await ledger.record(make_order("open", status=OrderStatus.FILLED))

        assert await ledger.purge_terminal(T0 + 1, "7") == 1
        assert await ledger.get("old") is None
        assert await ledger.get("new") is not None
        assert await ledger.get("open") is not None
