"""
Tests for bot wiring: context construction, runners and the entry point helpers.
"""
import asyncio

import pytest
from prometheus_client import CollectorRegistry

from conftest import SYMBOL, FakeExchange, make_bot_config
from reconciler.app import BotRunner, build_context, reconciliation_config, run_all
from reconciler.config.config import Settings
from reconciler.core.utils import now_ms
from reconciler.ledger.models import LockType
from reconciler.locks.trading_lock import TradingLockManager
from reconciler.main import load_client_factory
from reconciler.monitoring.metrics import ReconMetrics, start_metrics_server
from reconciler.scheduler.backoff import Outcome
from reconciler.scheduler.scheduler import DutyOutcome


def make_settings(**overrides):
    values = dict(
        db_path=":memory:",
        bots_file="configs/bots.yaml",
        exchange_factory=None,
        log_level="INFO",
        log_file=None,
        metrics_port=0,
        orphan_tolerance=0.2,
        fill_skew_ms=1000,
        fill_lookback_days=7,
        fill_page_limit=500,
        fill_max_pages=3,
        retention_days=0,
        release_locks_on_start=True,
    )
    values.update(overrides)
    return Settings(**values)


class TestBuildContext:
    def test_gateway_needs_factory_and_credentials(self, db):
        exchange = FakeExchange()
        settings = make_settings()
        with_creds = build_context(make_bot_config(), db, lambda bot: exchange, settings)
        assert with_creds.gateway is not None
        assert with_creds.gateway.fill_page_limit == 500

        assert build_context(make_bot_config(), db, None, settings).gateway is None
        no_creds = make_bot_config(api_key=None)
        assert build_context(no_creds, db, lambda bot: exchange, settings).gateway is None

    def test_reconciliation_config(self):
        cfg = reconciliation_config(make_settings())
        assert cfg.orphan_tolerance == 0.2
        assert cfg.fill_skew_ms == 1000
        assert cfg.fill_lookback_days == 7


class TestBotRunner:
    def test_registers_configured_duties(self, db):
        ctx = build_context(make_bot_config(), db, lambda bot: FakeExchange())
        runner = BotRunner(ctx)
        assert sorted(d.name for d in runner.scheduler.duties) == [
            "orphan_orders", "pending_orders", "protective_stops", "reconciliation",
        ]
        only = BotRunner(build_context(make_bot_config(duties=frozenset({"reconciliation"})), db, None))
        assert [d.name for d in only.scheduler.duties] == ["reconciliation"]

    def test_duty_outcomes_feed_metrics(self, db):
        registry = CollectorRegistry()
        ctx = build_context(make_bot_config(), db, None, metrics=ReconMetrics(registry))
        runner = BotRunner(ctx)
        runner._on_outcome(DutyOutcome("pending_orders", Outcome.RATE_LIMITED, interval=30.0, duration=0.2))
        assert registry.get_sample_value(
            "recon_duty_runs_total", {"bot_id": "7", "duty": "pending_orders", "outcome": "rate_limited"}
        ) == 1.0
        assert registry.get_sample_value(
            "recon_duty_interval_seconds", {"bot_id": "7", "duty": "pending_orders"}
        ) == 30.0

    @pytest.mark.asyncio
    async def test_start_and_stop_release_locks(self, db):
        locks = TradingLockManager(db)
        await locks.acquire("7", SYMBOL, LockType.STOP_LOSS, "left by a crash")
        await locks.acquire("8", SYMBOL, LockType.STOP_LOSS, "other bot")

        ctx = build_context(make_bot_config(), db, lambda bot: FakeExchange())
        runner = BotRunner(ctx)
        await runner.start()
        assert runner.task is not None
        assert not await locks.has_active("7", SYMBOL, LockType.STOP_LOSS)
        assert await locks.has_active("8", SYMBOL, LockType.STOP_LOSS)

        await asyncio.sleep(0.05)
        await runner.stop()
        assert runner.task.done()
        assert await locks.active_locks("7") == []

    @pytest.mark.asyncio
    async def test_run_all_cancellation_stops_runners(self, db):
        locks = TradingLockManager(db)
        exchange = FakeExchange()
        task = asyncio.create_task(run_all([make_bot_config()], make_settings(), db, lambda bot: exchange))
        await asyncio.sleep(0.05)
        await locks.acquire("7", SYMBOL, LockType.ORDER_CANCEL, "in flight")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await locks.active_locks("7") == []


class TestEntryPointHelpers:
    def test_load_client_factory(self):
        assert load_client_factory(None) is None
        assert load_client_factory("reconciler.core.utils:now_ms") is now_ms
        with pytest.raises(ValueError):
            load_client_factory("reconciler.core.utils")
        with pytest.raises(ValueError):
            load_client_factory("reconciler.app:log")
        with pytest.raises(AttributeError):
            load_client_factory("reconciler.core.utils:missing")

    def test_metrics_server_disabled_on_port_zero(self):
        start_metrics_server(ReconMetrics(CollectorRegistry()), 0)
