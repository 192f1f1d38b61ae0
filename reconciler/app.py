"""
Per-bot runners with one duty scheduler each.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, List, Optional

from reconciler.config.bots import BotConfig
from reconciler.config.config import Settings
from reconciler.core.bot_context import BotContext
from reconciler.duties.orphan_orders import OrphanOrdersDuty
from reconciler.duties.pending_orders import PendingOrdersDuty
from reconciler.duties.protective_stops import ProtectiveStopDuty
from reconciler.exchange.contract import ExchangeClient
from reconciler.exchange.gateway import ExchangeGateway
from reconciler.ledger.database import Database
from reconciler.ledger.order_ledger import OrderLedger
from reconciler.locks.trading_lock import TradingLockManager
from reconciler.monitoring.metrics import ReconMetrics
from reconciler.reconciliation.reconciliation_service import ReconciliationConfig, ReconciliationService
from reconciler.scheduler.backoff import (
    ORPHAN_ORDERS_POLICY,
    PENDING_ORDERS_POLICY,
    RECONCILIATION_POLICY,
    STOP_LOSS_POLICY,
)
from reconciler.scheduler.scheduler import Clock, DutyOutcome, DutyScheduler

log = logging.getLogger("reconciler")

ClientFactory = Callable[[BotConfig], ExchangeClient]


def build_context(
    bot: BotConfig,
    db: Database,
    client_factory: Optional[ClientFactory],
    settings: Optional[Settings] = None,
    metrics: Optional[ReconMetrics] = None,
) -> BotContext:
    gateway = None
    if client_factory is not None and bot.has_credentials:
        gateway = ExchangeGateway(
            client_factory(bot),
            market_type=bot.market_type,
            bot_id=bot.bot_id,
            fill_page_limit=settings.fill_page_limit if settings else 1000,
            fill_max_pages=settings.fill_max_pages if settings else 5,
        )
    return BotContext(
        config=bot,
        ledger=OrderLedger(db),
        locks=TradingLockManager(db),
        gateway=gateway,
        metrics=metrics,
    )


def reconciliation_config(settings: Settings) -> ReconciliationConfig:
    return ReconciliationConfig(
        orphan_tolerance=settings.orphan_tolerance,
        fill_skew_ms=settings.fill_skew_ms,
        fill_lookback_days=settings.fill_lookback_days,
        retention_days=settings.retention_days,
    )


class BotRunner:
    def __init__(
        self,
        ctx: BotContext,
        service: Optional[ReconciliationService] = None,
        clock: Optional[Clock] = None,
        release_locks_on_start: bool = True,
    ) -> None:
        self.ctx = ctx
        self.service = service or ReconciliationService()
        self.release_locks_on_start = release_locks_on_start
        self.scheduler = DutyScheduler(name=f"bot-{ctx.bot_id}", clock=clock, on_outcome=self._on_outcome)
        self.task: asyncio.Task | None = None
        self.error: Exception | None = None
        self._register_duties()

    def _register_duties(self) -> None:
        ctx = self.ctx
        duties = ctx.config.duties
        if "protective_stops" in duties:
            stops = ProtectiveStopDuty(ctx.child("protective_stops"))
            self.scheduler.add("protective_stops", stops.run, STOP_LOSS_POLICY)
        if "pending_orders" in duties:
            pending = PendingOrdersDuty(ctx.child("pending_orders"), self.service)
            self.scheduler.add("pending_orders", pending.run, PENDING_ORDERS_POLICY)
        if "orphan_orders" in duties:
            orphans = OrphanOrdersDuty(ctx.child("orphan_orders"))
            self.scheduler.add("orphan_orders", orphans.run, ORPHAN_ORDERS_POLICY)
        if "reconciliation" in duties:
            recon_ctx = ctx.child("reconciliation")
            self.scheduler.add(
                "reconciliation",
                lambda: self.service.run_full_reconciliation(recon_ctx),
                RECONCILIATION_POLICY,
            )

    def _on_outcome(self, outcome: DutyOutcome) -> None:
        metrics = self.ctx.metrics
        if metrics is None:
            return
        bot_id = self.ctx.bot_id
        metrics.duty_runs.labels(bot_id=bot_id, duty=outcome.name, outcome=outcome.outcome.value).inc()
        metrics.duty_interval.labels(bot_id=bot_id, duty=outcome.name).set(outcome.interval)
        metrics.duty_latency.labels(duty=outcome.name).observe(outcome.duration)

    async def start(self) -> None:
        try:
            if self.release_locks_on_start:
                # Locks left ACTIVE by a previous crash of this bot
                await self.ctx.locks.release_all(self.ctx.bot_id)
            self.task = asyncio.create_task(self.scheduler.run_forever(), name=f"bot-{self.ctx.bot_id}")
            self.ctx.info("bot_started", duties=[d.name for d in self.scheduler.duties])
        except Exception as exc:
            self.error = exc
            self.ctx.error("bot_init_error", err=str(exc))

    async def stop(self) -> None:
        self.scheduler.stop()
        if self.task:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        released = await self.ctx.locks.release_all(self.ctx.bot_id)
        self.ctx.info("bot_stopped", locks_released=released)


async def run_all(
    bots: List[BotConfig],
    settings: Settings,
    db: Database,
    client_factory: Optional[ClientFactory],
    metrics: Optional[ReconMetrics] = None,
) -> None:
    service = ReconciliationService(reconciliation_config(settings))
    runners: List[BotRunner] = [
        BotRunner(
            build_context(bot, db, client_factory, settings, metrics),
            service,
            release_locks_on_start=settings.release_locks_on_start,
        )
        for bot in bots
    ]
    for r in runners:
        await r.start()

    try:
        async with asyncio.TaskGroup() as tg:
            for r in runners:
                if r.task:
                    tg.create_task(_watch_bot(r))
    finally:
        for r in runners:
            await r.stop()


async def _watch_bot(runner: BotRunner) -> None:
    try:
        if runner.task:
            await runner.task
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        runner.error = exc
        log.error(json.dumps({"event": "bot_run_error", "bot_id": runner.ctx.bot_id, "err": str(exc)}))
        raise
