"""
ReconciliationService: keeps one bot's ledger in line with the exchange.

Entry points:
- sync_with_exchange(): status sync for PENDING orders, ghost resolution
  for the ones missing from the live set, then fills-based closing
- run_full_reconciliation(): repair interrupted closes, sync_with_exchange,
  prune stale position locks, apply retention
- clean_ghost_orders(): standalone ghost-detection pass

Failure semantics: per-item errors are logged and retried on the next pass.
RateLimitError propagates so the scheduler backs off; a missing-credentials
precondition skips the exchange steps with a one-time warning.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from reconciler.core.utils import now_ms
from reconciler.errors import PreconditionError, RateLimitError
from reconciler.ledger.models import OrderStatus
from reconciler.reconciliation.fills_sync import DAY_MS, FillsPositionSync, FillsSyncConfig
from reconciler.reconciliation.ghost_orders import (
    apply_exchange_status,
    clean_ghost_orders,
    fetch_live_orders,
    resolve_ghosts,
)
from reconciler.reconciliation.matching import map_exchange_status

if TYPE_CHECKING:
    from reconciler.core.bot_context import BotContext


@dataclass
class ReconciliationConfig:
    """Configuration for ReconciliationService."""
    orphan_tolerance: float = 0.1
    fill_skew_ms: int = 5000
    fill_lookback_days: int = 30
    retention_days: int = 0  # 0 keeps terminal rows forever


@dataclass
class ExchangeSyncResult:
    """Mutation counts of one exchange-truth sync."""
    success: bool
    statuses_synced: int = 0
    ghost_orders_cleaned: int = 0
    positions_closed: int = 0
    error: Optional[str] = None


@dataclass
class ReconciliationReport:
    """Counts produced by one full reconciliation pass of one bot."""
    ghost_orders_cleaned: int = 0
    positions_closed: int = 0
    orders_fixed: int = 0
    stale_locks_pruned: int = 0
    orders_purged: int = 0
    statuses_synced: int = 0
    skipped: bool = False

    @property
    def total(self) -> int:
        return self.ghost_orders_cleaned + self.positions_closed + self.orders_fixed + self.stale_locks_pruned

    def as_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "total": self.total}


class ReconciliationService:
    """
    Usage:
        service = ReconciliationService(ReconciliationConfig(orphan_tolerance=0.1))
        report = await service.run_full_reconciliation(ctx)
    """

    def __init__(self, config: Optional[ReconciliationConfig] = None) -> None:
        self.config = config or ReconciliationConfig()
        self.fills_sync = FillsPositionSync(
            FillsSyncConfig(
                orphan_tolerance=self.config.orphan_tolerance,
                fill_skew_ms=self.config.fill_skew_ms,
                fill_lookback_days=self.config.fill_lookback_days,
            )
        )

    async def clean_ghost_orders(self, ctx: "BotContext") -> int:
        return await clean_ghost_orders(ctx)

    async def close_positions_from_fills(self, ctx: "BotContext") -> int:
        return await self.fills_sync.close_positions(ctx)

    async def sync_order_statuses(self, ctx: "BotContext") -> ExchangeSyncResult:
        """
        Map PENDING orders onto exchange-reported status; orders missing from
        the live set go through ghost resolution.
        """
        pending = await ctx.ledger.pending_orders(ctx.bot_id)
        if not pending:
            return ExchangeSyncResult(success=True)
        live = await fetch_live_orders(ctx)
        if live is None:
            return ExchangeSyncResult(success=False, error="open orders unknown")

        by_id = {o.id: o for o in live}
        by_client = {o.client_id: o for o in live if o.client_id}
        missing = []
        synced = 0
        for order in pending:
            live_order = by_id.get(order.external_order_id)
            if live_order is None and order.client_id:
                live_order = by_client.get(order.client_id)
            if live_order is None:
                missing.append(order)
                continue
            target = map_exchange_status(live_order.status)
            if target is None or target == OrderStatus.PENDING:
                continue
            try:
                if await apply_exchange_status(ctx, order, target, f"EXCHANGE_STATUS_{target.value}"):
                    synced += 1
            except (RateLimitError, asyncio.CancelledError):
                raise
            except Exception as exc:
                ctx.error(
                    "order_status_sync_error",
                    symbol=order.symbol,
                    order_id=order.external_order_id,
                    err=str(exc),
                )

        ghosts = await resolve_ghosts(ctx, missing) if missing else {}
        return ExchangeSyncResult(success=True, statuses_synced=synced, ghost_orders_cleaned=len(ghosts))

    async def sync_with_exchange(self, ctx: "BotContext") -> ExchangeSyncResult:
        result = await self.sync_order_statuses(ctx)
        result.positions_closed = await self.close_positions_from_fills(ctx)
        ctx.info(
            "exchange_sync_complete",
            statuses_synced=result.statuses_synced,
            ghost_orders_cleaned=result.ghost_orders_cleaned,
            positions_closed=result.positions_closed,
            success=result.success,
        )
        return result

    async def run_full_reconciliation(self, ctx: "BotContext") -> ReconciliationReport:
        report = ReconciliationReport()
        report.orders_fixed = await ctx.ledger.repair_interrupted_closes(ctx.bot_id)

        try:
            ctx.require_gateway()
        except PreconditionError as exc:
            ctx.warn_once(exc.key, "reconciliation_skipped", reason=str(exc))
            report.skipped = True
        else:
            ctx.clear_warning("credentials")
            sync = await self.sync_with_exchange(ctx)
            report.statuses_synced = sync.statuses_synced
            report.ghost_orders_cleaned = sync.ghost_orders_cleaned
            report.positions_closed = sync.positions_closed

        report.stale_locks_pruned = await ctx.locks.prune_stale(ctx.bot_id, ctx.ledger)

        if self.config.retention_days > 0:
            cutoff = now_ms() - self.config.retention_days * DAY_MS
            report.orders_purged = await ctx.ledger.purge_terminal(cutoff, ctx.bot_id)

        if ctx.metrics:
            if report.stale_locks_pruned:
                ctx.metrics.stale_locks_pruned.labels(bot_id=ctx.bot_id).inc(report.stale_locks_pruned)
            ctx.metrics.open_positions.labels(bot_id=ctx.bot_id).set(len(await ctx.ledger.open_positions(ctx.bot_id)))
            ctx.metrics.pending_orders.labels(bot_id=ctx.bot_id).set(len(await ctx.ledger.pending_orders(ctx.bot_id)))

        ctx.info("reconciliation_complete", **report.as_dict())
        return report
