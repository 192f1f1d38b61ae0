"""
Prometheus metrics for reconciliation observability.

Organized into: ledger mutations, reconciliation passes, duties, locks.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class ReconMetrics:
    """Counters and gauges labelled by bot (and duty / symbol where useful)."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Reconciliation ===
        self.ghost_orders_cleaned = Counter(
            'recon_ghost_orders_cleaned_total',
            'Ghost orders resolved to FILLED or CANCELLED',
            labelnames=['bot_id', 'outcome'],
            registry=reg
        )
        self.positions_closed = Counter(
            'recon_positions_closed_total',
            'Positions closed from exchange fills',
            labelnames=['bot_id', 'symbol'],
            registry=reg
        )
        self.suspicious_closes = Counter(
            'recon_suspicious_closes_total',
            'Flat positions rejected as suspicious (identical prices, zero pnl)',
            labelnames=['bot_id', 'symbol'],
            registry=reg
        )
        self.orphan_fills_attributed = Counter(
            'recon_orphan_fills_attributed_total',
            'Fills without client id attributed to tracked positions',
            labelnames=['bot_id', 'symbol'],
            registry=reg
        )
        self.realized_pnl = Counter(
            'recon_realized_pnl_events_total',
            'Closed-position pnl events by sign',
            labelnames=['bot_id', 'sign'],
            registry=reg
        )
        self.stale_locks_pruned = Counter(
            'recon_stale_locks_pruned_total',
            'Position locks released because the position is gone',
            labelnames=['bot_id'],
            registry=reg
        )

        # === Duties ===
        self.duty_runs = Counter(
            'recon_duty_runs_total',
            'Duty executions by outcome',
            labelnames=['bot_id', 'duty', 'outcome'],
            registry=reg
        )
        self.duty_interval = Gauge(
            'recon_duty_interval_seconds',
            'Current adaptive interval per duty',
            labelnames=['bot_id', 'duty'],
            registry=reg
        )
        self.duty_latency = Histogram(
            'recon_duty_latency_seconds',
            'Duty run time',
            labelnames=['duty'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
            registry=reg
        )

        # === Ledger / locks ===
        self.open_positions = Gauge(
            'recon_open_positions',
            'FILLED orders without close time',
            labelnames=['bot_id'],
            registry=reg
        )
        self.pending_orders = Gauge(
            'recon_pending_orders',
            'PENDING orders in the ledger',
            labelnames=['bot_id'],
            registry=reg
        )
        self.stops_placed = Counter(
            'recon_protective_stops_placed_total',
            'Protective stop orders placed',
            labelnames=['bot_id', 'symbol'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'recon_orders_cancelled_total',
            'Orders cancelled on the exchange by duties',
            labelnames=['bot_id', 'reason'],
            registry=reg
        )


def start_metrics_server(metrics: ReconMetrics, port: int) -> None:
    """Expose /metrics on `port` (0 disables)."""
    if port > 0:
        start_http_server(port, registry=metrics.registry)
