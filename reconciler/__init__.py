"""
Exchange state reconciliation engine.

Keeps a local order ledger consistent with the exchange's authoritative
state: ghost-order resolution, orphan-fill attribution, FIFO P&L on position
close, durable trading locks and self-tuning periodic duties.
"""

__version__ = "0.1.0"
