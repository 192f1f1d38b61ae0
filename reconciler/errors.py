"""
Exception taxonomy for the reconciliation engine.

- RateLimitError: recoverable, handled by scheduler backoff, never fatal.
- PreconditionError: missing credentials / market metadata; the bot or
  symbol is skipped with a one-time warning.
- DuplicateOrderError: ledger uniqueness violation on record().
- LockBusyError: durable lock held by another owner.
"""

from __future__ import annotations

from typing import Optional


class ReconcilerError(Exception):
    """Base class for all engine errors."""


class DuplicateOrderError(ReconcilerError):
    def __init__(self, external_order_id: str) -> None:
        super().__init__(f"order {external_order_id} already recorded")
        self.external_order_id = external_order_id


class RateLimitError(ReconcilerError):
    """Exchange signalled rate limiting (HTTP 429 or equivalent message)."""

    def __init__(self, message: str = "rate limited", status_code: Optional[int] = 429) -> None:
        super().__init__(message)
        self.status_code = status_code


class PreconditionError(ReconcilerError):
    """
    Operation cannot run until configuration is corrected.

    `key` identifies the misconfiguration so it is reported once.
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key or message


class LockBusyError(ReconcilerError):
    def __init__(self, bot_id: str, symbol: str, lock_type: str) -> None:
        super().__init__(f"lock {lock_type} busy for bot={bot_id} symbol={symbol}")
        self.bot_id = bot_id
        self.symbol = symbol
        self.lock_type = lock_type
