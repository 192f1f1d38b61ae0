"""
Per-bot context: the explicit owner of everything a bot's duties share.

Replaces process-wide registries keyed by symbol. A BotContext carries the
bot's config, its ledger/lock/gateway handles, the per-symbol in-process
semaphores, the warn-once registry and a trace id for log correlation.
The only state shared between bots is the durable lock table.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
import uuid
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from reconciler.config.bots import BotConfig, MarketInfo
from reconciler.core.utils import now_ms
from reconciler.errors import PreconditionError
from reconciler.ledger.order_ledger import OrderLedger
from reconciler.locks.semaphore import FifoSemaphore
from reconciler.locks.trading_lock import TradingLockManager

if TYPE_CHECKING:
    from reconciler.exchange.gateway import ExchangeGateway
    from reconciler.monitoring.metrics import ReconMetrics


class BotContext:
    """Bot-scoped handles plus structured logging with trace ids."""

    def __init__(
        self,
        config: BotConfig,
        ledger: OrderLedger,
        locks: TradingLockManager,
        gateway: Optional["ExchangeGateway"] = None,
        metrics: Optional["ReconMetrics"] = None,
        trace_id: Optional[str] = None,
        parent_trace_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.locks = locks
        self.gateway = gateway
        self.metrics = metrics
        self.trace_id = trace_id or str(uuid.uuid4())
        self.parent_trace_id = parent_trace_id
        self.start_time = time.time()
        self.logger = logger or logging.getLogger("reconciler")
        self.tags: dict[str, Any] = {}

        self._semaphores: Dict[str, FifoSemaphore] = {}
        self._warned: Set[str] = set()
        self._client_seq = itertools.count(now_ms() % 1_000_000)

    @property
    def bot_id(self) -> str:
        return self.config.bot_id

    # ----- per-symbol serialization -----

    def semaphore(self, symbol: str) -> FifoSemaphore:
        sem = self._semaphores.get(symbol)
        if sem is None:
            sem = FifoSemaphore(1, name=f"{self.bot_id}:{symbol}")
            self._semaphores[symbol] = sem
        return sem

    def critical_section(
        self,
        symbol: str,
        lock_type: str,
        reason: str,
        position_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AbstractAsyncContextManager[None]:
        return self.locks.critical_section(
            self.semaphore(symbol), self.bot_id, symbol, lock_type, reason, position_id, metadata
        )

    # ----- preconditions -----

    def require_gateway(self) -> "ExchangeGateway":
        if self.gateway is None or not self.config.has_credentials:
            raise PreconditionError(f"bot {self.bot_id} has no exchange credentials", key="credentials")
        return self.gateway

    def require_market(self, symbol: str) -> MarketInfo:
        market = self.config.market(symbol)
        if market is None:
            raise PreconditionError(f"no market metadata for {symbol}", key=f"market:{symbol}")
        return market

    def warn_once(self, key: str, event: str, **data: Any) -> bool:
        """Log a warning the first time `key` is seen; True if it was logged."""
        if key in self._warned:
            return False
        self._warned.add(key)
        self.warning(event, key=key, **data)
        return True

    def clear_warning(self, key: str) -> None:
        self._warned.discard(key)

    def next_client_id(self) -> str:
        return f"{self.config.client_id_prefix}{next(self._client_seq) % 1_000_000:06d}"

    # ----- logging -----

    def log(self, event: str, level: str = "info", **data: Any) -> None:
        payload = {
            "ts": time.time(),
            "trace_id": self.trace_id,
            **({"parent_trace_id": self.parent_trace_id} if self.parent_trace_id else {}),
            "bot_id": self.bot_id,
            "event": event,
            **self.tags,
            **data,
        }
        log_func = getattr(self.logger, level, self.logger.info)
        log_func(json.dumps(payload, default=str))

    def debug(self, event: str, **data: Any) -> None:
        self.log(event, level="debug", **data)

    def info(self, event: str, **data: Any) -> None:
        self.log(event, level="info", **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log(event, level="warning", **data)

    def error(self, event: str, **data: Any) -> None:
        self.log(event, level="error", **data)

    def child(self, sub_operation: str) -> "BotContext":
        """
        Context for one sub-operation (a duty pass): new trace id, same
        handles, semaphores and warn-once registry.
        """
        child = BotContext(
            config=self.config,
            ledger=self.ledger,
            locks=self.locks,
            gateway=self.gateway,
            metrics=self.metrics,
            trace_id=str(uuid.uuid4()),
            parent_trace_id=self.trace_id,
            logger=self.logger,
        )
        child._semaphores = self._semaphores
        child._warned = self._warned
        child._client_seq = self._client_seq
        child.tags = {**self.tags, "sub_operation": sub_operation}
        return child
