"""
Adaptive backoff for periodic duties.

    success     -> interval = max(floor, interval - step), error_count = 0
    rate limit  -> interval = min(ceiling, interval * 2)
    other error -> interval unchanged
    skipped     -> interval unchanged (precondition not met)

Under rate limiting a duty slows down geometrically until the limit clears,
then creeps back toward its floor one step per successful run.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class Outcome(Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class BackoffPolicy:
    """Interval bounds in seconds."""
    name: str
    initial: float
    floor: float
    ceiling: float
    step: float
    safety_critical: bool = False

    def __post_init__(self) -> None:
        if not 0 < self.floor <= self.initial <= self.ceiling:
            raise ValueError(f"{self.name}: need 0 < floor <= initial <= ceiling")
        if self.step <= 0:
            raise ValueError(f"{self.name}: step must be > 0")


STOP_LOSS_POLICY = BackoffPolicy("protective_stops", initial=1.0, floor=0.5, ceiling=10.0, step=0.25, safety_critical=True)
PENDING_ORDERS_POLICY = BackoffPolicy("pending_orders", initial=15.0, floor=15.0, ceiling=120.0, step=1.0)
ORPHAN_ORDERS_POLICY = BackoffPolicy("orphan_orders", initial=20.0, floor=20.0, ceiling=180.0, step=1.0)
RECONCILIATION_POLICY = BackoffPolicy("reconciliation", initial=30.0, floor=30.0, ceiling=300.0, step=1.0)

POLICIES: Dict[str, BackoffPolicy] = {
    p.name: p
    for p in (STOP_LOSS_POLICY, PENDING_ORDERS_POLICY, ORPHAN_ORDERS_POLICY, RECONCILIATION_POLICY)
}


@dataclass
class BackoffState:
    policy: BackoffPolicy
    interval: float
    error_count: int = 0
    rate_limit_count: int = 0
    last_error_time: Optional[float] = None
    last_error: Optional[str] = None

    @classmethod
    def from_policy(cls, policy: BackoffPolicy) -> "BackoffState":
        return cls(policy=policy, interval=policy.initial)

    def on_success(self) -> float:
        self.interval = max(self.policy.floor, self.interval - self.policy.step)
        self.error_count = 0
        return self.interval

    def on_rate_limit(self, now: float, error: Optional[str] = None) -> float:
        self.error_count += 1
        self.rate_limit_count += 1
        self.last_error_time = now
        self.last_error = error
        self.interval = min(self.policy.ceiling, self.interval * 2)
        return self.interval

    def on_error(self, now: float, error: Optional[str] = None) -> float:
        self.error_count += 1
        self.last_error_time = now
        self.last_error = error
        return self.interval

    def record(self, outcome: Outcome, now: float, error: Optional[str] = None) -> float:
        if outcome == Outcome.SUCCESS:
            return self.on_success()
        if outcome == Outcome.RATE_LIMITED:
            return self.on_rate_limit(now, error)
        if outcome == Outcome.ERROR:
            return self.on_error(now, error)
        return self.interval

    def snapshot(self) -> Dict[str, object]:
        return {
            "interval": self.interval,
            "floor": self.policy.floor,
            "ceiling": self.policy.ceiling,
            "error_count": self.error_count,
            "rate_limit_count": self.rate_limit_count,
            "last_error_time": self.last_error_time,
            "last_error": self.last_error,
        }
