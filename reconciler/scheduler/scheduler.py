"""
DutyScheduler: self-rescheduling periodic duties with adaptive backoff.

Each duty owns its timer. A duty is due when `now >= next_run_at` and it is
not already running; after every run (whatever the outcome) it is
rescheduled at `finish + interval`, with the interval adjusted by its
BackoffState. A stalled duty only delays its own next run.

The clock is injectable (`now()` / `sleep()`), so backoff and rescheduling
are unit-testable with a manual clock and `tick()`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from reconciler.errors import PreconditionError
from reconciler.exchange.rate_limit import is_rate_limit_error
from reconciler.scheduler.backoff import BackoffPolicy, BackoffState, Outcome

log = logging.getLogger("reconciler")

DutyFn = Callable[[], Awaitable[Any]]


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class Duty:
    name: str
    run: DutyFn
    backoff: BackoffState
    next_run_at: float = 0.0
    runs: int = 0
    last_outcome: Optional[Outcome] = None
    last_result: Any = None
    task: Optional[asyncio.Task] = None
    warned: Set[str] = field(default_factory=set)

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def interval(self) -> float:
        return self.backoff.interval


@dataclass
class DutyOutcome:
    name: str
    outcome: Outcome
    interval: float
    duration: float = 0.0
    error: Optional[str] = None
    result: Any = None


class DutyScheduler:
    """
    Usage:
        scheduler = DutyScheduler(name="bot-7")
        scheduler.add("protective_stops", run_stops, STOP_LOSS_POLICY)
        scheduler.add("pending_orders", run_pending, PENDING_ORDERS_POLICY)
        await scheduler.run_forever()
    """

    def __init__(
        self,
        name: str = "",
        clock: Optional[Clock] = None,
        on_outcome: Optional[Callable[[DutyOutcome], None]] = None,
        max_idle_sleep: float = 0.1,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.name = name
        self.clock: Clock = clock or MonotonicClock()
        self.on_outcome = on_outcome
        self.max_idle_sleep = max_idle_sleep
        self._duties: Dict[str, Duty] = {}
        self._running = False
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, "scheduler": self.name, **kwargs}
        log.log(level, json.dumps(payload, default=str))

    @property
    def duties(self) -> List[Duty]:
        return list(self._duties.values())

    def add(self, name: str, run: DutyFn, policy: BackoffPolicy, start_delay: float = 0.0) -> Duty:
        if name in self._duties:
            raise ValueError(f"duty {name} already registered")
        duty = Duty(
            name=name,
            run=run,
            backoff=BackoffState.from_policy(policy),
            next_run_at=self.clock.now() + start_delay,
        )
        self._duties[name] = duty
        return duty

    def get(self, name: str) -> Duty:
        return self._duties[name]

    def due(self, now: Optional[float] = None) -> List[Duty]:
        now = self.clock.now() if now is None else now
        return [d for d in self._duties.values() if not d.in_flight and d.next_run_at <= now]

    async def run_duty(self, duty: Duty) -> DutyOutcome:
        """Run once, classify the outcome, adjust backoff, reschedule."""
        started = self.clock.now()
        error: Optional[str] = None
        result: Any = None
        try:
            result = await duty.run()
        except asyncio.CancelledError:
            duty.next_run_at = self.clock.now() + duty.backoff.interval
            raise
        except PreconditionError as exc:
            outcome = Outcome.SKIPPED
            error = str(exc)
            if exc.key not in duty.warned:
                duty.warned.add(exc.key)
                self._log_event("duty_skipped", level=logging.WARNING, duty=duty.name, key=exc.key, reason=error)
        except Exception as exc:
            error = str(exc)
            outcome = Outcome.RATE_LIMITED if is_rate_limit_error(exc) else Outcome.ERROR
        else:
            outcome = Outcome.SUCCESS
            duty.warned.clear()

        finished = self.clock.now()
        previous = duty.backoff.interval
        interval = duty.backoff.record(outcome, finished, error)
        duty.runs += 1
        duty.last_outcome = outcome
        duty.last_result = result
        duty.next_run_at = finished + interval

        if outcome == Outcome.RATE_LIMITED:
            self._log_event(
                "duty_rate_limited",
                level=logging.WARNING,
                duty=duty.name,
                interval=interval,
                previous=previous,
                errors=duty.backoff.error_count,
                err=error,
            )
        elif outcome == Outcome.ERROR:
            self._log_event(
                "duty_error",
                level=logging.ERROR,
                duty=duty.name,
                interval=interval,
                errors=duty.backoff.error_count,
                err=error,
            )
        elif interval != previous:
            self._log_event("duty_interval_adjusted", level=logging.DEBUG, duty=duty.name, interval=interval)

        out = DutyOutcome(
            name=duty.name,
            outcome=outcome,
            interval=interval,
            duration=finished - started,
            error=error,
            result=result,
        )
        if self.on_outcome:
            self.on_outcome(out)
        return out

    async def tick(self) -> List[DutyOutcome]:
        """Run every due duty concurrently and wait for all of them."""
        due = self.due()
        if not due:
            return []
        return list(await asyncio.gather(*(self.run_duty(d) for d in due)))

    def _launch(self, duty: Duty) -> None:
        duty.task = asyncio.create_task(self.run_duty(duty), name=f"{self.name}:{duty.name}")
        duty.task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log_event("duty_task_crashed", level=logging.ERROR, task=task.get_name(), err=str(exc))

    async def run_forever(self) -> None:
        """Central loop: launch due duties as tasks, sleep until the next one is due."""
        self._running = True
        self._log_event("scheduler_started", duties=[d.name for d in self._duties.values()])
        try:
            while self._running:
                now = self.clock.now()
                for duty in self.due(now):
                    self._launch(duty)
                waiting = [d.next_run_at for d in self._duties.values() if not d.in_flight]
                sleep_for = self.max_idle_sleep
                if waiting:
                    sleep_for = min(max(0.0, min(waiting) - now), self.max_idle_sleep)
                await self.clock.sleep(sleep_for)
        finally:
            await self._cancel_in_flight()
            self._log_event("scheduler_stopped")

    def stop(self) -> None:
        self._running = False

    async def _cancel_in_flight(self) -> None:
        tasks = [d.task for d in self._duties.values() if d.in_flight]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            d.name: {
                **d.backoff.snapshot(),
                "next_run_at": d.next_run_at,
                "runs": d.runs,
                "last_outcome": d.last_outcome.value if d.last_outcome else None,
                "in_flight": d.in_flight,
            }
            for d in self._duties.values()
        }
