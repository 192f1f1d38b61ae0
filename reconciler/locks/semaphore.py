"""
FIFO counting semaphore for in-process serialization.

asyncio.Semaphore does not promise strict FIFO hand-off: a task calling
acquire() right after a release can take the permit ahead of a queued
waiter. Here a released permit is handed directly to the oldest waiter, so
permits are granted strictly in arrival order and never twice.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Tuple, TypeVar

T = TypeVar("T")


class Release:
    """Idempotent release handle returned by FifoSemaphore.acquire()."""

    def __init__(self, semaphore: "FifoSemaphore", token: int, label: str) -> None:
        self._semaphore = semaphore
        self._token = token
        self.label = label
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __call__(self) -> bool:
        if self._released:
            return False
        self._released = True
        self._semaphore._release(self._token)
        return True


class FifoSemaphore:
    """
    Counting semaphore (default 1 permit) with FIFO waiters.

    Usage:
        release = await sem.acquire("stop_loss:SOL")
        try:
            ...
        finally:
            release()

        async with sem.hold("ghost:SOL"):
            ...
    """

    def __init__(self, permits: int = 1, name: str = "") -> None:
        if permits < 1:
            raise ValueError("permits must be >= 1")
        self.name = name
        self.permits = permits
        self._available = permits
        self._waiters: Deque[Tuple[asyncio.Future, str]] = deque()
        self._holders: Dict[int, str] = {}
        self._tokens = itertools.count(1)
        self.stats: Dict[str, int] = {
            "acquired": 0,
            "released": 0,
            "waited": 0,
            "cancelled_waiters": 0,
            "max_queue": 0,
        }

    def locked(self) -> bool:
        return self._available == 0

    async def acquire(self, label: str = "anonymous") -> Release:
        # Never barge past queued waiters
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return self._grant(label)

        fut = asyncio.get_running_loop().create_future()
        entry = (fut, label)
        self._waiters.append(entry)
        self.stats["waited"] += 1
        self.stats["max_queue"] = max(self.stats["max_queue"], len(self._waiters))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Permit was handed over before the cancel landed: pass it on
                self._hand_off()
            else:
                try:
                    self._waiters.remove(entry)
                except ValueError:
                    pass
            self.stats["cancelled_waiters"] += 1
            raise
        return self._grant(label)

    def _grant(self, label: str) -> Release:
        token = next(self._tokens)
        self._holders[token] = label
        self.stats["acquired"] += 1
        return Release(self, token, label)

    def _release(self, token: int) -> None:
        self._holders.pop(token, None)
        self.stats["released"] += 1
        self._hand_off()

    def _hand_off(self) -> None:
        while self._waiters:
            fut, _label = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._available += 1

    async def execute(self, fn: Callable[[], Awaitable[T]], label: str = "anonymous") -> T:
        release = await self.acquire(label)
        try:
            return await fn()
        finally:
            release()

    @asynccontextmanager
    async def hold(self, label: str = "anonymous") -> AsyncIterator[Release]:
        release = await self.acquire(label)
        try:
            yield release
        finally:
            release()

    def status(self) -> Dict[str, Any]:
        holders: List[str] = list(self._holders.values())
        waiting: List[str] = [label for fut, label in self._waiters if not fut.done()]
        return {
            "name": self.name,
            "permits": self.permits,
            "available": self._available,
            "holders": holders,
            "waiting": waiting,
        }
