"""
Tests for the FIFO semaphore.
"""
import asyncio

import pytest

from reconciler.locks.semaphore import FifoSemaphore


class TestFifoSemaphoreBasic:
    def test_permits_validated(self):
        with pytest.raises(ValueError):
            FifoSemaphore(0)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        sem = FifoSemaphore(1, name="7:SOL")
        release = await sem.acquire("stop_loss")
        assert sem.locked()
        assert sem.status()["holders"] == ["stop_loss"]
        assert release()
        assert not sem.locked()
        assert sem.status()["available"] == 1

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        sem = FifoSemaphore(1)
        release = await sem.acquire()
        assert release()
        assert not release()
        assert release.released
        assert sem.status()["available"] == 1
        assert sem.stats["released"] == 1

    @pytest.mark.asyncio
    async def test_execute_returns_result_and_releases(self):
        sem = FifoSemaphore(1)

        async def work():
            assert sem.locked()
            return 42

        assert await sem.execute(work, "work") == 42
        assert not sem.locked()

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        sem = FifoSemaphore(1)
        with pytest.raises(RuntimeError):
            async with sem.hold("boom"):
                raise RuntimeError("boom")
        assert not sem.locked()

    @pytest.mark.asyncio
    async def test_multiple_permits(self):
        sem = FifoSemaphore(2)
        r1 = await sem.acquire("a")
        r2 = await sem.acquire("b")
        third = asyncio.create_task(sem.acquire("c"))
        await asyncio.sleep(0)
        assert not third.done()
        r1()
        r3 = await third
        r2()
        r3()
        assert sem.status()["available"] == 2


class TestFifoOrdering:
    @pytest.mark.asyncio
    async def test_waiters_granted_in_arrival_order(self):
        sem = FifoSemaphore(1)
        order = []
        first = await sem.acquire("first")

        async def worker(i):
            async with sem.hold(f"w{i}"):
                order.append(i)
                await asyncio.sleep(0)

        tasks = [asyncio.create_task(worker(i)) for i in range(5)]
        await asyncio.sleep(0)
        assert sem.status()["waiting"] == ["w0", "w1", "w2", "w3", "w4"]
        first()
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2, 3, 4]
        assert sem.stats["max_queue"] == 5

    @pytest.mark.asyncio
    async def test_new_caller_does_not_barge(self):
        sem = FifoSemaphore(1)
        release_a = await sem.acquire("a")
        waiter = asyncio.create_task(sem.acquire("b"))
        await asyncio.sleep(0)

        release_a()
        # Permit was handed to b directly
        assert sem.locked()
        late = asyncio.create_task(sem.acquire("c"))
        await asyncio.sleep(0)
        assert sem.status()["waiting"] == ["c"]

        release_b = await waiter
        assert not late.done()
        release_b()
        release_c = await late
        release_c()
        assert sem.status()["available"] == 1

    @pytest.mark.asyncio
    async def test_never_more_than_one_holder(self):
        sem = FifoSemaphore(1)
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with sem.hold():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(20)))
        assert peak == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        sem = FifoSemaphore(1)
        release = await sem.acquire("a")
        waiter = asyncio.create_task(sem.acquire("b"))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert sem.status()["waiting"] == []
        assert sem.stats["cancelled_waiters"] == 1

        release()
        assert sem.status()["available"] == 1

    @pytest.mark.asyncio
    async def test_cancel_after_hand_off_passes_permit_on(self):
        sem = FifoSemaphore(1)
        release = await sem.acquire("a")
        waiter = asyncio.create_task(sem.acquire("b"))
        await asyncio.sleep(0)

        release()
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert sem.status()["available"] == 1
        assert not sem.locked()
