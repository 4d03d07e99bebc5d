"""Tests for the per-listing lock manager."""

import asyncio
import time

import pytest

from staymerge.errors import LockTimeout
from staymerge.utils.locks import ListingLockManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        locks = ListingLockManager()
        await locks.acquire("airbnb_1")
        assert locks.is_locked("airbnb_1")
        locks.release("airbnb_1")
        assert not locks.is_locked("airbnb_1")

    @pytest.mark.asyncio
    async def test_release_unheld_is_noop(self) -> None:
        locks = ListingLockManager()
        locks.release("nothing")
        assert locks.held == {}

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        locks = ListingLockManager(timeout=0.1)
        await locks.acquire("a")
        await locks.acquire("b")
        assert set(locks.held) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_times_out_after_200ms(self) -> None:
        locks = ListingLockManager(poll_interval=0.01)
        await locks.acquire("airbnb_1")

        start = time.monotonic()
        with pytest.raises(LockTimeout) as exc_info:
            await locks.acquire("airbnb_1", timeout=0.2)
        elapsed = time.monotonic() - start

        assert 0.18 <= elapsed < 1.0
        assert exc_info.value.key == "airbnb_1"
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 409
        # The original holder still has the lock
        assert locks.is_locked("airbnb_1")

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self) -> None:
        locks = ListingLockManager(poll_interval=0.01)
        await locks.acquire("k")

        async def release_soon() -> None:
            await asyncio.sleep(0.05)
            locks.release("k")

        releaser = asyncio.create_task(release_soon())
        await locks.acquire("k", timeout=1.0)
        await releaser
        assert locks.is_locked("k")

    @pytest.mark.asyncio
    async def test_mutual_exclusion(self) -> None:
        """Concurrent critical sections on the same key never overlap."""
        locks = ListingLockManager(poll_interval=0.001, timeout=5.0)
        inside = 0
        max_inside = 0

        async def worker() -> None:
            nonlocal inside, max_inside
            await locks.acquire("same")
            try:
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0.002)
                inside -= 1
            finally:
                locks.release("same")

        await asyncio.gather(*(worker() for _ in range(20)))
        assert max_inside == 1
        assert not locks.is_locked("same")


class TestHold:
    @pytest.mark.asyncio
    async def test_releases_on_exit(self) -> None:
        locks = ListingLockManager()
        async with locks.hold("a", "b"):
            assert locks.is_locked("a")
            assert locks.is_locked("b")
        assert locks.held == {}

    @pytest.mark.asyncio
    async def test_releases_on_error(self) -> None:
        locks = ListingLockManager()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert not locks.is_locked("a")

    @pytest.mark.asyncio
    async def test_partial_acquisition_rolled_back(self) -> None:
        locks = ListingLockManager(poll_interval=0.01)
        await locks.acquire("b")
        with pytest.raises(LockTimeout):
            async with locks.hold("a", "b", timeout=0.05):
                pass
        assert not locks.is_locked("a")
        assert locks.is_locked("b")

    @pytest.mark.asyncio
    async def test_opposite_order_does_not_deadlock(self) -> None:
        locks = ListingLockManager(poll_interval=0.001, timeout=2.0)

        async def op(first: str, second: str) -> None:
            async with locks.hold(first, second):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(op("left", "right"), op("right", "left")), timeout=2.0
        )
        assert locks.held == {}


class TestSweep:
    def test_stale_after_defaults_to_20x_sweep_interval(self) -> None:
        locks = ListingLockManager(sweep_interval=3.0)
        assert locks.stale_after == 60.0

    @pytest.mark.asyncio
    async def test_reclaims_only_stale_locks(self) -> None:
        clock = FakeClock()
        locks = ListingLockManager(sweep_interval=1.0, clock=clock)
        await locks.acquire("old")
        clock.now += 15.0
        await locks.acquire("young")
        clock.now += 6.0  # "old" is 21s old, "young" 6s

        reclaimed = locks.sweep()

        assert reclaimed == ["old"]
        assert not locks.is_locked("old")
        assert locks.is_locked("young")

    @pytest.mark.asyncio
    async def test_reclaimed_lock_can_be_acquired(self) -> None:
        clock = FakeClock()
        locks = ListingLockManager(stale_after=5.0, clock=clock)
        await locks.acquire("k")
        clock.now += 10.0
        locks.sweep()
        await locks.acquire("k", timeout=0.05)
        assert locks.is_locked("k")

    @pytest.mark.asyncio
    async def test_background_sweep(self) -> None:
        clock = FakeClock()
        locks = ListingLockManager(sweep_interval=0.01, stale_after=1.0, clock=clock)
        await locks.acquire("k")
        clock.now += 5.0

        locks.start()
        try:
            for _ in range(100):
                if not locks.is_locked("k"):
                    break
                await asyncio.sleep(0.01)
        finally:
            await locks.stop()

        assert not locks.is_locked("k")
