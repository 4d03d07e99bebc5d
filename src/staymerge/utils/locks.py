"""Per-listing mutual exclusion for store mutations.

All mutations of a listing's ``metadata.json`` go through a lock keyed by the
listing id (or, while a listing is being created, by its normalized source
URL). Locks live in memory only; a periodic sweep reclaims locks orphaned by
a crashed request.
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Final

from staymerge.errors import LockTimeout
from staymerge.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT: Final = 10.0
DEFAULT_POLL_INTERVAL: Final = 0.05
DEFAULT_SWEEP_INTERVAL: Final = 30.0
STALE_MULTIPLIER: Final = 20


class ListingLockManager:
    """Map of lock key -> acquisition time, with polling acquire and stale sweep."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stale_after: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the lock manager.

        Args:
            timeout: Default seconds ``acquire`` waits before raising LockTimeout.
            poll_interval: Seconds slept between acquisition attempts.
            sweep_interval: Seconds between stale-lock sweeps.
            stale_after: Lock age that counts as orphaned. Defaults to
                20x the sweep interval.
            clock: Source of acquisition timestamps. Injected so tests can
                age locks without sleeping.
        """
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.stale_after = (
            stale_after if stale_after is not None else sweep_interval * STALE_MULTIPLIER
        )
        self._clock = clock
        self._locks: dict[str, float] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    @property
    def held(self) -> dict[str, float]:
        """Snapshot of held locks and their acquisition times."""
        return dict(self._locks)

    def try_acquire(self, key: str) -> bool:
        """Register the lock if free. Never suspends, so check-and-set is atomic."""
        if key in self._locks:
            return False
        self._locks[key] = self._clock()
        return True

    async def acquire(self, key: str, timeout: float | None = None) -> None:
        """Wait until ``key`` is free, then take it.

        Args:
            key: Listing id or identity key.
            timeout: Seconds to wait; defaults to the manager's timeout.

        Raises:
            LockTimeout: If the lock is still held after ``timeout`` seconds.
        """
        wait = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait

        while not self.try_acquire(key):
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("lock_timeout", key=key, timeout=wait)
                raise LockTimeout(key, wait)
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.debug("lock_acquired", key=key)

    def release(self, key: str) -> None:
        """Clear the lock for ``key``, held or not."""
        if self._locks.pop(key, None) is not None:
            logger.debug("lock_released", key=key)

    @asynccontextmanager
    async def hold(self, *keys: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold several locks for the duration of a block.

        Keys are taken in sorted order so two operations on overlapping
        listings cannot deadlock. Locks already taken are released if a
        later one times out.
        """
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                await self.acquire(key, timeout=timeout)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self.release(key)

    def sweep(self) -> list[str]:
        """Drop locks held longer than ``stale_after``. Returns reclaimed keys."""
        now = self._clock()
        stale = [key for key, since in self._locks.items() if now - since > self.stale_after]
        for key in stale:
            age = now - self._locks.pop(key)
            logger.warning("stale_lock_reclaimed", key=key, age_seconds=round(age, 1))
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "lock_sweep_started",
                interval=self.sweep_interval,
                stale_after=self.stale_after,
            )

    async def stop(self) -> None:
        """Cancel the background sweep."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
