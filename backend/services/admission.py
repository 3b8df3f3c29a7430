"""
Global admission control for encoder jobs.

At most max_concurrent jobs run at once; up to max_queue more wait in FIFO
order and anything beyond that is rejected so the caller can answer 503.
"""
import asyncio
import logging
from collections import deque
from typing import Deque

from core.config import MAX_CONCURRENT_JOBS, MAX_QUEUE_SIZE

logger = logging.getLogger(__name__)


class JobAdmission:
    """Counting semaphore with a bounded FIFO wait queue."""

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_JOBS, max_queue: int = MAX_QUEUE_SIZE):
        self.max_concurrent = max_concurrent
        self.max_queue = max_queue
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> bool:
        """
        Take a job slot.

        Returns True once a slot is held, False if the queue is full. A
        caller cancelled while waiting never ends up holding a slot.
        """
        if self._running < self.max_concurrent:
            self._running += 1
            return True

        if self.waiting >= self.max_queue:
            logger.warning(
                f"Admission rejected: running={self._running} waiting={self.waiting} "
                f"max={self.max_concurrent}"
            )
            return False

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug(f"Job queued, waiting={self.waiting}")

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before the cancel landed
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

        return True

    def release(self) -> None:
        """Give the slot to the oldest live waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot transfers directly, running stays the same
                waiter.set_result(True)
                return

        if self._running > 0:
            self._running -= 1

    def stats(self) -> dict:
        return {
            "running": self._running,
            "waiting": self.waiting,
            "max_concurrent": self.max_concurrent,
            "max_queue": self.max_queue,
        }


# Global admission controller
job_admission = JobAdmission()
