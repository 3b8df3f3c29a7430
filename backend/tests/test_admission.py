"""
Tests for job admission control.
"""
import asyncio
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.admission import JobAdmission


class TestJobAdmission:
    """Test the bounded FIFO semaphore."""

    @pytest.mark.asyncio
    async def test_immediate_slots(self):
        admission = JobAdmission(max_concurrent=2, max_queue=10)
        assert await admission.acquire()
        assert await admission.acquire()
        assert admission.running == 2
        assert admission.waiting == 0

    @pytest.mark.asyncio
    async def test_rejects_when_queue_full(self):
        """With two jobs running and no queue, a third is rejected."""
        admission = JobAdmission(max_concurrent=2, max_queue=0)
        assert await admission.acquire()
        assert await admission.acquire()
        assert await admission.acquire() is False
        assert admission.running == 2

    @pytest.mark.asyncio
    async def test_waiters_served_fifo(self):
        """Released slots go to waiters in arrival order."""
        admission = JobAdmission(max_concurrent=1, max_queue=5)
        await admission.acquire()
        order = []

        async def worker(name):
            await admission.acquire()
            order.append(name)

        first = asyncio.create_task(worker("first"))
        await asyncio.sleep(0)
        second = asyncio.create_task(worker("second"))
        await asyncio.sleep(0)
        assert admission.waiting == 2

        admission.release()
        await asyncio.sleep(0)
        admission.release()
        await asyncio.gather(first, second)

        assert order == ["first", "second"]
        assert admission.running == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_removed(self):
        """A waiter cancelled in the queue frees its place."""
        admission = JobAdmission(max_concurrent=1, max_queue=1)
        await admission.acquire()

        waiter = asyncio.create_task(admission.acquire())
        await asyncio.sleep(0)
        assert admission.waiting == 1

        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        assert admission.waiting == 0

        admission.release()
        assert admission.running == 0

    @pytest.mark.asyncio
    async def test_cancel_after_handoff_returns_slot(self):
        """A slot handed to a waiter that is then cancelled is given back."""
        admission = JobAdmission(max_concurrent=1, max_queue=1)
        await admission.acquire()

        waiter = asyncio.create_task(admission.acquire())
        await asyncio.sleep(0)

        admission.release()
        waiter.cancel()
        results = await asyncio.gather(waiter, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        assert admission.running == 0

    def test_stats(self):
        admission = JobAdmission(max_concurrent=3, max_queue=7)
        assert admission.stats() == {
            "running": 0,
            "waiting": 0,
            "max_concurrent": 3,
            "max_queue": 7,
        }
