"""
Tests for in-flight job de-duplication.
"""
import asyncio
import os
import sys
import time

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.inflight import InFlightRegistry


class TestInFlightRegistry:
    """Test that concurrent callers share one job."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_result(self):
        registry = InFlightRegistry()
        calls = []

        async def job():
            calls.append(1)
            await asyncio.sleep(0.05)
            return "entry"

        results = await asyncio.gather(*[registry.run("42", job) for _ in range(5)])

        assert results == ["entry"] * 5
        assert len(calls) == 1
        assert not registry.is_in_flight("42")

    @pytest.mark.asyncio
    async def test_failure_reaches_every_caller(self):
        registry = InFlightRegistry()

        async def job():
            await asyncio.sleep(0.01)
            raise RuntimeError("encoder exploded")

        results = await asyncio.gather(
            registry.run("7", job), registry.run("7", job), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert str(results[0]) == "encoder exploded"
        assert not registry.is_in_flight("7")

    @pytest.mark.asyncio
    async def test_job_outlives_cancelled_caller(self):
        """Cancelling the caller that started the job does not stop it."""
        registry = InFlightRegistry()
        finished = []

        async def job():
            await asyncio.sleep(0.05)
            finished.append(True)
            return "done"

        owner = asyncio.create_task(registry.run("9", job))
        await asyncio.sleep(0)
        owner.cancel()
        await asyncio.gather(owner, return_exceptions=True)

        assert registry.is_in_flight("9")
        assert await registry.run("9", job) == "done"
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_begin_or_join(self):
        registry = InFlightRegistry()
        is_owner, job = registry.begin_or_join("1")
        joined_owner, joined = registry.begin_or_join("1")

        assert is_owner is True
        assert joined_owner is False
        assert joined is job
        assert [j.track_id for j in registry.active()] == ["1"]

    @pytest.mark.asyncio
    async def test_purge_stale_only_settled(self):
        """Old but unfinished jobs stay; old settled leftovers go."""
        registry = InFlightRegistry()
        _, settled = registry.begin_or_join("1")
        _, running = registry.begin_or_join("2")
        settled.future.set_result("x")
        settled.started_at = time.time() - 7200
        running.started_at = time.time() - 7200

        assert registry.purge_stale(3600) == 1
        assert not registry.is_in_flight("1")
        assert registry.is_in_flight("2")

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        registry = InFlightRegistry()

        async def job():
            await asyncio.sleep(10)

        caller = asyncio.create_task(registry.run("5", job))
        await asyncio.sleep(0)
        await registry.cancel_all()

        assert registry.active() == []
        with pytest.raises(asyncio.CancelledError):
            await caller

    @pytest.mark.asyncio
    async def test_cancel_all_releases_owner_and_joiners(self):
        """Shutdown before the job ever ran still wakes everyone waiting on it."""
        registry = InFlightRegistry()

        async def job():
            await asyncio.sleep(10)

        owner = asyncio.create_task(registry.run("5", job))
        joiner = asyncio.create_task(registry.run("5", job))
        await asyncio.sleep(0)
        await registry.cancel_all()

        done, pending = await asyncio.wait({owner, joiner}, timeout=2)
        assert pending == set()
        assert all(task.cancelled() for task in done)
        assert not registry.is_in_flight("5")

    @pytest.mark.asyncio
    async def test_driver_cancelled_before_start_settles_job(self):
        registry = InFlightRegistry()

        async def job():
            return "never"

        caller = asyncio.create_task(registry.run("6", job))
        await asyncio.sleep(0)
        registry.active()[0].task.cancel()

        done, _ = await asyncio.wait({caller}, timeout=2)
        assert caller in done
        assert caller.cancelled()
        assert not registry.is_in_flight("6")
