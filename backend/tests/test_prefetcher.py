"""
Tests for background warm-up scheduling.
"""
import asyncio
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services import database
from services.inflight import InFlightRegistry
from services.music_api import Playlist, Track
from services.prefetcher import PrefetchScheduler


class FakeStore:
    def __init__(self, valid=()):
        self.valid = set(valid)

    def is_valid(self, track_id):
        return track_id in self.valid


class FakeService:
    """Records ensure_track calls instead of generating."""

    def __init__(self, valid=(), fail=()):
        self.store = FakeStore(valid)
        self.registry = InFlightRegistry()
        self.fail = set(fail)
        self.calls = []
        self.release = None

    async def ensure_track(self, track_id, credential, cover_url, duration_hint=None):
        self.calls.append((track_id, cover_url))
        if self.release is not None:
            await self.release.wait()
        if track_id in self.fail:
            raise RuntimeError("boom")
        self.store.valid.add(track_id)


def tracks(*ids):
    return [Track(id=i) for i in ids]


class TestPrefetchScheduler:
    """Test batch selection and de-duplication."""

    @pytest.mark.asyncio
    async def test_warm_playlist_first_tracks(self):
        service = FakeService()
        scheduler = PrefetchScheduler(service, auto_count=1, lookahead=2)

        task = scheduler.warm_playlist("10", tracks("1", "2", "3"), "cookie", "https://p1.music.126.net/c.jpg")
        await task

        assert [c[0] for c in service.calls] == ["1"]
        assert service.calls[0][1].startswith("https://p1.music.126.net/c.jpg")

    @pytest.mark.asyncio
    async def test_same_batch_not_started_twice(self):
        service = FakeService()
        service.release = asyncio.Event()
        scheduler = PrefetchScheduler(service, auto_count=1)

        first = scheduler.warm_playlist("10", tracks("1", "2"), "", None)
        second = scheduler.warm_playlist("10", tracks("1", "2"), "", None)
        assert first is not None
        assert second is None

        service.release.set()
        await first
        assert scheduler.get_stats()["active_batches"] == 0

    @pytest.mark.asyncio
    async def test_warm_next_following_tracks(self):
        service = FakeService()
        scheduler = PrefetchScheduler(service, auto_count=1, lookahead=2)

        await scheduler.warm_next("10", "2", tracks("1", "2", "3", "4", "5"), "", None)

        assert [c[0] for c in service.calls] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_warm_next_unknown_track(self):
        scheduler = PrefetchScheduler(FakeService(), lookahead=2)
        assert scheduler.warm_next("10", "99", tracks("1", "2"), "", None) is None

    @pytest.mark.asyncio
    async def test_skips_cached_and_in_flight(self):
        service = FakeService(valid=["3"])
        service.registry.begin_or_join("4")
        scheduler = PrefetchScheduler(service, lookahead=3)

        await scheduler.warm_next("10", "2", tracks("1", "2", "3", "4", "5"), "", None)

        assert [c[0] for c in service.calls] == ["5"]

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_batch(self):
        service = FakeService(fail=["3"])
        scheduler = PrefetchScheduler(service, lookahead=2)

        await scheduler.warm_next("10", "2", tracks("1", "2", "3", "4"), "", None)

        assert [c[0] for c in service.calls] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_lookahead_from_cached_playlist(self, monkeypatch):
        async def fake_cached(playlist_id):
            return Playlist(id=playlist_id, cover=None, tracks=tracks("1", "2", "3"))

        monkeypatch.setattr(database, "get_cached_playlist", fake_cached)
        service = FakeService()
        scheduler = PrefetchScheduler(service, lookahead=2)

        await scheduler.schedule_lookahead("10", "1", "")
        await asyncio.gather(*list(scheduler._tasks))

        assert [c[0] for c in service.calls] == ["2", "3"]

    @pytest.mark.asyncio
    async def test_cleanup_and_cancel(self):
        service = FakeService()
        service.release = asyncio.Event()
        scheduler = PrefetchScheduler(service, auto_count=1)

        finished = asyncio.create_task(asyncio.sleep(0))
        await finished
        scheduler._active["stale"] = finished
        assert scheduler.cleanup() == 1
        assert scheduler.cleanup() == 0

        task = scheduler.warm_playlist("10", tracks("1"), "", None)
        await asyncio.sleep(0)
        await scheduler.cancel_all()
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_cleanup_keeps_running_batches(self):
        """Housekeeping never lets a running batch be started a second time."""
        service = FakeService()
        service.release = asyncio.Event()
        scheduler = PrefetchScheduler(service, auto_count=1)

        running = [scheduler.warm_playlist(str(i), tracks(str(i)), "", None) for i in range(101)]
        await asyncio.sleep(0)

        assert scheduler.cleanup() == 0
        assert scheduler.warm_playlist("0", tracks("0"), "", None) is None
        assert scheduler.get_stats()["active_batches"] == 101

        service.release.set()
        await asyncio.gather(*running)
        assert scheduler.get_stats()["active_batches"] == 0
