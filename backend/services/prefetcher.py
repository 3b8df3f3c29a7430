"""
Background warm-up of tracks a listener is likely to play next.

When a playlist is opened the first few tracks are generated; when a track
starts, the next few follow. Batches run one track at a time so warm-up
never takes more than one admission slot per batch.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from core.config import AUTO_PRELOAD_COUNT, LOOKAHEAD_COUNT
from services import database
from services.music_api import Track, pick_cover_url
from services.segments import SegmentService, segment_service

logger = logging.getLogger(__name__)


class PrefetchScheduler:
    """
    Starts warm-up batches keyed so the same batch never runs twice at once.

    Spawned tasks are kept so shutdown can cancel them.
    """

    def __init__(
        self,
        service: SegmentService = segment_service,
        auto_count: int = AUTO_PRELOAD_COUNT,
        lookahead: int = LOOKAHEAD_COUNT,
    ):
        self.service = service
        self.auto_count = auto_count
        self.lookahead = lookahead
        self._active: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn(self, key: str, tracks: List[Track], credential: str, cover_url: Optional[str]) -> Optional[asyncio.Task]:
        if not tracks:
            return None
        running = self._active.get(key)
        if running is not None and not running.done():
            return None
        task = self._track(self._run_batch(key, tracks, credential, cover_url))
        self._active[key] = task
        return task

    async def _run_batch(self, key: str, tracks: List[Track], credential: str, cover_url: Optional[str]) -> None:
        store = self.service.store
        registry = self.service.registry
        try:
            logger.info(f"Prefetch {key}: {len(tracks)} tracks")
            for track in tracks:
                if store.is_valid(track.id) or registry.is_in_flight(track.id):
                    continue
                try:
                    await self.service.ensure_track(
                        track.id,
                        credential,
                        pick_cover_url(track, cover_url),
                        duration_hint=track.duration or None,
                    )
                    logger.info(f"Prefetch {key}: {track.id} ready")
                except Exception as e:
                    logger.warning(f"Prefetch {key}: {track.id} failed: {e}")
        finally:
            self._active.pop(key, None)

    def warm_playlist(self, playlist_id: str, tracks: List[Track], credential: str, cover_url: Optional[str]) -> Optional[asyncio.Task]:
        """Generate the first tracks of a freshly opened playlist."""
        if not tracks or self.auto_count <= 0:
            return None
        key = f"{playlist_id}_{tracks[0].id}"
        return self._spawn(key, tracks[:self.auto_count], credential, cover_url)

    def warm_next(
        self,
        playlist_id: str,
        current_track_id: str,
        tracks: List[Track],
        credential: str,
        cover_url: Optional[str],
    ) -> Optional[asyncio.Task]:
        """Generate the tracks following current_track_id."""
        if self.lookahead <= 0:
            return None
        position = next((i for i, t in enumerate(tracks) if t.id == current_track_id), -1)
        if position < 0:
            return None
        following = tracks[position + 1:position + 1 + self.lookahead]
        return self._spawn(f"next_{current_track_id}", following, credential, cover_url)

    def schedule_lookahead(self, playlist_id: str, current_track_id: str, credential: str) -> asyncio.Task:
        """Look the playlist up in the metadata cache, then warm_next in the background."""
        return self._track(self._lookahead_from_cache(playlist_id, current_track_id, credential))

    async def _lookahead_from_cache(self, playlist_id: str, current_track_id: str, credential: str) -> None:
        try:
            playlist = await database.get_cached_playlist(playlist_id)
        except Exception as e:
            logger.warning(f"Look-ahead skipped for {playlist_id}: {e}")
            return
        if playlist is None:
            return
        self.warm_next(playlist_id, current_track_id, playlist.tracks, credential, playlist.cover)

    def cleanup(self) -> int:
        """Forget keys whose batch task already finished. Returns keys dropped."""
        finished = [key for key, task in self._active.items() if task.done()]
        for key in finished:
            del self._active[key]
        if finished:
            logger.info(f"Dropped {len(finished)} finished prefetch keys")
        return len(finished)

    def get_stats(self) -> dict:
        return {
            "active_batches": len(self._active),
            "tasks": len(self._tasks),
        }

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._active.clear()


# Global scheduler instance
prefetcher = PrefetchScheduler()
