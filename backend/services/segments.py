"""
Segment generation on a cache miss.

Joins or starts the single in-flight job for a track. The job resolves the
audio URL, waits for an admission slot, then runs the transcode worker.
"""
import logging
from typing import Optional

from core.exceptions import QueueFullError, TrackUnavailableError
from services.admission import JobAdmission, job_admission
from services.cache import CacheEntry, SegmentCacheStore, segment_cache
from services.inflight import InFlightRegistry, in_flight
from services.music_api import MusicApiClient, Track, music_api, pick_cover_url
from services.transcoder import TranscodeWorker, transcoder

logger = logging.getLogger(__name__)


class SegmentService:
    """Glue between the cache store and the generation pipeline."""

    def __init__(
        self,
        store: SegmentCacheStore = segment_cache,
        registry: InFlightRegistry = in_flight,
        admission: JobAdmission = job_admission,
        worker: TranscodeWorker = transcoder,
        api: MusicApiClient = music_api,
    ):
        self.store = store
        self.registry = registry
        self.admission = admission
        self.worker = worker
        self.api = api

    async def ensure_track(
        self,
        track_id: str,
        credential: str,
        cover_url: str,
        duration_hint: Optional[float] = None,
    ) -> CacheEntry:
        """
        Valid cache entry for track_id, generating it if needed.

        Raises TrackUnavailableError, QueueFullError, UpstreamError,
        DownloadError or TranscodeError. Concurrent callers share one job.
        """
        entry = self.store.get_valid_entry(track_id)
        if entry is not None:
            return entry

        async def job():
            return await self._generate(track_id, credential, cover_url, duration_hint)

        return await self.registry.run(track_id, job)

    async def _generate(
        self,
        track_id: str,
        credential: str,
        cover_url: str,
        duration_hint: Optional[float],
    ) -> CacheEntry:
        # A job that finished between our check and registration already published
        entry = self.store.get_valid_entry(track_id)
        if entry is not None:
            return entry

        audio_url = await self.api.get_track_audio_url(track_id, credential)
        if not audio_url:
            raise TrackUnavailableError(f"No audio URL for track {track_id}")

        if not await self.admission.acquire():
            raise QueueFullError(
                running=self.admission.running,
                waiting=self.admission.waiting,
                max_concurrent=self.admission.max_concurrent,
            )

        logger.info(
            f"[{track_id}] Generation started (running={self.admission.running}, "
            f"waiting={self.admission.waiting})"
        )
        try:
            entry = await self.worker.generate(track_id, audio_url, cover_url, duration_hint=duration_hint)
        except Exception as e:
            logger.error(f"[{track_id}] Generation failed: {e}")
            raise
        finally:
            self.admission.release()

        self.store.schedule_sweep("after-generate")
        return entry

    async def get_segment_path(
        self,
        track_id: str,
        index: int,
        credential: str,
        cover_url: str,
        duration_hint: Optional[float] = None,
    ) -> Optional[str]:
        """Path of segment index, or None when the track has fewer segments."""
        entry = await self.ensure_track(track_id, credential, cover_url, duration_hint=duration_hint)
        if index >= entry.segment_count:
            return None
        return self.store.segment_path(track_id, index)

    async def preload_track(self, track: Track, credential: str, playlist_cover: Optional[str] = None) -> dict:
        """Generate one track if needed and report what happened."""
        result = {"id": track.id, "name": track.name}
        entry = self.store.get_valid_entry(track.id)
        if entry is not None:
            return dict(result, status="cached", segments=entry.segment_count)
        try:
            entry = await self.ensure_track(
                track.id, credential, pick_cover_url(track, playlist_cover), duration_hint=track.duration or None
            )
            return dict(result, status="generated", segments=entry.segment_count)
        except TrackUnavailableError:
            return dict(result, status="no_url")
        except Exception as e:
            logger.warning(f"[{track.id}] Preload failed: {e}")
            return dict(result, status="error", error=str(e))


# Global service instance
segment_service = SegmentService()
