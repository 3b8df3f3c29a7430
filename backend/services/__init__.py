"""
Services module exports.
"""
from services.admission import JobAdmission, job_admission
from services.inflight import InFlightRegistry, in_flight
from services.cache import (
    CacheEntry,
    SegmentCacheStore,
    segment_cache,
    cache_cleanup_task,
    temp_cleanup_task,
)
from services.fetcher import DownloadFetcher, check_download_url, fetcher
from services.transcoder import TranscodeWorker, run_encoder, transcoder
from services.playlist import build_playlist_manifest, estimate_segment_durations
from services.segments import SegmentService, segment_service
from services.prefetcher import PrefetchScheduler, prefetcher

__all__ = [
    "JobAdmission",
    "job_admission",
    "InFlightRegistry",
    "in_flight",
    "CacheEntry",
    "SegmentCacheStore",
    "segment_cache",
    "cache_cleanup_task",
    "temp_cleanup_task",
    "DownloadFetcher",
    "check_download_url",
    "fetcher",
    "TranscodeWorker",
    "run_encoder",
    "transcoder",
    "build_playlist_manifest",
    "estimate_segment_durations",
    "SegmentService",
    "segment_service",
    "PrefetchScheduler",
    "prefetcher",
]
