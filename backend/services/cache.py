"""
Disk-backed segment cache.

Each track lives in {CACHE_DIR}/{track_id}/ as seg_0000.ts ... plus an
info.json manifest. The manifest is written last, so a directory without a
readable manifest is simply a cache miss. Eviction works on whole
directories and never touches a track that is being generated.
"""
import os
import time
import shutil
import asyncio
import logging
import random
from collections import OrderedDict
from typing import Callable, List, Optional

import pydantic

from core.config import (
    CACHE_DIR,
    TEMP_DIR,
    CACHE_MAX_SIZE_BYTES,
    CACHE_MAX_AGE_SECONDS,
    CACHE_CLEANUP_INTERVAL_SECONDS,
    CACHE_CLEANUP_TARGET_RATIO,
    CACHE_SWEEP_DEBOUNCE_SECONDS,
    CACHE_VERSION,
    COVER_WIDTH,
    COVER_HEIGHT,
    MIN_SEGMENT_BYTES,
    SEGMENT_INFO_MAX,
    SEGMENT_INFO_EVICT_RATIO,
    TEMP_CLEANUP_INTERVAL_SECONDS,
    TEMP_FILE_MAX_AGE_SECONDS,
)
from services.inflight import in_flight

logger = logging.getLogger(__name__)

MANIFEST_NAME = "info.json"
TRASH_PREFIX = ".trash-"


class CacheEntry(pydantic.BaseModel):
    """Contents of a track's info.json."""
    version: int
    track_id: str
    segment_count: int
    segment_durations: List[float]
    total_duration: float
    width: int
    height: int
    created_at: float


def segment_file_name(index: int) -> str:
    return f"seg_{index:04d}.ts"


def _dir_size(path: str) -> int:
    total = 0
    try:
        with os.scandir(path) as it:
            for entry in it:
                try:
                    if entry.is_file(follow_symlinks=False):
                        total += entry.stat().st_size
                except OSError:
                    continue
    except OSError:
        pass
    return total


class SegmentCacheStore:
    """
    Owns the cache directory: validity checks, publishing, eviction.

    is_locked reports whether a track is being generated right now; locked
    tracks are invisible to eviction and purge.
    """

    def __init__(
        self,
        cache_dir: str = CACHE_DIR,
        temp_dir: str = TEMP_DIR,
        max_size: int = CACHE_MAX_SIZE_BYTES,
        max_age: float = CACHE_MAX_AGE_SECONDS,
        target_ratio: float = CACHE_CLEANUP_TARGET_RATIO,
        width: int = COVER_WIDTH,
        height: int = COVER_HEIGHT,
        version: int = CACHE_VERSION,
        is_locked: Optional[Callable[[str], bool]] = None,
        memory_max: int = SEGMENT_INFO_MAX,
    ):
        self.cache_dir = cache_dir
        self.temp_dir = temp_dir
        self.max_size = max_size
        self.max_age = max_age
        self.target_ratio = target_ratio
        self.width = width
        self.height = height
        self.version = version
        self.is_locked = is_locked or (lambda track_id: False)
        self.memory_max = memory_max
        # track_id -> CacheEntry, oldest first
        self._manifests: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweeping = False
        self._scheduled: Optional[asyncio.Task] = None
        os.makedirs(self.cache_dir, exist_ok=True)
        os.makedirs(self.temp_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def track_dir(self, track_id: str) -> str:
        return os.path.join(self.cache_dir, track_id)

    def manifest_path(self, track_id: str) -> str:
        return os.path.join(self.track_dir(track_id), MANIFEST_NAME)

    def segment_path(self, track_id: str, index: int) -> str:
        return os.path.join(self.track_dir(track_id), segment_file_name(index))

    # ------------------------------------------------------------------
    # Manifest memory cache
    # ------------------------------------------------------------------

    def _remember(self, track_id: str, entry: CacheEntry) -> None:
        self._manifests.pop(track_id, None)
        self._manifests[track_id] = entry
        self.trim_memory()

    def forget(self, track_id: str) -> None:
        self._manifests.pop(track_id, None)

    def trim_memory(self) -> int:
        """Evict the oldest share of remembered manifests once over the cap."""
        if len(self._manifests) <= self.memory_max:
            return 0
        evict = max(1, int(self.memory_max * SEGMENT_INFO_EVICT_RATIO))
        for _ in range(min(evict, len(self._manifests))):
            self._manifests.popitem(last=False)
        logger.debug(f"Evicted {evict} manifests from memory, {len(self._manifests)} left")
        return evict

    def _load_manifest(self, track_id: str) -> Optional[CacheEntry]:
        try:
            with open(self.manifest_path(track_id), "r", encoding="utf-8") as f:
                return CacheEntry.model_validate_json(f.read())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"[{track_id}] Unreadable cache manifest: {e}")
            return None

    def read_manifest(self, track_id: str) -> Optional[CacheEntry]:
        """Manifest from memory or disk; None when absent or corrupt."""
        entry = self._manifests.get(track_id)
        if entry is not None:
            return entry
        entry = self._load_manifest(track_id)
        if entry is not None:
            self._remember(track_id, entry)
        return entry

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def _entry_is_valid(self, track_id: str, entry: CacheEntry) -> bool:
        if entry.version != self.version:
            return False
        if entry.width != self.width or entry.height != self.height:
            return False
        if time.time() - entry.created_at > self.max_age:
            return False
        if entry.segment_count <= 0 or entry.segment_count != len(entry.segment_durations):
            return False
        for index in range(entry.segment_count):
            try:
                if os.path.getsize(self.segment_path(track_id, index)) <= MIN_SEGMENT_BYTES:
                    return False
            except OSError:
                return False
        return True

    def get_valid_entry(self, track_id: str) -> Optional[CacheEntry]:
        entry = self.read_manifest(track_id)
        if entry is None:
            return None
        if not self._entry_is_valid(track_id, entry):
            self.forget(track_id)
            return None
        return entry

    def is_valid(self, track_id: str) -> bool:
        return self.get_valid_entry(track_id) is not None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _publish_files(self, track_id: str, segment_files: List[str], entry: CacheEntry) -> None:
        track_dir = self.track_dir(track_id)
        os.makedirs(track_dir, exist_ok=True)

        # Invalidate first so readers never pair an old manifest with new segments
        try:
            os.remove(self.manifest_path(track_id))
        except FileNotFoundError:
            pass

        for index, source in enumerate(segment_files):
            os.replace(source, self.segment_path(track_id, index))

        # Leftovers from a longer previous generation
        index = len(segment_files)
        while os.path.exists(self.segment_path(track_id, index)):
            os.remove(self.segment_path(track_id, index))
            index += 1

        tmp_path = self.manifest_path(track_id) + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(entry.model_dump_json())
        os.replace(tmp_path, self.manifest_path(track_id))

    async def publish(self, track_id: str, segment_files: List[str], durations: List[float]) -> CacheEntry:
        """
        Move finished segments into the track directory and write the
        manifest. Returns the new entry.
        """
        if not segment_files or len(segment_files) != len(durations):
            raise ValueError(f"Segment/duration mismatch: {len(segment_files)} vs {len(durations)}")

        entry = CacheEntry(
            version=self.version,
            track_id=track_id,
            segment_count=len(segment_files),
            segment_durations=durations,
            total_duration=round(sum(durations), 3),
            width=self.width,
            height=self.height,
            created_at=time.time(),
        )
        self.forget(track_id)
        await asyncio.to_thread(self._publish_files, track_id, segment_files, entry)
        self._remember(track_id, entry)
        logger.info(f"[{track_id}] Cached {entry.segment_count} segments ({entry.total_duration:.1f}s)")
        return entry

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _scan(self) -> List[dict]:
        """List track directories with size and age. Runs in a worker thread."""
        entries = []
        try:
            names = os.listdir(self.cache_dir)
        except OSError as e:
            logger.error(f"Failed to list cache dir: {e}")
            return entries

        for name in names:
            path = os.path.join(self.cache_dir, name)
            if name.startswith(TRASH_PREFIX):
                # Left behind by an interrupted delete
                shutil.rmtree(path, ignore_errors=True)
                continue
            if name.startswith(".") or not os.path.isdir(path):
                continue

            manifest = self._load_manifest(name)
            if manifest is not None:
                created_at = manifest.created_at
                segments = manifest.segment_count
            else:
                try:
                    created_at = os.path.getmtime(path)
                except OSError:
                    continue
                segments = 0

            entries.append({
                "track_id": name,
                "path": path,
                "size": _dir_size(path),
                "created_at": created_at,
                "segments": segments,
            })
        return entries

    async def _delete_track(self, track_id: str) -> bool:
        """Remove a whole track directory unless it is being generated."""
        if self.is_locked(track_id):
            return False

        path = self.track_dir(track_id)
        trash = os.path.join(
            self.cache_dir,
            f"{TRASH_PREFIX}{track_id}-{int(time.time() * 1000)}-{random.randint(0, 9999)}",
        )
        self.forget(track_id)
        try:
            os.rename(path, trash)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"[{track_id}] Failed to move cache dir aside: {e}")
            return False

        await asyncio.to_thread(shutil.rmtree, trash, True)
        return True

    async def sweep(self, reason: str = "interval") -> Optional[dict]:
        """
        Enforce max age and max size. Returns a summary, or None when another
        sweep is already running.
        """
        if self._sweeping:
            logger.debug(f"Sweep ({reason}) skipped, already running")
            return None
        self._sweeping = True
        try:
            entries = await asyncio.to_thread(self._scan)
            entries = [e for e in entries if not self.is_locked(e["track_id"])]

            now = time.time()
            deleted = 0
            freed = 0
            kept = []

            for entry in entries:
                if now - entry["created_at"] > self.max_age:
                    if await self._delete_track(entry["track_id"]):
                        deleted += 1
                        freed += entry["size"]
                        logger.info(f"[{entry['track_id']}] Removed expired cache entry")
                        continue
                kept.append(entry)

            total = sum(e["size"] for e in kept)
            if total > self.max_size:
                target = self.max_size * self.target_ratio
                kept.sort(key=lambda e: e["created_at"])
                for entry in kept:
                    if total <= target:
                        break
                    if await self._delete_track(entry["track_id"]):
                        deleted += 1
                        freed += entry["size"]
                        total -= entry["size"]
                        logger.info(f"[{entry['track_id']}] Evicted cache entry ({entry['size'] / 1024 / 1024:.1f} MB)")

            if deleted:
                logger.info(
                    f"Cache sweep ({reason}) removed {deleted} tracks, freed {freed / 1024 / 1024:.2f} MB, "
                    f"now {total / 1024 / 1024:.2f} MB"
                )
            return {"deleted": deleted, "freed_bytes": freed, "total_bytes": total}
        finally:
            self._sweeping = False

    def schedule_sweep(self, reason: str, delay: float = CACHE_SWEEP_DEBOUNCE_SECONDS) -> None:
        """Run a sweep after delay seconds; calls while one is pending are folded into it."""
        if self._scheduled is not None and not self._scheduled.done():
            return
        self._scheduled = asyncio.create_task(self._delayed_sweep(reason, delay))

    async def _delayed_sweep(self, reason: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.sweep(reason)
        except Exception as e:
            logger.error(f"Cache sweep ({reason}) failed: {e}")

    async def cancel_scheduled(self) -> None:
        if self._scheduled is not None and not self._scheduled.done():
            self._scheduled.cancel()
            await asyncio.gather(self._scheduled, return_exceptions=True)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def purge(self) -> dict:
        """Delete every track that is not being generated."""
        entries = await asyncio.to_thread(self._scan)
        deleted = 0
        skipped = 0
        freed = 0
        for entry in entries:
            if await self._delete_track(entry["track_id"]):
                deleted += 1
                freed += entry["size"]
            else:
                skipped += 1
        self._manifests.clear()
        logger.info(f"Cache purged: {deleted} tracks removed, {skipped} in flight kept")
        return {"deleted": deleted, "skipped_in_flight": skipped, "freed_bytes": freed}

    async def status(self, limit: int = 50) -> dict:
        entries = await asyncio.to_thread(self._scan)
        now = time.time()
        total = sum(e["size"] for e in entries)
        entries.sort(key=lambda e: e["created_at"], reverse=True)
        return {
            "total_bytes": total,
            "total_mb": round(total / 1024 / 1024, 2),
            "max_bytes": self.max_size,
            "usage_percent": round(total / self.max_size * 100, 1) if self.max_size else 0,
            "max_age_hours": round(self.max_age / 3600, 2),
            "track_count": len(entries),
            "memory_manifests": len(self._manifests),
            "tracks": [
                {
                    "track_id": e["track_id"],
                    "size_mb": round(e["size"] / 1024 / 1024, 2),
                    "age_minutes": round((now - e["created_at"]) / 60, 1),
                    "segments": e["segments"],
                    "in_flight": self.is_locked(e["track_id"]),
                }
                for e in entries[:limit]
            ],
        }

    def _cleanup_temp_files(self, max_age: float) -> int:
        removed = 0
        now = time.time()
        try:
            names = os.listdir(self.temp_dir)
        except OSError:
            return 0
        for name in names:
            path = os.path.join(self.temp_dir, name)
            try:
                if os.path.isfile(path) and now - os.path.getmtime(path) > max_age:
                    os.remove(path)
                    removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove temp file {name}: {e}")
        return removed

    async def cleanup_temp(self, max_age: float = TEMP_FILE_MAX_AGE_SECONDS) -> int:
        """Remove temp files left behind by crashed attempts."""
        removed = await asyncio.to_thread(self._cleanup_temp_files, max_age)
        if removed:
            logger.info(f"Removed {removed} stale temp files")
        return removed


# Global cache store
segment_cache = SegmentCacheStore(is_locked=in_flight.is_in_flight)


async def cache_cleanup_task():
    """Background task enforcing cache age and size limits."""
    while True:
        await asyncio.sleep(CACHE_CLEANUP_INTERVAL_SECONDS)
        try:
            await segment_cache.sweep("interval")
        except Exception as e:
            logger.error(f"Error in cache cleanup task: {e}")


async def temp_cleanup_task():
    """Background task removing stale temp files."""
    while True:
        await asyncio.sleep(TEMP_CLEANUP_INTERVAL_SECONDS)
        try:
            await segment_cache.cleanup_temp()
        except Exception as e:
            logger.error(f"Error in temp cleanup task: {e}")

