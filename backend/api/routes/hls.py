"""
HLS playlist and segment routes.

A playlist is served as one long VOD stream: every track is a run of
segments separated by discontinuities. Segments are generated on first
request and served from the disk cache afterwards.
"""
import os
import asyncio
import logging
from typing import Optional

import aiofiles
import pydantic
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse, RedirectResponse, Response, StreamingResponse

from core import config
from core.config import PRELOAD_DEFAULT_COUNT, PRELOAD_MAX_COUNT
from core.exceptions import QueueFullError, TrackUnavailableError, UpstreamError
from core.security import (
    decrypt_credential,
    is_valid_numeric_id,
    is_valid_token,
    parse_segment_index,
    require_admin,
)
from services import database
from services.admission import job_admission
from services.cache import segment_cache
from services.inflight import in_flight
from services.music_api import Playlist, Track, music_api, pick_cover_url
from services.playlist import build_playlist_manifest, error_manifest
from services.prefetcher import prefetcher
from services.segments import segment_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/hls", tags=["hls"])

MPEGURL = "application/vnd.apple.mpegurl"
RETRY_AFTER_SECONDS = 10
SEGMENT_CHUNK_SIZE = 64 * 1024

# Fire-and-forget work (play log) kept referenced until done
_background_tasks = set()


class PreloadRequest(pydantic.BaseModel):
    count: Optional[int] = None


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _playlist_error(message: str, status_code: int) -> Response:
    return Response(
        content=error_manifest(message),
        status_code=status_code,
        media_type=MPEGURL,
        headers={"Cache-Control": "no-cache"},
    )


def _json_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _base_url(request: Request) -> str:
    return config.BASE_URL or str(request.base_url).rstrip("/")


def _find_track(playlist: Optional[Playlist], track_id: str) -> Optional[Track]:
    if playlist is None:
        return None
    return next((t for t in playlist.tracks if t.id == track_id), None)


async def load_playlist(playlist_id: str, credential: str) -> Playlist:
    """
    Playlist metadata from the local cache, else from upstream.

    Cached playlists without any per-track cover predate cover support and
    are refreshed once; if that refresh fails the cached copy is used.
    Raises UpstreamError when there is nothing cached and upstream fails.
    """
    cached = await database.get_cached_playlist(playlist_id)
    if cached is not None and any(t.cover for t in cached.tracks):
        return cached

    try:
        playlist = await music_api.get_playlist(playlist_id, credential)
    except UpstreamError as e:
        if cached is not None:
            logger.warning(f"Playlist {playlist_id} refresh failed, using cached copy: {e}")
            return cached
        raise

    try:
        await database.cache_playlist(playlist)
    except Exception as e:
        logger.error(f"Failed to cache playlist {playlist_id}: {e}")
    return playlist


async def _cached_playlist(playlist_id: str) -> Optional[Playlist]:
    try:
        return await database.get_cached_playlist(playlist_id)
    except Exception as e:
        logger.warning(f"Playlist cache lookup failed for {playlist_id}: {e}")
        return None


async def _log_play(user_id: int, playlist_id: str, track_id: str, track: Optional[Track]) -> None:
    try:
        await database.log_play(
            user_id,
            playlist_id,
            track_id,
            track.name if track and track.name else "Unknown",
            track.artist if track and track.artist else "Unknown",
        )
    except Exception as e:
        logger.error(f"Failed to log play for {track_id}: {e}")


async def _stream_segment(path: str) -> Response:
    # Open before responding so an eviction in between surfaces here
    try:
        segment_file = await aiofiles.open(path, "rb")
    except FileNotFoundError:
        return _json_error("Segment not found", 404)

    size = os.fstat(segment_file.fileno()).st_size

    async def iter_segment():
        try:
            while True:
                chunk = await segment_file.read(SEGMENT_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await segment_file.close()

    return StreamingResponse(
        iter_segment(),
        media_type="video/mp2t",
        headers={
            "Access-Control-Allow-Origin": "*",
            "Cache-Control": "public, max-age=86400",
            "Content-Length": str(size),
        },
    )


@router.get("/{token}/{playlist_id}/stream.m3u8")
async def get_stream_playlist(token: str, playlist_id: str, request: Request, start: str = Query("0")):
    """
    The HLS playlist for a music playlist, starting at track index start.

    Also starts generating the first tracks in the background.
    """
    if not is_valid_token(token):
        return _playlist_error("Invalid token", 400)
    if not is_valid_numeric_id(playlist_id):
        return _playlist_error("Invalid playlist ID", 400)
    start_index = int(start) if start.isdigit() else 0

    user = await database.get_user_by_token(token)
    if not user:
        return _playlist_error("Invalid token", 401)
    credential = decrypt_credential(user["cookie"])

    try:
        playlist = await load_playlist(playlist_id, credential)
    except UpstreamError as e:
        logger.error(f"Failed to load playlist {playlist_id}: {e}")
        return _playlist_error("Failed to get playlist", 500)

    tracks = playlist.tracks[start_index:]
    if not tracks:
        return _playlist_error("Empty playlist", 404)

    manifest = build_playlist_manifest(
        tracks,
        _base_url(request),
        token,
        playlist_id,
        segment_cache.get_valid_entry,
    )
    prefetcher.warm_playlist(playlist_id, tracks, credential, playlist.cover)

    return Response(
        content=manifest,
        media_type=MPEGURL,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Cache-Control": "no-cache",
        },
    )


@router.get("/{token}/{playlist_id}/seg/{track_id}/{index}.ts")
async def get_segment(token: str, playlist_id: str, track_id: str, index: str):
    """One MPEG-TS segment of a track, generating the track on a miss."""
    if not is_valid_token(token):
        return _json_error("Invalid token format", 400)
    if not is_valid_numeric_id(playlist_id):
        return _json_error("Invalid playlist ID", 400)
    if not is_valid_numeric_id(track_id):
        return _json_error("Invalid track ID", 400)
    segment_index = parse_segment_index(index)
    if segment_index is None:
        return _json_error("Invalid segment index", 400)

    user = await database.get_user_by_token(token)
    if not user:
        return _json_error("Invalid token", 401)
    credential = decrypt_credential(user["cookie"])

    playlist = await _cached_playlist(playlist_id)
    track = _find_track(playlist, track_id)

    # The first segment of a track counts as a play
    if segment_index == 0:
        _spawn(_log_play(user["id"], playlist_id, track_id, track))

    cover_url = pick_cover_url(track, playlist.cover if playlist else None)
    try:
        path = await segment_service.get_segment_path(
            track_id,
            segment_index,
            credential,
            cover_url,
            duration_hint=track.duration if track and track.duration else None,
        )
    except QueueFullError as e:
        return JSONResponse(
            {"error": str(e), "retry_after": RETRY_AFTER_SECONDS, "queue": e.to_dict()},
            status_code=503,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )
    except TrackUnavailableError:
        return _json_error("Cannot get song URL", 404)
    except Exception as e:
        logger.error(f"[{track_id}] Segment {segment_index} failed: {e}")
        return _json_error(str(e), 500)

    if path is None:
        return _json_error("Segment not found", 404)

    if segment_index == 0:
        prefetcher.schedule_lookahead(playlist_id, track_id, credential)

    return await _stream_segment(path)


@router.get("/{token}/{playlist_id}/song/{track_id}.ts")
async def get_legacy_song(token: str, playlist_id: str, track_id: str):
    """Old whole-track URL; points at the first segment."""
    if not is_valid_token(token) or not is_valid_numeric_id(playlist_id) or not is_valid_numeric_id(track_id):
        return _json_error("Invalid parameters", 400)
    return RedirectResponse(url=f"/api/hls/{token}/{playlist_id}/seg/{track_id}/0.ts", status_code=302)


@router.post("/{token}/{playlist_id}/preload")
async def preload_playlist(token: str, playlist_id: str, body: Optional[PreloadRequest] = None):
    """Generate the first count tracks of a playlist and report per-track status."""
    if not is_valid_token(token):
        return _json_error("Invalid token format", 400)
    if not is_valid_numeric_id(playlist_id):
        return _json_error("Invalid playlist ID", 400)

    count = body.count if body is not None and body.count and body.count > 0 else PRELOAD_DEFAULT_COUNT
    count = min(count, PRELOAD_MAX_COUNT)

    user = await database.get_user_by_token(token)
    if not user:
        return _json_error("Invalid token", 401)
    credential = decrypt_credential(user["cookie"])

    try:
        playlist = await load_playlist(playlist_id, credential)
    except UpstreamError as e:
        logger.error(f"Preload of {playlist_id} failed: {e}")
        return _json_error(str(e), 500)

    tracks = playlist.tracks[:count]
    logger.info(f"Preloading {len(tracks)} tracks of playlist {playlist_id}")

    results = []
    for track in tracks:
        results.append(await segment_service.preload_track(track, credential, playlist.cover))

    return {"success": True, "results": results}


@router.get("/cache/status")
async def get_cache_status(request: Request):
    """Cache usage, job counters and limits. Admin only."""
    require_admin(request)

    cache = await segment_cache.status(limit=50)
    return {
        "cache": {
            "total_tracks": cache["track_count"],
            "total_mb": cache["total_mb"],
            "max_gb": round(cache["max_bytes"] / 1024 / 1024 / 1024, 2),
            "usage_percent": cache["usage_percent"],
            "max_age_hours": cache["max_age_hours"],
            "memory_manifests": cache["memory_manifests"],
        },
        "jobs": job_admission.stats(),
        "in_flight": [job.to_dict() for job in in_flight.active()],
        "prefetch": prefetcher.get_stats(),
        "config": {
            "segment_duration": config.SEGMENT_DURATION,
            "output": f"{config.COVER_WIDTH}x{config.COVER_HEIGHT}@{config.COVER_FPS}",
            "download_timeout_seconds": config.DOWNLOAD_TIMEOUT_SECONDS,
            "download_max_mb": round(config.DOWNLOAD_MAX_SIZE_BYTES / 1024 / 1024, 2),
            "ffmpeg_timeout_seconds": config.FFMPEG_TIMEOUT_SECONDS,
        },
        "tracks": cache["tracks"],
    }


@router.delete("/cache")
async def purge_cache(request: Request):
    """Delete every cached track that is not being generated. Admin only."""
    require_admin(request)

    result = await segment_cache.purge()
    logger.info(f"Cache purged via admin API: {result}")
    return {"success": True, **result}
