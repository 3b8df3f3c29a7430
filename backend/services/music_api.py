"""
Client for the upstream music metadata service.

Talks to a NeteaseCloudMusicApi-compatible HTTP server: playlist details
with track lists, and short-lived audio URLs per track.
"""
import re
import time
import logging
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
import pydantic

from core.config import (
    DEFAULT_COVER_URL,
    MUSIC_API_BASE_URL,
    MUSIC_API_TIMEOUT_SECONDS,
    MUSIC_BITRATE,
)
from core.exceptions import UpstreamError

logger = logging.getLogger(__name__)

COVER_DOWNLOAD_SIZE = 1080
_COVER_HOST_RE = re.compile(r"^p\d+\.music\.126\.net$", re.IGNORECASE)


class Track(pydantic.BaseModel):
    id: str
    name: str = ""
    artist: str = ""
    duration: int = 0  # whole seconds, 0 when unknown
    cover: Optional[str] = None


class Playlist(pydantic.BaseModel):
    id: str
    name: str = ""
    cover: Optional[str] = None
    tracks: List[Track] = []


def optimize_cover_url(raw_url: Optional[str], size: int = COVER_DOWNLOAD_SIZE) -> str:
    """
    Ask the NetEase image CDN for a size x size rendition.

    Other hosts are returned unchanged; anything that is not an http(s) URL
    becomes an empty string.
    """
    url = (raw_url or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        return ""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url

    if not _COVER_HOST_RE.match(parsed.hostname or ""):
        return url

    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "param"]
    query.append(("param", f"{size}y{size}"))
    return urlunparse(parsed._replace(query=urlencode(query)))


def pick_cover_url(track: Optional[Track], playlist_cover: Optional[str] = None) -> str:
    """Per-track cover, else the playlist cover, else the default image."""
    track_cover = track.cover if track is not None and track.cover else ""
    base = track_cover or playlist_cover or DEFAULT_COVER_URL
    return optimize_cover_url(base) or DEFAULT_COVER_URL


def _artists(raw: dict) -> str:
    artists = raw.get("ar") or raw.get("artists") or []
    return "/".join(a.get("name") for a in artists if isinstance(a, dict) and a.get("name"))


def _duration_seconds(raw: dict) -> int:
    ms = raw.get("dt") or raw.get("duration") or 0
    try:
        seconds = round(float(ms) / 1000)
    except (TypeError, ValueError):
        return 0
    return seconds if seconds > 0 else 0


def _track_cover(raw: dict) -> Optional[str]:
    album = raw.get("al") or raw.get("album") or {}
    url = album.get("picUrl") if isinstance(album, dict) else None
    url = url or raw.get("picUrl") or raw.get("cover")
    return str(url) if url else None


def parse_track(raw: dict) -> Track:
    return Track(
        id=str(raw.get("id")),
        name=raw.get("name") or "",
        artist=_artists(raw),
        duration=_duration_seconds(raw),
        cover=_track_cover(raw),
    )


class MusicApiClient:
    """Thin async wrapper over the metadata service."""

    def __init__(
        self,
        base_url: str = MUSIC_API_BASE_URL,
        bitrate: int = MUSIC_BITRATE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bitrate = bitrate
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(MUSIC_API_TIMEOUT_SECONDS))
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict) -> dict:
        params = dict(params, timestamp=int(time.time() * 1000))
        try:
            response = await self._get_client().get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Music API request failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            raise UpstreamError(f"Music API returned non-JSON (HTTP {response.status_code})")
        if not isinstance(body, dict):
            raise UpstreamError("Music API returned an unexpected payload")
        return body

    async def get_playlist(self, playlist_id: str, credential: str = "") -> Playlist:
        """Playlist metadata with its full track list. Raises UpstreamError."""
        body = await self._get("/playlist/detail", {"id": playlist_id, "s": 8, "cookie": credential})
        raw = body.get("playlist")
        if body.get("code") != 200 or not isinstance(raw, dict):
            raise UpstreamError(body.get("message") or body.get("msg") or "Failed to load playlist")

        tracks = [parse_track(t) for t in raw.get("tracks") or [] if isinstance(t, dict) and t.get("id")]
        logger.debug(f"Loaded playlist {playlist_id} with {len(tracks)} tracks")
        return Playlist(
            id=str(raw.get("id", playlist_id)),
            name=raw.get("name") or "",
            cover=raw.get("coverImgUrl"),
            tracks=tracks,
        )

    async def get_track_audio_url(self, track_id: str, credential: str = "") -> Optional[str]:
        """Playable audio URL, or None when the track is unavailable to this account."""
        body = await self._get("/song/url", {"id": track_id, "br": self.bitrate, "cookie": credential})
        if body.get("code") != 200:
            return None
        data = body.get("data") or []
        url = data[0].get("url") if data and isinstance(data[0], dict) else None
        return str(url) if url else None


# Global client instance
music_api = MusicApiClient()
