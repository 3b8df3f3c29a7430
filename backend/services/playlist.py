"""
HLS playlist text for a whole music playlist.

Cached tracks contribute their real segment durations; everything else is
estimated from the track length so the player sees a complete VOD playlist
up front and segments are generated as they are requested.
"""
import math
from typing import Callable, List, Optional

from core.config import DEFAULT_TRACK_DURATION, SEGMENT_DURATION
from services.cache import CacheEntry
from services.music_api import Track


def estimate_segment_durations(duration: float, segment_duration: int = SEGMENT_DURATION) -> List[float]:
    """
    Split a track length into segment durations.

    23s with 10s segments gives [10, 10, 3]; unknown lengths use the default
    track duration.
    """
    if not duration or duration <= 0:
        duration = DEFAULT_TRACK_DURATION
    count = max(1, math.ceil(duration / segment_duration))
    durations = [float(segment_duration)] * count
    remainder = duration % segment_duration
    durations[-1] = float(remainder) if remainder else float(segment_duration)
    return durations


def segment_url(base_url: str, token: str, playlist_id: str, track_id: str, index: int) -> str:
    return f"{base_url}/api/hls/{token}/{playlist_id}/seg/{track_id}/{index}.ts"


def build_playlist_manifest(
    tracks: List[Track],
    base_url: str,
    token: str,
    playlist_id: str,
    lookup: Callable[[str], Optional[CacheEntry]],
    segment_duration: int = SEGMENT_DURATION,
) -> str:
    """
    Render the m3u8 text for tracks.

    lookup returns the valid cache entry for a track id, or None.
    """
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{segment_duration + 1}",
        "#EXT-X-PLAYLIST-TYPE:VOD",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-ALLOW-CACHE:YES",
        "",
    ]

    for position, track in enumerate(tracks):
        if position > 0:
            lines.append("#EXT-X-DISCONTINUITY")

        entry = lookup(track.id)
        if entry is not None:
            durations = entry.segment_durations
        else:
            durations = estimate_segment_durations(track.duration, segment_duration)

        for index, duration in enumerate(durations):
            lines.append(f"#EXTINF:{duration:.6f},")
            lines.append(segment_url(base_url, token, playlist_id, track.id, index))

    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines) + "\n"


def error_manifest(message: str) -> str:
    """Playlist body carrying an error the player can surface."""
    return f"#EXTM3U\n#EXT-X-ERROR:{message}\n"
