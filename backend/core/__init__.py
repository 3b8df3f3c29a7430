"""
Core module exports.
"""
from core.config import (
    CACHE_DIR,
    TEMP_DIR,
    CACHE_MAX_SIZE_BYTES,
    CACHE_MAX_AGE_SECONDS,
    CACHE_VERSION,
    SEGMENT_DURATION,
)
from core.exceptions import (
    HlsError,
    DownloadError,
    DownloadBlockedError,
    DownloadTooLargeError,
    DownloadTimeoutError,
    TranscodeError,
    TranscodeTimeoutError,
    UpstreamError,
    TrackUnavailableError,
    QueueFullError,
)
from core.security import (
    is_valid_numeric_id,
    is_valid_token,
    parse_segment_index,
    decrypt_credential,
    require_admin,
)

__all__ = [
    "CACHE_DIR",
    "TEMP_DIR",
    "CACHE_MAX_SIZE_BYTES",
    "CACHE_MAX_AGE_SECONDS",
    "CACHE_VERSION",
    "SEGMENT_DURATION",
    "HlsError",
    "DownloadError",
    "DownloadBlockedError",
    "DownloadTooLargeError",
    "DownloadTimeoutError",
    "TranscodeError",
    "TranscodeTimeoutError",
    "UpstreamError",
    "TrackUnavailableError",
    "QueueFullError",
    "is_valid_numeric_id",
    "is_valid_token",
    "parse_segment_index",
    "decrypt_credential",
    "require_admin",
]
