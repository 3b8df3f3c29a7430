"""
Core configuration and constants for the HLS cover-video backend.

Everything is read from the environment once at import time. A local .env
file is honoured for development setups.
"""
import os
import re
import shutil
import logging

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_number(key: str, default: float, minimum: float = None, maximum: float = None) -> float:
    """Read a numeric env var, falling back to default when unset, invalid or out of range."""
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {key}={raw!r}")
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def _env_int(key: str, default: int, minimum: int = None, maximum: int = None) -> int:
    return int(_env_number(key, default, minimum, maximum))


# Storage layout
DATA_DIR = os.environ.get("DATA_DIR", "data")
CACHE_DIR = os.environ.get("HLS_CACHE_DIR", os.path.join(DATA_DIR, "cache"))
TEMP_DIR = os.environ.get("HLS_TEMP_DIR", os.path.join(DATA_DIR, "temp"))
DB_FILE = os.environ.get("DB_FILE", os.path.join(DATA_DIR, "database.sqlite"))

# Cache configuration
# HLS_CACHE_MAX_SIZE (bytes) wins over HLS_CACHE_MAX_SIZE_GB
_max_size_bytes = _env_number("HLS_CACHE_MAX_SIZE", 0, minimum=1)
_max_size_gb = _env_number("HLS_CACHE_MAX_SIZE_GB", 0, minimum=0.001)
if _max_size_bytes:
    CACHE_MAX_SIZE_BYTES = int(_max_size_bytes)
elif _max_size_gb:
    CACHE_MAX_SIZE_BYTES = int(_max_size_gb * 1024 * 1024 * 1024)
else:
    CACHE_MAX_SIZE_BYTES = 5 * 1024 * 1024 * 1024  # 5 GiB

CACHE_MAX_AGE_SECONDS = int(_env_number("HLS_CACHE_MAX_AGE_HOURS", 24, minimum=0.01) * 3600)
CACHE_CLEANUP_INTERVAL_SECONDS = int(_env_number("HLS_CACHE_CLEANUP_INTERVAL_MINUTES", 60, minimum=0.1) * 60)
CACHE_CLEANUP_TARGET_RATIO = _env_number("HLS_CACHE_CLEANUP_TARGET_RATIO", 0.8, minimum=0.01, maximum=0.99)
CACHE_SWEEP_DEBOUNCE_SECONDS = 1.0
CACHE_STARTUP_SWEEP_DELAY_SECONDS = 5.0

# Bump when the segment layout or cover rendering changes; older entries become invalid
CACHE_VERSION = 2
MIN_SEGMENT_BYTES = 1024

# In-memory manifest cache
SEGMENT_INFO_MAX = 1000
SEGMENT_INFO_EVICT_RATIO = 0.2

# Segmenting and encoder output
SEGMENT_DURATION = _env_int("HLS_SEGMENT_DURATION", 10, minimum=1, maximum=60)
COVER_WIDTH = _env_int("COVER_WIDTH", 1920, minimum=16, maximum=7680)
COVER_HEIGHT = _env_int("COVER_HEIGHT", 1080, minimum=16, maximum=4320)
COVER_FPS = _env_int("COVER_FPS", 25, minimum=1, maximum=30)
FFMPEG_THREADS = _env_int("HLS_FFMPEG_THREADS", 0, minimum=1, maximum=64)  # 0 = let ffmpeg decide
FFMPEG_PATH = os.environ.get("FFMPEG_PATH") or shutil.which("ffmpeg") or "ffmpeg"

# Job limits
MAX_CONCURRENT_JOBS = _env_int("HLS_MAX_CONCURRENT_JOBS", 2, minimum=1)
MAX_QUEUE_SIZE = _env_int("HLS_MAX_QUEUE", 10, minimum=0)
DOWNLOAD_TIMEOUT_SECONDS = _env_number("HLS_DOWNLOAD_TIMEOUT_SECONDS", 60, minimum=1)
DOWNLOAD_MAX_SIZE_BYTES = _env_int("HLS_DOWNLOAD_MAX_SIZE", 100 * 1024 * 1024, minimum=1)
DOWNLOAD_MAX_REDIRECTS = 5
FFMPEG_TIMEOUT_SECONDS = _env_number("HLS_FFMPEG_TIMEOUT_SECONDS", 180, minimum=1)

# Prefetch / preload
AUTO_PRELOAD_COUNT = _env_int("HLS_AUTO_PRELOAD_COUNT", 1, minimum=0)
LOOKAHEAD_COUNT = _env_int("HLS_LOOKAHEAD_COUNT", 2, minimum=0)
PRELOAD_DEFAULT_COUNT = 5
PRELOAD_MAX_COUNT = 20

# Housekeeping
HOUSEKEEPING_INTERVAL_SECONDS = 600
INFLIGHT_STALE_SECONDS = 3600
TEMP_CLEANUP_INTERVAL_SECONDS = _env_int("HLS_TEMP_CLEANUP_INTERVAL_SECONDS", 600, minimum=10)
TEMP_FILE_MAX_AGE_SECONDS = 3600

# Download allow-list (SSRF protection). Defaults cover the NetEase audio and cover CDNs.
DEFAULT_DOWNLOAD_ALLOW_PATTERNS = [
    r"^m\d+[a-z]*\.music\.126\.net$",  # audio CDN: m7.music.126.net, m701.music.126.net
    r"^p\d+\.music\.126\.net$",        # cover CDN: p1.music.126.net, p2.music.126.net
    r"^music\.126\.net$",
]


def parse_allow_patterns(extra: str = None) -> list:
    """Compile the default allow-list plus comma-separated extra host regexes."""
    patterns = [re.compile(p, re.IGNORECASE) for p in DEFAULT_DOWNLOAD_ALLOW_PATTERNS]
    for raw in (extra or "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        try:
            patterns.append(re.compile(raw, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"Invalid HLS_DOWNLOAD_ALLOW_HOSTS pattern {raw!r}: {e}")
    return patterns


DOWNLOAD_ALLOW_PATTERNS = parse_allow_patterns(os.environ.get("HLS_DOWNLOAD_ALLOW_HOSTS"))

# Upstream music metadata service (NeteaseCloudMusicApi-compatible HTTP API)
MUSIC_API_BASE_URL = os.environ.get("MUSIC_API_BASE_URL", "http://localhost:3000").rstrip("/")
MUSIC_API_TIMEOUT_SECONDS = _env_number("MUSIC_API_TIMEOUT_SECONDS", 15, minimum=1)
MUSIC_QUALITY_LEVELS = {
    "low": 128000,
    "medium": 192000,
    "high": 320000,
    "lossless": 999000,
}
MUSIC_BITRATE = MUSIC_QUALITY_LEVELS.get(
    os.environ.get("MUSIC_QUALITY", "").strip().lower(),
    _env_int("MUSIC_BITRATE", 128000, minimum=1),
)
PLAYLIST_CACHE_TTL_SECONDS = _env_int("PLAYLIST_CACHE_TTL_SECONDS", 3600, minimum=1)
DEFAULT_TRACK_DURATION = 240
DEFAULT_COVER_URL = os.environ.get(
    "DEFAULT_COVER_URL",
    "https://p1.music.126.net/6y-UleORITEDbvrOLV0Q8A==/5639395138885805.jpg",
)

# HTTP surface
BASE_URL = os.environ.get("BASE_URL", "").rstrip("/")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
APP_ENV = os.environ.get("APP_ENV", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_HLS_VERBOSE = os.environ.get("LOG_HLS_VERBOSE", "").lower() in ("1", "true")

# Ensure directories exist
for directory in [DATA_DIR, CACHE_DIR, TEMP_DIR]:
    if not os.path.exists(directory):
        os.makedirs(directory, exist_ok=True)
