"""
Request validation and admin access helpers.
"""
import re
import hmac
import logging

from fastapi import HTTPException, Request

from core import config

logger = logging.getLogger(__name__)

_NUMERIC_ID_RE = re.compile(r"^\d{1,20}$")
_TOKEN_RE = re.compile(r"^[a-fA-F0-9]{32}$")

# A single track never gets anywhere near this many segments
MAX_SEGMENT_INDEX = 10000


def is_valid_numeric_id(value) -> bool:
    """Playlist and track ids are plain digit strings, which also keeps them path-safe."""
    return isinstance(value, str) and bool(_NUMERIC_ID_RE.match(value))


def is_valid_token(value) -> bool:
    """Access tokens are 32 hex characters."""
    return isinstance(value, str) and bool(_TOKEN_RE.match(value))


def parse_segment_index(value) -> int:
    """
    Parse a segment index from a path component.

    Returns None for anything that is not a non-negative integer below
    MAX_SEGMENT_INDEX.
    """
    if not isinstance(value, str) or not value.isdigit():
        return None
    index = int(value)
    if index >= MAX_SEGMENT_INDEX:
        return None
    return index


def decrypt_credential(ciphertext: str) -> str:
    """
    Turn the stored upstream credential into the value the music API expects.

    Credentials are written by the login service; this backend stores and
    forwards them as-is, so the hook is the identity.
    """
    return ciphertext or ""


def require_admin(request: Request) -> None:
    """
    Guard for cache administration routes.

    Without ADMIN_PASSWORD the routes are disabled in production and open in
    development. Raises HTTPException on failure.
    """
    expected = config.ADMIN_PASSWORD
    if not expected:
        if config.APP_ENV == "production":
            raise HTTPException(
                status_code=503,
                detail="Admin API disabled: ADMIN_PASSWORD must be set in production",
            )
        return

    provided = request.headers.get("x-admin-password", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected admin request from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(status_code=401, detail="Admin password missing or incorrect")
