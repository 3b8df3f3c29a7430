"""
Source media downloads with SSRF, size, redirect and timeout limits.

Audio and cover images are pulled from upstream CDNs into the temp
directory before encoding. Redirects are followed by hand so every hop is
checked against the allow-list, and no partial file survives a failure.
"""
import os
import asyncio
import logging
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urljoin, urlparse

import aiofiles
import httpx

from core.config import (
    DOWNLOAD_ALLOW_PATTERNS,
    DOWNLOAD_MAX_REDIRECTS,
    DOWNLOAD_MAX_SIZE_BYTES,
    DOWNLOAD_TIMEOUT_SECONDS,
)
from core.exceptions import (
    DownloadBlockedError,
    DownloadError,
    DownloadTimeoutError,
    DownloadTooLargeError,
)

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = (301, 302, 303, 307, 308)

DOWNLOAD_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Referer": "https://music.163.com/",
}


def check_download_url(url: str, patterns: List[Pattern]) -> Tuple[bool, str]:
    """Check scheme and host of a download URL. Returns (allowed, reason)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False, "Invalid URL"

    if parsed.scheme not in ("http", "https"):
        return False, f"Protocol not allowed: {parsed.scheme or '(none)'}"

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return False, "Invalid URL: no hostname"

    if not any(pattern.search(hostname) for pattern in patterns):
        return False, f"Host not allowed: {hostname}"

    return True, ""


def _remove_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial download {path}: {e}")


class DownloadFetcher:
    """
    Fetches a remote URL into a local file.

    A shared httpx client is created lazily; tests pass their own client
    (usually backed by httpx.MockTransport).
    """

    def __init__(
        self,
        allow_patterns: Optional[List[Pattern]] = None,
        max_size: int = DOWNLOAD_MAX_SIZE_BYTES,
        timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
        max_redirects: int = DOWNLOAD_MAX_REDIRECTS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.allow_patterns = allow_patterns if allow_patterns is not None else DOWNLOAD_ALLOW_PATTERNS
        self.max_size = max_size
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=False,
                timeout=httpx.Timeout(connect=10.0, read=self.timeout, write=10.0, pool=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, destination: str) -> str:
        """
        Download url to destination and return destination.

        Raises DownloadBlockedError, DownloadTooLargeError, DownloadTimeoutError
        or DownloadError. The destination file never outlives a failure.
        """
        try:
            return await asyncio.wait_for(self._fetch(url, destination), timeout=self.timeout)
        except asyncio.TimeoutError:
            _remove_partial(destination)
            raise DownloadTimeoutError(f"Download timeout after {self.timeout:.0f}s")
        except BaseException:
            _remove_partial(destination)
            raise

    async def _fetch(self, url: str, destination: str) -> str:
        client = self._get_client()
        current_url = url

        for hop in range(self.max_redirects + 1):
            allowed, reason = check_download_url(current_url, self.allow_patterns)
            if not allowed:
                if hop == 0:
                    raise DownloadBlockedError(f"Download blocked: {reason}")
                raise DownloadBlockedError(f"Redirect blocked: {reason}")

            try:
                async with client.stream("GET", current_url, headers=DOWNLOAD_HEADERS) as response:
                    if response.status_code in REDIRECT_STATUS_CODES:
                        location = response.headers.get("location")
                        if not location:
                            raise DownloadError("Redirect without location")
                        current_url = urljoin(current_url, location)
                        logger.debug(f"Following redirect {hop + 1} -> {current_url[:80]}")
                        continue

                    if response.status_code != 200:
                        raise DownloadError(f"HTTP {response.status_code}")

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_size:
                        raise DownloadTooLargeError(f"File too large: {declared} bytes")

                    await self._write_body(response, destination)
                    return destination
            except httpx.HTTPError as e:
                raise DownloadError(f"Download failed: {e}") from e

        raise DownloadError("Too many redirects")

    async def _write_body(self, response: httpx.Response, destination: str) -> None:
        downloaded = 0
        async with aiofiles.open(destination, "wb") as f:
            async for chunk in response.aiter_bytes():
                downloaded += len(chunk)
                if downloaded > self.max_size:
                    raise DownloadTooLargeError(f"Download exceeded max size: {downloaded} bytes")
                await f.write(chunk)


# Global fetcher instance
fetcher = DownloadFetcher()
