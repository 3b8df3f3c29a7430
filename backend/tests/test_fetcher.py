"""
Tests for the download fetcher: allow-list, redirects, size cap, timeout.
"""
import asyncio
import os
import sys

import aiofiles
import httpx
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import parse_allow_patterns
from core.exceptions import (
    DownloadBlockedError,
    DownloadError,
    DownloadTimeoutError,
    DownloadTooLargeError,
)
from services.fetcher import DownloadFetcher, check_download_url

AUDIO_URL = "https://m7.music.126.net/audio/track.mp3"


def make_fetcher(handler, **kwargs) -> DownloadFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return DownloadFetcher(allow_patterns=parse_allow_patterns(), client=client, **kwargs)


class TestDownloadUrlCheck:
    """Test the SSRF allow-list check."""

    def test_audio_and_cover_cdn_allowed(self):
        patterns = parse_allow_patterns()
        assert check_download_url("https://m701.music.126.net/a.mp3", patterns)[0]
        assert check_download_url("http://p2.music.126.net/cover.jpg", patterns)[0]
        assert check_download_url("https://MUSIC.126.NET/x", patterns)[0]

    def test_other_hosts_blocked(self):
        allowed, reason = check_download_url("https://evil.example.com/a.mp3", parse_allow_patterns())
        assert not allowed
        assert "evil.example.com" in reason

    def test_non_http_scheme_blocked(self):
        allowed, reason = check_download_url("file:///etc/passwd", parse_allow_patterns())
        assert not allowed
        assert "Protocol" in reason

    def test_lookalike_host_blocked(self):
        allowed, _ = check_download_url("https://m7.music.126.net.attacker.io/a", parse_allow_patterns())
        assert not allowed

    def test_extra_patterns_extend_defaults(self):
        patterns = parse_allow_patterns(r"^cdn\.example\.org$, [invalid")
        assert check_download_url("https://cdn.example.org/a.mp3", patterns)[0]
        assert check_download_url("https://m7.music.126.net/a.mp3", patterns)[0]


class TestDownloadFetcher:
    """Test DownloadFetcher.fetch against a mock transport."""

    @pytest.mark.asyncio
    async def test_success_writes_file(self, tmp_path):
        """A 200 response body lands in the destination file."""
        def handler(request):
            return httpx.Response(200, content=b"audio-bytes")

        dest = str(tmp_path / "out.audio")
        result = await make_fetcher(handler).fetch(AUDIO_URL, dest)

        assert result == dest
        with open(dest, "rb") as f:
            assert f.read() == b"audio-bytes"

    @pytest.mark.asyncio
    async def test_follows_allowed_redirect(self, tmp_path):
        """Relative and absolute redirects to allowed hosts are followed."""
        def handler(request):
            if request.url.path == "/audio/track.mp3":
                return httpx.Response(302, headers={"location": "/moved.mp3"})
            if request.url.path == "/moved.mp3":
                return httpx.Response(301, headers={"location": "https://m8.music.126.net/final.mp3"})
            return httpx.Response(200, content=b"final")

        dest = str(tmp_path / "out.audio")
        await make_fetcher(handler).fetch(AUDIO_URL, dest)

        with open(dest, "rb") as f:
            assert f.read() == b"final"

    @pytest.mark.asyncio
    async def test_redirect_to_blocked_host_rejected(self, tmp_path):
        """A redirect off the allow-list fails and leaves no file."""
        def handler(request):
            return httpx.Response(302, headers={"location": "http://169.254.169.254/latest"})

        dest = str(tmp_path / "out.audio")
        with pytest.raises(DownloadBlockedError, match="Redirect blocked"):
            await make_fetcher(handler).fetch(AUDIO_URL, dest)
        assert not os.path.exists(dest)

    @pytest.mark.asyncio
    async def test_blocked_initial_url(self, tmp_path):
        """The first URL is checked before any request is made."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=b"x")

        with pytest.raises(DownloadBlockedError, match="Download blocked"):
            await make_fetcher(handler).fetch("https://example.com/a.mp3", str(tmp_path / "out"))
        assert requests == []

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, tmp_path):
        """Redirect loops stop after the redirect limit."""
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(302, headers={"location": AUDIO_URL})

        with pytest.raises(DownloadError, match="Too many redirects"):
            await make_fetcher(handler, max_redirects=5).fetch(AUDIO_URL, str(tmp_path / "out"))
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_redirect_without_location(self, tmp_path):
        def handler(request):
            return httpx.Response(302)

        with pytest.raises(DownloadError, match="without location"):
            await make_fetcher(handler).fetch(AUDIO_URL, str(tmp_path / "out"))

    @pytest.mark.asyncio
    async def test_non_200_status(self, tmp_path):
        def handler(request):
            return httpx.Response(404, content=b"missing")

        dest = str(tmp_path / "out")
        with pytest.raises(DownloadError, match="HTTP 404"):
            await make_fetcher(handler).fetch(AUDIO_URL, dest)
        assert not os.path.exists(dest)

    @pytest.mark.asyncio
    async def test_declared_size_rejected_before_write(self, tmp_path, monkeypatch):
        """An oversized Content-Length fails before the file is opened."""
        def handler(request):
            return httpx.Response(200, content=b"x" * 500)

        def fail_open(*args, **kwargs):
            raise AssertionError("destination must not be opened")

        monkeypatch.setattr(aiofiles, "open", fail_open)

        dest = str(tmp_path / "out")
        with pytest.raises(DownloadTooLargeError, match="File too large"):
            await make_fetcher(handler, max_size=100).fetch(AUDIO_URL, dest)
        assert not os.path.exists(dest)

    @pytest.mark.asyncio
    async def test_streamed_size_cap(self, tmp_path):
        """A body without Content-Length is cut off once it crosses the cap."""
        async def body():
            for _ in range(10):
                yield b"y" * 64

        def handler(request):
            return httpx.Response(200, content=body())

        dest = str(tmp_path / "out")
        with pytest.raises(DownloadTooLargeError, match="exceeded"):
            await make_fetcher(handler, max_size=100).fetch(AUDIO_URL, dest)
        assert not os.path.exists(dest)

    @pytest.mark.asyncio
    async def test_timeout_removes_file(self, tmp_path):
        """The whole download is bounded by one timeout."""
        async def handler(request):
            await asyncio.sleep(2)
            return httpx.Response(200, content=b"late")

        dest = str(tmp_path / "out")
        with pytest.raises(DownloadTimeoutError):
            await make_fetcher(handler, timeout=0.1).fetch(AUDIO_URL, dest)
        assert not os.path.exists(dest)
