"""
Tests for the music metadata client and cover helpers.
"""
import os
import sys

import httpx
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DEFAULT_COVER_URL
from core.exceptions import UpstreamError
from services.music_api import MusicApiClient, Track, optimize_cover_url, pick_cover_url


def make_client(handler) -> MusicApiClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MusicApiClient(base_url="http://music-api.local", bitrate=320000, client=client)


class TestCoverHelpers:
    """Test cover URL selection."""

    def test_netease_cover_gets_size_param(self):
        url = optimize_cover_url("https://p1.music.126.net/abc/123.jpg?param=100y100")
        assert url == "https://p1.music.126.net/abc/123.jpg?param=1080y1080"

    def test_other_hosts_unchanged(self):
        assert optimize_cover_url("https://img.example.com/a.jpg") == "https://img.example.com/a.jpg"

    def test_non_http_rejected(self):
        assert optimize_cover_url("javascript:alert(1)") == ""
        assert optimize_cover_url(None) == ""

    def test_pick_prefers_track_cover(self):
        track = Track(id="1", cover="https://p2.music.126.net/t.jpg")
        assert pick_cover_url(track, "https://p1.music.126.net/p.jpg").startswith("https://p2.music.126.net/t.jpg")

    def test_pick_falls_back_to_playlist_then_default(self):
        assert pick_cover_url(Track(id="1"), "https://p1.music.126.net/p.jpg").startswith("https://p1.music.126.net/p.jpg")
        assert pick_cover_url(None, None).startswith(DEFAULT_COVER_URL.split("?")[0])
        assert pick_cover_url(Track(id="1", cover="ftp://x"), None) == DEFAULT_COVER_URL


class TestMusicApiClient:
    """Test requests and response mapping against a mock server."""

    @pytest.mark.asyncio
    async def test_get_playlist(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "code": 200,
                "playlist": {
                    "id": 77,
                    "name": "Road trip",
                    "coverImgUrl": "https://p1.music.126.net/pl.jpg",
                    "tracks": [
                        {"id": 1, "name": "One", "ar": [{"name": "A"}, {"name": "B"}], "dt": 185400,
                         "al": {"picUrl": "https://p3.music.126.net/1.jpg"}},
                        {"id": 2, "name": "Two", "dt": 0},
                    ],
                },
            })

        playlist = await make_client(handler).get_playlist("77", "MUSIC_U=abc")

        assert seen["path"] == "/playlist/detail"
        assert seen["params"]["id"] == "77"
        assert seen["params"]["s"] == "8"
        assert seen["params"]["cookie"] == "MUSIC_U=abc"
        assert "timestamp" in seen["params"]
        assert playlist.id == "77"
        assert playlist.cover == "https://p1.music.126.net/pl.jpg"
        assert [t.id for t in playlist.tracks] == ["1", "2"]
        assert playlist.tracks[0].artist == "A/B"
        assert playlist.tracks[0].duration == 185
        assert playlist.tracks[0].cover == "https://p3.music.126.net/1.jpg"
        assert playlist.tracks[1].duration == 0
        assert playlist.tracks[1].cover is None

    @pytest.mark.asyncio
    async def test_get_playlist_error_payload(self):
        def handler(request):
            return httpx.Response(200, json={"code": 404, "message": "playlist gone"})

        with pytest.raises(UpstreamError, match="playlist gone"):
            await make_client(handler).get_playlist("77")

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(UpstreamError):
            await make_client(handler).get_playlist("77")

    @pytest.mark.asyncio
    async def test_get_track_audio_url(self):
        seen = {}

        def handler(request):
            seen.update(request.url.params)
            return httpx.Response(200, json={"code": 200, "data": [{"id": 5, "url": "http://m7.music.126.net/5.mp3"}]})

        url = await make_client(handler).get_track_audio_url("5")

        assert url == "http://m7.music.126.net/5.mp3"
        assert seen["br"] == "320000"

    @pytest.mark.asyncio
    async def test_unavailable_track(self):
        def handler(request):
            return httpx.Response(200, json={"code": 200, "data": [{"id": 5, "url": None}]})

        assert await make_client(handler).get_track_audio_url("5") is None
