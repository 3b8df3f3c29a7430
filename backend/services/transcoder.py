"""
Cover + audio to HLS segments.

One attempt downloads the audio and the cover image, runs ffmpeg to loop
the cover over the audio and cut fixed-length MPEG-TS segments, then hands
the segments to the cache store. Every temp file of the attempt is scoped
by a unique prefix and removed on the way out.
"""
import os
import time
import uuid
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import aiofiles

from core.config import (
    TEMP_DIR,
    FFMPEG_PATH,
    FFMPEG_THREADS,
    FFMPEG_TIMEOUT_SECONDS,
    SEGMENT_DURATION,
    COVER_WIDTH,
    COVER_HEIGHT,
    COVER_FPS,
)
from core.exceptions import TranscodeError, TranscodeTimeoutError
from services.cache import CacheEntry, SegmentCacheStore, segment_cache
from services.fetcher import DownloadFetcher, fetcher

logger = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 8192
STDERR_MESSAGE_CHARS = 300


class EncoderResult:
    """Outcome of one encoder process run."""

    def __init__(self, returncode: Optional[int], stderr: str, timed_out: bool, elapsed: float):
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        self.elapsed = elapsed


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def run_encoder(args: List[str], timeout: float) -> EncoderResult:
    """
    Run an encoder command to completion.

    stderr is drained continuously (the pipe would otherwise fill and stall
    the encoder) and only the tail is kept. The process is killed on timeout
    or cancellation and always reaped.
    """
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise TranscodeError(f"Encoder not found: {args[0]}")

    tail = bytearray()

    async def drain():
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            tail.extend(chunk)
            if len(tail) > STDERR_TAIL_BYTES:
                del tail[:len(tail) - STDERR_TAIL_BYTES]
            logger.debug(chunk.decode("utf-8", errors="replace").rstrip())

    drain_task = asyncio.create_task(drain())
    timed_out = False
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        _kill(process)
        await process.wait()
    except asyncio.CancelledError:
        _kill(process)
        await process.wait()
        drain_task.cancel()
        await asyncio.gather(drain_task, return_exceptions=True)
        raise

    try:
        await asyncio.wait_for(drain_task, timeout=5)
    except asyncio.TimeoutError:
        drain_task.cancel()
        await asyncio.gather(drain_task, return_exceptions=True)

    return EncoderResult(
        returncode=process.returncode,
        stderr=tail.decode("utf-8", errors="replace"),
        timed_out=timed_out,
        elapsed=time.monotonic() - started,
    )


def build_ffmpeg_args(
    cover_path: str,
    audio_path: str,
    playlist_path: str,
    segment_pattern: str,
    ffmpeg_path: str = FFMPEG_PATH,
    segment_duration: int = SEGMENT_DURATION,
    width: int = COVER_WIDTH,
    height: int = COVER_HEIGHT,
    fps: int = COVER_FPS,
    threads: int = FFMPEG_THREADS,
) -> List[str]:
    """ffmpeg command looping a still cover over the audio, cut into HLS segments."""
    # Keyframes must land on segment boundaries or hls_time cannot cut there
    gop = max(1, round(fps * segment_duration))
    video_filter = ",".join([
        f"scale={width}:{height}:force_original_aspect_ratio=decrease",
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
        "setsar=1",
    ])

    args = [
        ffmpeg_path,
        "-loop", "1",
        "-framerate", str(fps),
        "-i", cover_path,
        "-i", audio_path,
    ]
    if threads > 0:
        args += ["-threads", str(threads)]

    args += [
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "stillimage",
        "-crf", "28",
        "-r", str(fps),
        "-g", str(gop),
        "-keyint_min", str(gop),
        "-sc_threshold", "0",
        "-force_key_frames", f"expr:gte(t,n_forced*{segment_duration})",
        "-c:a", "aac",
        "-b:a", "128k",
        "-ar", "44100",
        "-pix_fmt", "yuv420p",
        "-vf", video_filter,
        "-shortest",
        "-f", "hls",
        "-hls_time", str(segment_duration),
        "-hls_list_size", "0",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", segment_pattern,
        "-y",
        playlist_path,
    ]
    return args


def parse_extinf_durations(playlist_text: str) -> List[float]:
    """Segment durations from the #EXTINF lines of an m3u8 playlist."""
    durations = []
    for line in playlist_text.splitlines():
        line = line.strip()
        if not line.startswith("#EXTINF:"):
            continue
        value = line[len("#EXTINF:"):].split(",", 1)[0]
        try:
            durations.append(float(value))
        except ValueError:
            raise TranscodeError(f"Unparsable segment duration: {line}")
    return durations


def check_encoded_length(track_id: str, durations: List[float], duration_hint: Optional[float]) -> bool:
    """Warn when the encoded length is far from the metadata length. Returns False then."""
    if not duration_hint or duration_hint <= 0:
        return True
    encoded = sum(durations)
    if abs(encoded - duration_hint) > max(SEGMENT_DURATION, duration_hint * 0.1):
        logger.warning(f"[{track_id}] Encoded {encoded:.1f}s but metadata says {duration_hint:.0f}s")
        return False
    return True


class TranscodeWorker:
    """Runs one generation attempt for a track."""

    def __init__(
        self,
        store: SegmentCacheStore = segment_cache,
        downloader: DownloadFetcher = fetcher,
        temp_dir: str = TEMP_DIR,
        timeout: float = FFMPEG_TIMEOUT_SECONDS,
        encoder: Callable[[List[str], float], Awaitable[EncoderResult]] = run_encoder,
        **encoder_options,
    ):
        self.store = store
        self.downloader = downloader
        self.temp_dir = temp_dir
        self.timeout = timeout
        self.encoder = encoder
        # Passed through to build_ffmpeg_args (fps, width, threads, ...)
        self.encoder_options = encoder_options

    def _attempt_prefix(self, track_id: str) -> str:
        return f"{track_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"

    def _attempt_files(self, prefix: str) -> List[str]:
        try:
            names = os.listdir(self.temp_dir)
        except OSError:
            return []
        return sorted(os.path.join(self.temp_dir, n) for n in names if n.startswith(prefix))

    def _cleanup_attempt(self, prefix: str) -> None:
        for path in self._attempt_files(prefix):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove temp file {path}: {e}")

    async def _fetch_sources(self, audio_url: str, audio_path: str, cover_url: str, cover_path: str) -> None:
        tasks = [
            asyncio.create_task(self.downloader.fetch(audio_url, audio_path)),
            asyncio.create_task(self.downloader.fetch(cover_url, cover_path)),
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def generate(
        self,
        track_id: str,
        audio_url: str,
        cover_url: str,
        duration_hint: Optional[float] = None,
    ) -> CacheEntry:
        """
        Download, encode and publish one track.

        duration_hint is the track length from metadata, if known. It is only
        compared against the encoded length.

        Raises DownloadError, TranscodeError or TranscodeTimeoutError. Temp
        files of the attempt are gone afterwards on every path.
        """
        prefix = self._attempt_prefix(track_id)
        audio_path = os.path.join(self.temp_dir, f"{prefix}.audio")
        cover_path = os.path.join(self.temp_dir, f"{prefix}.cover")
        playlist_path = os.path.join(self.temp_dir, f"{prefix}.m3u8")
        segment_prefix = f"{prefix}_seg_"
        segment_pattern = os.path.join(self.temp_dir, f"{segment_prefix}%04d.ts")
        started = time.monotonic()

        try:
            logger.info(f"[{track_id}] Downloading audio and cover")
            await self._fetch_sources(audio_url, audio_path, cover_url, cover_path)

            hint = f" (expected ~{duration_hint:.0f}s)" if duration_hint else ""
            logger.info(f"[{track_id}] Encoding segments{hint}")
            args = build_ffmpeg_args(
                cover_path, audio_path, playlist_path, segment_pattern, **self.encoder_options
            )
            result = await self.encoder(args, self.timeout)

            if result.timed_out:
                raise TranscodeTimeoutError(f"Encoder timed out after {self.timeout:.0f}s")
            if result.returncode != 0:
                raise TranscodeError(
                    f"Encoder exit code {result.returncode}: {result.stderr[-STDERR_MESSAGE_CHARS:]}"
                )

            try:
                async with aiofiles.open(playlist_path, "r", encoding="utf-8") as f:
                    durations = parse_extinf_durations(await f.read())
            except OSError as e:
                raise TranscodeError(f"Encoder playlist missing: {e}")

            segment_files = [
                path for path in self._attempt_files(segment_prefix)
                if path.endswith(".ts")
            ]
            if not segment_files or len(segment_files) != len(durations):
                raise TranscodeError(
                    f"Segment list mismatch: {len(segment_files)} files, {len(durations)} durations"
                )
            check_encoded_length(track_id, durations, duration_hint)

            entry = await self.store.publish(track_id, segment_files, durations)
            logger.info(
                f"[{track_id}] Generated {entry.segment_count} segments in {time.monotonic() - started:.1f}s"
            )
            return entry
        finally:
            await asyncio.to_thread(self._cleanup_attempt, prefix)


# Global worker instance
transcoder = TranscodeWorker()
