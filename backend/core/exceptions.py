"""
Exception types raised by the segmenting pipeline.

Routes map these onto HTTP responses; background work logs and drops them.
"""


class HlsError(Exception):
    """Base class for pipeline failures."""


class DownloadError(HlsError):
    """A source download failed."""


class DownloadBlockedError(DownloadError):
    """URL (or a redirect target) is not on the download allow-list."""


class DownloadTooLargeError(DownloadError):
    """Declared or streamed size exceeded the download cap."""


class DownloadTimeoutError(DownloadError):
    """The download did not finish within the configured timeout."""


class TranscodeError(HlsError):
    """The encoder failed or produced unusable output."""


class TranscodeTimeoutError(TranscodeError):
    """The encoder ran past its wall-clock limit and was killed."""


class UpstreamError(HlsError):
    """The music metadata service failed or returned an error payload."""


class TrackUnavailableError(HlsError):
    """No playable audio URL could be obtained for a track."""


class QueueFullError(HlsError):
    """Admission rejected a job because the wait queue is full."""

    def __init__(self, running: int, waiting: int, max_concurrent: int):
        super().__init__("Server busy, please retry later")
        self.running = running
        self.waiting = waiting
        self.max_concurrent = max_concurrent

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "waiting": self.waiting,
            "max_concurrent": self.max_concurrent,
        }
