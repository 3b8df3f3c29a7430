"""
De-duplication of concurrent segment generation.

Every request for a track that is being generated joins the same job
instead of starting another encoder. The job runs in its own task, so a
client disconnecting does not abort work other clients are waiting on.
"""
import time
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class InFlightJob:
    """A running generation job shared by everyone who asked for the track."""

    def __init__(self, track_id: str, future: asyncio.Future):
        self.track_id = track_id
        self.future = future
        self.task: Optional[asyncio.Task] = None
        self.started_at = time.time()

    @property
    def age(self) -> float:
        return time.time() - self.started_at

    def to_dict(self) -> dict:
        return {
            "track_id": self.track_id,
            "age_seconds": round(self.age, 1),
            "done": self.future.done(),
        }


class InFlightRegistry:
    """Maps track id to the single in-flight job for that track."""

    def __init__(self):
        self._jobs: Dict[str, InFlightJob] = {}

    def begin_or_join(self, track_id: str) -> Tuple[bool, InFlightJob]:
        """
        Return (is_owner, job). The first caller for a track becomes the owner
        and must start the job; later callers only await job.future.
        """
        job = self._jobs.get(track_id)
        if job is not None:
            return False, job

        future = asyncio.get_running_loop().create_future()
        job = InFlightJob(track_id, future)
        self._jobs[track_id] = job
        return True, job

    async def run(self, track_id: str, job_fn: Callable[[], Awaitable]):
        """
        Run job_fn once per track no matter how many callers arrive.

        All callers get the same result or the same exception.
        """
        is_owner, job = self.begin_or_join(track_id)
        if is_owner:
            job.task = asyncio.create_task(self._drive(job, job_fn))
            job.task.add_done_callback(lambda task: self._settle(job))
        else:
            logger.info(f"[{track_id}] Joining in-flight generation")

        # Shield so a cancelled caller leaves the shared job running
        return await asyncio.shield(job.future)

    async def _drive(self, job: InFlightJob, job_fn: Callable[[], Awaitable]) -> None:
        try:
            result = await job_fn()
        except asyncio.CancelledError:
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as e:
            if not job.future.done():
                job.future.set_exception(e)
                # Mark retrieved so an unjoined failure does not warn at GC
                job.future.exception()
        else:
            if not job.future.done():
                job.future.set_result(result)
        finally:
            if self._jobs.get(job.track_id) is job:
                del self._jobs[job.track_id]

    def _settle(self, job: InFlightJob) -> None:
        # A driver cancelled before its first step never reaches its try block
        if not job.future.done():
            job.future.cancel()
        if self._jobs.get(job.track_id) is job:
            del self._jobs[job.track_id]

    def is_in_flight(self, track_id: str) -> bool:
        return track_id in self._jobs

    def active(self) -> List[InFlightJob]:
        return list(self._jobs.values())

    def purge_stale(self, max_age: float) -> int:
        """
        Drop entries that settled but were never removed and are older than
        max_age. Jobs that are still running are left alone.
        """
        stale = [
            track_id for track_id, job in self._jobs.items()
            if job.future.done() and job.age > max_age
        ]
        for track_id in stale:
            del self._jobs[track_id]
        if stale:
            logger.info(f"Purged {len(stale)} stale in-flight entries")
        return len(stale)

    async def cancel_all(self) -> None:
        """Cancel every running job, used on shutdown."""
        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        for task in tasks:
            task.cancel()
        for job in self._jobs.values():
            if not job.future.done():
                job.future.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()


# Global registry instance
in_flight = InFlightRegistry()
