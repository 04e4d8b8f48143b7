"""
Polling of delegated upload jobs until the storage service finishes.

State machine over one upload job::

    pending -> processing -> completed
                          -> failed      (remote error or failure status)
                          -> timed_out   (max retries exhausted)

Cancellation is checked at the top of every iteration and interrupts both
the in-flight status call and the sleep between polls, so a cancelled
caller never waits longer than one interval.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional, TypeVar

from .models.schemas import JobProgress, UploadJob, UploadJobStatus
from .remote import RemoteStorageClient, RemoteStorageError
from .storage import CatalogRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollError(Exception):
    """Upload job did not complete."""


class PollFailedError(PollError):
    """The storage service reported an error or a failed job."""


class PollTimeoutError(PollError):
    """The job did not complete within the retry bound."""


class PollCancelledError(PollError):
    """The caller cancelled while waiting on the storage service."""


async def run_unless_cancelled(
    call: Coroutine[Any, Any, T], cancel_event: Optional[asyncio.Event]
) -> T:
    """
    Await a storage service call, abandoning it once cancel_event is set.

    A call that has already finished when the event fires still returns
    its result; callers check the event afterwards.

    Raises:
        PollCancelledError: If the event fired before the call finished
    """
    if cancel_event is None:
        return await call

    task = asyncio.create_task(call)
    waiter = asyncio.create_task(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if not task.done():
        task.cancel()
        await asyncio.wait({task})
    if task.cancelled():
        raise PollCancelledError("Cancelled while waiting on the storage service")
    return task.result()


class UploadJobPoller:
    """Waits for remote upload jobs, recording each transition."""

    def __init__(
        self,
        remote: RemoteStorageClient,
        repository: CatalogRepository,
        max_retries: int = 20,
        interval: float = 1.0,
        success_status: str = "task.completed",
        failure_status: Optional[str] = "task.failed",
    ):
        assert remote is not None, "Remote storage client is required"
        assert repository is not None, "Repository is required"
        assert max_retries >= 1, f"Invalid max_retries: {max_retries}"
        assert interval >= 0, f"Invalid interval: {interval}"

        self.remote = remote
        self.repository = repository
        self.max_retries = max_retries
        self.interval = interval
        self.success_status = success_status
        self.failure_status = failure_status

    async def _sleep(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(self.interval)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return
        raise PollCancelledError("Polling cancelled")

    def _record(
        self, job: UploadJob, status: UploadJobStatus, error: Optional[str] = None
    ) -> None:
        job.status = status
        job.error = error
        self.repository.update_upload_job_status(job.id, status, error)

    async def wait(
        self, job: UploadJob, cancel_event: Optional[asyncio.Event] = None
    ) -> JobProgress:
        """
        Poll the job until it completes.

        Args:
            job: Persisted upload job
            cancel_event: Set by the caller to abandon polling

        Returns:
            Final job progress

        Raises:
            PollCancelledError: If cancel_event is set
            PollFailedError: If a status call fails or the job fails remotely
            PollTimeoutError: If the job is still unfinished after max_retries
        """
        assert job is not None, "Upload job is required"

        for attempt in range(1, self.max_retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Polling of job {job.job_id} cancelled")
                raise PollCancelledError("Polling cancelled")

            try:
                progress = await run_unless_cancelled(
                    self.remote.get_job_progress(job.job_id), cancel_event
                )
            except PollCancelledError:
                logger.info(f"Polling of job {job.job_id} cancelled mid-request")
                raise
            except RemoteStorageError as e:
                logger.error(f"Failed to query job {job.job_id}: {e}")
                self._record(job, UploadJobStatus.FAILED, str(e))
                raise PollFailedError(f"Failed to query job progress: {e}") from e

            if progress.status == self.success_status:
                self._record(job, UploadJobStatus.COMPLETED)
                logger.info(f"Job {job.job_id} completed after {attempt} polls")
                return progress

            if self.failure_status and progress.status == self.failure_status:
                reason = progress.error_msg or progress.status
                self._record(job, UploadJobStatus.FAILED, reason)
                logger.error(f"Job {job.job_id} failed remotely: {reason}")
                raise PollFailedError(f"Upload job failed: {reason}")

            self._record(job, UploadJobStatus.PROCESSING)
            logger.debug(
                f"Job {job.job_id} status {progress.status} "
                f"({progress.completed_tasks}/{progress.total_tasks}), "
                f"poll {attempt}/{self.max_retries}"
            )

            if attempt < self.max_retries:
                await self._sleep(cancel_event)

        logger.error(f"Job {job.job_id} polling timed out after {self.max_retries} polls")
        self._record(
            job,
            UploadJobStatus.TIMED_OUT,
            f"Not completed after {self.max_retries} polls",
        )
        raise PollTimeoutError(
            f"Upload job polling timed out after {self.max_retries} attempts"
        )
