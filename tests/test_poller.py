"""
Tests for upload job polling.
"""

import asyncio
import time
from datetime import datetime, timezone

import pytest

from artvault.models.schemas import UploadJob, UploadJobStatus
from artvault.poller import (
    PollCancelledError,
    PollFailedError,
    PollTimeoutError,
    UploadJobPoller,
    run_unless_cancelled,
)
from artvault.remote import RemoteStorageError
from tests.mocks import FakeRemoteStorage


@pytest.fixture
def job(repository):
    now = datetime.now(timezone.utc)
    return repository.create_upload_job(
        UploadJob(
            id="local-1",
            hash="hash-1",
            filename="a.png",
            file_id="file-1",
            job_id="job-1",
            created_at=now,
            last_checked_at=now,
        )
    )


def make_poller(remote, repository, max_retries=20):
    return UploadJobPoller(remote, repository, max_retries=max_retries, interval=0)


class TestUploadJobPoller:
    """Polling state machine."""

    def test_immediate_completion(self, repository, job):
        remote = FakeRemoteStorage(["task.completed"])
        progress = asyncio.run(make_poller(remote, repository).wait(job))

        assert progress.status == "task.completed"
        assert remote.total_polls == 1
        assert repository.get_upload_job(job.id).status == UploadJobStatus.COMPLETED

    def test_completes_on_last_attempt(self, repository, job):
        remote = FakeRemoteStorage(["processing"] * 19 + ["task.completed"])
        progress = asyncio.run(make_poller(remote, repository).wait(job))

        assert progress.status == "task.completed"
        assert remote.total_polls == 20
        assert job.status == UploadJobStatus.COMPLETED

    def test_times_out_after_max_retries(self, repository, job):
        remote = FakeRemoteStorage(["processing"] * 20 + ["task.completed"])

        with pytest.raises(PollTimeoutError):
            asyncio.run(make_poller(remote, repository).wait(job))

        assert remote.total_polls == 20
        stored = repository.get_upload_job(job.id)
        assert stored.status == UploadJobStatus.TIMED_OUT
        assert stored.error

    def test_timeout_is_not_failure(self):
        assert not issubclass(PollTimeoutError, PollFailedError)
        assert not issubclass(PollFailedError, PollTimeoutError)

    def test_unknown_statuses_keep_polling(self, repository, job):
        remote = FakeRemoteStorage(["pending", "task.running", "task.completed"])
        asyncio.run(make_poller(remote, repository).wait(job))
        assert remote.total_polls == 3

    def test_processing_is_recorded(self, repository, job):
        remote = FakeRemoteStorage(["processing"])
        seen = []
        remote.poll_hook = lambda job_id, attempt: seen.append(
            repository.get_upload_job(job.id).status
        )

        with pytest.raises(PollTimeoutError):
            asyncio.run(make_poller(remote, repository, max_retries=3).wait(job))

        assert seen == [
            UploadJobStatus.PENDING,
            UploadJobStatus.PROCESSING,
            UploadJobStatus.PROCESSING,
        ]

    def test_remote_failure_status(self, repository, job):
        remote = FakeRemoteStorage(["processing", "task.failed"])

        with pytest.raises(PollFailedError, match="thumbnail failed"):
            asyncio.run(make_poller(remote, repository).wait(job))

        assert remote.total_polls == 2
        assert repository.get_upload_job(job.id).status == UploadJobStatus.FAILED

    def test_status_call_error(self, repository, job):
        remote = FakeRemoteStorage()
        remote.fail_poll = True

        with pytest.raises(PollFailedError) as exc_info:
            asyncio.run(make_poller(remote, repository).wait(job))

        assert exc_info.value.__cause__ is not None
        assert remote.total_polls == 1
        assert repository.get_upload_job(job.id).status == UploadJobStatus.FAILED

    def test_cancelled_before_first_poll(self, repository, job):
        remote = FakeRemoteStorage()

        async def run():
            cancel_event = asyncio.Event()
            cancel_event.set()
            await make_poller(remote, repository).wait(job, cancel_event)

        with pytest.raises(PollCancelledError):
            asyncio.run(run())

        assert remote.total_polls == 0
        assert repository.get_upload_job(job.id).status == UploadJobStatus.PENDING

    def test_cancelled_while_processing(self, repository, job):
        remote = FakeRemoteStorage(["processing"])

        async def run():
            cancel_event = asyncio.Event()

            def cancel_on_second_poll(job_id, attempt):
                if attempt == 2:
                    cancel_event.set()

            remote.poll_hook = cancel_on_second_poll
            await make_poller(remote, repository).wait(job, cancel_event)

        with pytest.raises(PollCancelledError):
            asyncio.run(run())

        assert remote.total_polls == 2

    def test_cancel_interrupts_sleep(self, repository, job):
        remote = FakeRemoteStorage(["processing"])
        poller = UploadJobPoller(remote, repository, max_retries=5, interval=30)

        async def run():
            cancel_event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel_event.set)
            await asyncio.wait_for(poller.wait(job, cancel_event), timeout=5)

        with pytest.raises(PollCancelledError):
            asyncio.run(run())

        assert remote.total_polls == 1

    def test_cancel_interrupts_status_call(self, repository, job):
        remote = FakeRemoteStorage(["processing"])
        remote.poll_delay = 30
        poller = UploadJobPoller(remote, repository, max_retries=5, interval=0.1)

        async def run():
            cancel_event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel_event.set)
            await asyncio.wait_for(poller.wait(job, cancel_event), timeout=5)

        started = time.monotonic()
        with pytest.raises(PollCancelledError):
            asyncio.run(run())

        assert time.monotonic() - started < 1
        assert remote.total_polls == 1
        assert repository.get_upload_job(job.id).status == UploadJobStatus.PENDING


class TestRunUnlessCancelled:
    """Racing a storage call against the cancel event."""

    def test_without_event(self):
        async def call():
            return "done"

        assert asyncio.run(run_unless_cancelled(call(), None)) == "done"

    def test_call_finishes_first(self):
        async def run():
            async def call():
                return "done"

            return await run_unless_cancelled(call(), asyncio.Event())

        assert asyncio.run(run()) == "done"

    def test_call_errors_propagate(self):
        async def run():
            async def call():
                raise RemoteStorageError("boom")

            await run_unless_cancelled(call(), asyncio.Event())

        with pytest.raises(RemoteStorageError):
            asyncio.run(run())

    def test_slow_call_is_abandoned(self):
        finished = []

        async def run():
            async def call():
                await asyncio.sleep(30)
                finished.append(True)

            cancel_event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel_event.set)
            await asyncio.wait_for(run_unless_cancelled(call(), cancel_event), 5)

        with pytest.raises(PollCancelledError):
            asyncio.run(run())
        assert finished == []
