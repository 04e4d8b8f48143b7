"""
Mock implementations for ArtVault testing.

This module provides an in-memory stand-in for the external file server
and deterministic image generators, so tests exercise the real pipeline
without network access.
"""

import asyncio
import io
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from PIL import Image

from artvault.models.schemas import (
    FileInfo,
    JobProgress,
    ResourceVariant,
    UploadResult,
)
from artvault.remote import RemoteFileNotFoundError, RemoteStorageError

TEST_API_KEY = "test-api-key"


class FakeRemoteStorage:
    """In-memory file server with scripted job statuses."""

    def __init__(
        self,
        job_statuses: Optional[List[str]] = None,
        with_thumbnail: bool = True,
    ):
        """
        Initialize fake file server.

        Args:
            job_statuses: Statuses returned by successive polls of a job;
                the last one repeats once the script is exhausted
            with_thumbnail: Whether file info lists a thumbnail variant
        """
        self.job_statuses = job_statuses or ["task.completed"]
        self.with_thumbnail = with_thumbnail

        self.files: Dict[str, str] = {}
        self.uploads: List[str] = []
        self.deleted: List[str] = []
        self.polls: Dict[str, int] = {}
        self.missing: set = set()

        self.fail_upload = False
        self.fail_poll = False
        self.fail_file_info = False
        self.fail_delete = False
        self.poll_hook: Optional[Callable[[str, int], Any]] = None
        self.upload_hook: Optional[Callable[[str], Any]] = None

        # Seconds each call stays in flight
        self.upload_delay = 0.0
        self.poll_delay = 0.0

    @property
    def total_polls(self) -> int:
        return sum(self.polls.values())

    async def upload(self, stream, filename: str, options=None) -> UploadResult:
        if self.fail_upload:
            raise RemoteStorageError("Simulated upload failure")

        stream.read()
        if self.upload_delay:
            await asyncio.sleep(self.upload_delay)

        index = len(self.uploads) + 1
        file_id = f"file-{index}"
        job_id = f"job-{index}"
        self.files[file_id] = filename
        self.uploads.append(file_id)
        if self.upload_hook is not None:
            self.upload_hook(file_id)
        return UploadResult(
            file_id=file_id,
            job_id=job_id,
            status_url=f"/api/v1/jobs/{job_id}",
            status="pending",
        )

    async def delete(self, file_id: str) -> None:
        if self.fail_delete:
            raise RemoteStorageError("Simulated delete failure")
        if file_id in self.missing:
            raise RemoteFileNotFoundError(f"Remote file not found: {file_id}")
        self.files.pop(file_id, None)
        self.deleted.append(file_id)

    async def get_file_info(self, file_id: str) -> FileInfo:
        if self.fail_file_info:
            raise RemoteStorageError("Simulated file info failure")

        variants = []
        if self.with_thumbnail:
            variants.append(
                ResourceVariant(
                    type="thumbnail",
                    access_url=f"/files/{file_id}/thumbnail.jpg",
                )
            )
        return FileInfo(
            file_id=file_id,
            access_url=f"/files/{file_id}/original",
            variants=variants,
            metadata={"width": 64, "height": 64},
        )

    async def get_job_progress(self, job_id: str) -> JobProgress:
        attempt = self.polls.get(job_id, 0) + 1
        self.polls[job_id] = attempt
        if self.poll_hook is not None:
            self.poll_hook(job_id, attempt)
        if self.poll_delay:
            await asyncio.sleep(self.poll_delay)
        if self.fail_poll:
            raise RemoteStorageError("Simulated status failure")

        status = self.job_statuses[min(attempt, len(self.job_statuses)) - 1]
        return JobProgress(
            job_id=job_id,
            status=status,
            total_tasks=1,
            completed_tasks=1 if status == "task.completed" else 0,
            error_msg="thumbnail failed" if status == "task.failed" else None,
        )


def encode_image(image: Image.Image, format: str = "PNG") -> bytes:
    """Encode a Pillow image into bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format=format)
    return buffer.getvalue()


def noise_image(seed: int, size: int = 64) -> Image.Image:
    """Deterministic random-noise image."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, (size, size, 3), dtype=np.uint8)
    return Image.fromarray(pixels)


def tweak_pixel(image: Image.Image) -> Image.Image:
    """Copy of an image with a single pixel changed."""
    tweaked = image.copy()
    r, g, b = tweaked.getpixel((0, 0))
    tweaked.putpixel((0, 0), ((r + 1) % 256, g, b))
    return tweaked
