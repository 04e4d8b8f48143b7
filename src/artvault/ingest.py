"""
Upload ingestion pipeline.

One upload runs as a strict sequence of stages; the first failing stage
aborts the rest:

1. validate      filename extension, size
2. exact         SHA-256 digest lookup
3. similar       perceptual hash scan (best-effort)
4. upload        hand the bytes to the storage service
5. poll          wait for the remote processing job
6. file_info     resolve access and thumbnail URLs
7. create        insert the catalog record

No catalog record exists unless every stage succeeds. When the remote
side accepted the file but a later stage fails, the file is deleted
again on a best-effort basis.
"""

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, List, Optional

from .config import Settings
from .dedup import DuplicateDetector
from .fingerprint import (
    NO_PERCEPTUAL_DIGEST,
    Fingerprint,
    FingerprintError,
    compute_content_digest,
    compute_perceptual_digest,
)
from .models.schemas import Artwork, UploadJob, UploadJobStatus
from .poller import (
    PollCancelledError,
    PollFailedError,
    PollTimeoutError,
    UploadJobPoller,
    run_unless_cancelled,
)
from .remote import RemoteFileNotFoundError, RemoteStorageClient, RemoteStorageError
from .storage import CatalogRepository, DuplicateHashError, StorageError

logger = logging.getLogger(__name__)

THUMBNAIL_VARIANT = "thumbnail"


class IngestionError(Exception):
    """Upload could not be ingested."""

    def __init__(self, message: str, stage: str = "unknown"):
        super().__init__(message)
        self.stage = stage


class InvalidUploadError(IngestionError):
    """The upload is missing, empty, too large or not an accepted image."""

    def __init__(self, message: str):
        super().__init__(message, stage="validate")


class DuplicateArtworkError(IngestionError):
    """The upload duplicates an existing artwork."""

    def __init__(
        self,
        message: str,
        kind: str,
        artwork_id: Optional[int] = None,
        distance: Optional[int] = None,
    ):
        super().__init__(message, stage=kind)
        self.kind = kind
        self.artwork_id = artwork_id
        self.distance = distance


class RemoteUploadError(IngestionError):
    """The storage service rejected or failed to process the upload."""


class PollTimeoutIngestionError(RemoteUploadError):
    """The remote processing job never completed."""


class IngestionCancelledError(IngestionError):
    """The caller abandoned the upload."""


@dataclass
class ReconcileReport:
    """Outcome of a startup sweep over unfinished upload jobs."""

    resumed: List[int] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class IngestionOrchestrator:
    """Drives one upload from raw bytes to a catalog record."""

    def __init__(
        self,
        settings: Settings,
        repository: CatalogRepository,
        detector: DuplicateDetector,
        remote: RemoteStorageClient,
        poller: UploadJobPoller,
    ):
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.repository = repository
        self.detector = detector
        self.remote = remote
        self.poller = poller
        self.base_url = settings.file_server_base_url.rstrip("/")
        self.allowed_extensions = {
            ext.lower().lstrip(".") for ext in settings.allowed_image_types
        }

    # ========================================
    # PIPELINE
    # ========================================

    async def ingest(
        self,
        filename: Optional[str],
        stream: Optional[BinaryIO],
        request_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Artwork:
        """
        Ingest one uploaded image.

        Args:
            filename: Client-supplied filename
            stream: Seekable binary stream with the file contents
            request_id: Identifier used in log lines
            cancel_event: Set when the client goes away

        Returns:
            Created artwork

        Raises:
            InvalidUploadError: Bad input
            DuplicateArtworkError: Exact or near duplicate
            IngestionCancelledError: Cancelled by the caller
            IngestionError: Remote storage, polling or persistence failure
        """
        request_id = request_id or uuid.uuid4().hex
        log_prefix = f"[{request_id}] {filename}"

        self._validate(filename, stream)
        logger.info(f"{log_prefix}: ingestion started")

        fingerprint = self._check_duplicates(stream, log_prefix, cancel_event)

        self._check_cancelled(cancel_event, "upload")
        stream.seek(0)
        try:
            uploaded = await run_unless_cancelled(
                self.remote.upload(stream, filename), cancel_event
            )
        except PollCancelledError as e:
            logger.info(f"{log_prefix}: stage=upload cancelled in flight")
            raise IngestionCancelledError("Upload cancelled", stage="upload") from e
        except RemoteStorageError as e:
            logger.error(f"{log_prefix}: stage=upload failed: {e}")
            raise RemoteUploadError("Remote upload failed", stage="upload") from e

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"{log_prefix}: stage=upload cancelled after completion")
            await self._cleanup_remote_file(uploaded.file_id, log_prefix)
            raise IngestionCancelledError("Upload cancelled", stage="upload")

        now = datetime.now(timezone.utc)
        job = UploadJob(
            id=uuid.uuid4().hex,
            hash=fingerprint.content_digest,
            phash=fingerprint.perceptual_digest,
            filename=filename,
            file_id=uploaded.file_id,
            job_id=uploaded.job_id,
            status_url=uploaded.status_url,
            status=UploadJobStatus.PENDING,
            created_at=now,
            last_checked_at=now,
        )
        try:
            self.repository.create_upload_job(job)
        except StorageError as e:
            logger.error(f"{log_prefix}: stage=poll could not record job: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            raise IngestionError("Failed to record upload job", stage="poll") from e

        logger.info(f"{log_prefix}: waiting for job {job.job_id}")
        return await self._complete(job, log_prefix, cancel_event)

    def _validate(self, filename: Optional[str], stream: Optional[BinaryIO]) -> None:
        if stream is None or not filename:
            raise InvalidUploadError("No file found in upload")

        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if extension not in self.allowed_extensions:
            raise InvalidUploadError("Only image files are accepted")

        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(0)
        if size == 0:
            raise InvalidUploadError("Uploaded file is empty")
        if size > self.settings.max_image_size:
            raise InvalidUploadError(
                f"File exceeds the {self.settings.max_image_size} byte limit"
            )

    def _check_duplicates(
        self,
        stream: BinaryIO,
        log_prefix: str,
        cancel_event: Optional[asyncio.Event],
    ) -> Fingerprint:
        """Stages 2 and 3: exact and near-duplicate checks."""
        self._check_cancelled(cancel_event, "exact")

        stream.seek(0)
        digest = compute_content_digest(stream)
        logger.debug(f"{log_prefix}: content digest {digest}")

        try:
            existing = self.detector.check_exact_duplicate(digest)
        except StorageError as e:
            logger.error(f"{log_prefix}: stage=exact lookup failed: {e}")
            raise IngestionError("Duplicate lookup failed", stage="exact") from e

        if existing is not None:
            logger.info(f"{log_prefix}: exact duplicate of artwork {existing.id}")
            raise DuplicateArtworkError(
                "Image already exists", kind="exact", artwork_id=existing.id
            )

        stream.seek(0)
        try:
            phash = compute_perceptual_digest(stream)
        except FingerprintError as e:
            logger.warning(f"{log_prefix}: stage=similar skipped: {e}")
            return Fingerprint(digest, NO_PERCEPTUAL_DIGEST)

        self._check_cancelled(cancel_event, "similar")
        try:
            matches = self.detector.rank_similar(
                phash, self.settings.similarity_threshold
            )
        except StorageError as e:
            logger.warning(f"{log_prefix}: stage=similar lookup failed: {e}")
            matches = []

        if matches:
            nearest = matches[0]
            logger.info(
                f"{log_prefix}: {len(matches)} similar artworks, nearest "
                f"{nearest.artwork.id} at distance {nearest.distance}"
            )
            raise DuplicateArtworkError(
                "Image is too similar to an existing artwork",
                kind="similar",
                artwork_id=nearest.artwork.id,
                distance=nearest.distance,
            )

        return Fingerprint(digest, phash)

    async def _complete(
        self,
        job: UploadJob,
        log_prefix: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Artwork:
        """Stages 5 to 7 for a delegated upload."""
        try:
            await self.poller.wait(job, cancel_event)
        except PollCancelledError as e:
            await self._cleanup_remote_file(job.file_id, log_prefix)
            self._discard_failed_job(job, "cancelled")
            raise IngestionCancelledError("Upload cancelled", stage="poll") from e
        except PollTimeoutError as e:
            logger.error(f"{log_prefix}: stage=poll timed out: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            raise PollTimeoutIngestionError(
                "Remote processing timed out", stage="poll"
            ) from e
        except PollFailedError as e:
            logger.error(f"{log_prefix}: stage=poll failed: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            raise RemoteUploadError("Remote processing failed", stage="poll") from e
        except StorageError as e:
            logger.error(f"{log_prefix}: stage=poll could not record status: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            raise IngestionError("Failed to record job status", stage="poll") from e

        try:
            info = await self.remote.get_file_info(job.file_id)
        except RemoteStorageError as e:
            logger.error(f"{log_prefix}: stage=file_info failed: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            self._discard_failed_job(job, str(e))
            raise RemoteUploadError(
                "Failed to fetch file info", stage="file_info"
            ) from e

        thumbnail = info.variant(THUMBNAIL_VARIANT)
        thumbnail_url = self.base_url + thumbnail.access_url if thumbnail else ""

        try:
            artwork = self.repository.create_artwork(
                file_id=job.file_id,
                url=self.base_url + info.access_url,
                hash=job.hash,
                phash=job.phash,
                thumbnail_url=thumbnail_url,
                tags=[],
            )
        except DuplicateHashError as e:
            # Lost a race with a concurrent upload of the same bytes
            logger.info(f"{log_prefix}: stage=create digest already stored")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            self._forget_job(job)
            try:
                existing = self.repository.get_by_hash(job.hash)
            except StorageError:
                existing = None
            raise DuplicateArtworkError(
                "Image already exists",
                kind="exact",
                artwork_id=existing.id if existing else None,
            ) from e
        except StorageError as e:
            logger.error(f"{log_prefix}: stage=create failed: {e}")
            await self._cleanup_remote_file(job.file_id, log_prefix)
            self._discard_failed_job(job, str(e))
            raise IngestionError("Failed to create artwork", stage="create") from e

        self._forget_job(job)
        logger.info(f"{log_prefix}: created artwork {artwork.id}")
        return artwork

    # ========================================
    # HELPERS
    # ========================================

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IngestionCancelledError("Upload cancelled", stage=stage)

    def _discard_failed_job(self, job: UploadJob, reason: str) -> None:
        try:
            self.repository.update_upload_job_status(
                job.id, UploadJobStatus.FAILED, reason
            )
        except StorageError as e:
            logger.error(f"Failed to mark upload job {job.id} failed: {e}")

    def _forget_job(self, job: UploadJob) -> None:
        # Reconciliation ignores completed job rows left behind
        try:
            self.repository.delete_upload_job(job.id)
        except StorageError as e:
            logger.error(f"Failed to discard upload job {job.id}: {e}")

    async def _cleanup_remote_file(self, file_id: str, log_prefix: str) -> None:
        """Best-effort delete of a file the catalog will not reference."""
        try:
            await self.remote.delete(file_id)
            logger.info(f"{log_prefix}: removed orphaned remote file {file_id}")
        except RemoteFileNotFoundError:
            logger.info(f"{log_prefix}: remote file {file_id} already gone")
        except RemoteStorageError as e:
            logger.error(f"{log_prefix}: failed to remove remote file {file_id}: {e}")

    # ========================================
    # RECONCILIATION
    # ========================================

    async def reconcile_pending_jobs(
        self, now: Optional[datetime] = None
    ) -> ReconcileReport:
        """
        Resume or fail upload jobs left unfinished by a previous process.

        Jobs older than the staleness threshold are failed and their
        remote files removed; younger ones are polled to completion.
        """
        now = now or datetime.now(timezone.utc)
        staleness = timedelta(seconds=self.settings.job_staleness_seconds)
        report = ReconcileReport()

        jobs = self.repository.list_upload_jobs(
            [UploadJobStatus.PENDING, UploadJobStatus.PROCESSING]
        )
        if jobs:
            logger.info(f"Reconciling {len(jobs)} unfinished upload jobs")

        for job in jobs:
            log_prefix = f"[reconcile] {job.filename}"
            if now - job.created_at > staleness:
                logger.warning(f"{log_prefix}: job {job.job_id} is stale, failing it")
                await self._cleanup_remote_file(job.file_id, log_prefix)
                self._discard_failed_job(job, "stale")
                report.failed.append(job.id)
                continue

            try:
                artwork = await self._complete(job, log_prefix)
            except (IngestionError, StorageError) as e:
                logger.warning(f"{log_prefix}: could not resume job {job.job_id}: {e}")
                report.failed.append(job.id)
                continue
            report.resumed.append(artwork.id)

        return report
