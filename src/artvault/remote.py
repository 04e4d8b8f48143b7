"""
Client for the external file storage service.

The service accepts uploads immediately and processes them (thumbnails,
variants) in a background job. Every response is wrapped in a
``{code, message, data}`` envelope; ``data`` is decoded into the shape
expected by each call.
"""

import json
import logging
from typing import Any, BinaryIO, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import Settings
from .models.schemas import (
    DeleteResult,
    FileInfo,
    JobProgress,
    RemoteEnvelope,
    UploadResult,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RemoteStorageError(Exception):
    """File storage service errors (network, HTTP status, envelope)."""


class RemoteFileNotFoundError(RemoteStorageError):
    """The remote file does not exist (already deleted or never stored)."""


class RemoteStorageClient:
    """Async HTTP client for the file storage service."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize remote storage client.

        Args:
            settings: Application settings
            transport: Optional httpx transport (tests inject a mock here)
        """
        assert settings is not None, "Settings object is required"

        self.settings = settings
        self.base_url = settings.file_server_base_url.rstrip("/")
        self.app_id = settings.file_server_app_id
        self.space_id = settings.file_server_space_id
        self.timeout = settings.remote_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-App-ID": self.app_id,
                "X-API-Key": self.settings.file_server_api_key,
            },
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(
        self, method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        """Send one request, translating transport failures."""
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"File server timed out: {method} {path}")
            raise RemoteStorageError(f"Request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            logger.error(f"File server request failed: {method} {path}: {e}")
            raise RemoteStorageError(f"Request failed: {method} {path}: {e}") from e

    @staticmethod
    def _decode(response: httpx.Response, model: Type[ModelT]) -> ModelT:
        """
        Validate status, envelope and payload of a response.

        Raises:
            RemoteStorageError: On any deviation from the expected shape
        """
        if not response.is_success:
            raise RemoteStorageError(
                f"Unexpected status {response.status_code}: {response.text[:200]}"
            )

        try:
            envelope = RemoteEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RemoteStorageError(f"Malformed response envelope: {e}") from e

        if envelope.code != 0:
            raise RemoteStorageError(
                f"Request failed: code={envelope.code}, message={envelope.message}"
            )

        if envelope.data is None:
            raise RemoteStorageError("Response data is empty")

        try:
            return model.model_validate(envelope.data)
        except ValidationError as e:
            raise RemoteStorageError(
                f"Malformed {model.__name__} payload: {e}"
            ) from e

    async def upload(
        self,
        stream: BinaryIO,
        filename: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> UploadResult:
        """
        Hand file bytes to the storage service.

        Returns as soon as the service acknowledges the upload; processing
        continues in the background job identified by ``job_id``.

        Args:
            stream: File contents
            filename: Original filename
            options: Processing options (defaults to thumbnail settings)

        Returns:
            Upload acknowledgement with file and job identifiers

        Raises:
            RemoteStorageError: If the upload is not accepted
        """
        assert filename, "Filename is required"

        if options is None:
            options = self.settings.thumbnail_options()

        logger.info(
            f"Uploading {filename} (app_id={self.app_id}, space_id={self.space_id})"
        )
        response = await self._request(
            "POST",
            "/api/v1/files",
            data={
                "app_id": self.app_id,
                "space_id": self.space_id,
                "options": json.dumps(options),
            },
            files={"file": (filename, stream)},
        )
        result = self._decode(response, UploadResult)

        logger.info(f"Upload accepted: file_id={result.file_id}, job_id={result.job_id}")
        return result

    async def delete(self, file_id: str) -> None:
        """
        Delete a stored file.

        Raises:
            RemoteFileNotFoundError: If the file does not exist
            RemoteStorageError: If the deletion fails
        """
        assert file_id, "File ID is required"

        logger.info(f"Deleting remote file {file_id}")
        response = await self._request("DELETE", f"/api/v1/files/{file_id}")

        if response.status_code == 404:
            raise RemoteFileNotFoundError(f"Remote file not found: {file_id}")

        result = self._decode(response, DeleteResult)
        if not result.deleted:
            raise RemoteFileNotFoundError(f"Remote file not found: {file_id}")

    async def get_file_info(self, file_id: str) -> FileInfo:
        """Fetch access URL, variants and metadata of a stored file."""
        assert file_id, "File ID is required"

        response = await self._request("GET", f"/api/v1/files/{file_id}")
        return self._decode(response, FileInfo)

    async def get_job_progress(self, job_id: str) -> JobProgress:
        """Fetch the processing status of an upload job."""
        assert job_id, "Job ID is required"

        response = await self._request("GET", f"/api/v1/jobs/{job_id}")
        return self._decode(response, JobProgress)
