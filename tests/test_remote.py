"""
Tests for the file server client, driven through httpx.MockTransport.
"""

import asyncio
import io
import json

import httpx
import pytest

from artvault.remote import (
    RemoteFileNotFoundError,
    RemoteStorageClient,
    RemoteStorageError,
)


def envelope(data, code=0, message="success"):
    return {"code": code, "message": message, "data": data}


def make_client(test_settings, handler):
    return RemoteStorageClient(test_settings, transport=httpx.MockTransport(handler))


class TestUpload:
    """POST /api/v1/files"""

    def test_upload_success(self, test_settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(
                200,
                json=envelope(
                    {
                        "file_id": "f-1",
                        "job_id": "j-1",
                        "status_url": "/api/v1/jobs/j-1",
                        "unexpected": "ignored",
                    }
                ),
            )

        client = make_client(test_settings, handler)
        result = asyncio.run(client.upload(io.BytesIO(b"image-bytes"), "a.png"))

        assert result.file_id == "f-1"
        assert result.job_id == "j-1"
        assert result.status_url == "/api/v1/jobs/j-1"

        request = seen["request"]
        assert request.method == "POST"
        assert str(request.url) == "http://files.test/api/v1/files"
        assert request.headers["X-App-ID"] == "test-app"
        assert "X-API-Key" in request.headers

        body = request.content
        assert b'name="app_id"' in body
        assert b"test-space" in body
        assert b'filename="a.png"' in body
        assert b"image-bytes" in body
        assert json.dumps(test_settings.thumbnail_options()).encode() in body

    def test_custom_options(self, test_settings):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            return httpx.Response(200, json=envelope({"file_id": "f", "job_id": "j"}))

        client = make_client(test_settings, handler)
        asyncio.run(client.upload(io.BytesIO(b"x"), "a.png", {"thumbnail": None}))

        assert json.dumps({"thumbnail": None}).encode() in seen["body"]

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="internal error"),
            httpx.Response(200, text="not json"),
            httpx.Response(200, content=b"\xff\xfe\xfa{bad"),
            httpx.Response(200, json={"message": "no code"}),
            httpx.Response(200, json=envelope(None, code=1001, message="denied")),
            httpx.Response(200, json=envelope(None)),
            httpx.Response(200, json=envelope({"file_id": "f-1"})),
        ],
        ids=[
            "http-error",
            "invalid-json",
            "undecodable-body",
            "missing-code",
            "business-error",
            "missing-data",
            "incomplete-data",
        ],
    )
    def test_rejected_responses(self, test_settings, response):
        client = make_client(test_settings, lambda request: response)
        with pytest.raises(RemoteStorageError):
            asyncio.run(client.upload(io.BytesIO(b"x"), "a.png"))

    def test_timeout(self, test_settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(test_settings, handler)
        with pytest.raises(RemoteStorageError, match="timed out"):
            asyncio.run(client.upload(io.BytesIO(b"x"), "a.png"))

    def test_connection_error(self, test_settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(test_settings, handler)
        with pytest.raises(RemoteStorageError):
            asyncio.run(client.upload(io.BytesIO(b"x"), "a.png"))


class TestDelete:
    """DELETE /api/v1/files/{id}"""

    def test_delete_success(self, test_settings):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json=envelope({"file_id": "f-1", "deleted": True}))

        client = make_client(test_settings, handler)
        asyncio.run(client.delete("f-1"))

        assert seen["request"].method == "DELETE"
        assert seen["request"].url.path == "/api/v1/files/f-1"

    def test_not_found_status(self, test_settings):
        client = make_client(
            test_settings,
            lambda request: httpx.Response(404, json=envelope(None, code=404)),
        )
        with pytest.raises(RemoteFileNotFoundError):
            asyncio.run(client.delete("missing"))

    def test_not_deleted(self, test_settings):
        client = make_client(
            test_settings,
            lambda request: httpx.Response(
                200, json=envelope({"file_id": "f-1", "deleted": False})
            ),
        )
        with pytest.raises(RemoteFileNotFoundError):
            asyncio.run(client.delete("f-1"))

    def test_server_error_is_not_not_found(self, test_settings):
        client = make_client(test_settings, lambda request: httpx.Response(503))
        with pytest.raises(RemoteStorageError) as exc_info:
            asyncio.run(client.delete("f-1"))
        assert not isinstance(exc_info.value, RemoteFileNotFoundError)


class TestQueries:
    """File info and job progress."""

    def test_file_info_with_variants(self, test_settings):
        data = {
            "file_id": "f-1",
            "access_url": "/files/f-1",
            "variants": [
                {"type": "preview", "access_url": "/files/f-1/preview"},
                {"type": "thumbnail", "access_url": "/files/f-1/thumb"},
            ],
            "metadata": {"width": 800, "height": 600, "mime_type": "image/png"},
        }
        client = make_client(
            test_settings, lambda request: httpx.Response(200, json=envelope(data))
        )

        info = asyncio.run(client.get_file_info("f-1"))

        assert info.access_url == "/files/f-1"
        assert info.variant("thumbnail").access_url == "/files/f-1/thumb"
        assert info.variant("original") is None
        assert info.metadata["width"] == 800

    def test_job_progress(self, test_settings):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json=envelope(
                    {
                        "job_id": "j-1",
                        "status": "task.processing",
                        "total_tasks": 2,
                        "completed_tasks": 1,
                        "failed_tasks": 0,
                    }
                ),
            )

        client = make_client(test_settings, handler)
        progress = asyncio.run(client.get_job_progress("j-1"))

        assert seen["path"] == "/api/v1/jobs/j-1"
        assert progress.status == "task.processing"
        assert progress.completed_tasks == 1

    def test_job_progress_without_status(self, test_settings):
        client = make_client(
            test_settings,
            lambda request: httpx.Response(200, json=envelope({"job_id": "j-1"})),
        )
        with pytest.raises(RemoteStorageError):
            asyncio.run(client.get_job_progress("j-1"))

    def test_job_progress_undecodable_body(self, test_settings):
        client = make_client(
            test_settings,
            lambda request: httpx.Response(200, content=b"\xff\xfe\xfa{bad"),
        )
        with pytest.raises(RemoteStorageError, match="Malformed"):
            asyncio.run(client.get_job_progress("j-1"))
