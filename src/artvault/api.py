"""
ArtVault API - artwork gallery backend.

Routes:
- Artworks: upload with duplicate detection, list, random, get
- Engagement: like/unlike, bookmark/unbookmark
- Admin (X-API-Key): update, delete
- System: health
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response

from .auth import APIKeyPolicy, require_api_key
from .config import Settings, get_settings
from .dedup import DuplicateDetector
from .ingest import (
    DuplicateArtworkError,
    IngestionCancelledError,
    IngestionError,
    IngestionOrchestrator,
    InvalidUploadError,
    ReconcileReport,
)
from .models.schemas import (
    ArtworkListResponse,
    ArtworkResponse,
    ArtworkUpdateRequest,
    CounterResponse,
    HealthResponse,
    UploadJobStatus,
)
from .poller import UploadJobPoller
from .remote import RemoteFileNotFoundError, RemoteStorageClient, RemoteStorageError
from .storage import CatalogRepository, StorageError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DEFAULT_RANDOM_LIMIT = 10
MAX_RANDOM_LIMIT = 100
DISCONNECT_CHECK_INTERVAL = 0.5

# Non-standard status used when the client closed the connection
CLIENT_CLOSED_REQUEST = 499


def _normalize_page(page: int, page_size: int) -> Tuple[int, int]:
    if page < 1:
        page = 1
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page, page_size


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_RANDOM_LIMIT))


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set cancel_event once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_CHECK_INTERVAL)


def create_app(
    settings: Optional[Settings] = None,
    remote: Optional[RemoteStorageClient] = None,
) -> FastAPI:
    """Create ArtVault FastAPI application."""
    if settings is None:
        settings = get_settings()
    assert settings is not None, "Settings must be provided or created"

    # Core components
    repository = CatalogRepository(settings)
    if remote is None:
        remote = RemoteStorageClient(settings)
    detector = DuplicateDetector(repository)
    poller = UploadJobPoller(
        remote,
        repository,
        max_retries=settings.poll_max_retries,
        interval=settings.poll_interval_seconds,
        success_status=settings.job_success_status,
        failure_status=settings.job_failure_status,
    )
    orchestrator = IngestionOrchestrator(
        settings, repository, detector, remote, poller
    )
    api_key_policy = APIKeyPolicy.from_settings(settings)

    async def reconcile() -> ReconcileReport:
        try:
            report = await orchestrator.reconcile_pending_jobs()
        except StorageError as e:
            logger.error(f"Upload job reconciliation failed: {e}")
            return ReconcileReport()
        if report.resumed or report.failed:
            logger.info(
                f"Reconciled upload jobs: {len(report.resumed)} resumed, "
                f"{len(report.failed)} failed"
            )
        return report

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        reconcile_task = asyncio.create_task(reconcile())
        app.state.reconcile_task = reconcile_task
        try:
            yield
        finally:
            if not reconcile_task.done():
                reconcile_task.cancel()

    app = FastAPI(
        title="ArtVault API",
        description="Artwork gallery with duplicate-aware uploads",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Dependency providers
    def get_repository() -> CatalogRepository:
        assert repository is not None, "Repository not initialized"
        return repository

    def get_orchestrator() -> IngestionOrchestrator:
        assert orchestrator is not None, "Orchestrator not initialized"
        return orchestrator

    def get_remote() -> RemoteStorageClient:
        return remote

    def get_api_key_policy() -> APIKeyPolicy:
        return api_key_policy

    api_key_required = require_api_key(get_api_key_policy)

    app.state.api_key_policy = api_key_policy
    app.state.orchestrator = orchestrator

    # ========================================
    # ARTWORKS
    # ========================================

    @app.post(
        "/artworks/upload",
        response_model=ArtworkResponse,
        status_code=201,
        tags=["Artworks"],
        summary="Upload artwork",
        description="Upload an image; exact and near duplicates are rejected.",
    )
    async def upload_artwork(
        request: Request,
        file: UploadFile = File(...),
        orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
    ) -> ArtworkResponse:
        """Run the ingestion pipeline for one uploaded file."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))

        try:
            artwork = await orchestrator.ingest(
                file.filename, file.file, request_id, cancel_event
            )
            return artwork.to_response()

        except InvalidUploadError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DuplicateArtworkError as e:
            raise HTTPException(
                status_code=409,
                detail={
                    "message": str(e),
                    "kind": e.kind,
                    "artwork_id": e.artwork_id,
                    "distance": e.distance,
                },
            )
        except IngestionCancelledError:
            logger.info(f"[{request_id}] {file.filename}: client went away")
            raise HTTPException(
                status_code=CLIENT_CLOSED_REQUEST, detail="Client closed request"
            )
        except IngestionError as e:
            logger.error(
                f"[{request_id}] {file.filename}: upload failed at stage "
                f"{e.stage}: {e}"
            )
            raise HTTPException(
                status_code=500, detail=f"Upload failed (request {request_id})"
            )
        except Exception as e:
            logger.error(f"[{request_id}] {file.filename}: upload failed: {e}")
            raise HTTPException(
                status_code=500, detail=f"Upload failed (request {request_id})"
            )
        finally:
            watcher.cancel()

    @app.get(
        "/artworks",
        response_model=ArtworkListResponse,
        tags=["Artworks"],
        summary="List artworks",
        description="Get paginated list of artworks, newest first.",
    )
    async def list_artworks(
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        tags: Optional[List[str]] = Query(None),
        repository: CatalogRepository = Depends(get_repository),
    ) -> ArtworkListResponse:
        """List artworks with pagination."""
        page, page_size = _normalize_page(page, page_size)
        try:
            artworks, total = repository.list_artworks(page, page_size, tags)
            return ArtworkListResponse(
                items=[artwork.to_response() for artwork in artworks],
                total=total,
                page=page,
                page_size=page_size,
            )

        except StorageError as e:
            logger.error(f"Storage error: {e}")
            raise HTTPException(status_code=500, detail="Listing failed")

    @app.get(
        "/artworks/random",
        response_model=List[ArtworkResponse],
        tags=["Artworks"],
        summary="Random artworks",
        description="Random sample of artworks, optionally filtered by tags.",
    )
    async def random_artworks(
        limit: int = DEFAULT_RANDOM_LIMIT,
        tags: Optional[List[str]] = Query(None),
        repository: CatalogRepository = Depends(get_repository),
    ) -> List[ArtworkResponse]:
        """Random artworks."""
        try:
            artworks = repository.random_artworks(_clamp_limit(limit), tags)
            return [artwork.to_response() for artwork in artworks]

        except StorageError as e:
            logger.error(f"Storage error: {e}")
            raise HTTPException(status_code=500, detail="Sampling failed")

    @app.get(
        "/artworks/{artwork_id}",
        response_model=ArtworkResponse,
        tags=["Artworks"],
        summary="Get artwork",
        description="Get one artwork; counts as a view.",
    )
    async def get_artwork(
        artwork_id: int,
        repository: CatalogRepository = Depends(get_repository),
    ) -> ArtworkResponse:
        """Get artwork and record the view."""
        try:
            if not repository.increment_views(artwork_id):
                raise HTTPException(status_code=404, detail="Artwork not found")

            artwork = repository.get_artwork(artwork_id)
            if artwork is None:
                raise HTTPException(status_code=404, detail="Artwork not found")
            return artwork.to_response()

        except StorageError as e:
            logger.error(f"Storage error: {e}")
            raise HTTPException(status_code=500, detail="Retrieval failed")

    # ========================================
    # ENGAGEMENT
    # ========================================

    def _counter_route(
        counter: str, change: Callable[[CatalogRepository, int], bool]
    ):
        async def handler(
            artwork_id: int,
            repository: CatalogRepository = Depends(get_repository),
        ) -> CounterResponse:
            try:
                if not change(repository, artwork_id):
                    raise HTTPException(status_code=404, detail="Artwork not found")

                artwork = repository.get_artwork(artwork_id)
                if artwork is None:
                    raise HTTPException(status_code=404, detail="Artwork not found")
                return CounterResponse(
                    artwork_id=artwork_id,
                    counter=counter,
                    value=getattr(artwork, counter),
                )

            except StorageError as e:
                logger.error(f"Storage error: {e}")
                raise HTTPException(status_code=500, detail="Counter update failed")

        return handler

    for action, counter, change in (
        ("like", "likes", CatalogRepository.increment_likes),
        ("unlike", "likes", CatalogRepository.decrement_likes),
        ("bookmark", "bookmarks", CatalogRepository.increment_bookmarks),
        ("unbookmark", "bookmarks", CatalogRepository.decrement_bookmarks),
    ):
        app.add_api_route(
            f"/artworks/{{artwork_id}}/{action}",
            _counter_route(counter, change),
            methods=["POST"],
            response_model=CounterResponse,
            tags=["Engagement"],
            summary=f"{action.capitalize()} artwork",
            name=f"{action}_artwork",
        )

    # ========================================
    # ADMIN
    # ========================================

    @app.put(
        "/artworks/{artwork_id}",
        response_model=ArtworkResponse,
        tags=["Admin"],
        summary="Update artwork",
        description="Update URLs or replace tags. Requires X-API-Key.",
    )
    async def update_artwork(
        artwork_id: int,
        update: ArtworkUpdateRequest,
        _: str = Depends(api_key_required),
        repository: CatalogRepository = Depends(get_repository),
    ) -> ArtworkResponse:
        """Update artwork fields."""
        try:
            artwork = repository.update_artwork(
                artwork_id,
                url=update.url,
                thumbnail_url=update.thumbnail_url,
                tags=update.tags,
            )
            if artwork is None:
                raise HTTPException(status_code=404, detail="Artwork not found")
            return artwork.to_response()

        except StorageError as e:
            logger.error(f"Storage error: {e}")
            raise HTTPException(status_code=500, detail="Update failed")

    @app.delete(
        "/artworks/{artwork_id}",
        status_code=204,
        tags=["Admin"],
        summary="Delete artwork",
        description="Delete the stored file and the artwork. Requires X-API-Key.",
    )
    async def delete_artwork(
        artwork_id: int,
        _: str = Depends(api_key_required),
        repository: CatalogRepository = Depends(get_repository),
        remote: RemoteStorageClient = Depends(get_remote),
    ) -> Response:
        """Delete artwork: remote file first, then the catalog record."""
        try:
            artwork = repository.get_artwork(artwork_id)
            if artwork is None:
                raise HTTPException(status_code=404, detail="Artwork not found")

            try:
                await remote.delete(artwork.file_id)
            except RemoteFileNotFoundError:
                logger.warning(
                    f"Remote file {artwork.file_id} of artwork {artwork_id} "
                    f"already gone"
                )

            if not repository.soft_delete_artwork(artwork_id):
                raise HTTPException(status_code=404, detail="Artwork not found")
            return Response(status_code=204)

        except RemoteStorageError as e:
            logger.error(f"Failed to delete remote file of {artwork_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to delete artwork")
        except StorageError as e:
            logger.error(f"Storage error: {e}")
            raise HTTPException(status_code=500, detail="Failed to delete artwork")

    # ========================================
    # SYSTEM
    # ========================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
        description="Get system health status.",
    )
    async def health_check(
        repository: CatalogRepository = Depends(get_repository),
    ) -> HealthResponse:
        """Get system health status."""
        try:
            pending_jobs = repository.list_upload_jobs(
                [UploadJobStatus.PENDING, UploadJobStatus.PROCESSING]
            )
            return HealthResponse(
                status="healthy",
                components={
                    "catalog": {
                        "total_artworks": repository.count_artworks(),
                        "database_path": str(repository.db_path),
                    },
                    "upload_jobs": {"in_flight": len(pending_jobs)},
                    "file_server": {"base_url": settings.file_server_base_url},
                    "auth": {"active_keys": api_key_policy.key_count},
                },
            )

        except StorageError as e:
            logger.error(f"Health check failed: {e}")
            raise HTTPException(status_code=500, detail="Health check failed")

    return app
