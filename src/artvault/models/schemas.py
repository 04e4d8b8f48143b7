"""
ArtVault schemas.

Request/response models grouped by concern:
- Catalog: artwork records and their API views
- Upload jobs: in-flight delegated uploads
- File server: wire shapes returned by the remote storage service
- System: health reporting
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ========================================
# CATALOG SCHEMAS
# ========================================


class Artwork(BaseModel):
    """Catalog record for an ingested artwork."""

    id: int = Field(..., description="Artwork identifier")
    file_id: str = Field(..., description="Remote file identifier")
    url: str = Field(..., description="Public access URL")
    thumbnail_url: str = Field("", description="Thumbnail URL")
    hash: str = Field(..., description="SHA-256 content digest")
    phash: int = Field(0, description="Perceptual digest (0 when not computed)")
    views: int = Field(0, ge=0, description="View counter")
    likes: int = Field(0, ge=0, description="Like counter")
    bookmarks: int = Field(0, ge=0, description="Bookmark counter")
    tags: List[str] = Field(default_factory=list, description="Artwork tags")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    deleted_at: Optional[datetime] = Field(None, description="Soft-delete marker")

    def to_response(self) -> "ArtworkResponse":
        """Public view of the record."""
        return ArtworkResponse.model_validate(self.model_dump())


class ArtworkResponse(BaseModel):
    """Artwork as returned to API clients."""

    id: int = Field(..., description="Artwork identifier")
    url: str = Field(..., description="Public access URL")
    thumbnail_url: str = Field(..., description="Thumbnail URL")
    hash: str = Field(..., description="SHA-256 content digest")
    phash: int = Field(..., description="Perceptual digest")
    views: int = Field(..., description="View counter")
    likes: int = Field(..., description="Like counter")
    bookmarks: int = Field(..., description="Bookmark counter")
    tags: List[str] = Field(..., description="Artwork tags")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class ArtworkUpdateRequest(BaseModel):
    """Request for updating an artwork."""

    url: Optional[str] = Field(None, description="New access URL")
    thumbnail_url: Optional[str] = Field(None, description="New thumbnail URL")
    tags: Optional[List[str]] = Field(None, description="Replacement tag list")

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Clean and validate tags."""
        if v is None:
            return None
        cleaned_tags = [tag.strip() for tag in v if tag.strip()]
        return list(dict.fromkeys(cleaned_tags))  # Remove duplicates

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Reject blank URLs."""
        if v is not None and not v.strip():
            raise ValueError("URL cannot be empty")
        return v


class ArtworkListResponse(BaseModel):
    """Response for paginated artwork listing."""

    items: List[ArtworkResponse] = Field(..., description="Page of artworks")
    total: int = Field(..., description="Total number of matching artworks")
    page: int = Field(..., description="Page number (1-based)")
    page_size: int = Field(..., description="Page size")


class CounterResponse(BaseModel):
    """Response for an engagement counter change."""

    artwork_id: int = Field(..., description="Artwork identifier")
    counter: str = Field(..., description="Counter name")
    value: int = Field(..., description="Counter value after the change")


# ========================================
# UPLOAD JOB SCHEMAS
# ========================================


class UploadJobStatus(str, Enum):
    """Lifecycle states of a delegated upload."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class UploadJob(BaseModel):
    """In-flight delegated upload."""

    id: str = Field(..., description="Local job identifier")
    hash: str = Field(..., description="SHA-256 content digest")
    phash: int = Field(0, description="Perceptual digest")
    filename: str = Field(..., description="Original filename")
    file_id: str = Field(..., description="Remote file identifier")
    job_id: str = Field(..., description="Remote job identifier")
    status_url: str = Field("", description="Remote status URL")
    status: UploadJobStatus = Field(
        UploadJobStatus.PENDING, description="Job status"
    )
    error: Optional[str] = Field(None, description="Last failure reason")
    created_at: datetime = Field(..., description="Creation timestamp")
    last_checked_at: datetime = Field(..., description="Last status check")


# ========================================
# FILE SERVER SCHEMAS
# ========================================


class RemoteEnvelope(BaseModel):
    """Envelope wrapping every file server response."""

    code: int = Field(..., description="0 on success, business error otherwise")
    message: str = Field("", description="Error or status message")
    data: Optional[Any] = Field(None, description="Call-specific payload")
    request_id: Optional[str] = Field(None, description="Remote request ID")


class UploadResult(BaseModel):
    """Acknowledgement of an accepted upload."""

    model_config = ConfigDict(extra="ignore")

    file_id: str = Field(..., description="Remote file identifier")
    job_id: str = Field(..., description="Remote processing job identifier")
    status_url: str = Field("", description="Job status URL")
    url: Optional[str] = Field(None, description="Provisional URL")
    status: Optional[str] = Field(None, description="Initial job status")


class JobProgress(BaseModel):
    """Remote processing job progress."""

    model_config = ConfigDict(extra="ignore")

    job_id: str = Field("", description="Remote job identifier")
    status: str = Field(..., description="Remote job status")
    total_tasks: int = Field(0, description="Total processing tasks")
    completed_tasks: int = Field(0, description="Completed tasks")
    failed_tasks: int = Field(0, description="Failed tasks")
    error_msg: Optional[str] = Field(None, description="Remote error message")


class ResourceVariant(BaseModel):
    """Derived resource such as a thumbnail."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., description="Variant type (thumbnail, preview, ...)")
    access_url: str = Field(..., description="Relative access URL")
    path: str = Field("", description="Logical path")
    size: int = Field(0, description="Variant size in bytes")


class FileInfo(BaseModel):
    """Stored file description."""

    model_config = ConfigDict(extra="ignore")

    file_id: str = Field("", description="Remote file identifier")
    access_url: str = Field(..., description="Relative access URL")
    path: str = Field("", description="Logical path")
    size: int = Field(0, description="File size in bytes")
    variants: List[ResourceVariant] = Field(
        default_factory=list, description="Derived variants"
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Width, height, MIME type, ..."
    )

    def variant(self, variant_type: str) -> Optional[ResourceVariant]:
        """First variant of the given type, if any."""
        for candidate in self.variants:
            if candidate.type == variant_type:
                return candidate
        return None


class DeleteResult(BaseModel):
    """Outcome of a remote delete."""

    model_config = ConfigDict(extra="ignore")

    file_id: str = Field("", description="Remote file identifier")
    deleted: bool = Field(..., description="Whether the file was removed")


# ========================================
# SYSTEM SCHEMAS
# ========================================


class HealthResponse(BaseModel):
    """System health check response."""

    status: str = Field(..., description="Overall system status")
    components: Dict[str, Any] = Field(..., description="Component status details")
