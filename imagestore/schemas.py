"""Pydantic schemas for request/response validation and batch results."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class OriginalImageOut(BaseModel):
    """Original image output schema."""
    id: int
    content_hash: str
    object_key: str
    file_size: int
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    reference_count: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DerivedImageOut(BaseModel):
    """Derived (staged) image output schema."""
    id: int
    project_id: str
    original_image_id: Optional[int] = None
    original_key: Optional[str] = None
    staged_key: Optional[str] = None
    room_type: Optional[str] = None
    style: Optional[str] = None
    status: str
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class UploadResponse(BaseModel):
    """Upload endpoint response."""
    image: DerivedImageOut
    content_hash: str
    deduplicated: bool  # True when the original bytes were already stored


class PresignResponse(BaseModel):
    url: str
    expires_in: int


class OriginalImageStats(BaseModel):
    """Aggregate figures over all originals, for operator dashboards."""
    total_count: int = 0
    total_size: int = 0
    orphaned_count: int = 0
    orphaned_size: int = 0
    avg_references: float = 0.0


class OrphanCleanupRequest(BaseModel):
    older_than_hours: int = Field(24, ge=0)
    limit: int = Field(100, ge=1, le=10000)
    confirm_token: Optional[str] = None


class OrphanCleanupResponse(BaseModel):
    deleted_count: int


class ReconcileOptions(BaseModel):
    """Options for one reconciliation run."""
    limit: int = Field(100, ge=1, le=10000)  # page size
    concurrency: int = Field(5, ge=1, le=100)
    dry_run: bool = False
    project_id: Optional[str] = None
    status: Optional[Literal["queued", "processing", "ready", "error"]] = None


class ReconcileRequest(ReconcileOptions):
    """Reconcile endpoint request; non-dry runs need the confirm token."""
    confirm_token: Optional[str] = None


class ReconcileExample(BaseModel):
    image_id: int
    status: str
    error: str


class ReconcileResult(BaseModel):
    """Summary of a reconciliation run."""
    checked: int = 0
    missing_original: int = 0
    missing_staged: int = 0
    updated: int = 0
    dry_run: bool = False
    cancelled: bool = False
    examples: List[ReconcileExample] = []


class CleanupQueuedRequest(BaseModel):
    older_than_hours: int = Field(1, ge=1)
    confirm_token: Optional[str] = None


class CleanupResult(BaseModel):
    """Summary of a stuck-queued cleanup run."""
    deleted: int
    threshold: str
    image_ids: List[int] = []
