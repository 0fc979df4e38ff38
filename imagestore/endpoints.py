"""API endpoints for originals, derived images and operator maintenance."""
from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from imagestore.db import get_db
from imagestore.errors import FatalConnectivityError, NotFoundError
from imagestore.image_utils import compute_content_hash, validate_content_hash
from imagestore.schemas import (
    CleanupQueuedRequest, CleanupResult, DerivedImageOut, OriginalImageOut, OriginalImageStats,
    OrphanCleanupRequest, OrphanCleanupResponse, PresignResponse, ReconcileRequest,
    ReconcileResult, UploadResponse,
)
from imagestore.services.images import ImageService
from imagestore.services.originals import OriginalImageService
from imagestore.services.reconcile import ReconcileService
from imagestore.settings import settings
from imagestore.storage import StorageAdapter, get_storage_adapter

router = APIRouter(prefix=settings.API_V1_PREFIX)


def get_storage() -> StorageAdapter:
    """Dependency for the configured object store."""
    try:
        return get_storage_adapter()
    except FatalConnectivityError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def require_confirm_token(token: Optional[str]) -> None:
    if not token or token != settings.ADMIN_CONFIRM_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="confirm_token required and must match configured token for destructive operations"
        )


@router.post("/images", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_image(
    project_id: str = Form(...),
    file: UploadFile = File(...),
    room_type: Optional[str] = Form(None),
    style: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """
    Upload an original photo and queue a staged image for it.

    The original is stored once per content hash: re-uploading the same bytes
    only adds a reference.
    """
    file_bytes = await file.read()
    if len(file_bytes) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum of {settings.MAX_UPLOAD_BYTES} bytes"
        )
    if not file_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    service = ImageService(db, storage)
    image, deduplicated = await service.create_image(
        project_id,
        file_bytes,
        file.content_type or "application/octet-stream",
        room_type=room_type,
        style=style,
    )
    return UploadResponse(
        image=DerivedImageOut.model_validate(image),
        content_hash=compute_content_hash(file_bytes),
        deduplicated=deduplicated,
    )


@router.get("/images/{image_id}", response_model=DerivedImageOut)
async def get_image(
    image_id: int,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """Get derived image by ID."""
    try:
        image = await ImageService(db, storage).get_image(image_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return DerivedImageOut.model_validate(image)


@router.get("/images/{image_id}/presign", response_model=PresignResponse)
async def presign_image(
    image_id: int,
    kind: Literal["original", "staged"] = Query("original"),
    expires_in: int = Query(settings.PRESIGN_EXPIRES_SECONDS, gt=0, le=7 * 24 * 3600),
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """Get a time-limited download URL for the original or staged file."""
    try:
        url = await ImageService(db, storage).presign(image_id, kind, expires_in)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return PresignResponse(url=url, expires_in=expires_in)


@router.delete("/images/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_image(
    image_id: int,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """
    Delete an image.

    The row is kept (soft delete) for usage accounting; the original is
    removed once no image references it.
    """
    try:
        await ImageService(db, storage).delete_image(image_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/originals/stats", response_model=OriginalImageStats)
async def get_original_stats(
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """Counts and sizes of stored originals, including orphans awaiting cleanup."""
    return await OriginalImageService(db, storage).get_stats()


@router.get("/originals/{content_hash}", response_model=OriginalImageOut)
async def get_original_by_hash(
    content_hash: str,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """Look up an original by content hash."""
    if not validate_content_hash(content_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="content_hash must be 64 hexadecimal characters"
        )
    try:
        original = await OriginalImageService(db, storage).get_by_hash(content_hash)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return OriginalImageOut.model_validate(original)


@router.post("/admin/originals/cleanup", response_model=OrphanCleanupResponse)
async def cleanup_orphaned_originals(
    request: OrphanCleanupRequest,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """
    Delete originals with no references that have been idle past the grace period.

    Requires confirm_token.
    """
    require_confirm_token(request.confirm_token)
    deleted = await OriginalImageService(db, storage).cleanup_orphaned(
        timedelta(hours=request.older_than_hours), request.limit
    )
    return OrphanCleanupResponse(deleted_count=deleted)


@router.post("/admin/reconcile/images", response_model=ReconcileResult)
async def reconcile_images(
    request: ReconcileRequest,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """
    Compare image rows with the object store.

    Dry runs only report; applying repairs requires confirm_token.
    """
    if not request.dry_run:
        require_confirm_token(request.confirm_token)
    try:
        return await ReconcileService(db, storage).reconcile_images(request)
    except FatalConnectivityError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/admin/reconcile/cleanup-queued", response_model=CleanupResult)
async def cleanup_stuck_queued(
    request: CleanupQueuedRequest,
    db: AsyncSession = Depends(get_db),
    storage: StorageAdapter = Depends(get_storage),
):
    """Hard-delete images stuck in queued status. Requires confirm_token."""
    require_confirm_token(request.confirm_token)
    try:
        return await ReconcileService(db, storage).cleanup_stuck_queued_images(request.older_than_hours)
    except FatalConnectivityError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
