"""Derived image lifecycle: upload with dedup, status transitions, soft delete."""
import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from imagestore.errors import InvalidStatusTransitionError, NotFoundError
from imagestore.models import DerivedImage, ImageStatus
from imagestore.repositories import DerivedImageRepository
from imagestore.services.originals import OriginalImageService
from imagestore.storage import StorageAdapter

logger = logging.getLogger(__name__)

# queued -> processing -> {ready, error}; queued may also fail straight to error
ALLOWED_SOURCES = {
    ImageStatus.PROCESSING: (ImageStatus.QUEUED,),
    ImageStatus.READY: (ImageStatus.PROCESSING,),
    ImageStatus.ERROR: (ImageStatus.QUEUED, ImageStatus.PROCESSING),
}


class ImageService:
    def __init__(self, session: AsyncSession, storage: StorageAdapter):
        self.session = session
        self.storage = storage
        self.repo = DerivedImageRepository(session)
        self.originals = OriginalImageService(session, storage)

    async def create_image(
        self,
        project_id: str,
        data: bytes,
        mime_type: str,
        room_type: Optional[str] = None,
        style: Optional[str] = None,
    ) -> Tuple[DerivedImage, bool]:
        """
        Store the original (once per content) and queue a derived image for it.

        Returns:
            (image, deduplicated) where deduplicated is True if no upload happened
        """
        original, created = await self.originals.register_upload(data, mime_type)
        try:
            image = await self.repo.create(
                project_id,
                original_image_id=original.id,
                original_key=original.object_key,
                room_type=room_type,
                style=style,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "queued image %s for project %s (original %s, deduplicated=%s)",
            image.id, project_id, original.id, not created,
        )
        return image, not created

    async def get_image(self, image_id: int) -> DerivedImage:
        return await self.repo.get_by_id(image_id)

    async def _transition(self, image_id: int, to_status: str, **values) -> DerivedImage:
        moved = await self.repo.update_status(image_id, ALLOWED_SOURCES[to_status], to_status, **values)
        if not moved:
            await self.session.rollback()
            current = await self.repo.get_by_id(image_id)  # NotFoundError if gone
            raise InvalidStatusTransitionError(
                f"Image {image_id} cannot move from {current.status} to {to_status}"
            )
        await self.session.commit()
        return await self.repo.get_by_id(image_id)

    async def mark_processing(self, image_id: int) -> DerivedImage:
        return await self._transition(image_id, ImageStatus.PROCESSING)

    async def mark_ready(self, image_id: int, staged_key: str) -> DerivedImage:
        return await self._transition(image_id, ImageStatus.READY, staged_key=staged_key, error=None)

    async def mark_failed(self, image_id: int, message: str) -> DerivedImage:
        return await self._transition(image_id, ImageStatus.ERROR, error=message)

    async def delete_image(self, image_id: int) -> None:
        """
        Soft-delete an image and release its reference on the original.

        The row stays for usage accounting. A failure while releasing the
        original is logged only; the orphan sweep or reconciliation recovers it.
        """
        image = await self.repo.get_by_id(image_id)
        original_image_id = image.original_image_id
        legacy_original_key = image.original_key if original_image_id is None else None
        staged_key = image.staged_key
        status = image.status

        await self.repo.soft_delete(image_id)
        await self.session.commit()

        # Staged output is never shared, nor is the original of a pre-dedup row.
        # Queued rows never had anything uploaded for them.
        if status != ImageStatus.QUEUED:
            for key in (staged_key, legacy_original_key):
                if not key:
                    continue
                try:
                    await self.storage.delete(key)
                except Exception as e:
                    logger.warning("failed to delete object %s of image %s: %s", key, image_id, e)

        if original_image_id is None:
            return

        try:
            deleted = await self.originals.decrement_reference_and_cleanup(original_image_id)
        except Exception as e:
            await self.session.rollback()
            logger.warning(
                "failed to decrement original image reference (original %s, image %s): %s",
                original_image_id, image_id, e,
            )
            return
        if deleted:
            logger.info("deleted unreferenced original image %s", original_image_id)

    async def presign(self, image_id: int, kind: str, expires_seconds: int) -> str:
        image = await self.repo.get_by_id(image_id)
        if kind == "original":
            key = image.original_key
        elif kind == "staged":
            key = image.staged_key
        else:
            raise ValueError(f"Unknown image kind: {kind}")
        if not key:
            raise NotFoundError(f"Image {image_id} has no {kind} object")
        return await self.storage.presign(key, expires_seconds)
