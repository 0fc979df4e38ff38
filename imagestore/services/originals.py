"""Business rules for deduplicated originals: registration, reference counting, cleanup."""
import logging
from datetime import timedelta
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from imagestore.errors import AlreadyExistsError, NotFoundError
from imagestore.image_utils import build_original_key, compute_content_hash, read_image_dimensions
from imagestore.models import OriginalImage
from imagestore.repositories import OriginalImageRepository
from imagestore.schemas import OriginalImageStats
from imagestore.storage import StorageAdapter

logger = logging.getLogger(__name__)


class OriginalImageService:
    def __init__(self, session: AsyncSession, storage: StorageAdapter):
        self.session = session
        self.repo = OriginalImageRepository(session)
        self.storage = storage

    async def register_upload(self, data: bytes, mime_type: str) -> Tuple[OriginalImage, bool]:
        """
        Take one reference on the original for these bytes, uploading them only if new.

        Only flushes: the caller commits together with the row that holds the
        reference, so a reference is never counted without its owner.

        Returns:
            (original, created) where created is False on a dedup hit
        """
        content_hash = compute_content_hash(data)

        try:
            original = await self.repo.get_by_hash(content_hash)
        except NotFoundError:
            original = None

        if original is not None:
            if await self.repo.increment_reference(original.id):
                logger.info("dedup hit for %s, original %s", content_hash, original.id)
                return await self.repo.get_by_id(original.id), False
            # Deleted by a cascade or the sweep since the lookup; store it again
            logger.info("original %s for %s vanished before reuse, re-uploading", original.id, content_hash)
            self.session.expunge(original)

        object_key = build_original_key(content_hash)
        width, height = read_image_dimensions(data)
        # Same bytes always land on the same key, so a concurrent upload of
        # identical content overwrites the object with itself
        await self.storage.put(object_key, data, content_type=mime_type)

        try:
            original = await self.repo.create(
                content_hash, object_key, len(data), mime_type, width, height
            )
        except AlreadyExistsError:
            # Lost the insert race; join the winner's row instead
            logger.info("concurrent insert for %s, taking a reference instead", content_hash)
            original = await self.repo.get_by_hash(content_hash)
            await self.repo.increment_reference(original.id)
            return await self.repo.get_by_id(original.id), False

        logger.info("stored new original %s (%s bytes) at %s", original.id, len(data), object_key)
        return original, True

    async def get_by_hash(self, content_hash: str) -> OriginalImage:
        return await self.repo.get_by_hash(content_hash)

    async def decrement_reference_and_cleanup(self, original_id: int) -> bool:
        """
        Drop one reference; delete the original when it was the last one.

        The object-store delete is best effort (a stray object is found again by
        the sweep); the row delete is authoritative and its failure propagates.

        Returns:
            True if the original was deleted

        Raises:
            NotFoundError: If original_id does not exist
        """
        original = await self.repo.get_by_id(original_id)
        previous_count = original.reference_count
        object_key = original.object_key

        await self.repo.decrement_reference(original_id)
        # Committed on its own: if the cascade below fails, the row is left at
        # zero references and the orphan sweep picks it up
        await self.session.commit()

        if previous_count > 1:
            return False

        try:
            await self.storage.delete(object_key)
        except Exception as e:
            logger.warning(
                "failed to delete object %s for original %s, leaving it for the sweep: %s",
                object_key, original_id, e,
            )

        try:
            await self.repo.delete(original_id)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info("deleted unreferenced original %s", original_id)
        return True

    async def cleanup_orphaned(self, older_than: timedelta, limit: int) -> int:
        """
        Delete zero-reference originals idle for longer than older_than.

        A failing candidate is skipped; it still matches next run.

        Returns:
            Number of originals deleted
        """
        orphaned = await self.repo.list_orphaned(older_than, limit)
        candidates = [(o.id, o.object_key) for o in orphaned]

        deleted_count = 0
        for original_id, object_key in candidates:
            try:
                await self.storage.delete(object_key)
            except Exception as e:
                logger.warning("orphan %s: object delete failed, skipping: %s", original_id, e)
                continue

            try:
                await self.repo.delete(original_id)
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.warning("orphan %s: row delete failed, skipping: %s", original_id, e)
                continue

            deleted_count += 1

        logger.info("orphan sweep deleted %d of %d candidates", deleted_count, len(candidates))
        return deleted_count

    async def get_stats(self) -> OriginalImageStats:
        return await self.repo.stats()
