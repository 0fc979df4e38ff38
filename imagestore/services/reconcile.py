"""Consistency checks between image rows and the object store, and stuck-row cleanup."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from imagestore.errors import FatalConnectivityError
from imagestore.models import ImageStatus, utcnow
from imagestore.repositories import DerivedImageRepository, OriginalImageRepository
from imagestore.schemas import CleanupResult, ReconcileExample, ReconcileOptions, ReconcileResult
from imagestore.settings import settings
from imagestore.storage import StorageAdapter

logger = logging.getLogger(__name__)


@dataclass
class RowSnapshot:
    image_id: int
    status: str
    original_key: Optional[str]
    staged_key: Optional[str]


@dataclass
class RowCheck:
    row: RowSnapshot
    original_missing: bool = False
    staged_missing: bool = False
    error: Optional[str] = None


class ReconcileService:
    def __init__(
        self,
        session: AsyncSession,
        storage: StorageAdapter,
        check_timeout: Optional[float] = None,
    ):
        self.session = session
        self.storage = storage
        self.images = DerivedImageRepository(session)
        self.originals = OriginalImageRepository(session)
        self.check_timeout = check_timeout or settings.STORAGE_TIMEOUT_SECONDS
        self.max_examples = settings.RECONCILE_MAX_EXAMPLES

    async def reconcile_images(
        self,
        options: ReconcileOptions,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconcileResult:
        """
        Walk non-deleted images in id order and compare them with the object store.

        Pages are read with a keyset cursor and processed one at a time: the
        page's existence checks fan out to at most options.concurrency calls,
        then its repairs are written. A ready image whose staged file is gone
        is moved to error (unless dry_run). Missing originals are only reported.

        If cancel_event is set, the page in flight is finished and the partial
        result is returned with cancelled=True.

        Raises:
            FatalConnectivityError: If the database or the object store is unusable
        """
        await self.storage.check_connection()

        result = ReconcileResult(dry_run=options.dry_run)
        last_id: Optional[int] = None

        while True:
            page = await self._read_page(last_id, options)
            if not page:
                break

            checks = await self._check_page(page, options.concurrency)
            await self._apply(checks, result, options.dry_run)

            last_id = page[-1].image_id
            logger.debug("reconciled page ending at id %s (%d rows)", last_id, len(page))

            if cancel_event is not None and cancel_event.is_set():
                logger.warning("reconciliation cancelled after id %s", last_id)
                result.cancelled = True
                break
            if len(page) < options.limit:
                break

        logger.info(
            "reconciliation finished: checked=%d missing_original=%d missing_staged=%d updated=%d dry_run=%s",
            result.checked, result.missing_original, result.missing_staged,
            result.updated, result.dry_run,
        )
        return result

    async def _read_page(self, last_id: Optional[int], options: ReconcileOptions) -> List[RowSnapshot]:
        try:
            rows = await self.images.list_for_reconcile(
                last_id, options.limit, project_id=options.project_id, status=options.status
            )
        except (OperationalError, InterfaceError) as e:
            raise FatalConnectivityError(f"Failed to read images: {e}") from e
        return [RowSnapshot(r.id, r.status, r.original_key, r.staged_key) for r in rows]

    async def _check_page(self, page: List[RowSnapshot], concurrency: int) -> List[RowCheck]:
        semaphore = asyncio.Semaphore(concurrency)
        return await asyncio.gather(*(self._check_row(row, semaphore) for row in page))

    async def _check_row(self, row: RowSnapshot, semaphore: asyncio.Semaphore) -> RowCheck:
        check = RowCheck(row)
        async with semaphore:
            try:
                if row.original_key:
                    check.original_missing = not await self._exists(row.original_key)
                if row.staged_key:
                    check.staged_missing = not await self._exists(row.staged_key)
            except FatalConnectivityError:
                raise
            except Exception as e:
                # Not retried here; the next run checks the row again
                check.error = f"storage check failed: {str(e) or type(e).__name__}"
                logger.warning("image %s: %s", row.image_id, check.error)
        return check

    async def _exists(self, key: str) -> bool:
        return await asyncio.wait_for(self.storage.exists(key), timeout=self.check_timeout)

    async def _apply(self, checks: List[RowCheck], result: ReconcileResult, dry_run: bool) -> None:
        repaired = False
        for check in checks:
            row = check.row
            result.checked += 1

            if check.error:
                self._add_example(result, row, check.error)
                continue

            if check.original_missing:
                result.missing_original += 1
                self._add_example(result, row, f"original file missing: {row.original_key}")

            if check.staged_missing and row.status == ImageStatus.READY:
                result.missing_staged += 1
                message = f"staged file missing from storage: {row.staged_key}"
                self._add_example(result, row, message)
                if dry_run:
                    result.updated += 1
                elif await self.images.mark_missing_staged(row.image_id, message):
                    result.updated += 1
                    repaired = True

        if repaired:
            await self.session.commit()

    def _add_example(self, result: ReconcileResult, row: RowSnapshot, error: str) -> None:
        if len(result.examples) < self.max_examples:
            result.examples.append(
                ReconcileExample(image_id=row.image_id, status=row.status, error=error)
            )

    async def cleanup_stuck_queued_images(self, older_than_hours: int) -> CleanupResult:
        """
        Hard-delete images stuck in queued for more than older_than_hours.

        Each deleted live row's reference on its original is released in the
        same transaction; originals left at zero are removed by the orphan sweep.
        """
        if older_than_hours < 0:
            raise ValueError("older_than_hours must not be negative")

        cutoff = utcnow() - timedelta(hours=older_than_hours)
        try:
            deleted = await self.images.delete_stuck_queued(cutoff)
            for _, original_image_id, deleted_at in deleted:
                # Soft-deleted rows released their reference when they were deleted
                if original_image_id is not None and deleted_at is None:
                    await self.originals.decrement_reference(original_image_id)
            await self.session.commit()
        except (OperationalError, InterfaceError) as e:
            await self.session.rollback()
            raise FatalConnectivityError(f"Failed to delete stuck images: {e}") from e
        except Exception:
            await self.session.rollback()
            raise

        image_ids = [image_id for image_id, _, _ in deleted]
        logger.info(
            "deleted %d images stuck in queued for more than %dh: %s",
            len(image_ids), older_than_hours, image_ids,
        )
        return CleanupResult(deleted=len(image_ids), threshold=f"{older_than_hours}h", image_ids=image_ids)
