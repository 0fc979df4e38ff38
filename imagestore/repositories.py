"""Data access for original and derived images. No business rules live here.

Repositories flush; the calling service owns the commit.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagestore.errors import AlreadyExistsError, NotFoundError
from imagestore.models import DerivedImage, ImageStatus, OriginalImage, utcnow
from imagestore.schemas import OriginalImageStats


class OriginalImageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        content_hash: str,
        object_key: str,
        file_size: int,
        mime_type: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> OriginalImage:
        """Insert a new original with reference_count=1.

        Raises AlreadyExistsError on a content_hash collision. The session is
        rolled back in that case, so this must be the first write of the unit
        of work.
        """
        now = utcnow()
        obj = OriginalImage(
            content_hash=content_hash.lower(),
            object_key=object_key,
            file_size=file_size,
            mime_type=mime_type,
            width=width,
            height=height,
            reference_count=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(obj)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise AlreadyExistsError(f"Original image with hash {content_hash} already exists") from e
        return obj

    async def get_by_id(self, original_id: int) -> OriginalImage:
        q = (
            select(OriginalImage)
            .where(OriginalImage.id == original_id)
            .execution_options(populate_existing=True)
        )
        obj = (await self.session.execute(q)).scalar_one_or_none()
        if obj is None:
            raise NotFoundError(f"Original image {original_id} not found")
        return obj

    async def get_by_hash(self, content_hash: str) -> OriginalImage:
        q = (
            select(OriginalImage)
            .where(OriginalImage.content_hash == content_hash.lower())
            .execution_options(populate_existing=True)
        )
        obj = (await self.session.execute(q)).scalar_one_or_none()
        if obj is None:
            raise NotFoundError(f"Original image with hash {content_hash} not found")
        return obj

    async def increment_reference(self, original_id: int) -> bool:
        """Take one reference; False if the row no longer exists."""
        # Single UPDATE so concurrent callers never lose an increment
        result = await self.session.execute(
            update(OriginalImage)
            .where(OriginalImage.id == original_id)
            .values(
                reference_count=OriginalImage.reference_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def decrement_reference(self, original_id: int) -> None:
        # Clamped at zero; decrementing a zero row only refreshes updated_at
        await self.session.execute(
            update(OriginalImage)
            .where(OriginalImage.id == original_id)
            .values(
                reference_count=case(
                    (OriginalImage.reference_count > 0, OriginalImage.reference_count - 1),
                    else_=0,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def list_orphaned(self, older_than: timedelta, limit: int) -> List[OriginalImage]:
        """Zero-reference originals untouched for longer than older_than, oldest first."""
        cutoff = utcnow() - older_than
        q = (
            select(OriginalImage)
            .where(
                OriginalImage.reference_count == 0,
                OriginalImage.updated_at < cutoff,
            )
            .order_by(OriginalImage.updated_at.asc(), OriginalImage.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def delete(self, original_id: int) -> None:
        await self.session.execute(
            delete(OriginalImage)
            .where(OriginalImage.id == original_id)
            .execution_options(synchronize_session=False)
        )

    async def stats(self) -> OriginalImageStats:
        orphaned = OriginalImage.reference_count == 0
        q = select(
            func.count(OriginalImage.id),
            func.coalesce(func.sum(OriginalImage.file_size), 0),
            func.coalesce(func.sum(case((orphaned, 1), else_=0)), 0),
            func.coalesce(func.sum(case((orphaned, OriginalImage.file_size), else_=0)), 0),
            func.coalesce(func.avg(OriginalImage.reference_count), 0),
        )
        row = (await self.session.execute(q)).one()
        return OriginalImageStats(
            total_count=int(row[0]),
            total_size=int(row[1]),
            orphaned_count=int(row[2]),
            orphaned_size=int(row[3]),
            avg_references=float(row[4]),
        )


class DerivedImageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        project_id: str,
        *,
        original_image_id: Optional[int],
        original_key: Optional[str],
        room_type: Optional[str] = None,
        style: Optional[str] = None,
    ) -> DerivedImage:
        now = utcnow()
        obj = DerivedImage(
            project_id=project_id,
            original_image_id=original_image_id,
            original_key=original_key,
            room_type=room_type,
            style=style,
            status=ImageStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get_by_id(self, image_id: int) -> DerivedImage:
        q = (
            select(DerivedImage)
            .where(DerivedImage.id == image_id, DerivedImage.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        obj = (await self.session.execute(q)).scalar_one_or_none()
        if obj is None:
            raise NotFoundError(f"Image {image_id} not found")
        return obj

    async def get_original_image_id(self, image_id: int) -> Optional[int]:
        q = select(DerivedImage.original_image_id).where(
            DerivedImage.id == image_id, DerivedImage.deleted_at.is_(None)
        )
        row = (await self.session.execute(q)).one_or_none()
        if row is None:
            raise NotFoundError(f"Image {image_id} not found")
        return row[0]

    async def soft_delete(self, image_id: int) -> None:
        now = utcnow()
        await self.session.execute(
            update(DerivedImage)
            .where(DerivedImage.id == image_id, DerivedImage.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def update_status(
        self,
        image_id: int,
        from_statuses: Sequence[str],
        to_status: str,
        **values,
    ) -> bool:
        """Move a live row to to_status only if it is currently in from_statuses."""
        result = await self.session.execute(
            update(DerivedImage)
            .where(
                DerivedImage.id == image_id,
                DerivedImage.deleted_at.is_(None),
                DerivedImage.status.in_(from_statuses),
            )
            .values(status=to_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def list_for_reconcile(
        self,
        after_id: Optional[int],
        limit: int,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[DerivedImage]:
        """Next keyset page of non-deleted rows, ascending by id."""
        q = select(DerivedImage).where(DerivedImage.deleted_at.is_(None))
        if after_id is not None:
            q = q.where(DerivedImage.id > after_id)
        if project_id:
            q = q.where(DerivedImage.project_id == project_id)
        if status:
            q = q.where(DerivedImage.status == status)
        q = (
            q.order_by(DerivedImage.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def mark_missing_staged(self, image_id: int, message: str) -> bool:
        """ready -> error; a no-op for rows that already left ready."""
        return await self.update_status(
            image_id, (ImageStatus.READY,), ImageStatus.ERROR, error=message
        )

    async def delete_stuck_queued(
        self, cutoff: datetime
    ) -> List[Tuple[int, Optional[int], Optional[datetime]]]:
        """Hard-delete rows queued since before cutoff.

        Returns (id, original_image_id, deleted_at) per row, ordered by id.
        """
        result = await self.session.execute(
            delete(DerivedImage)
            .where(
                DerivedImage.status == ImageStatus.QUEUED,
                DerivedImage.created_at < cutoff,
            )
            .returning(DerivedImage.id, DerivedImage.original_image_id, DerivedImage.deleted_at)
            .execution_options(synchronize_session=False)
        )
        return sorted((row[0], row[1], row[2]) for row in result.all())
