"""Tests for derived image creation, status transitions, deletion and presigning."""
import pytest
from sqlalchemy import select

from imagestore.errors import InvalidStatusTransitionError, NotFoundError
from imagestore.models import DerivedImage, ImageStatus
from imagestore.repositories import DerivedImageRepository, OriginalImageRepository
from imagestore.services.images import ImageService


async def load_row(session_factory, image_id):
    async with session_factory() as session:
        return (await session.execute(
            select(DerivedImage).where(DerivedImage.id == image_id)
        )).scalar_one()


async def load_original(session_factory, original_id):
    async with session_factory() as session:
        return await OriginalImageRepository(session).get_by_id(original_id)


async def test_create_image_queues_row(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)

    image, deduplicated = await service.create_image(
        "proj-1", sample_jpeg, "image/jpeg", room_type="kitchen", style="modern"
    )

    assert deduplicated is False
    assert image.status == ImageStatus.QUEUED
    assert image.project_id == "proj-1"
    assert image.room_type == "kitchen"
    assert image.style == "modern"
    assert image.original_image_id is not None
    assert image.original_key in storage.objects
    assert image.staged_key is None


async def test_same_bytes_share_one_original(db_session, session_factory, storage, sample_jpeg):
    service = ImageService(db_session, storage)

    first, first_dedup = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    second, second_dedup = await service.create_image("proj-2", sample_jpeg, "image/jpeg")

    assert (first_dedup, second_dedup) == (False, True)
    assert first.id != second.id
    assert first.original_image_id == second.original_image_id
    assert first.original_key == second.original_key
    assert storage.count("put") == 1
    assert (await load_original(session_factory, first.original_image_id)).reference_count == 2


async def test_status_lifecycle(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")

    processing = await service.mark_processing(image.id)
    assert processing.status == ImageStatus.PROCESSING

    ready = await service.mark_ready(image.id, "staged/proj-1/1.jpg")
    assert ready.status == ImageStatus.READY
    assert ready.staged_key == "staged/proj-1/1.jpg"
    assert ready.error is None


async def test_queued_image_can_fail(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")

    failed = await service.mark_failed(image.id, "model timeout")
    assert failed.status == ImageStatus.ERROR
    assert failed.error == "model timeout"


@pytest.mark.parametrize("steps, attempt", [
    ([], "ready"),
    (["processing", "ready"], "processing"),
    (["processing", "ready"], "failed"),
    (["failed"], "processing"),
    (["processing"], "processing"),
])
async def test_backward_transitions_rejected(db_session, storage, sample_jpeg, steps, attempt):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    actions = {
        "processing": lambda: service.mark_processing(image.id),
        "ready": lambda: service.mark_ready(image.id, "staged/x.jpg"),
        "failed": lambda: service.mark_failed(image.id, "boom"),
    }
    for step in steps:
        await actions[step]()
    before = (await service.get_image(image.id)).status

    with pytest.raises(InvalidStatusTransitionError):
        await actions[attempt]()

    assert (await service.get_image(image.id)).status == before


async def test_transition_unknown_image_raises_not_found(db_session, storage):
    service = ImageService(db_session, storage)

    with pytest.raises(NotFoundError):
        await service.mark_processing(404)


async def test_delete_last_reference_removes_original(db_session, session_factory, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    original_id = image.original_image_id

    await service.delete_image(image.id)

    row = await load_row(session_factory, image.id)
    assert row.deleted_at is not None
    assert image.original_key not in storage.objects
    with pytest.raises(NotFoundError):
        await load_original(session_factory, original_id)
    with pytest.raises(NotFoundError):
        await service.get_image(image.id)


async def test_delete_shared_keeps_original(db_session, session_factory, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    first, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    second, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")

    await service.delete_image(first.id)

    assert (await load_original(session_factory, first.original_image_id)).reference_count == 1
    assert first.original_key in storage.objects
    assert (await service.get_image(second.id)).id == second.id


async def test_delete_ready_image_removes_staged_object(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    await storage.put("staged/proj-1/out.jpg", b"staged")
    await service.mark_processing(image.id)
    await service.mark_ready(image.id, "staged/proj-1/out.jpg")

    await service.delete_image(image.id)

    assert "staged/proj-1/out.jpg" not in storage.objects


async def test_delete_tolerates_storage_failure(db_session, session_factory, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    storage.fail_delete.add(image.original_key)

    await service.delete_image(image.id)

    assert (await load_row(session_factory, image.id)).deleted_at is not None
    with pytest.raises(NotFoundError):
        await load_original(session_factory, image.original_image_id)


async def test_delete_legacy_row_without_original(db_session, session_factory, storage):
    await storage.put("legacy/original.jpg", b"legacy")
    await storage.put("staged/legacy.jpg", b"staged")
    repo = DerivedImageRepository(db_session)
    image = await repo.create(
        "proj-1", original_image_id=None, original_key="legacy/original.jpg"
    )
    await db_session.commit()
    await repo.update_status(image.id, (ImageStatus.QUEUED,), ImageStatus.READY, staged_key="staged/legacy.jpg")
    await db_session.commit()

    await ImageService(db_session, storage).delete_image(image.id)

    assert storage.objects == {}
    assert (await load_row(session_factory, image.id)).deleted_at is not None


async def test_delete_twice_raises_not_found(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")
    await service.delete_image(image.id)

    with pytest.raises(NotFoundError):
        await service.delete_image(image.id)


async def test_presign(db_session, storage, sample_jpeg):
    service = ImageService(db_session, storage)
    image, _ = await service.create_image("proj-1", sample_jpeg, "image/jpeg")

    url = await service.presign(image.id, "original", 60)
    assert url == f"https://storage.test/{image.original_key}?expires=60"

    with pytest.raises(NotFoundError):
        await service.presign(image.id, "staged", 60)
    with pytest.raises(ValueError):
        await service.presign(image.id, "thumbnail", 60)
