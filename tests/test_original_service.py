"""Tests for upload dedup, reference release and the orphan sweep."""
from datetime import timedelta

import pytest
from sqlalchemy import update

from imagestore.errors import AlreadyExistsError, NotFoundError
from imagestore.image_utils import build_original_key, compute_content_hash
from imagestore.models import OriginalImage, utcnow
from imagestore.repositories import OriginalImageRepository
from imagestore.services.originals import OriginalImageService


async def fresh_original(session_factory, original_id):
    async with session_factory() as session:
        return await OriginalImageRepository(session).get_by_id(original_id)


async def make_orphan(session, original_id, idle_hours):
    await session.execute(
        update(OriginalImage)
        .where(OriginalImage.id == original_id)
        .values(reference_count=0, updated_at=utcnow() - timedelta(hours=idle_hours))
    )
    await session.commit()


async def test_register_new_upload_stores_once(db_session, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)

    original, created = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    content_hash = compute_content_hash(sample_jpeg)
    assert created is True
    assert original.content_hash == content_hash
    assert original.object_key == build_original_key(content_hash)
    assert original.reference_count == 1
    assert original.file_size == len(sample_jpeg)
    assert (original.width, original.height) == (64, 48)
    assert storage.objects[original.object_key] == sample_jpeg


async def test_register_duplicate_only_adds_reference(db_session, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)

    first, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()
    second, created = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    assert created is False
    assert second.id == first.id
    assert second.reference_count == 2
    assert storage.count("put") == 1


async def test_register_joins_row_created_concurrently(db_session, storage, sample_jpeg, monkeypatch):
    service = OriginalImageService(db_session, storage)
    existing, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    # Simulate losing the race: the lookup misses, the insert collides
    real_get_by_hash = service.repo.get_by_hash
    lookups = []

    async def miss_first(content_hash):
        lookups.append(content_hash)
        if len(lookups) == 1:
            raise NotFoundError("not yet visible")
        return await real_get_by_hash(content_hash)

    monkeypatch.setattr(service.repo, "get_by_hash", miss_first)

    original, created = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    assert created is False
    assert original.id == existing.id
    assert original.reference_count == 2


async def test_register_reuploads_when_original_deleted_after_lookup(
    db_session, session_factory, storage, sample_jpeg, monkeypatch
):
    service = OriginalImageService(db_session, storage)
    existing, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()
    await storage.delete(existing.object_key)

    # The lookup sees the row, then the last reference's cascade removes it
    real_get_by_hash = service.repo.get_by_hash

    async def found_then_deleted(content_hash):
        original = await real_get_by_hash(content_hash)
        await service.repo.delete(original.id)
        return original

    monkeypatch.setattr(service.repo, "get_by_hash", found_then_deleted)

    original, created = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    assert created is True
    assert original.reference_count == 1
    assert storage.objects[original.object_key] == sample_jpeg
    async with session_factory() as session:
        fresh = await OriginalImageRepository(session).get_by_hash(original.content_hash)
    assert fresh.id == original.id
    assert fresh.reference_count == 1


async def test_create_collision_raises(db_session, sample_jpeg):
    repo = OriginalImageRepository(db_session)
    content_hash = compute_content_hash(sample_jpeg)
    await repo.create(content_hash, build_original_key(content_hash), len(sample_jpeg), "image/jpeg")
    await db_session.commit()

    with pytest.raises(AlreadyExistsError):
        await repo.create(content_hash, build_original_key(content_hash), len(sample_jpeg), "image/jpeg")


async def test_release_shared_reference_keeps_original(db_session, session_factory, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)
    original, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    deleted = await service.decrement_reference_and_cleanup(original.id)

    assert deleted is False
    assert (await fresh_original(session_factory, original.id)).reference_count == 1
    assert original.object_key in storage.objects


async def test_release_last_reference_deletes_original(db_session, session_factory, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)
    original, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    deleted = await service.decrement_reference_and_cleanup(original.id)

    assert deleted is True
    assert original.object_key not in storage.objects
    with pytest.raises(NotFoundError):
        await fresh_original(session_factory, original.id)


async def test_release_survives_object_delete_failure(db_session, session_factory, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)
    original, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()
    storage.fail_delete.add(original.object_key)

    deleted = await service.decrement_reference_and_cleanup(original.id)

    assert deleted is True
    assert original.object_key in storage.objects
    with pytest.raises(NotFoundError):
        await fresh_original(session_factory, original.id)


async def test_release_row_delete_failure_leaves_orphan(db_session, session_factory, storage, sample_jpeg, monkeypatch):
    service = OriginalImageService(db_session, storage)
    original, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    async def broken_delete(original_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(service.repo, "delete", broken_delete)

    with pytest.raises(RuntimeError):
        await service.decrement_reference_and_cleanup(original.id)

    # The decrement was committed; the sweep finds the row later
    assert (await fresh_original(session_factory, original.id)).reference_count == 0


async def test_release_unknown_original_raises(db_session, storage):
    service = OriginalImageService(db_session, storage)

    with pytest.raises(NotFoundError):
        await service.decrement_reference_and_cleanup(12345)


async def test_cleanup_orphaned(db_session, session_factory, storage, sample_jpeg, other_jpeg):
    service = OriginalImageService(db_session, storage)
    old, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    recent, _ = await service.register_upload(other_jpeg, "image/jpeg")
    kept, _ = await service.register_upload(b"still referenced", "application/octet-stream")
    await db_session.commit()
    await make_orphan(db_session, old.id, idle_hours=25)
    await make_orphan(db_session, recent.id, idle_hours=1)

    deleted = await service.cleanup_orphaned(timedelta(hours=24), limit=100)

    assert deleted == 1
    assert old.object_key not in storage.objects
    with pytest.raises(NotFoundError):
        await fresh_original(session_factory, old.id)
    assert (await fresh_original(session_factory, recent.id)).reference_count == 0
    assert (await fresh_original(session_factory, kept.id)).reference_count == 1


async def test_cleanup_orphaned_skips_failures(db_session, session_factory, storage, sample_jpeg, other_jpeg):
    service = OriginalImageService(db_session, storage)
    failing, _ = await service.register_upload(sample_jpeg, "image/jpeg")
    ok, _ = await service.register_upload(other_jpeg, "image/jpeg")
    await db_session.commit()
    await make_orphan(db_session, failing.id, idle_hours=48)
    await make_orphan(db_session, ok.id, idle_hours=48)
    storage.fail_delete.add(failing.object_key)

    deleted = await service.cleanup_orphaned(timedelta(hours=24), limit=100)

    assert deleted == 1
    assert (await fresh_original(session_factory, failing.id)).reference_count == 0
    with pytest.raises(NotFoundError):
        await fresh_original(session_factory, ok.id)


async def test_cleanup_orphaned_honours_limit(db_session, storage):
    service = OriginalImageService(db_session, storage)
    originals = []
    for i in range(3):
        original, _ = await service.register_upload(f"blob {i}".encode(), "application/octet-stream")
        originals.append(original)
    await db_session.commit()
    for original in originals:
        await make_orphan(db_session, original.id, idle_hours=48)

    assert await service.cleanup_orphaned(timedelta(hours=24), limit=2) == 2
    assert await service.cleanup_orphaned(timedelta(hours=24), limit=2) == 1
    assert await service.cleanup_orphaned(timedelta(hours=24), limit=2) == 0


async def test_get_stats(db_session, storage, sample_jpeg):
    service = OriginalImageService(db_session, storage)
    await service.register_upload(sample_jpeg, "image/jpeg")
    await service.register_upload(sample_jpeg, "image/jpeg")
    await db_session.commit()

    stats = await service.get_stats()
    assert stats.total_count == 1
    assert stats.total_size == len(sample_jpeg)
    assert stats.orphaned_count == 0
    assert stats.avg_references == pytest.approx(2.0)
