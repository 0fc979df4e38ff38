"""Shared pytest fixtures: throw-away database, in-memory object store, sample images."""
import asyncio
from io import BytesIO
from typing import Dict, List, Optional, Set, Tuple

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from imagestore.db import Base
from imagestore import models  # noqa: F401  registers tables
from imagestore.errors import FatalConnectivityError, TransientCheckFailure
from imagestore.storage import StorageAdapter


class FakeStorage(StorageAdapter):
    """In-memory object store that records every call."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_delete: Set[str] = set()
        self.fail_exists: Set[str] = set()
        self.slow_exists: Set[str] = set()
        self.exists_delay = 0.0
        self.unreachable = False
        self.in_flight = 0
        self.max_in_flight = 0

    def count(self, op: str, key: Optional[str] = None) -> int:
        return sum(1 for o, k in self.calls if o == op and (key is None or k == key))

    async def put(self, key, data, content_type="application/octet-stream"):
        self.calls.append(("put", key))
        self.objects[key] = data

    async def get(self, key):
        self.calls.append(("get", key))
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    async def delete(self, key):
        self.calls.append(("delete", key))
        if key in self.fail_delete:
            raise OSError(f"delete failed for {key}")
        self.objects.pop(key, None)

    async def exists(self, key):
        self.calls.append(("exists", key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if key in self.slow_exists:
                await asyncio.sleep(5)
            elif self.exists_delay:
                await asyncio.sleep(self.exists_delay)
            if key in self.fail_exists:
                raise TransientCheckFailure(f"timeout checking {key}")
            return key in self.objects
        finally:
            self.in_flight -= 1

    async def presign(self, key, expires_seconds=900):
        return f"https://storage.test/{key}?expires={expires_seconds}"

    async def check_connection(self):
        if self.unreachable:
            raise FatalConnectivityError("object store unreachable")


def make_jpeg(width: int = 64, height: int = 48, shift: int = 0) -> bytes:
    """Generate a small patterned JPEG."""
    img = Image.new("RGB", (width, height), color="red")
    pixels = img.load()
    for i in range(width):
        for j in range(height):
            pixels[i, j] = ((i + shift) % 255, (j + shift) % 255, (i + j) % 255)
    output = BytesIO()
    img.save(output, "JPEG", quality=85)
    return output.getvalue()


@pytest.fixture
async def engine(tmp_path):
    """Create a test database with all tables in a temporary file."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_imagestore.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def sample_jpeg():
    return make_jpeg()


@pytest.fixture
def other_jpeg():
    return make_jpeg(shift=40)
