"""Database connection and session management."""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from imagestore.settings import settings
import os


def normalize_database_url(url: str) -> str:
    """Convert postgres:// style URLs to the asyncpg driver for SQLAlchemy."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# POSTGRES_URL wins when a managed Postgres provides it
database_url = normalize_database_url(os.getenv("POSTGRES_URL") or settings.DATABASE_URL)

engine = create_async_engine(
    database_url,
    echo=False,  # Set to True for SQL debugging
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for FastAPI to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_tables():
    """Create all database tables (dev only; production schemas are migrated)."""
    from imagestore import models  # noqa: F401  registers tables on Base
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
