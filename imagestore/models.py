"""SQLAlchemy async models."""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, BigInteger, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import relationship
from imagestore.db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, set by the application so every backend gets microseconds."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ImageStatus:
    """Derived image processing states."""
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    
    ALL = (QUEUED, PROCESSING, READY, ERROR)


class OriginalImage(Base):
    """Content-addressed original photo, stored once however many derived images use it."""
    __tablename__ = "original_images"
    
    id = Column(Integer, primary_key=True, index=True)
    content_hash = Column(String(64), unique=True, nullable=False)  # SHA256 hex
    object_key = Column(Text, nullable=False)
    file_size = Column(BigInteger, nullable=False)
    mime_type = Column(String(50), nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    reference_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    
    # Relationships
    images = relationship("DerivedImage", back_populates="original")
    
    # Indexes
    __table_args__ = (
        Index("idx_original_images_ref_count", "reference_count"),
    )


class DerivedImage(Base):
    """Staged image produced from an original.
    
    Rows are soft-deleted (deleted_at) and kept for usage accounting.
    original_image_id is NULL on legacy rows created before dedup.
    """
    __tablename__ = "images"
    
    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String(64), nullable=False, index=True)
    original_image_id = Column(
        Integer,
        ForeignKey("original_images.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    original_key = Column(Text, nullable=True)
    staged_key = Column(Text, nullable=True)
    room_type = Column(String(50), nullable=True)
    style = Column(String(50), nullable=True)
    status = Column(String(20), default=ImageStatus.QUEUED, nullable=False, index=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    
    # Relationships
    original = relationship("OriginalImage", back_populates="images")
    
    # Indexes
    __table_args__ = (
        Index("idx_images_project_deleted", "project_id", "deleted_at"),
    )
