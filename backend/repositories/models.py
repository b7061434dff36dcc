"""
SQLAlchemy ORM models for persistence.
"""
from sqlalchemy import Column, DateTime, Float, Index, Integer, String

from db import Base
from domain.models import utcnow


class CropCacheORM(Base):
    __tablename__ = "crop_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String, nullable=False, unique=True)
    image_url = Column(String, nullable=False)
    target_width = Column(Float, nullable=False)
    target_height = Column(Float, nullable=False)
    settings_hash = Column(String, nullable=False)
    crop_x = Column(Float, nullable=False)
    crop_y = Column(Float, nullable=False)
    crop_width = Column(Float, nullable=False)
    crop_height = Column(Float, nullable=False)
    crop_confidence = Column(Float, nullable=False)
    crop_strategy = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_accessed_at = Column(DateTime, default=utcnow, nullable=False)
    access_count = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("idx_crop_cache_key", "cache_key"),
        Index("idx_crop_cache_image_url", "image_url"),
        Index("idx_crop_cache_created_at", "created_at"),
        Index("idx_crop_cache_last_accessed", "last_accessed_at"),
    )
