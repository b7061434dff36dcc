"""
Crop cache repository backed by SQLAlchemy/SQLite.
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from domain.errors import CropCacheError
from domain.models import CropCacheEntry, CropCoordinates
from repositories.models import CropCacheORM


def _entry_from_orm(orm: CropCacheORM) -> CropCacheEntry:
    return CropCacheEntry(
        id=orm.id,
        cache_key=orm.cache_key,
        image_url=orm.image_url,
        target_width=orm.target_width,
        target_height=orm.target_height,
        settings_hash=orm.settings_hash,
        coordinates=CropCoordinates(
            x=orm.crop_x,
            y=orm.crop_y,
            width=orm.crop_width,
            height=orm.crop_height,
            confidence=orm.crop_confidence,
            strategy=orm.crop_strategy,
        ),
        created_at=orm.created_at,
        last_accessed_at=orm.last_accessed_at,
        access_count=orm.access_count,
    )


def _update_orm_from_entry(orm: CropCacheORM, entry: CropCacheEntry) -> None:
    coords = entry.coordinates
    orm.cache_key = entry.cache_key
    orm.image_url = entry.image_url
    orm.target_width = entry.target_width
    orm.target_height = entry.target_height
    orm.settings_hash = entry.settings_hash
    orm.crop_x = coords.x
    orm.crop_y = coords.y
    orm.crop_width = coords.width
    orm.crop_height = coords.height
    orm.crop_confidence = coords.confidence
    orm.crop_strategy = coords.strategy
    orm.created_at = entry.created_at
    orm.last_accessed_at = entry.last_accessed_at
    orm.access_count = entry.access_count


class CropCacheRepository:
    """Row-level CRUD and sweeps for cached crop decisions."""

    def _find(self, session: Session, cache_key: str) -> Optional[CropCacheORM]:
        return session.query(CropCacheORM).filter(CropCacheORM.cache_key == cache_key).first()

    def get_by_key(self, session: Session, cache_key: str) -> Optional[CropCacheEntry]:
        orm = self._find(session, cache_key)
        return _entry_from_orm(orm) if orm else None

    def list_by_image(self, session: Session, image_url: str) -> List[CropCacheEntry]:
        rows = (
            session.query(CropCacheORM)
            .filter(CropCacheORM.image_url == image_url)
            .order_by(CropCacheORM.last_accessed_at.desc(), CropCacheORM.id.desc())
            .all()
        )
        return [_entry_from_orm(r) for r in rows]

    def insert(self, session: Session, entry: CropCacheEntry) -> CropCacheEntry:
        orm = CropCacheORM()
        _update_orm_from_entry(orm, entry)
        session.add(orm)
        session.commit()
        session.refresh(orm)
        return _entry_from_orm(orm)

    def update(self, session: Session, entry: CropCacheEntry) -> CropCacheEntry:
        if entry.id is None:
            raise CropCacheError(f"cannot update crop cache entry {entry.cache_key} without a row id")
        orm = session.get(CropCacheORM, entry.id)
        if orm is None:
            raise CropCacheError(f"crop cache row {entry.id} no longer exists")
        _update_orm_from_entry(orm, entry)
        session.add(orm)
        session.commit()
        session.refresh(orm)
        return _entry_from_orm(orm)

    def upsert(self, session: Session, entry: CropCacheEntry) -> CropCacheEntry:
        """
        Insert, or overwrite the row holding the same cache key (its id is kept).

        When another writer inserts the key between our lookup and insert, the
        insert is retried as an update so the later write still lands.
        """
        orm = self._find(session, entry.cache_key)
        if orm is None:
            try:
                return self.insert(session, entry)
            except IntegrityError:
                session.rollback()
                orm = self._find(session, entry.cache_key)
                if orm is None:
                    raise
        _update_orm_from_entry(orm, entry)
        session.add(orm)
        session.commit()
        session.refresh(orm)
        return _entry_from_orm(orm)

    def delete(self, session: Session, entry_id: int) -> bool:
        deleted = session.query(CropCacheORM).filter(CropCacheORM.id == entry_id).delete()
        session.commit()
        return deleted > 0

    def delete_expired(self, session: Session, cutoff: datetime, commit: bool = True) -> int:
        """Remove rows created before cutoff (i.e. older than the TTL)."""
        deleted = (
            session.query(CropCacheORM)
            .filter(CropCacheORM.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        if commit:
            session.commit()
        return deleted

    def evict_lru(self, session: Session, max_entries: int, commit: bool = True) -> int:
        """Drop least recently accessed rows until at most max_entries remain."""
        max_entries = max(0, max_entries)
        total = session.query(func.count(CropCacheORM.id)).scalar() or 0
        excess = total - max_entries
        if excess <= 0:
            return 0
        victim_ids = [
            row_id
            for (row_id,) in session.query(CropCacheORM.id)
            .order_by(CropCacheORM.last_accessed_at.asc(), CropCacheORM.id.asc())
            .limit(excess)
            .all()
        ]
        deleted = (
            session.query(CropCacheORM)
            .filter(CropCacheORM.id.in_(victim_ids))
            .delete(synchronize_session=False)
        )
        if commit:
            session.commit()
        return deleted

    def delete_by_image(self, session: Session, image_url: str) -> int:
        deleted = session.query(CropCacheORM).filter(CropCacheORM.image_url == image_url).delete()
        session.commit()
        return deleted

    def delete_other_settings(self, session: Session, settings_hash: str) -> int:
        deleted = (
            session.query(CropCacheORM)
            .filter(CropCacheORM.settings_hash != settings_hash)
            .delete(synchronize_session=False)
        )
        session.commit()
        return deleted

    def delete_duplicates(self, session: Session) -> int:
        """Keep the lowest id per cache key, delete the rest."""
        keep = session.query(func.min(CropCacheORM.id)).group_by(CropCacheORM.cache_key)
        deleted = (
            session.query(CropCacheORM)
            .filter(CropCacheORM.id.notin_(keep.scalar_subquery()))
            .delete(synchronize_session=False)
        )
        session.commit()
        return deleted

    def clear(self, session: Session) -> int:
        deleted = session.query(CropCacheORM).delete()
        session.commit()
        return deleted

    def count(self, session: Session) -> int:
        return session.query(func.count(CropCacheORM.id)).scalar() or 0

    def summary(self, session: Session) -> Dict[str, object]:
        """Aggregate counters used by the stats and hit-rate reports."""
        total, avg_access, max_access, min_access, oldest, newest = session.query(
            func.count(CropCacheORM.id),
            func.avg(CropCacheORM.access_count),
            func.max(CropCacheORM.access_count),
            func.min(CropCacheORM.access_count),
            func.min(CropCacheORM.created_at),
            func.max(CropCacheORM.created_at),
        ).one()
        reused = (
            session.query(func.count(CropCacheORM.id))
            .filter(CropCacheORM.access_count > 1)
            .scalar()
            or 0
        )
        return {
            "total_entries": total or 0,
            "average_access_count": float(avg_access or 0.0),
            "max_access_count": max_access or 0,
            "min_access_count": min_access or 0,
            "oldest_entry": oldest,
            "newest_entry": newest,
            "reused_entries": reused,
        }

    def database_size(self, session: Session) -> int:
        """On-disk size in bytes (page_count * page_size); 0 for non-SQLite backends."""
        bind = session.get_bind()
        if bind.dialect.name != "sqlite":
            return 0
        page_count = session.execute(text("PRAGMA page_count")).scalar() or 0
        page_size = session.execute(text("PRAGMA page_size")).scalar() or 0
        return int(page_count) * int(page_size)
