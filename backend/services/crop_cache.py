"""
Persistent cache of crop decisions.

Wraps CropCacheRepository with TTL/LRU policy and the key helpers. The cache
is an optimization only: database errors are logged and turned into misses
(reads) or dropped writes, never raised to the caller.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, TypeVar
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from domain.errors import CropCacheError
from domain.models import (
    STRATEGY_FALLBACK,
    CropCacheEntry,
    CropCacheHitRate,
    CropCacheMaintenanceResult,
    CropCacheStats,
    CropCoordinates,
    CropSettings,
    TargetSize,
    utcnow,
)
from repositories.crop_cache import CropCacheRepository
from services.cache_keys import derive_key, settings_hash
from services.image_snapshot import ImageSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = timedelta(days=7)
DEFAULT_MAX_ENTRIES = 1000

# Phone and desktop wallpaper sizes worth precomputing for a new image
COMMON_SIZES: Tuple[TargetSize, ...] = (
    TargetSize(1080, 1920),
    TargetSize(1440, 2560),
    TargetSize(1080, 2340),
    TargetSize(1200, 1920),
    TargetSize(1920, 1200),
    TargetSize(2560, 1440),
)

STORE_ERRORS = (SQLAlchemyError, OSError, CropCacheError)

AnalyzeFn = Callable[[ImageSnapshot, TargetSize, CropSettings], CropCoordinates]


class CropCacheStore:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        ttl: timedelta = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        repository: Optional[CropCacheRepository] = None,
    ) -> None:
        if session_factory is None:
            from db import SessionLocal, init_db

            session_factory = SessionLocal
            try:
                init_db()
            except STORE_ERRORS as exc:
                logger.warning("Crop cache tables could not be created, running without a cache: %s", exc)
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self.ttl = ttl
        self.max_entries = max_entries
        self.repo = repository or CropCacheRepository()

    def now(self) -> datetime:
        return self._clock()

    def _run(self, operation: str, fn: Callable[[Session], T], default: T) -> T:
        session = self._session_factory()
        try:
            return fn(session)
        except STORE_ERRORS as exc:
            session.rollback()
            logger.warning("Crop cache %s failed: %s", operation, exc)
            return default
        finally:
            session.close()

    # --- Entry level ------------------------------------------------------

    def get(self, cache_key: str) -> Optional[CropCacheEntry]:
        """Return the entry for cache_key and record the access, or None."""

        def _get(session: Session) -> Optional[CropCacheEntry]:
            entry = self.repo.get_by_key(session, cache_key)
            if entry is None:
                return None
            return self.repo.update(session, entry.with_access(self.now()))

        return self._run("get", _get, None)

    def put(self, entry: CropCacheEntry) -> Optional[CropCacheEntry]:
        return self._run("put", lambda session: self.repo.upsert(session, entry), None)

    def get_by_image(self, image_url: str) -> List[CropCacheEntry]:
        return self._run("get_by_image", lambda session: self.repo.list_by_image(session, image_url), [])

    # --- Sweeps -----------------------------------------------------------

    def delete_expired(self, ttl: Optional[timedelta] = None) -> int:
        cutoff = self.now() - (ttl if ttl is not None else self.ttl)
        deleted = self._run("delete_expired", lambda session: self.repo.delete_expired(session, cutoff), 0)
        if deleted:
            logger.info("Deleted %d expired crop cache entries", deleted)
        return deleted

    def evict_lru(self, max_entries: Optional[int] = None) -> int:
        limit = self.max_entries if max_entries is None else max_entries
        evicted = self._run("evict_lru", lambda session: self.repo.evict_lru(session, limit), 0)
        if evicted:
            logger.info("Evicted %d least recently used crop cache entries", evicted)
        return evicted

    def invalidate_by_image(self, image_url: str) -> int:
        return self._run("invalidate_by_image", lambda session: self.repo.delete_by_image(session, image_url), 0)

    def invalidate_by_settings(self, settings: CropSettings) -> int:
        """Drop every entry computed with settings other than these."""
        current = settings_hash(settings)
        deleted = self._run(
            "invalidate_by_settings", lambda session: self.repo.delete_other_settings(session, current), 0
        )
        if deleted:
            logger.info("Invalidated %d crop cache entries computed with other settings", deleted)
        return deleted

    def clear(self) -> int:
        return self._run("clear", self.repo.clear, 0)

    def optimize(self) -> int:
        """
        Remove duplicate cache_key rows, keeping the oldest.

        The schema declares cache_key unique, so this only finds work on
        database files created before that constraint existed.
        """
        removed = self._run("optimize", self.repo.delete_duplicates, 0)
        if removed:
            logger.info("Removed %d duplicate crop cache entries", removed)
        return removed

    def perform_maintenance(
        self, ttl: Optional[timedelta] = None, max_entries: Optional[int] = None
    ) -> CropCacheMaintenanceResult:
        """TTL sweep then LRU eviction, committed together."""
        cutoff = self.now() - (ttl if ttl is not None else self.ttl)
        limit = self.max_entries if max_entries is None else max_entries
        session = self._session_factory()
        try:
            expired = self.repo.delete_expired(session, cutoff, commit=False)
            evicted = self.repo.evict_lru(session, limit, commit=False)
            session.commit()
        except STORE_ERRORS as exc:
            session.rollback()
            logger.warning("Crop cache maintenance failed: %s", exc)
            return CropCacheMaintenanceResult(0, 0, success=False, error=str(exc))
        finally:
            session.close()
        logger.info("Crop cache maintenance: %d expired, %d evicted", expired, evicted)
        return CropCacheMaintenanceResult(expired, evicted, success=True)

    # --- Reporting --------------------------------------------------------

    def stats(self) -> CropCacheStats:
        def _stats(session: Session) -> CropCacheStats:
            summary = self.repo.summary(session)
            return CropCacheStats(
                total_entries=summary["total_entries"],
                total_size_bytes=self.repo.database_size(session),
                average_access_count=summary["average_access_count"],
                oldest_entry=summary["oldest_entry"],
                newest_entry=summary["newest_entry"],
            )

        return self._run("stats", _stats, CropCacheStats(0, 0, 0.0))

    def hit_rate(self) -> CropCacheHitRate:
        """Reuse estimate: share of entries that were read at least once after being written."""

        def _hit_rate(session: Session) -> CropCacheHitRate:
            summary = self.repo.summary(session)
            total = summary["total_entries"]
            return CropCacheHitRate(
                total_entries=total,
                average_access_count=summary["average_access_count"],
                max_access_count=summary["max_access_count"],
                min_access_count=summary["min_access_count"],
                estimated_hit_rate=(summary["reused_entries"] / total) if total else 0.0,
            )

        return self._run("hit_rate", _hit_rate, CropCacheHitRate(0, 0.0, 0, 0, 0.0))

    # --- Key level conveniences -------------------------------------------

    def get_cached_crop(
        self, image_url: str, target_size: TargetSize, settings: CropSettings
    ) -> Optional[CropCoordinates]:
        """
        Cached coordinates for (image, size, settings), or None.

        Expired rows and rows whose stored settings hash no longer matches are
        deleted and reported as misses.
        """
        key = derive_key(image_url, target_size, settings)
        expected_hash = settings_hash(settings)
        now = self.now()

        def _lookup(session: Session) -> Optional[CropCoordinates]:
            entry = self.repo.get_by_key(session, key)
            if entry is None:
                logger.debug("Crop cache miss for %s %s", image_url, target_size.label())
                return None
            if entry.is_expired(self.ttl, now) or entry.settings_hash != expected_hash:
                logger.debug("Dropping stale crop cache entry %s", key)
                self.repo.delete(session, entry.id)
                return None
            self.repo.update(session, entry.with_access(now))
            logger.debug("Crop cache hit for %s %s", image_url, target_size.label())
            return entry.coordinates

        return self._run("lookup", _lookup, None)

    def contains(self, image_url: str, target_size: TargetSize, settings: CropSettings) -> bool:
        """True when a fresh entry exists. Unlike get_cached_crop, nothing is written."""
        key = derive_key(image_url, target_size, settings)
        expected_hash = settings_hash(settings)
        now = self.now()

        def _contains(session: Session) -> bool:
            entry = self.repo.get_by_key(session, key)
            return entry is not None and not entry.is_expired(self.ttl, now) and entry.settings_hash == expected_hash

        return self._run("contains", _contains, False)

    def cache_crop(
        self,
        image_url: str,
        target_size: TargetSize,
        settings: CropSettings,
        coordinates: CropCoordinates,
    ) -> bool:
        """Store a decision. Fallback crops are never cached."""
        if coordinates.strategy == STRATEGY_FALLBACK:
            return False
        entry = CropCacheEntry.create(
            cache_key=derive_key(image_url, target_size, settings),
            image_url=image_url,
            target_width=target_size.width,
            target_height=target_size.height,
            settings_hash=settings_hash(settings),
            coordinates=coordinates,
            now=self.now(),
        )
        return self.put(entry) is not None

    def preload_common_sizes(
        self,
        image_url: str,
        image: ImageSnapshot,
        settings: CropSettings,
        analyze_fn: AnalyzeFn,
        sizes: Tuple[TargetSize, ...] = COMMON_SIZES,
    ) -> int:
        """Compute and cache crops for the common wallpaper sizes; returns how many were stored."""
        stored = 0
        for size in sizes:
            if self.contains(image_url, size, settings):
                continue
            try:
                coordinates = analyze_fn(image, size, settings)
            except Exception:
                logger.exception("Preloading crop for %s at %s failed", image_url, size.label())
                continue
            if self.cache_crop(image_url, size, settings, coordinates):
                stored += 1
        logger.info("Preloaded %d crop sizes for %s", stored, image_url)
        return stored
