"""
Smart crop orchestration: cache lookup, single-flight analysis, cache write.

Typical use:

    cropper = SmartCropper()
    snapshot = ImageSnapshot.from_path("photo.jpg")
    result = cropper.analyze_crop(snapshot, TargetSize(1080, 1920))
    left, top, right, bottom = cropper.crop_box(result.coordinates, 4000, 3000)
"""
from __future__ import annotations

from concurrent.futures import Future
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
import logging
import threading
import time

from PIL import Image

from domain.models import (
    CropCacheHitRate,
    CropCacheMaintenanceResult,
    CropCacheStats,
    CropCoordinates,
    CropResult,
    CropSettings,
    TargetSize,
)
from services.cache_keys import derive_key
from services.crop_aggregator import CropAggregator
from services.crop_cache import CropCacheStore
from services.image_snapshot import ImageSnapshot, apply_crop, crop_box
from services.performance_monitor import PerformanceMonitor
from settings import settings as app_settings

logger = logging.getLogger(__name__)

OPERATION_ANALYZE = "analyze_crop"


class SmartCropper:
    def __init__(
        self,
        cache: Optional[CropCacheStore] = None,
        aggregator: Optional[CropAggregator] = None,
        cache_enabled: Optional[bool] = None,
        analysis_max_dim: Optional[int] = None,
        max_timeout_ms: Optional[int] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ) -> None:
        self.cache_enabled = app_settings.SMART_CROP_CACHE_ENABLED if cache_enabled is None else cache_enabled
        if cache is None and self.cache_enabled:
            cache = CropCacheStore(
                ttl=timedelta(days=app_settings.SMART_CROP_CACHE_TTL_DAYS),
                max_entries=app_settings.SMART_CROP_CACHE_MAX_ENTRIES,
            )
        self.cache = cache
        self.aggregator = aggregator or CropAggregator(executor_workers=app_settings.SMART_CROP_ANALYZER_WORKERS)
        self.analysis_max_dim = analysis_max_dim or app_settings.SMART_CROP_ANALYSIS_MAX_DIM
        self.max_timeout = timedelta(milliseconds=max_timeout_ms or app_settings.SMART_CROP_MAX_TIMEOUT_MS)
        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self.monitor = monitor or PerformanceMonitor()

    @property
    def _use_cache(self) -> bool:
        return self.cache_enabled and self.cache is not None

    def _effective_timeout(self, settings: CropSettings, timeout: Optional[timedelta]) -> timedelta:
        """Caller timeout (or the settings budget) capped at max_timeout. Zero or less means no time left."""
        requested = timeout if timeout is not None else settings.max_processing_time
        return min(requested, self.max_timeout)

    def analyze_crop(
        self,
        image: ImageSnapshot,
        target_size: TargetSize,
        settings: Optional[CropSettings] = None,
        timeout: Optional[timedelta] = None,
        image_url: Optional[str] = None,
    ) -> CropResult:
        """
        Resolve the crop for one (image, size, settings) combination.

        Returns the cached decision when there is one. Otherwise runs the
        analyzers (once per key, even under concurrent identical calls) and
        caches the result unless it is the center-crop fallback.

        Raises InvalidTargetSizeError before doing any work when the target
        size is not usable.
        """
        target_size.validate()
        settings = settings or CropSettings.default()
        identity = image_url or image.identity
        started = time.perf_counter()
        try:
            result = self._resolve(image, target_size, settings, timeout, identity, started)
        except Exception as exc:
            self.monitor.record(
                OPERATION_ANALYZE, timedelta(seconds=time.perf_counter() - started), success=False, error=str(exc)
            )
            raise
        self.monitor.record(
            OPERATION_ANALYZE, result.processing_time, fallback=result.is_fallback, from_cache=result.from_cache
        )
        return result

    def _resolve(
        self,
        image: ImageSnapshot,
        target_size: TargetSize,
        settings: CropSettings,
        timeout: Optional[timedelta],
        identity: str,
        started: float,
    ) -> CropResult:
        key = derive_key(identity, target_size, settings)

        if self._use_cache:
            cached = self.cache.get_cached_crop(identity, target_size, settings)
            if cached is not None:
                return CropResult(
                    coordinates=cached,
                    from_cache=True,
                    processing_time=timedelta(seconds=time.perf_counter() - started),
                    cache_key=key,
                )

        with self._inflight_lock:
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[key] = pending

        if not owner:
            logger.debug("Joining in-flight crop analysis for %s", key)
            shared: CropResult = pending.result()
            return replace(shared, processing_time=timedelta(seconds=time.perf_counter() - started))

        try:
            result = self._compute(image, target_size, settings, timeout, identity, key, started)
            if self._use_cache and not result.is_fallback:
                self.cache.cache_crop(identity, target_size, settings, result.coordinates)
            pending.set_result(result)
            return result
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _compute(
        self,
        image: ImageSnapshot,
        target_size: TargetSize,
        settings: CropSettings,
        timeout: Optional[timedelta],
        identity: str,
        key: str,
        started: float,
    ) -> CropResult:
        analysis_image = image.for_analysis(self.analysis_max_dim)
        outcome = self.aggregator.aggregate(
            analysis_image, target_size, settings, timeout=self._effective_timeout(settings, timeout)
        )
        elapsed = timedelta(seconds=time.perf_counter() - started)
        if outcome.is_fallback:
            logger.info("Center-crop fallback for %s (%s)", identity, outcome.fallback_reason)
        return CropResult(
            coordinates=outcome.coordinates,
            from_cache=False,
            scores=list(outcome.scores),
            processing_time=elapsed,
            cache_key=key,
        )

    def preload_common_sizes(
        self,
        image: ImageSnapshot,
        settings: Optional[CropSettings] = None,
        image_url: Optional[str] = None,
    ) -> int:
        if not self._use_cache:
            return 0
        settings = settings or CropSettings.default()
        identity = image_url or image.identity

        def _analyze(img: ImageSnapshot, size: TargetSize, s: CropSettings) -> CropCoordinates:
            key = derive_key(identity, size, s)
            return self._compute(img, size, s, None, identity, key, time.perf_counter()).coordinates

        return self.cache.preload_common_sizes(identity, image, settings, _analyze)

    # --- Cache management -------------------------------------------------

    def perform_maintenance(
        self, ttl: Optional[timedelta] = None, max_entries: Optional[int] = None
    ) -> CropCacheMaintenanceResult:
        if self.cache is None:
            return CropCacheMaintenanceResult(0, 0, success=True)
        return self.cache.perform_maintenance(ttl, max_entries)

    def invalidate_image(self, image_url: str) -> int:
        return self.cache.invalidate_by_image(image_url) if self.cache is not None else 0

    def invalidate_settings(self, settings: CropSettings) -> int:
        return self.cache.invalidate_by_settings(settings) if self.cache is not None else 0

    def clear_cache(self) -> int:
        return self.cache.clear() if self.cache is not None else 0

    def get_cache_stats(self) -> CropCacheStats:
        return self.cache.stats() if self.cache is not None else CropCacheStats(0, 0, 0.0)

    def get_hit_rate(self) -> CropCacheHitRate:
        return self.cache.hit_rate() if self.cache is not None else CropCacheHitRate(0, 0.0, 0, 0, 0.0)

    def get_performance_stats(self) -> Dict[str, Any]:
        return self.monitor.stats()

    def clear_performance_stats(self) -> None:
        self.monitor.clear()

    def close(self) -> None:
        self.aggregator.close()

    # --- Pixel helpers ----------------------------------------------------

    @staticmethod
    def crop_box(coords: CropCoordinates, width: int, height: int) -> Tuple[int, int, int, int]:
        return crop_box(coords, width, height)

    @staticmethod
    def apply_crop(
        image: Image.Image, coords: CropCoordinates, target_size: Optional[TargetSize] = None
    ) -> Image.Image:
        return apply_crop(image, coords, target_size)
