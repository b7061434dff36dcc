import threading
import time
from datetime import timedelta

import numpy as np
import pytest
from PIL import Image

from domain.errors import InvalidTargetSizeError
from domain.models import STRATEGY_FALLBACK, CropCoordinates, CropSettings, TargetSize
from services.crop_aggregator import AggregationOutcome, CropAggregator
from services.crop_cache import COMMON_SIZES, CropCacheStore
from services.image_snapshot import ImageSnapshot
from services.smart_cropper import SmartCropper


class CountingAggregator:
    """Aggregator stand-in that blocks until released and counts calls."""

    def __init__(self, release: threading.Event):
        self.release = release
        self.calls = 0
        self.seen_buffer_sizes = []
        self._lock = threading.Lock()

    def aggregate(self, image, target_size, settings, timeout=None):
        with self._lock:
            self.calls += 1
            self.seen_buffer_sizes.append(image.buffer_size)
        self.release.wait(5)
        coords = CropCoordinates(x=0.1, y=0.0, width=0.5, height=1.0, confidence=0.7, strategy="rule_of_thirds")
        return AggregationOutcome(coords)

    def close(self):
        pass


@pytest.fixture
def cache(session_factory):
    return CropCacheStore(session_factory=session_factory)


@pytest.fixture
def cropper(cache):
    c = SmartCropper(cache=cache, aggregator=CropAggregator(), cache_enabled=True)
    yield c
    c.close()


def test_second_identical_request_is_served_from_cache(cropper, noise_image):
    target = TargetSize(1080, 1920)
    first = cropper.analyze_crop(noise_image, target)
    second = cropper.analyze_crop(noise_image, target)

    assert not first.from_cache
    assert first.scores
    assert second.from_cache
    assert second.scores == []
    assert second.coordinates == first.coordinates
    assert second.cache_key == first.cache_key


def test_different_settings_miss_the_cache(cropper, noise_image):
    target = TargetSize(1080, 1920)
    cropper.analyze_crop(noise_image, target)
    other = cropper.analyze_crop(noise_image, target, CropSettings(enable_edge_detection=True))
    assert not other.from_cache


def test_image_url_overrides_snapshot_identity(cropper, noise_image):
    target = TargetSize(300, 300)
    cropper.analyze_crop(noise_image, target, image_url="https://cdn.example.com/x.jpg")
    assert len(cropper.cache.get_by_image("https://cdn.example.com/x.jpg")) == 1
    assert cropper.cache.get_by_image(noise_image.identity) == []


def test_invalid_target_is_rejected_before_any_work(session_factory, noise_image):
    aggregator = CountingAggregator(threading.Event())
    cropper = SmartCropper(cache=CropCacheStore(session_factory=session_factory), aggregator=aggregator, cache_enabled=True)
    with pytest.raises(InvalidTargetSizeError):
        cropper.analyze_crop(noise_image, TargetSize(0, 1920))
    with pytest.raises(ValueError):
        cropper.analyze_crop(noise_image, TargetSize(1080, -1))
    assert aggregator.calls == 0


def test_fallback_results_are_not_cached(cropper, noise_image):
    settings = CropSettings(enable_rule_of_thirds=False, enable_center_weighting=False, enable_entropy_analysis=False)
    result = cropper.analyze_crop(noise_image, TargetSize(100, 100), settings)

    assert result.is_fallback
    assert result.coordinates.strategy == STRATEGY_FALLBACK
    assert cropper.get_cache_stats().total_entries == 0


def test_concurrent_identical_requests_share_one_analysis(noise_image):
    release = threading.Event()
    aggregator = CountingAggregator(release)
    cropper = SmartCropper(cache=None, aggregator=aggregator, cache_enabled=False)
    target = TargetSize(1080, 1920)
    results = []

    def worker():
        results.append(cropper.analyze_crop(noise_image, target))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    time.sleep(0.2)
    release.set()
    for t in threads:
        t.join(5)

    assert aggregator.calls == 1
    assert len(results) == 4
    assert len({r.coordinates for r in results}) == 1


def test_large_images_are_downscaled_for_analysis():
    release = threading.Event()
    release.set()
    aggregator = CountingAggregator(release)
    cropper = SmartCropper(cache=None, aggregator=aggregator, cache_enabled=False, analysis_max_dim=64)
    snapshot = ImageSnapshot.from_array("test://big", np.zeros((300, 400, 3), dtype=np.uint8))

    cropper.analyze_crop(snapshot, TargetSize(100, 100))
    assert aggregator.seen_buffer_sizes == [(64, 48)]


def test_timeout_is_capped(cache):
    cropper = SmartCropper(cache=cache, aggregator=CropAggregator(), max_timeout_ms=1000)
    try:
        assert cropper._effective_timeout(CropSettings(), None) == timedelta(milliseconds=1000)
        assert cropper._effective_timeout(CropSettings(), timedelta(milliseconds=300)) == timedelta(milliseconds=300)
        assert cropper._effective_timeout(CropSettings(max_processing_time_ms=500), None) == timedelta(milliseconds=500)
    finally:
        cropper.close()


def test_preload_and_cache_management(cropper, noise_image):
    assert cropper.preload_common_sizes(noise_image) == len(COMMON_SIZES)
    assert cropper.get_cache_stats().total_entries == len(COMMON_SIZES)

    cached = cropper.analyze_crop(noise_image, COMMON_SIZES[0])
    assert cached.from_cache
    assert cropper.get_hit_rate().estimated_hit_rate > 0

    result = cropper.perform_maintenance(max_entries=2)
    assert result.success
    assert result.lru_entries_evicted == len(COMMON_SIZES) - 2

    assert cropper.invalidate_image(noise_image.identity) == 2
    assert cropper.clear_cache() == 0


def test_invalidate_settings(cropper, noise_image):
    cropper.analyze_crop(noise_image, TargetSize(200, 100))
    cropper.analyze_crop(noise_image, TargetSize(200, 100), CropSettings(enable_edge_detection=True))
    assert cropper.invalidate_settings(CropSettings()) == 1


def test_apply_crop_uses_source_pixels():
    image = Image.new("RGB", (400, 300), (10, 20, 30))
    coords = CropCoordinates(x=0.25, y=0.0, width=0.5, height=1.0, confidence=0.5, strategy="center_weighted")

    assert SmartCropper.crop_box(coords, 400, 300) == (100, 0, 300, 300)
    out = SmartCropper.apply_crop(image, coords, TargetSize(100, 150))
    assert out.size == (100, 150)


def test_unopenable_cache_database_still_crops(unopenable_database, noise_image):
    cropper = SmartCropper(aggregator=CropAggregator(), cache_enabled=True)
    try:
        first = cropper.analyze_crop(noise_image, TargetSize(1080, 1920))
        second = cropper.analyze_crop(noise_image, TargetSize(1080, 1920))
    finally:
        cropper.close()

    assert first.coordinates.is_valid
    assert not first.is_fallback
    assert not second.from_cache
    assert second.coordinates == first.coordinates
    assert cropper.get_cache_stats().total_entries == 0


@pytest.mark.parametrize("timeout", [timedelta(0), timedelta(milliseconds=-1)])
def test_exhausted_timeout_gives_immediate_fallback(cropper, noise_image, timeout):
    result = cropper.analyze_crop(noise_image, TargetSize(100, 100), timeout=timeout)

    assert result.is_fallback
    assert not result.scores
    assert cropper.get_cache_stats().total_entries == 0


def test_performance_stats_track_outcomes(cropper, noise_image):
    target = TargetSize(1080, 1920)
    cropper.analyze_crop(noise_image, target)
    cropper.analyze_crop(noise_image, target)
    cropper.analyze_crop(noise_image, TargetSize(100, 100), timeout=timedelta(0))
    with pytest.raises(InvalidTargetSizeError):
        cropper.analyze_crop(noise_image, TargetSize(0, 100))

    stats = cropper.get_performance_stats()
    assert stats["total_operations"] == 3
    assert stats["successful_operations"] == 3
    assert stats["cache_hits"] == 1
    assert stats["fallback_operations"] == 1
    assert stats["min_duration_ms"] <= stats["median_duration_ms"] <= stats["max_duration_ms"]
    assert stats["operations"]["analyze_crop"]["total_count"] == 3

    cropper.clear_performance_stats()
    assert cropper.get_performance_stats()["total_operations"] == 0


def test_failed_analysis_is_recorded(noise_image):
    class BrokenAggregator:
        def aggregate(self, image, target_size, settings, timeout=None):
            raise RuntimeError("analyzer pool is gone")

        def close(self):
            pass

    cropper = SmartCropper(cache=None, aggregator=BrokenAggregator(), cache_enabled=False)
    with pytest.raises(RuntimeError):
        cropper.analyze_crop(noise_image, TargetSize(100, 100))

    stats = cropper.get_performance_stats()
    assert stats["failed_operations"] == 1
    assert stats["operations"]["analyze_crop"]["failure_count"] == 1
