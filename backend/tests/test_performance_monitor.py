import threading
from datetime import timedelta

import pytest

from services.performance_monitor import PerformanceMonitor


def test_empty_stats():
    stats = PerformanceMonitor().stats()
    assert stats["total_operations"] == 0
    assert stats["success_rate"] == 0.0
    assert stats["median_duration_ms"] == 0.0
    assert stats["operations"] == {}


def test_overall_and_per_operation_figures():
    monitor = PerformanceMonitor()
    for ms in (10, 30, 20):
        monitor.record("analyze_crop", timedelta(milliseconds=ms))
    monitor.record("analyze_crop", timedelta(milliseconds=40), success=False, error="boom")
    monitor.record("preload", timedelta(milliseconds=100), fallback=True)

    stats = monitor.stats()
    assert stats["total_operations"] == 5
    assert stats["failed_operations"] == 1
    assert stats["fallback_operations"] == 1
    assert stats["success_rate"] == pytest.approx(0.8)
    assert stats["average_duration_ms"] == pytest.approx(40.0)
    assert stats["median_duration_ms"] == pytest.approx(30.0)
    assert stats["min_duration_ms"] == pytest.approx(10.0)
    assert stats["max_duration_ms"] == pytest.approx(100.0)

    crop = stats["operations"]["analyze_crop"]
    assert crop["total_count"] == 4
    assert crop["failure_count"] == 1
    assert crop["success_rate"] == pytest.approx(0.75)
    assert crop["average_duration_ms"] == pytest.approx(25.0)
    assert (crop["min_duration_ms"], crop["max_duration_ms"]) == pytest.approx((10.0, 40.0))
    assert monitor.recent("analyze_crop")[-1].error == "boom"


def test_history_is_bounded_but_totals_are_not():
    monitor = PerformanceMonitor(max_history=3)
    for ms in range(1, 6):
        monitor.record("analyze_crop", timedelta(milliseconds=ms))

    assert [m.duration for m in monitor.recent()] == [timedelta(milliseconds=ms) for ms in (3, 4, 5)]
    stats = monitor.stats()
    assert stats["total_operations"] == 3
    assert stats["operations"]["analyze_crop"]["total_count"] == 5


def test_concurrent_records_are_all_counted():
    monitor = PerformanceMonitor()

    def worker():
        for _ in range(200):
            monitor.record("analyze_crop", timedelta(milliseconds=1))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert monitor.stats()["operations"]["analyze_crop"]["total_count"] == 800
