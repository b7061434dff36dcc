"""
Tests for the individual crop analyzers.

Run with: pytest tests/test_crop_analyzers.py -v
"""
import numpy as np
import pytest

from domain.errors import InvalidTargetSizeError
from domain.models import CropCoordinates, TargetSize
from services.crop_analyzers import (
    ANALYZER_REGISTRATION_ORDER,
    CenterWeightedCropAnalyzer,
    EdgeDetectionCropAnalyzer,
    EntropyBasedCropAnalyzer,
    RuleOfThirdsCropAnalyzer,
    default_analyzers,
)
from services.crop_analyzers.base import crop_dimensions, shannon_entropy
from services.crop_analyzers.center_weighted import content_preservation_score, edge_safety_score
from services.crop_analyzers.edge_detection import edge_distribution, sobel_magnitude
from services.crop_analyzers.rule_of_thirds import grid_line_alignment, intersection_alignment
from services.image_snapshot import ImageSnapshot

ALL_ANALYZERS = [cls() for cls in ANALYZER_REGISTRATION_ORDER]


def _flat_image(width: int, height: int, value: int = 128) -> ImageSnapshot:
    return ImageSnapshot.from_array("test://flat", np.full((height, width, 3), value, dtype=np.uint8))


def _half_textured(width: int = 200, height: int = 100) -> np.ndarray:
    """Flat gray canvas; tests paint texture into part of it."""
    return np.full((height, width), 128, dtype=np.uint8)


def test_registration_order_and_defaults():
    names = [a.strategy_name for a in default_analyzers()]
    assert names == ["rule_of_thirds", "center_weighted", "entropy_based", "edge_detection"]
    enabled = {a.strategy_name: a.is_enabled_by_default for a in default_analyzers()}
    assert enabled["edge_detection"] is False
    assert all(v for k, v in enabled.items() if k != "edge_detection")


class TestCropDimensions:
    def test_wider_target_uses_full_width(self):
        assert crop_dimensions(1.0, 2.0) == (1.0, 0.5)

    def test_taller_target_uses_full_height(self):
        assert crop_dimensions(1.0, 0.5) == (0.5, 1.0)

    def test_extreme_mismatch_is_clamped(self):
        width, height = crop_dimensions(1.0, 10000.0)
        assert width == 1.0
        assert height == pytest.approx(0.01)


@pytest.mark.parametrize("analyzer", ALL_ANALYZERS, ids=lambda a: a.strategy_name)
@pytest.mark.parametrize(
    "target",
    [TargetSize(1080, 1920), TargetSize(1920, 1080), TargetSize(100, 100), TargetSize(10000, 1), TargetSize(1, 10000)],
    ids=lambda t: t.label(),
)
def test_proposals_stay_in_bounds(analyzer, target, noise_image):
    result = analyzer.analyze(noise_image, target)
    coords = result.coordinates
    assert coords.is_valid
    assert 0.0 <= result.score <= 1.0
    assert 0.0 <= coords.confidence <= 1.0
    assert result.strategy == analyzer.strategy_name
    assert coords.strategy == analyzer.strategy_name
    assert result.metrics


@pytest.mark.parametrize("analyzer", ALL_ANALYZERS, ids=lambda a: a.strategy_name)
def test_invalid_target_raises(analyzer, noise_image):
    with pytest.raises(InvalidTargetSizeError):
        analyzer.analyze(noise_image, TargetSize(0, 100))


@pytest.mark.parametrize("analyzer", ALL_ANALYZERS, ids=lambda a: a.strategy_name)
def test_crop_matches_target_aspect(analyzer, noise_image):
    target = TargetSize(1080, 1920)
    coords = analyzer.analyze(noise_image, target).coordinates
    # width/height are fractions of the 64x48 source
    pixel_aspect = (coords.width * noise_image.width) / (coords.height * noise_image.height)
    assert pixel_aspect == pytest.approx(target.aspect_ratio, rel=1e-6)


def test_rule_of_thirds_aligns_tall_crop_to_a_third_line():
    image = _flat_image(1000, 1000)
    result = RuleOfThirdsCropAnalyzer().analyze(image, TargetSize(500, 1000))
    coords = result.coordinates
    assert coords.width == pytest.approx(0.5)
    assert coords.height == pytest.approx(1.0)
    center_x, _ = coords.center
    assert min(abs(center_x - 1 / 3), abs(center_x - 2 / 3)) < 0.01


def test_rule_of_thirds_prefers_first_of_symmetric_ties():
    image = _flat_image(1000, 1000)
    coords = RuleOfThirdsCropAnalyzer().analyze(image, TargetSize(500, 1000)).coordinates
    assert coords.center[0] == pytest.approx(1 / 3)


def test_center_weighted_takes_whole_image_when_aspect_matches():
    image = _flat_image(200, 100)
    coords = CenterWeightedCropAnalyzer().analyze(image, TargetSize(400, 200)).coordinates
    assert (coords.x, coords.y, coords.width, coords.height) == pytest.approx((0.0, 0.0, 1.0, 1.0))


def test_center_weighted_picks_centered_crop():
    image = _flat_image(300, 100)
    coords = CenterWeightedCropAnalyzer().analyze(image, TargetSize(100, 100)).coordinates
    assert coords.center == pytest.approx((0.5, 0.5))
    assert coords.confidence == pytest.approx(0.8)


def test_entropy_prefers_textured_half():
    luma = _half_textured()
    rng = np.random.default_rng(7)
    luma[:, 100:] = rng.integers(0, 256, size=(100, 100), dtype=np.uint8)
    image = ImageSnapshot.from_array("test://half-noise", luma)

    result = EntropyBasedCropAnalyzer().analyze(image, TargetSize(100, 100))
    assert result.coordinates.x > 0.4
    assert result.metrics["average_entropy"] > 0.2


def test_entropy_on_flat_image_falls_back_to_standard_positions():
    analyzer = EntropyBasedCropAnalyzer()
    image = _flat_image(100, 100)
    candidates = analyzer.generate_candidates(image, 0.5, 0.5, analyzer.prepare(image))
    assert len(candidates) == 5
    assert all(c.confidence == pytest.approx(0.3) for c in candidates)


def test_edge_detection_prefers_detailed_region():
    luma = _half_textured()
    yy, xx = np.mgrid[0:100, 0:66]
    luma[:, 134:] = np.where(((xx // 4) + (yy // 4)) % 2 == 0, 0, 255).astype(np.uint8)
    image = ImageSnapshot.from_array("test://half-checker", luma)

    result = EdgeDetectionCropAnalyzer().analyze(image, TargetSize(100, 100))
    assert result.coordinates.x > 0.4
    assert result.metrics["strong_edge_ratio"] > 0.0


def test_sobel_magnitude_is_zero_on_borders_and_flat_areas():
    flat = np.full((10, 10), 90, dtype=np.uint8)
    assert not sobel_magnitude(flat).any()

    step = np.zeros((10, 10), dtype=np.uint8)
    step[:, 5:] = 255
    edges = sobel_magnitude(step)
    assert edges[0, :].sum() == 0 and edges[:, 0].sum() == 0
    assert edges[:, -1].sum() == 0 and edges[-1, :].sum() == 0
    # |gx| = 4 * 255 at the step, scaled by 1/4
    assert edges[5, 5] == 255
    assert edges.dtype == np.uint8


def test_shannon_entropy_bounds():
    assert shannon_entropy(np.full(100, 7, dtype=np.uint8)) == 0.0
    assert shannon_entropy(np.arange(256, dtype=np.uint8)) == pytest.approx(1.0)
    assert shannon_entropy(np.array([], dtype=np.uint8)) == 0.0


def _crop(x: float, y: float, width: float, height: float) -> CropCoordinates:
    return CropCoordinates(x=x, y=y, width=width, height=height, confidence=0.5, strategy="test")


def _centered_at(cx: float, cy: float, size: float = 0.1) -> CropCoordinates:
    return _crop(cx - size / 2, cy - size / 2, size, size)


class TestSubMetrics:
    @pytest.mark.parametrize(
        "area, expected",
        [
            (1.0, 1.0),
            (0.8, 1.0),
            (0.7, 0.9),
            (0.6, 0.8),
            (0.5, 0.65),
            (0.4, 0.5),
            (0.2, 0.25),
        ],
    )
    def test_content_preservation_breakpoints(self, area, expected):
        assert content_preservation_score(_crop(0.0, 0.0, area, 1.0)) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "left_margin, expected",
        [(0.2, 1.0), (0.05, 1.0), (0.025, 0.5), (0.0, 0.0)],
    )
    def test_edge_safety_threshold(self, left_margin, expected):
        crop = _crop(left_margin, 0.25, 0.5, 0.5)
        assert edge_safety_score(crop) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "offset, expected",
        [(0.0, 1.0), (0.025, 0.5), (-0.025, 0.5), (0.06, 0.0)],
    )
    def test_grid_line_tolerance_band(self, offset, expected):
        # Only the left edge can come near a third-line
        crop = _crop(1 / 3 + offset, 0.4, 0.2, 0.2)
        assert grid_line_alignment(crop) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "center, expected",
        [
            ((1 / 3, 1 / 3), 1.0),
            ((2 / 3 - 0.1, 2 / 3), 0.8),
            ((0.5, 0.5), 1 - 2 * (2 ** 0.5) / 6),
            ((0.05, 0.05), 1 - 2 * (2 ** 0.5) * (1 / 3 - 0.05)),
        ],
    )
    def test_intersection_alignment_decays_twice_as_fast_as_distance(self, center, expected):
        assert intersection_alignment(_centered_at(*center)) == pytest.approx(expected)

    @pytest.mark.parametrize("value, expected", [(0, 0.0), (12, 0.0), (13, 1.0), (255, 1.0)])
    def test_edge_distribution_needs_minimum_mean(self, value, expected):
        edges = np.full((64, 64), value, dtype=np.uint8)
        assert edge_distribution(edges, _crop(0.0, 0.0, 1.0, 1.0)) == pytest.approx(expected)

    def test_edge_distribution_penalizes_one_busy_quadrant(self):
        edges = np.zeros((64, 64), dtype=np.uint8)
        edges[:32, :32] = 255
        assert edge_distribution(edges, _crop(0.0, 0.0, 1.0, 1.0)) == 0.0
