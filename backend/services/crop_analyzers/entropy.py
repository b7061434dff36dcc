"""
Entropy-based crop analyzer.

Estimates content density with the Shannon entropy of luminance in small
circular neighborhoods. High-entropy spots become crop centers; candidate
crops are then scored by re-sampling entropy on a finer grid inside them.
"""
from __future__ import annotations

from typing import Dict, List
import logging

import numpy as np

from domain.models import STRATEGY_ENTROPY, CropCoordinates
from services.crop_analyzers.base import (
    STANDARD_POSITIONS,
    CropAnalyzer,
    circular_samples,
    distance_from_center,
    place_crop,
    shannon_entropy,
    strided_samples,
)
from services.image_snapshot import ImageSnapshot

logger = logging.getLogger(__name__)

HOTSPOT_GRID = 8
HOTSPOT_RADIUS = 0.10
HOTSPOT_MIN_ENTROPY = 0.3
MIN_HOTSPOT_CANDIDATES = 5
MAX_CANDIDATES = 12

AVERAGE_GRID = 16
AVERAGE_RADIUS = 0.02
VARIANCE_GRID = 9
VARIANCE_RADIUS = 0.03
DENSITY_STEP_DIVISOR = 8
# Standard deviation of 8-bit luminance tops out around 128
MAX_LUMA_STD = 128.0


def local_entropy(luma: np.ndarray, center_x: float, center_y: float, radius: float) -> float:
    return shannon_entropy(circular_samples(luma, center_x, center_y, radius))


def _grid_entropies(luma: np.ndarray, crop: CropCoordinates, grid: int, radius: float) -> List[float]:
    values = []
    for i in range(grid):
        for j in range(grid):
            x = crop.x + ((i + 0.5) / grid) * crop.width
            y = crop.y + ((j + 0.5) / grid) * crop.height
            values.append(local_entropy(luma, x, y, radius))
    return values


def average_entropy(luma: np.ndarray, crop: CropCoordinates) -> float:
    values = _grid_entropies(luma, crop, AVERAGE_GRID, AVERAGE_RADIUS)
    return float(np.mean(values)) if values else 0.0


def entropy_variance(luma: np.ndarray, crop: CropCoordinates) -> float:
    """Heterogeneity of local entropy across the crop, scaled into [0, 1]."""
    values = _grid_entropies(luma, crop, VARIANCE_GRID, VARIANCE_RADIUS)
    if not values:
        return 0.0
    return min(1.0, float(np.var(values)) * 4)


def content_density(luma: np.ndarray, crop: CropCoordinates) -> float:
    samples = strided_samples(luma, crop, DENSITY_STEP_DIVISOR)
    if samples.size == 0:
        return 0.0
    return min(1.0, float(samples.astype(np.float64).std()) / MAX_LUMA_STD)


class EntropyBasedCropAnalyzer(CropAnalyzer):
    strategy_name = STRATEGY_ENTROPY
    weight = 0.7
    is_enabled_by_default = True
    min_confidence_threshold = 0.15
    center_crop_confidence = 0.4

    average_entropy_weight = 0.6
    entropy_variance_weight = 0.25
    content_density_weight = 0.15

    def prepare(self, image: ImageSnapshot) -> np.ndarray:
        return image.luminance()

    def generate_candidates(
        self, image: ImageSnapshot, crop_width: float, crop_height: float, prepared: np.ndarray
    ) -> List[CropCoordinates]:
        luma = prepared
        candidates: List[CropCoordinates] = []
        step = 1.0 / HOTSPOT_GRID
        for i in range(HOTSPOT_GRID):
            for j in range(HOTSPOT_GRID):
                cx = (i + 0.5) * step
                cy = (j + 0.5) * step
                entropy = local_entropy(luma, cx, cy, HOTSPOT_RADIUS)
                if entropy > HOTSPOT_MIN_ENTROPY:
                    candidates.append(place_crop(cx, cy, crop_width, crop_height, entropy, self.strategy_name))

        if len(candidates) < MIN_HOTSPOT_CANDIDATES:
            logger.debug("entropy: only %d hotspots, adding standard positions", len(candidates))
            candidates.extend(
                place_crop(px, py, crop_width, crop_height, 0.3, self.strategy_name)
                for px, py in STANDARD_POSITIONS
            )

        # sorted() is stable, so equal-entropy hotspots keep grid order
        candidates = sorted(candidates, key=lambda c: c.confidence, reverse=True)
        return candidates[:MAX_CANDIDATES]

    def score(self, crop: CropCoordinates, image: ImageSnapshot, prepared: np.ndarray) -> float:
        luma = prepared
        total = (
            self.average_entropy_weight * average_entropy(luma, crop)
            + self.entropy_variance_weight * entropy_variance(luma, crop)
            + self.content_density_weight * content_density(luma, crop)
        )
        return min(1.0, total)

    def metrics(self, crop: CropCoordinates, image: ImageSnapshot, prepared: np.ndarray) -> Dict[str, float]:
        luma = prepared
        return {
            "average_entropy": average_entropy(luma, crop),
            "entropy_variance": entropy_variance(luma, crop),
            "content_density": content_density(luma, crop),
            "crop_area_ratio": crop.area,
            "center_distance": distance_from_center(crop),
        }
