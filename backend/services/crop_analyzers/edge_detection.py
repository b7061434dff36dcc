"""
Edge-detection crop analyzer.

Runs a 3x3 Sobel operator over the luminance channel and favors crops that
contain many strong, evenly spread edges. The most CPU-hungry analyzer, so
it is off by default.
"""
from __future__ import annotations

from typing import Dict, List
import logging

import numpy as np

from domain.models import STRATEGY_EDGE_DETECTION, CropCoordinates
from services.crop_analyzers.base import (
    STANDARD_POSITIONS,
    CropAnalyzer,
    circular_samples,
    distance_from_center,
    place_crop,
    strided_samples,
)
from services.image_snapshot import ImageSnapshot

logger = logging.getLogger(__name__)

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
SOBEL_Y = SOBEL_X.T

HOTSPOT_GRID = 6
HOTSPOT_RADIUS = 0.15
HOTSPOT_MIN_DENSITY = 0.1
TOP_HOTSPOTS = 8
MIN_HOTSPOT_CANDIDATES = 3

STRENGTH_STEP_DIVISOR = 16
STRONG_STEP_DIVISOR = 12
STRONG_EDGE_THRESHOLD = 128
MIN_QUADRANT_MEAN = 0.05


def sobel_magnitude(luma: np.ndarray) -> np.ndarray:
    """
    Gradient magnitude of a grayscale image, scaled by 1/4 into [0, 255].

    Border pixels have no full 3x3 neighborhood and stay 0.
    """
    height, width = luma.shape
    edges = np.zeros((height, width), dtype=np.uint8)
    if height < 3 or width < 3:
        return edges
    g = luma.astype(np.float64)
    gx = np.zeros((height - 2, width - 2), dtype=np.float64)
    gy = np.zeros_like(gx)
    for ky in range(3):
        for kx in range(3):
            window = g[ky:ky + height - 2, kx:kx + width - 2]
            if SOBEL_X[ky, kx]:
                gx += SOBEL_X[ky, kx] * window
            if SOBEL_Y[ky, kx]:
                gy += SOBEL_Y[ky, kx] * window
    magnitude = np.hypot(gx, gy) / 4
    edges[1:-1, 1:-1] = np.clip(np.rint(magnitude), 0, 255).astype(np.uint8)
    return edges


def edge_density(edges: np.ndarray, center_x: float, center_y: float, radius: float) -> float:
    samples = circular_samples(edges, center_x, center_y, radius)
    if samples.size == 0:
        return 0.0
    return float(samples.mean()) / 255.0


def average_edge_strength(edges: np.ndarray, crop: CropCoordinates) -> float:
    samples = strided_samples(edges, crop, STRENGTH_STEP_DIVISOR)
    if samples.size == 0:
        return 0.0
    return float(samples.mean()) / 255.0


def edge_distribution(edges: np.ndarray, crop: CropCoordinates) -> float:
    """Rewards edges spread evenly over the four quadrants of the crop."""
    half_w = crop.width / 2
    half_h = crop.height / 2
    quadrants = []
    for qy in range(2):
        for qx in range(2):
            quadrant = CropCoordinates(
                x=crop.x + qx * half_w,
                y=crop.y + qy * half_h,
                width=half_w,
                height=half_h,
                confidence=0.0,
                strategy=STRATEGY_EDGE_DETECTION,
            )
            quadrants.append(average_edge_strength(edges, quadrant))
    mean = float(np.mean(quadrants))
    if mean <= MIN_QUADRANT_MEAN:
        return 0.0
    return max(0.0, 1.0 - float(np.var(quadrants)) * 10)


def strong_edge_ratio(edges: np.ndarray, crop: CropCoordinates) -> float:
    samples = strided_samples(edges, crop, STRONG_STEP_DIVISOR)
    if samples.size == 0:
        return 0.0
    return float((samples > STRONG_EDGE_THRESHOLD).sum()) / samples.size


class EdgeDetectionCropAnalyzer(CropAnalyzer):
    strategy_name = STRATEGY_EDGE_DETECTION
    weight = 0.65
    is_enabled_by_default = False
    min_confidence_threshold = 0.1
    center_crop_confidence = 0.3

    edge_strength_weight = 0.5
    edge_distribution_weight = 0.3
    strong_edge_weight = 0.2

    def prepare(self, image: ImageSnapshot) -> np.ndarray:
        return sobel_magnitude(image.luminance())

    def generate_candidates(
        self, image: ImageSnapshot, crop_width: float, crop_height: float, prepared: np.ndarray
    ) -> List[CropCoordinates]:
        edges = prepared
        step = 1.0 / HOTSPOT_GRID
        hotspots = []
        for i in range(HOTSPOT_GRID):
            for j in range(HOTSPOT_GRID):
                cx = (i + 0.5) * step
                cy = (j + 0.5) * step
                hotspots.append((edge_density(edges, cx, cy, HOTSPOT_RADIUS), cx, cy))
        hotspots.sort(key=lambda h: h[0], reverse=True)

        candidates = [
            place_crop(cx, cy, crop_width, crop_height, density, self.strategy_name)
            for density, cx, cy in hotspots[:TOP_HOTSPOTS]
            if density > HOTSPOT_MIN_DENSITY
        ]
        if len(candidates) < MIN_HOTSPOT_CANDIDATES:
            logger.debug("edge_detection: only %d hotspots, adding standard positions", len(candidates))
            candidates.extend(
                place_crop(px, py, crop_width, crop_height, 0.2, self.strategy_name)
                for px, py in STANDARD_POSITIONS
            )
        return candidates

    def score(self, crop: CropCoordinates, image: ImageSnapshot, prepared: np.ndarray) -> float:
        edges = prepared
        total = (
            self.edge_strength_weight * average_edge_strength(edges, crop)
            + self.edge_distribution_weight * edge_distribution(edges, crop)
            + self.strong_edge_weight * strong_edge_ratio(edges, crop)
        )
        return min(1.0, total)

    def metrics(self, crop: CropCoordinates, image: ImageSnapshot, prepared: np.ndarray) -> Dict[str, float]:
        edges = prepared
        return {
            "average_edge_strength": average_edge_strength(edges, crop),
            "edge_distribution": edge_distribution(edges, crop),
            "strong_edge_ratio": strong_edge_ratio(edges, crop),
            "crop_area_ratio": crop.area,
            "center_distance": distance_from_center(crop),
        }
