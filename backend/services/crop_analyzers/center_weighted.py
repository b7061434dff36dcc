"""
Center-weighted crop analyzer.

Prefers crops that stay close to the image center, scoring with an
exponential distance falloff. This is the conservative strategy: it rarely
cuts off content but never chases off-center subjects.
"""
from __future__ import annotations

from typing import Any, Dict, List
import math

from domain.models import STRATEGY_CENTER_WEIGHTED, CropCoordinates
from services.crop_analyzers.base import (
    CropAnalyzer,
    distance_from_center,
    edge_margins,
    place_crop,
)
from services.image_snapshot import ImageSnapshot

RING_COUNT = 3
POINTS_PER_RING = 8
SAFE_MARGIN = 0.05
MAX_CENTER_DISTANCE = math.sqrt(0.5)
DISTANCE_FALLOFF = 2.0


class CenterWeightedCropAnalyzer(CropAnalyzer):
    strategy_name = STRATEGY_CENTER_WEIGHTED
    weight = 0.6
    is_enabled_by_default = True
    min_confidence_threshold = 0.2
    center_crop_confidence = 0.8

    center_distance_weight = 0.4
    content_preservation_weight = 0.3
    edge_safety_weight = 0.2
    aspect_ratio_weight = 0.1

    def generate_candidates(
        self, image: ImageSnapshot, crop_width: float, crop_height: float, prepared: Any
    ) -> List[CropCoordinates]:
        candidates = [place_crop(0.5, 0.5, crop_width, crop_height, self.center_crop_confidence, self.strategy_name)]

        # Concentric rings, more points on the outer rings
        max_offset = min((1.0 - crop_width) / 2, (1.0 - crop_height) / 2)
        for ring in range(1, RING_COUNT + 1):
            radius = (ring / RING_COUNT) * max_offset
            points = ring * POINTS_PER_RING
            for i in range(points):
                angle = (i / points) * 2 * math.pi
                candidates.append(
                    place_crop(
                        0.5 + math.cos(angle) * radius,
                        0.5 + math.sin(angle) * radius,
                        crop_width,
                        crop_height,
                        0.5,
                        self.strategy_name,
                    )
                )

        candidates.extend(self._edge_safe_crops(crop_width, crop_height))
        return candidates

    def _edge_safe_crops(self, crop_width: float, crop_height: float) -> List[CropCoordinates]:
        """Corner and mid-edge positions inset by SAFE_MARGIN (clamped when the crop is too large)."""
        min_x = min(SAFE_MARGIN, 1.0 - crop_width)
        max_x = max(min_x, 1.0 - crop_width - SAFE_MARGIN)
        min_y = min(SAFE_MARGIN, 1.0 - crop_height)
        max_y = max(min_y, 1.0 - crop_height - SAFE_MARGIN)
        mid_x = (min_x + max_x) / 2
        mid_y = (min_y + max_y) / 2
        positions = [
            (min_x, min_y),
            (max_x, min_y),
            (min_x, max_y),
            (max_x, max_y),
            (mid_x, min_y),
            (mid_x, max_y),
            (min_x, mid_y),
            (max_x, mid_y),
        ]
        return [
            CropCoordinates(
                x=max(0.0, x),
                y=max(0.0, y),
                width=crop_width,
                height=crop_height,
                confidence=0.3,
                strategy=self.strategy_name,
            )
            for x, y in positions
        ]

    def score(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> float:
        total = (
            self.center_distance_weight * center_distance_score(crop)
            + self.content_preservation_weight * content_preservation_score(crop)
            + self.edge_safety_weight * edge_safety_score(crop)
            + self.aspect_ratio_weight * aspect_ratio_preservation_score(crop, image.aspect_ratio)
        )
        return min(1.0, total)

    def metrics(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> Dict[str, float]:
        return {
            "center_distance_score": center_distance_score(crop),
            "content_preservation_score": content_preservation_score(crop),
            "edge_safety_score": edge_safety_score(crop),
            "aspect_ratio_preservation_score": aspect_ratio_preservation_score(crop, image.aspect_ratio),
            "crop_area_ratio": crop.area,
            "distance_from_center": distance_from_center(crop),
            "min_edge_margin": min(edge_margins(crop)),
        }


def center_distance_score(crop: CropCoordinates) -> float:
    return math.exp(-DISTANCE_FALLOFF * distance_from_center(crop) / MAX_CENTER_DISTANCE)


def content_preservation_score(crop: CropCoordinates) -> float:
    ratio = crop.area
    if ratio >= 0.8:
        return 1.0
    if ratio >= 0.6:
        return 0.8 + (ratio - 0.6)
    if ratio >= 0.4:
        return 0.5 + (ratio - 0.4) * 1.5
    return ratio * 1.25


def edge_safety_score(crop: CropCoordinates) -> float:
    margin = min(edge_margins(crop))
    if margin >= SAFE_MARGIN:
        return 1.0
    if margin >= 0.0:
        return margin / SAFE_MARGIN
    return 0.0


def aspect_ratio_preservation_score(crop: CropCoordinates, image_aspect: float) -> float:
    crop_aspect = crop.width / crop.height
    change = abs(crop_aspect - image_aspect) / image_aspect
    return max(0.0, 1.0 - change)
