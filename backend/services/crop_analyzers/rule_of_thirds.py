"""
Rule-of-thirds crop analyzer.

Scores crops by how well their center and edges line up with the thirds
grid of the source image. Purely geometric: pixels are not inspected.
"""
from __future__ import annotations

from typing import Any, Dict, List
import math

from domain.models import STRATEGY_RULE_OF_THIRDS, CropCoordinates
from services.crop_analyzers.base import (
    CropAnalyzer,
    distance_from_center,
    edge_margins,
    place_crop,
)
from services.image_snapshot import ImageSnapshot

THIRD_LINES = (1 / 3, 2 / 3)
INTERSECTIONS = tuple((x, y) for y in THIRD_LINES for x in THIRD_LINES)
GRID_TOLERANCE = 0.05
IDEAL_CENTER_OFFSET = 0.15


class RuleOfThirdsCropAnalyzer(CropAnalyzer):
    strategy_name = STRATEGY_RULE_OF_THIRDS
    weight = 0.8
    is_enabled_by_default = True
    min_confidence_threshold = 0.1
    center_crop_confidence = 0.3

    intersection_weight = 0.4
    grid_line_weight = 0.3
    content_distribution_weight = 0.2
    edge_avoidance_weight = 0.1

    def generate_candidates(
        self, image: ImageSnapshot, crop_width: float, crop_height: float, prepared: Any
    ) -> List[CropCoordinates]:
        candidates = [
            place_crop(px, py, crop_width, crop_height, 0.5, self.strategy_name)
            for px, py in INTERSECTIONS + ((0.5, 0.5),)
        ]

        # Crops whose center sits on a third-line, only where they fit without clamping
        for line in THIRD_LINES:
            x = line - crop_width / 2
            if x >= 0.0 and x + crop_width <= 1.0:
                candidates.append(
                    CropCoordinates(
                        x=x,
                        y=max(0.0, (1.0 - crop_height) / 2),
                        width=crop_width,
                        height=crop_height,
                        confidence=0.4,
                        strategy=self.strategy_name,
                    )
                )
        for line in THIRD_LINES:
            y = line - crop_height / 2
            if y >= 0.0 and y + crop_height <= 1.0:
                candidates.append(
                    CropCoordinates(
                        x=max(0.0, (1.0 - crop_width) / 2),
                        y=y,
                        width=crop_width,
                        height=crop_height,
                        confidence=0.4,
                        strategy=self.strategy_name,
                    )
                )
        return candidates

    def score(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> float:
        total = (
            self.intersection_weight * intersection_alignment(crop)
            + self.grid_line_weight * grid_line_alignment(crop)
            + self.content_distribution_weight * content_distribution(crop)
            + self.edge_avoidance_weight * edge_avoidance(crop)
        )
        return min(1.0, total)

    def metrics(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> Dict[str, float]:
        return {
            "intersection_alignment": intersection_alignment(crop),
            "grid_line_alignment": grid_line_alignment(crop),
            "content_distribution": content_distribution(crop),
            "edge_avoidance": edge_avoidance(crop),
            "crop_area_ratio": crop.area,
            "center_distance": distance_from_center(crop),
        }


def intersection_alignment(crop: CropCoordinates) -> float:
    cx, cy = crop.center
    best = 0.0
    for px, py in INTERSECTIONS:
        distance = math.hypot(cx - px, cy - py)
        best = max(best, max(0.0, 1.0 - distance * 2))
    return best


def grid_line_alignment(crop: CropCoordinates) -> float:
    """Average closeness of crop edges lying within GRID_TOLERANCE of a third-line."""
    edges = (crop.x, crop.x + crop.width, crop.y, crop.y + crop.height)
    total = 0.0
    matches = 0
    for edge in edges:
        for line in THIRD_LINES:
            distance = abs(edge - line)
            if distance < GRID_TOLERANCE:
                total += 1.0 - distance / GRID_TOLERANCE
                matches += 1
    return total / matches if matches else 0.0


def content_distribution(crop: CropCoordinates) -> float:
    left, right, top, bottom = edge_margins(crop)
    edge_room = min(left, right) + min(top, bottom)
    balance = 1.0 - abs(left - right) - abs(top - bottom)
    return max(0.0, (edge_room + balance) / 2)


def edge_avoidance(crop: CropCoordinates) -> float:
    return max(0.0, 1.0 - abs(distance_from_center(crop) - IDEAL_CENTER_OFFSET) * 2)
