"""
Shared contract and geometry for the crop analyzers.

Every analyzer follows the same steps: derive the crop size that matches the
target aspect ratio, generate a bounded list of candidate rectangles, score
each one and return the best as a CropScore. Subclasses only supply the
candidate generator, the scoring function and the diagnostic metrics.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from domain.models import CropCoordinates, CropScore, TargetSize
from services.image_snapshot import ImageSnapshot

logger = logging.getLogger(__name__)

# Smallest crop side (fraction of the image) produced for extreme aspect mismatches
MIN_CROP_FRACTION = 0.01

# Scores closer than this are treated as equal and fall through to the tie-break
SCORE_TIE_TOLERANCE = 1e-12

# Center plus the four rule-of-thirds intersections
STANDARD_POSITIONS: Tuple[Tuple[float, float], ...] = (
    (0.5, 0.5),
    (1 / 3, 1 / 3),
    (2 / 3, 1 / 3),
    (1 / 3, 2 / 3),
    (2 / 3, 2 / 3),
)


def crop_dimensions(image_aspect: float, target_aspect: float) -> Tuple[float, float]:
    """Normalized (width, height) of the largest crop with the target aspect ratio."""
    if not (math.isfinite(image_aspect) and math.isfinite(target_aspect)) or image_aspect <= 0 or target_aspect <= 0:
        return 1.0, 1.0
    if target_aspect > image_aspect:
        width, height = 1.0, image_aspect / target_aspect
    else:
        width, height = target_aspect / image_aspect, 1.0
    width = max(MIN_CROP_FRACTION, min(1.0, width))
    height = max(MIN_CROP_FRACTION, min(1.0, height))
    return width, height


def place_crop(
    center_x: float,
    center_y: float,
    width: float,
    height: float,
    confidence: float,
    strategy: str,
) -> CropCoordinates:
    """Center a width x height crop on a point, shifted as needed to stay inside the image."""
    x = max(0.0, min(1.0 - width, center_x - width / 2))
    y = max(0.0, min(1.0 - height, center_y - height / 2))
    return CropCoordinates(
        x=x,
        y=y,
        width=width,
        height=height,
        confidence=max(0.0, min(1.0, confidence)),
        strategy=strategy,
    )


def center_crop(image_aspect: float, target_aspect: float, confidence: float, strategy: str) -> CropCoordinates:
    width, height = crop_dimensions(image_aspect, target_aspect)
    return CropCoordinates(
        x=(1.0 - width) / 2,
        y=(1.0 - height) / 2,
        width=width,
        height=height,
        confidence=confidence,
        strategy=strategy,
    )


def distance_from_center(crop: CropCoordinates) -> float:
    cx, cy = crop.center
    return math.hypot(cx - 0.5, cy - 0.5)


def edge_margins(crop: CropCoordinates) -> Tuple[float, float, float, float]:
    """(left, right, top, bottom) margins between the crop and the image edges."""
    return (
        crop.x,
        1.0 - (crop.x + crop.width),
        crop.y,
        1.0 - (crop.y + crop.height),
    )


# --- Pixel sampling -------------------------------------------------------

def circular_samples(values: np.ndarray, center_x: float, center_y: float, radius: float) -> np.ndarray:
    """
    Values inside a disc around a normalized point.

    The radius is a fraction of the shorter image side. Returns a flat array,
    empty when the disc misses the buffer entirely.
    """
    height, width = values.shape[:2]
    px = int(round(center_x * width))
    py = int(round(center_y * height))
    pr = int(round(radius * min(width, height)))
    x0, x1 = max(0, px - pr), min(width - 1, px + pr)
    y0, y1 = max(0, py - pr), min(height - 1, py + pr)
    if x1 < x0 or y1 < y0:
        return values[:0, :0].reshape(-1)
    ys, xs = np.ogrid[y0:y1 + 1, x0:x1 + 1]
    mask = (xs - px) ** 2 + (ys - py) ** 2 <= pr * pr
    return values[y0:y1 + 1, x0:x1 + 1][mask]


def strided_samples(values: np.ndarray, crop: CropCoordinates, divisor: int) -> np.ndarray:
    """Every n-th pixel inside the crop, n = max(1, shorter crop side // divisor)."""
    height, width = values.shape[:2]
    x0 = int(round(crop.x * width))
    y0 = int(round(crop.y * height))
    cw = int(round(crop.width * width))
    ch = int(round(crop.height * height))
    if cw <= 0 or ch <= 0:
        return values[:0, :0].reshape(-1)
    step = max(1, min(cw, ch) // divisor)
    return values[y0:y0 + ch:step, x0:x0 + cw:step].reshape(-1)


def shannon_entropy(samples: np.ndarray) -> float:
    """Entropy of 8-bit samples normalized by log2(256) = 8, in [0, 1]."""
    if samples.size == 0:
        return 0.0
    counts = np.bincount(samples.reshape(-1).astype(np.int64), minlength=256)
    probs = counts[counts > 0] / samples.size
    entropy = float(-(probs * np.log2(probs)).sum())
    return min(1.0, entropy / 8.0)


# --- Analyzer contract ----------------------------------------------------

class CropAnalyzer(ABC):
    """
    One crop strategy.

    Class attributes describe the variant; the aggregator reads `weight`,
    `is_enabled_by_default` and `min_confidence_threshold`. Instances keep no
    per-call state, so one instance may serve concurrent calls.
    """

    strategy_name: str = ""
    weight: float = 0.0
    is_enabled_by_default: bool = True
    min_confidence_threshold: float = 0.1
    # Confidence attached to this analyzer's own center-crop fallback
    center_crop_confidence: float = 0.5

    def prepare(self, image: ImageSnapshot) -> Any:
        """Per-call analysis state (luminance, edge map...). None for geometric analyzers."""
        return None

    @abstractmethod
    def generate_candidates(
        self, image: ImageSnapshot, crop_width: float, crop_height: float, prepared: Any
    ) -> List[CropCoordinates]:
        ...

    @abstractmethod
    def score(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> float:
        ...

    @abstractmethod
    def metrics(self, crop: CropCoordinates, image: ImageSnapshot, prepared: Any) -> Dict[str, float]:
        ...

    def analyze(self, image: ImageSnapshot, target_size: TargetSize) -> CropScore:
        target_size.validate()
        crop_width, crop_height = crop_dimensions(image.aspect_ratio, target_size.aspect_ratio)
        prepared = self.prepare(image)
        candidates = self.generate_candidates(image, crop_width, crop_height, prepared)

        best, best_score = self.select_best(candidates, image, prepared)
        if best is None:
            best = center_crop(image.aspect_ratio, target_size.aspect_ratio, self.center_crop_confidence, self.strategy_name)
            best_score = self.score(best, image, prepared)

        return CropScore(
            coordinates=best,
            score=max(0.0, min(1.0, best_score)),
            strategy=self.strategy_name,
            metrics=self.metrics(best, image, prepared),
        )

    def select_best(
        self, candidates: Sequence[CropCoordinates], image: ImageSnapshot, prepared: Any
    ) -> Tuple[Optional[CropCoordinates], float]:
        """Highest score wins; ties go to higher confidence, then to the earlier candidate."""
        best: Optional[CropCoordinates] = None
        best_score = 0.0
        for candidate in candidates:
            if not candidate.is_valid:
                logger.debug("%s: dropping out-of-bounds candidate %s", self.strategy_name, candidate)
                continue
            value = self.score(candidate, image, prepared)
            if not math.isfinite(value):
                continue
            if best is None or value > best_score + SCORE_TIE_TOLERANCE:
                best, best_score = candidate, value
            elif abs(value - best_score) <= SCORE_TIE_TOLERANCE and candidate.confidence > best.confidence:
                best, best_score = candidate, value
        return best, best_score

    def __repr__(self) -> str:
        return f"{type(self).__name__}(strategy={self.strategy_name!r}, weight={self.weight})"
