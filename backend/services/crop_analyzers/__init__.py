from typing import Tuple

from .base import CropAnalyzer
from .rule_of_thirds import RuleOfThirdsCropAnalyzer
from .center_weighted import CenterWeightedCropAnalyzer
from .entropy import EntropyBasedCropAnalyzer
from .edge_detection import EdgeDetectionCropAnalyzer

# Fixed order; the aggregator uses it as the last tie-break
ANALYZER_REGISTRATION_ORDER = (
    RuleOfThirdsCropAnalyzer,
    CenterWeightedCropAnalyzer,
    EntropyBasedCropAnalyzer,
    EdgeDetectionCropAnalyzer,
)


def default_analyzers() -> Tuple[CropAnalyzer, ...]:
    return tuple(cls() for cls in ANALYZER_REGISTRATION_ORDER)


__all__ = [
    "CropAnalyzer",
    "RuleOfThirdsCropAnalyzer",
    "CenterWeightedCropAnalyzer",
    "EntropyBasedCropAnalyzer",
    "EdgeDetectionCropAnalyzer",
    "ANALYZER_REGISTRATION_ORDER",
    "default_analyzers",
]
