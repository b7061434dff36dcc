"""
Combines the proposals of the enabled crop analyzers into one decision.

Analyzers run side by side on a thread pool against the same immutable
snapshot. Each proposal is weighted by the analyzer's weight and the
aggressiveness multiplier; the best weighted proposal wins. Any analyzer
failure only removes that analyzer's vote, and when nothing usable comes
back (or the time budget runs out) a plain center crop is returned.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math
import threading

from domain.models import (
    STRATEGY_CENTER_WEIGHTED,
    STRATEGY_EDGE_DETECTION,
    STRATEGY_ENTROPY,
    STRATEGY_FALLBACK,
    STRATEGY_RULE_OF_THIRDS,
    CropAggressiveness,
    CropCoordinates,
    CropScore,
    CropSettings,
    TargetSize,
)
from services.crop_analyzers import CropAnalyzer, default_analyzers
from services.crop_analyzers.base import SCORE_TIE_TOLERANCE, center_crop
from services.image_snapshot import ImageSnapshot

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.1
DEFAULT_WORKERS = 4

AGGRESSIVENESS_MULTIPLIERS: Dict[CropAggressiveness, Dict[str, float]] = {
    CropAggressiveness.CONSERVATIVE: {
        STRATEGY_CENTER_WEIGHTED: 1.2,
        STRATEGY_RULE_OF_THIRDS: 1.0,
        STRATEGY_ENTROPY: 0.8,
        STRATEGY_EDGE_DETECTION: 0.6,
    },
    CropAggressiveness.BALANCED: {},
    CropAggressiveness.AGGRESSIVE: {
        STRATEGY_ENTROPY: 1.3,
        STRATEGY_EDGE_DETECTION: 1.2,
        STRATEGY_RULE_OF_THIRDS: 1.1,
        STRATEGY_CENTER_WEIGHTED: 0.8,
    },
}


def aggressiveness_multiplier(aggressiveness: CropAggressiveness, strategy: str) -> float:
    return AGGRESSIVENESS_MULTIPLIERS.get(aggressiveness, {}).get(strategy, 1.0)


def fallback_crop(image: ImageSnapshot, target_size: TargetSize) -> CropCoordinates:
    return center_crop(image.aspect_ratio, target_size.aspect_ratio, FALLBACK_CONFIDENCE, STRATEGY_FALLBACK)


@dataclass
class AggregationOutcome:
    coordinates: CropCoordinates
    scores: List[CropScore] = field(default_factory=list)
    fallback_reason: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_reason is not None


class CropAggregator:
    """Runs the enabled analyzers and picks the weighted winner."""

    def __init__(
        self,
        analyzers: Optional[Sequence[CropAnalyzer]] = None,
        executor_workers: Optional[int] = None,
    ) -> None:
        self.analyzers: Tuple[CropAnalyzer, ...] = tuple(analyzers) if analyzers is not None else default_analyzers()
        self._workers = max(1, executor_workers or DEFAULT_WORKERS)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="crop-analyzer")
            return self._executor

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            # Late analyzer threads are left to finish on their own
            executor.shutdown(wait=False)

    def enabled_analyzers(self, settings: CropSettings) -> List[CropAnalyzer]:
        enabled = set(settings.enabled_strategies)
        return [a for a in self.analyzers if a.strategy_name in enabled]

    def aggregate(
        self,
        image: ImageSnapshot,
        target_size: TargetSize,
        settings: CropSettings,
        timeout: Optional[timedelta] = None,
    ) -> AggregationOutcome:
        target_size.validate()
        analyzers = self.enabled_analyzers(settings)
        if not analyzers:
            logger.info("No crop analyzers enabled, using center crop")
            return AggregationOutcome(fallback_crop(image, target_size), fallback_reason="no analyzers enabled")

        if timeout is not None and timeout <= timedelta(0):
            logger.warning("No time budget left for crop analysis of %s, using center crop", image.identity)
            return AggregationOutcome(fallback_crop(image, target_size), fallback_reason="timeout")

        scores = self._run_analyzers(analyzers, image, target_size, timeout)
        if scores is None:
            logger.warning(
                "Crop analysis for %s exceeded %.0f ms, using center crop",
                image.identity,
                timeout.total_seconds() * 1000 if timeout else 0,
            )
            return AggregationOutcome(fallback_crop(image, target_size), fallback_reason="timeout")

        proposals = [(a, s) for a, s in zip(analyzers, scores) if s is not None]
        if not proposals:
            logger.warning("All crop analyzers failed for %s, using center crop", image.identity)
            return AggregationOutcome(fallback_crop(image, target_size), fallback_reason="all analyzers failed")

        total_weight = sum(a.weight for a in analyzers)
        winner, winning_score = self._select(proposals, settings.aggressiveness)
        confidence = winning_score.coordinates.confidence
        if total_weight > 0:
            confidence = confidence * (winner.weight / total_weight)
        coordinates = winning_score.coordinates.replace(confidence=max(0.0, min(1.0, confidence)))
        logger.debug(
            "Crop for %s won by %s (score %.3f, confidence %.3f)",
            image.identity,
            winner.strategy_name,
            winning_score.score,
            coordinates.confidence,
        )
        return AggregationOutcome(coordinates, scores=[s for _, s in proposals])

    def _run_analyzers(
        self,
        analyzers: Sequence[CropAnalyzer],
        image: ImageSnapshot,
        target_size: TargetSize,
        timeout: Optional[timedelta],
    ) -> Optional[List[Optional[CropScore]]]:
        """Scores in analyzer order (None for failures), or None when the time budget ran out."""
        executor = self._get_executor()
        futures: List[Future] = [executor.submit(a.analyze, image, target_size) for a in analyzers]
        seconds = timeout.total_seconds() if timeout is not None else None
        done, pending = wait(futures, timeout=seconds)
        if pending:
            for future in pending:
                future.cancel()
            return None

        results: List[Optional[CropScore]] = []
        for analyzer, future in zip(analyzers, futures):
            try:
                score = future.result()
            except Exception:
                logger.exception("Crop analyzer %s failed", analyzer.strategy_name)
                results.append(None)
                continue
            if not isinstance(score, CropScore) or not score.is_valid or not math.isfinite(score.score):
                logger.warning("Crop analyzer %s returned an invalid score: %r", analyzer.strategy_name, score)
                results.append(None)
                continue
            results.append(score)
        return results

    @staticmethod
    def _select(
        proposals: Sequence[Tuple[CropAnalyzer, CropScore]],
        aggressiveness: CropAggressiveness,
    ) -> Tuple[CropAnalyzer, CropScore]:
        """
        Highest effective score wins.

        On a tie, proposals meeting their analyzer's confidence threshold beat
        those that don't, then higher raw confidence wins, then the analyzer
        registered first.
        """
        best: Optional[Tuple[CropAnalyzer, CropScore]] = None
        best_effective = 0.0
        for analyzer, score in proposals:
            effective = score.score * analyzer.weight * aggressiveness_multiplier(aggressiveness, analyzer.strategy_name)
            if best is None or effective > best_effective + SCORE_TIE_TOLERANCE:
                best, best_effective = (analyzer, score), effective
                continue
            if abs(effective - best_effective) > SCORE_TIE_TOLERANCE:
                continue
            best_analyzer, best_score = best
            trusted = score.coordinates.confidence >= analyzer.min_confidence_threshold
            best_trusted = best_score.coordinates.confidence >= best_analyzer.min_confidence_threshold
            if trusted != best_trusted:
                if trusted:
                    best = (analyzer, score)
                continue
            if score.coordinates.confidence > best_score.coordinates.confidence:
                best = (analyzer, score)
        assert best is not None
        return best
