"""
Core domain models for the smart crop engine.
These are framework-agnostic and shared by the analyzers, the aggregator
and the cache.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import json
import math

from domain.errors import InvalidTargetSizeError

# Floating tolerance for the unit-square bounds check
COORD_EPSILON = 1e-9

STRATEGY_RULE_OF_THIRDS = "rule_of_thirds"
STRATEGY_CENTER_WEIGHTED = "center_weighted"
STRATEGY_ENTROPY = "entropy_based"
STRATEGY_EDGE_DETECTION = "edge_detection"
STRATEGY_FALLBACK = "fallback"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the cache table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CropAggressiveness(str, Enum):
    """How far the engine may move away from a plain center crop."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"

    @property
    def index(self) -> int:
        return list(CropAggressiveness).index(self)

    @classmethod
    def from_index(cls, index: int) -> "CropAggressiveness":
        members = list(cls)
        return members[max(0, min(len(members) - 1, int(index)))]


@dataclass(frozen=True)
class TargetSize:
    """Requested output size in pixels."""
    width: float
    height: float

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def validate(self) -> "TargetSize":
        for name, value in (("width", self.width), ("height", self.height)):
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise InvalidTargetSizeError(f"target {name} must be a number, got {value!r}")
            if not math.isfinite(number) or number <= 0:
                raise InvalidTargetSizeError(f"target {name} must be > 0, got {value!r}")
        return self

    def label(self) -> str:
        return f"{int(self.width)}x{int(self.height)}"


@dataclass(frozen=True)
class CropCoordinates:
    """
    Normalized crop rectangle inside the unit square.

    x/y is the top-left corner; width/height are fractions of the source
    image dimensions. `confidence` is the producer's certainty in [0, 1] and
    `strategy` names the analyzer (or fallback) that produced it.
    """
    x: float
    y: float
    width: float
    height: float
    confidence: float
    strategy: str

    @property
    def is_valid(self) -> bool:
        return (
            self.x >= -COORD_EPSILON
            and self.y >= -COORD_EPSILON
            and 0.0 < self.width <= 1.0 + COORD_EPSILON
            and 0.0 < self.height <= 1.0 + COORD_EPSILON
            and self.x + self.width <= 1.0 + COORD_EPSILON
            and self.y + self.height <= 1.0 + COORD_EPSILON
            and 0.0 <= self.confidence <= 1.0
        )

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def area(self) -> float:
        return self.width * self.height

    def replace(self, **changes: Any) -> "CropCoordinates":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence,
            "strategy": self.strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CropCoordinates":
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data["width"]),
            height=float(data["height"]),
            confidence=float(data["confidence"]),
            strategy=str(data["strategy"]),
        )


@dataclass(frozen=True)
class CropScore:
    """One analyzer's proposal: its best crop, the scalar score and diagnostics."""
    coordinates: CropCoordinates
    score: float
    strategy: str
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return 0.0 <= self.score <= 1.0 and self.coordinates.is_valid


@dataclass(frozen=True)
class CropSettings:
    """
    Analyzer toggles and tuning for one crop request.

    The canonical JSON form feeds the cache key, so two settings objects with
    the same values always serialize to the same bytes.
    """
    aggressiveness: CropAggressiveness = CropAggressiveness.BALANCED
    enable_rule_of_thirds: bool = True
    enable_entropy_analysis: bool = True
    enable_edge_detection: bool = False
    enable_center_weighting: bool = True
    max_processing_time_ms: int = 2000

    @classmethod
    def default(cls) -> "CropSettings":
        return cls()

    @property
    def enabled_strategies(self) -> Tuple[str, ...]:
        strategies: List[str] = []
        if self.enable_rule_of_thirds:
            strategies.append(STRATEGY_RULE_OF_THIRDS)
        if self.enable_center_weighting:
            strategies.append(STRATEGY_CENTER_WEIGHTED)
        if self.enable_entropy_analysis:
            strategies.append(STRATEGY_ENTROPY)
        if self.enable_edge_detection:
            strategies.append(STRATEGY_EDGE_DETECTION)
        return tuple(strategies)

    @property
    def is_valid(self) -> bool:
        return self.max_processing_time_ms > 0 and bool(self.enabled_strategies)

    @property
    def max_processing_time(self) -> timedelta:
        return timedelta(milliseconds=self.max_processing_time_ms)

    def replace(self, **changes: Any) -> "CropSettings":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aggressiveness": self.aggressiveness.index,
            "enable_rule_of_thirds": bool(self.enable_rule_of_thirds),
            "enable_entropy_analysis": bool(self.enable_entropy_analysis),
            "enable_edge_detection": bool(self.enable_edge_detection),
            "enable_center_weighting": bool(self.enable_center_weighting),
            "max_processing_time_ms": int(self.max_processing_time_ms),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CropSettings":
        data = data or {}
        aggressiveness = data.get("aggressiveness", CropAggressiveness.BALANCED.index)
        if isinstance(aggressiveness, str) and not aggressiveness.isdigit():
            aggressiveness = CropAggressiveness(aggressiveness)
        else:
            aggressiveness = CropAggressiveness.from_index(int(aggressiveness))
        return cls(
            aggressiveness=aggressiveness,
            enable_rule_of_thirds=bool(data.get("enable_rule_of_thirds", True)),
            enable_entropy_analysis=bool(data.get("enable_entropy_analysis", True)),
            enable_edge_detection=bool(data.get("enable_edge_detection", False)),
            enable_center_weighting=bool(data.get("enable_center_weighting", True)),
            max_processing_time_ms=int(data.get("max_processing_time_ms", 2000)),
        )

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "CropSettings":
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class CropCacheEntry:
    """A persisted crop decision for one (image, target size, settings) key."""
    cache_key: str
    image_url: str
    target_width: float
    target_height: float
    settings_hash: str
    coordinates: CropCoordinates
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = 1
    id: Optional[int] = None

    @classmethod
    def create(
        cls,
        cache_key: str,
        image_url: str,
        target_width: float,
        target_height: float,
        settings_hash: str,
        coordinates: CropCoordinates,
        now: Optional[datetime] = None,
    ) -> "CropCacheEntry":
        now = now or utcnow()
        return cls(
            cache_key=cache_key,
            image_url=image_url,
            target_width=float(target_width),
            target_height=float(target_height),
            settings_hash=settings_hash,
            coordinates=coordinates,
            created_at=now,
            last_accessed_at=now,
            access_count=1,
        )

    def with_access(self, now: Optional[datetime] = None) -> "CropCacheEntry":
        now = now or utcnow()
        return replace(
            self,
            last_accessed_at=max(now, self.created_at),
            access_count=self.access_count + 1,
        )

    def is_expired(self, ttl: timedelta = timedelta(days=7), now: Optional[datetime] = None) -> bool:
        return ((now or utcnow()) - self.created_at) > ttl


@dataclass
class CropResult:
    """Outcome of one crop resolution, as handed back to callers."""
    coordinates: CropCoordinates
    from_cache: bool
    scores: List[CropScore] = field(default_factory=list)
    processing_time: timedelta = field(default_factory=timedelta)
    cache_key: Optional[str] = None

    @property
    def best_score(self) -> Optional[CropScore]:
        if not self.scores:
            return None
        return max(self.scores, key=lambda s: s.score)

    @property
    def is_fallback(self) -> bool:
        return self.coordinates.strategy == STRATEGY_FALLBACK


@dataclass
class CropCacheStats:
    total_entries: int
    total_size_bytes: int
    average_access_count: float
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None

    @property
    def total_size_mb(self) -> float:
        return self.total_size_bytes / (1024 * 1024)

    @property
    def cache_age(self) -> Optional[timedelta]:
        if self.oldest_entry is None or self.newest_entry is None:
            return None
        return self.newest_entry - self.oldest_entry

    def to_dict(self) -> Dict[str, Any]:
        age = self.cache_age
        return {
            "total_entries": self.total_entries,
            "total_size_bytes": self.total_size_bytes,
            "total_size_mb": round(self.total_size_mb, 3),
            "average_access_count": self.average_access_count,
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "newest_entry": self.newest_entry.isoformat() if self.newest_entry else None,
            "cache_age_days": age.days if age is not None else 0,
        }


@dataclass
class CropCacheHitRate:
    total_entries: int
    average_access_count: float
    max_access_count: int
    min_access_count: int
    estimated_hit_rate: float

    @property
    def hit_rate_percentage(self) -> float:
        return self.estimated_hit_rate * 100


@dataclass
class CropCacheMaintenanceResult:
    expired_entries_deleted: int
    lru_entries_evicted: int
    success: bool
    error: Optional[str] = None

    @property
    def total_entries_deleted(self) -> int:
        return self.expired_entries_deleted + self.lru_entries_evicted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "expired_entries_deleted": self.expired_entries_deleted,
            "lru_entries_evicted": self.lru_entries_evicted,
            "total_entries_deleted": self.total_entries_deleted,
            "error": self.error,
        }
