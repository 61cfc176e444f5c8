"""
Data model for the expansion recommendation engine.

Input records (Settlement, AnchorPOI, ExistingOutlet, SubRegion) are frozen
pydantic models. Candidate is the one mutable record: FeatureExtractor creates
it, ScoringEngine and DriveTimeNMS annotate it, and it is frozen in practice
once RegionalFairnessAllocator has selected from it.
"""

from datetime import date
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Errors ──
class ExpansionError(Exception):
    """Base error for the expansion engine."""


class ConfigurationError(ExpansionError, ValueError):
    """Configuration rejected at load time; fatal to the run."""


class InputDefectError(ExpansionError):
    """A single input record is unusable and gets dropped."""


# ── Input records ──
SETTLEMENT_TYPES = ("city", "town", "village")
POI_CATEGORIES = ("mall", "station", "grocer", "retail", "other")
# merge priority, highest first
CATEGORY_PRIORITY = {"mall": 0, "station": 1, "grocer": 2, "retail": 3, "other": 4}


class Settlement(BaseModel):
    """A populated place that can seed a candidate site."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: Literal["city", "town", "village"] = "town"
    lat: float
    lng: float
    population: Optional[int] = None  # None = unknown, never zero
    sub_region: Optional[str] = None
    income_index: Optional[float] = None
    observed_on: Optional[date] = None


class AnchorPOI(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str = "other"
    lat: float
    lng: float
    name: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _known_category(cls, value):
        value = str(value or "").strip().lower()
        return value if value in POI_CATEGORIES else "other"


class ExistingOutlet(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    lat: float
    lng: float
    status: Literal["open", "planned"] = "open"
    turnover: Optional[float] = None


class SubRegion(BaseModel):
    """Administrative subdivision used as the unit of fairness allocation."""

    model_config = ConfigDict(frozen=True)

    name: str
    population: Optional[int] = None
    historical_performance: Optional[float] = None


class DroppedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    record_id: str
    reason: str


# ── Anchor deduplication audit ──
class MergeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    survivor_id: str
    merged_id: str
    categories: Tuple[str, str]
    radius_m: float
    distance_m: float


class MergeReport(BaseModel):
    """Which anchor POIs were merged or capped; audit only, never re-read."""

    merges: List[MergeRecord] = Field(default_factory=list)
    capped_ids: List[str] = Field(default_factory=list)

    @property
    def merged_count(self) -> int:
        return len(self.merges)

    def by_pairing(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for m in self.merges:
            key = f"{m.categories[0]}-{m.categories[1]}"
            counts[key] = counts.get(key, 0) + 1
        return counts


# ── Candidate ──
class FeatureVector(BaseModel):
    population: float
    gap_distance_km: float
    anchor_count: int
    anchor_distances_km: List[float] = Field(default_factory=list)
    performance: Optional[float] = None
    saturation_count: int = 0
    nearest_distances_km: List[float] = Field(default_factory=list)
    outlet_counts: Dict[str, int] = Field(default_factory=dict)
    local_density_per_km2: float = 0.0
    anchor_breakdown: Dict[str, int] = Field(default_factory=dict)


class DataQuality(BaseModel):
    population_estimated: bool = False
    performance_estimated: bool = False
    performance_sample_size: int = 0
    anchors_capped: int = 0
    anchor_estimated: bool = False
    recency_known: bool = False
    income_estimated: bool = True
    flags: List[str] = Field(default_factory=list)


class Candidate(BaseModel):
    id: str
    settlement_id: str
    settlement_name: str
    settlement_type: str
    lat: float
    lng: float
    sub_region: str
    features: FeatureVector
    quality: DataQuality
    merge_report: MergeReport = Field(default_factory=MergeReport)

    # ScoringEngine
    completeness: float = 0.0
    completeness_checklist: Dict[str, float] = Field(default_factory=dict)
    score: float = 0.0
    component_scores: Dict[str, float] = Field(default_factory=dict)
    adjusted_weights: Dict[str, float] = Field(default_factory=dict)
    uncertainty_weight: float = 0.0
    recommendation: Literal["go", "hold"] = "hold"

    # DriveTimeNMS
    survived: bool = False
    nms_status: Literal["pending", "survived", "preserved", "suppressed", "capped"] = "pending"
    suppressed_by: Optional[str] = None

    # RegionalFairnessAllocator
    allocated: bool = False
    rank: Optional[int] = None

    @property
    def recommendable(self) -> bool:
        return self.recommendation == "go"


# ── Run outputs ──
class FairnessLedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    sub_region: str
    population: int
    population_share: float
    base_quota: int
    performance_bonus: int
    manual_override: Optional[int]
    allocated: int
    available: int
    shortfall: int
    avg_score: float
    avg_performance: Optional[float]


class GuardrailResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: str
    passed: bool
    observed: float
    threshold: float
    detail: str = ""
