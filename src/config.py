"""
Centralized configuration for the expansion recommendation engine.
All tunable constants live here, and one immutable ExpansionConfig object is
built from them (or from the environment) and passed explicitly into a run.
"""

import os
import logging
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from dotenv import load_dotenv

from models import ConfigurationError

# ── Project paths ──
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
MLFLOW_DIR = os.path.join(PROJECT_ROOT, "mlruns")

# ── Random seed for reproducibility ──
RANDOM_SEED = 42

# ── Feature scoring weights (population, gap, anchor, performance, saturation) ──
SCORE_WEIGHTS = {
    "population": 0.25,
    "gap": 0.30,
    "anchor": 0.15,
    "performance": 0.15,
    "saturation": 0.15,  # applied as a penalty
}
WEIGHT_SUM_TOLERANCE = 0.05

# ── Anchor POI deduplication ──
MERGE_RADII_M = {
    "mall_tenant": 120.0,     # mall <-> retail / grocer
    "station_retail": 100.0,
    "grocer_grocer": 60.0,
    "retail_retail": 60.0,
}
ANCHORS = {
    "max_per_site": 25,
    "diminishing_returns": True,
    "radius_km": 2.0,
}

# ── Feature extraction ──
FEATURES = {
    "nearest_k": 3,
    "gap_cap_km": 20.0,
    "performance_radius_km": 10.0,
    "saturation_radii_km": (5.0, 10.0, 15.0),
    "min_performance_sample": 3,
    "recency_years": 3,
    # people per km² and catchment radius (km) used when population is unknown
    "density_estimate": {
        "city": (3000.0, 5.0),
        "town": (1500.0, 2.0),
        "village": (400.0, 1.0),
    },
}

# ── Completeness checklist: (weight, low-quality value, high-quality value) ──
COMPLETENESS = {
    "population_source": (0.3, 0.6, 1.0),
    "performance_sample": (0.3, 0.4, 1.0),
    "anchor_coverage": (0.2, 0.7, 1.0),
    "data_recency": (0.1, 0.8, 1.0),
    "income_proxy": (0.1, 0.5, 1.0),
}
MIN_EVIDENCE_COMPLETENESS = 0.4

# ── Sparse-data weight caps ──
WEIGHT_ADJUSTMENT = {
    "population_cut": 0.5,
    "performance_cut": 0.5,
    "anchor_cut": 0.2,
    "gap_share": 0.8,  # the rest becomes the uncertainty weight
}

# ── Drive-time NMS ──
NMS = {
    "drive_time_minutes": 10.0,
    "speed_kmh": 50.0,
    "preserve_top_fraction": 0.2,
    "soft_cap": 500,
}

# ── Regional fairness allocation ──
ALLOCATION = {
    "total_output": 20,
    "population_weighted": True,
    "performance_bonus_count": 1,
}

# ── Publication guardrails ──
GUARDRAILS = {
    "min_acceptance_rate": 0.15,
    "min_avg_completeness": 0.5,
    "max_subregion_share": 0.40,
}

MIN_POPULATION = 1000


# ── Logging setup ──
def get_logger(name):
    """Get a configured logger for a module."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)s %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


def validate_dataframe(df, required_columns, source_name):
    """Validate that a DataFrame has the expected columns."""
    missing = set(required_columns) - set(df.columns)
    if missing:
        raise ValueError(
            f"Data source '{source_name}' is missing required columns: {missing}. "
            f"Found columns: {list(df.columns)}"
        )
    return True


# ══════════════════════════════════════════════════════════════════════════════
# IMMUTABLE RUN CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ScoringWeights(_Frozen):
    population: float = SCORE_WEIGHTS["population"]
    gap: float = SCORE_WEIGHTS["gap"]
    anchor: float = SCORE_WEIGHTS["anchor"]
    performance: float = SCORE_WEIGHTS["performance"]
    saturation: float = SCORE_WEIGHTS["saturation"]

    @model_validator(mode="after")
    def _non_negative(self):
        for name, value in self.as_dict().items():
            if value < 0:
                raise ValueError(f"weight '{name}' must be >= 0, got {value}")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {
            "population": self.population,
            "gap": self.gap,
            "anchor": self.anchor,
            "performance": self.performance,
            "saturation": self.saturation,
        }

    def total(self) -> float:
        return sum(self.as_dict().values())


class MergeRadii(_Frozen):
    """Merge radii in meters for each category pairing."""

    mall_tenant: float = MERGE_RADII_M["mall_tenant"]
    station_retail: float = MERGE_RADII_M["station_retail"]
    grocer_grocer: float = MERGE_RADII_M["grocer_grocer"]
    retail_retail: float = MERGE_RADII_M["retail_retail"]

    @model_validator(mode="after")
    def _positive(self):
        for name in ("mall_tenant", "station_retail", "grocer_grocer", "retail_retail"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(f"merge radius '{name}' must be > 0, got {value}")
        return self


class AnchorSettings(_Frozen):
    max_per_site: int = Field(default=ANCHORS["max_per_site"], ge=0)
    diminishing_returns: bool = ANCHORS["diminishing_returns"]
    radius_km: float = Field(default=ANCHORS["radius_km"], gt=0)


class FeatureSettings(_Frozen):
    nearest_k: int = Field(default=FEATURES["nearest_k"], ge=1)
    gap_cap_km: float = Field(default=FEATURES["gap_cap_km"], gt=0)
    performance_radius_km: float = Field(default=FEATURES["performance_radius_km"], gt=0)
    saturation_radii_km: Tuple[float, float, float] = FEATURES["saturation_radii_km"]
    min_performance_sample: int = Field(default=FEATURES["min_performance_sample"], ge=1)
    recency_years: int = Field(default=FEATURES["recency_years"], ge=0)
    density_estimate: Dict[str, Tuple[float, float]] = Field(
        default_factory=lambda: dict(FEATURES["density_estimate"])
    )

    @model_validator(mode="after")
    def _radii(self):
        radii = self.saturation_radii_km
        if any(r <= 0 for r in radii):
            raise ValueError(f"saturation radii must be > 0, got {radii}")
        if list(radii) != sorted(radii):
            raise ValueError(f"saturation radii must be increasing, got {radii}")
        return self


class CompletenessSettings(_Frozen):
    """Checklist of (weight, low value, high value) per completeness sub-score."""

    checklist: Dict[str, Tuple[float, float, float]] = Field(
        default_factory=lambda: dict(COMPLETENESS)
    )
    min_evidence: float = Field(default=MIN_EVIDENCE_COMPLETENESS, ge=0, le=1)

    @model_validator(mode="after")
    def _checklist(self):
        if set(self.checklist) != set(COMPLETENESS):
            raise ValueError(
                f"completeness checklist needs exactly {sorted(COMPLETENESS)}, "
                f"got {sorted(self.checklist)}"
            )
        total = sum(w for w, _, _ in self.checklist.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"completeness sub-weights must sum to 1.0, got {total:.3f}")
        for name, (_, low, high) in self.checklist.items():
            if not (0 <= low <= high <= 1):
                raise ValueError(f"completeness values for '{name}' must satisfy 0 <= low <= high <= 1")
        return self


class WeightAdjustment(_Frozen):
    population_cut: float = Field(default=WEIGHT_ADJUSTMENT["population_cut"], ge=0, le=1)
    performance_cut: float = Field(default=WEIGHT_ADJUSTMENT["performance_cut"], ge=0, le=1)
    anchor_cut: float = Field(default=WEIGHT_ADJUSTMENT["anchor_cut"], ge=0, le=1)
    gap_share: float = Field(default=WEIGHT_ADJUSTMENT["gap_share"], ge=0, le=1)


class NMSSettings(_Frozen):
    drive_time_minutes: float = Field(default=NMS["drive_time_minutes"], gt=0)
    speed_kmh: float = Field(default=NMS["speed_kmh"], gt=0)
    preserve_top_fraction: float = Field(default=NMS["preserve_top_fraction"], ge=0, le=1)
    soft_cap: int = Field(default=NMS["soft_cap"], ge=0)

    @property
    def distance_km(self) -> float:
        # linear drive-time approximation, not a routing computation
        return self.drive_time_minutes / 60.0 * self.speed_kmh


class AllocationSettings(_Frozen):
    total_output: int = Field(default=ALLOCATION["total_output"], ge=0)
    population_weighted: bool = ALLOCATION["population_weighted"]
    performance_bonus_count: int = Field(default=ALLOCATION["performance_bonus_count"], ge=0)
    manual_overrides: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _overrides(self):
        for region, cap in self.manual_overrides.items():
            if cap < 0:
                raise ValueError(f"manual override for '{region}' must be >= 0, got {cap}")
        total = sum(self.manual_overrides.values())
        if total > self.total_output:
            raise ValueError(
                f"manual overrides sum to {total}, above the total output of {self.total_output}"
            )
        return self


class GuardrailSettings(_Frozen):
    min_acceptance_rate: float = Field(default=GUARDRAILS["min_acceptance_rate"], ge=0, le=1)
    min_avg_completeness: float = Field(default=GUARDRAILS["min_avg_completeness"], ge=0, le=1)
    max_subregion_share: float = Field(default=GUARDRAILS["max_subregion_share"], ge=0, le=1)
    sanity_set: Tuple[str, ...] = ()
    sanity_suppressions: Dict[str, str] = Field(default_factory=dict)


class TrackingSettings(_Frozen):
    enabled: bool = False
    experiment: str = "expansion_recommendations"
    tracking_uri: Optional[str] = None


class ExpansionConfig(_Frozen):
    """Everything a single generation run needs, validated once at load time."""

    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    enforce_weight_sum: bool = True
    merge_radii: MergeRadii = Field(default_factory=MergeRadii)
    anchors: AnchorSettings = Field(default_factory=AnchorSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    completeness: CompletenessSettings = Field(default_factory=CompletenessSettings)
    weight_adjustment: WeightAdjustment = Field(default_factory=WeightAdjustment)
    nms: NMSSettings = Field(default_factory=NMSSettings)
    allocation: AllocationSettings = Field(default_factory=AllocationSettings)
    guardrails: GuardrailSettings = Field(default_factory=GuardrailSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    min_population: int = Field(default=MIN_POPULATION, ge=0)
    max_workers: Optional[int] = Field(default=None, ge=1)
    include_sensitivity: bool = False
    random_seed: int = RANDOM_SEED

    @model_validator(mode="after")
    def _weight_sum(self):
        if self.enforce_weight_sum:
            total = self.weights.total()
            if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
                raise ValueError(
                    f"scoring weights sum to {total:.3f}; expected 1.0 ± {WEIGHT_SUM_TOLERANCE}"
                )
        return self


def build_config(**overrides):
    """
    Build an ExpansionConfig, turning pydantic validation failures into
    ConfigurationError so callers only need to handle one exception type.
    """
    try:
        return ExpansionConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid expansion configuration: {e}") from e


# ── Environment loading ──
_ENV_FLOATS = {
    "EXPANSION_WEIGHT_POPULATION": ("weights", "population"),
    "EXPANSION_WEIGHT_GAP": ("weights", "gap"),
    "EXPANSION_WEIGHT_ANCHOR": ("weights", "anchor"),
    "EXPANSION_WEIGHT_PERFORMANCE": ("weights", "performance"),
    "EXPANSION_WEIGHT_SATURATION": ("weights", "saturation"),
    "ANCHOR_RADIUS_MALL": ("merge_radii", "mall_tenant"),
    "ANCHOR_RADIUS_STATION": ("merge_radii", "station_retail"),
    "ANCHOR_RADIUS_GROCER": ("merge_radii", "grocer_grocer"),
    "ANCHOR_RADIUS_RETAIL": ("merge_radii", "retail_retail"),
    "EXPANSION_DRIVE_TIME_NMS_MINUTES": ("nms", "drive_time_minutes"),
    "EXPANSION_DRIVE_SPEED_KMH": ("nms", "speed_kmh"),
    "EXPANSION_PRESERVE_TOP_FRACTION": ("nms", "preserve_top_fraction"),
    "EXPANSION_MIN_ACCEPTANCE_RATE": ("guardrails", "min_acceptance_rate"),
    "EXPANSION_MIN_AVG_COMPLETENESS": ("guardrails", "min_avg_completeness"),
    "EXPANSION_MAX_SUBREGION_SHARE": ("guardrails", "max_subregion_share"),
}
_ENV_INTS = {
    "MAX_ANCHORS_PER_SITE": ("anchors", "max_per_site"),
    "EXPANSION_MAX_PER_REGION": ("nms", "soft_cap"),
    "EXPANSION_TOTAL_OUTPUT": ("allocation", "total_output"),
    "STATE_PERF_BONUS": ("allocation", "performance_bonus_count"),
    "EXPANSION_POP_MIN": (None, "min_population"),
    "EXPANSION_MAX_WORKERS": (None, "max_workers"),
}
_ENV_BOOLS = {
    "DIMINISHING_RETURNS": ("anchors", "diminishing_returns"),
    "STATE_FAIR_BASE_BY_POP": ("allocation", "population_weighted"),
    "EXPANSION_SENSITIVITY": (None, "include_sensitivity"),
    "EXPANSION_MLFLOW": ("tracking", "enabled"),
}


def _parse_bool(raw):
    return str(raw).strip().lower() not in ("false", "0", "no", "off", "")


def load_config(env=None, dotenv_path=None):
    """
    Build an ExpansionConfig from EXPANSION_* style environment variables.

    Parameters
    ----------
    env : mapping or None
        Variables to read (defaults to os.environ after optional .env loading).
    dotenv_path : str or None
        Optional .env file loaded before reading os.environ.

    Returns
    -------
    ExpansionConfig (frozen). Raises ConfigurationError on bad values.
    """
    if env is None:
        if dotenv_path:
            load_dotenv(dotenv_path)
        env = os.environ

    sections: Dict[str, dict] = {}
    top: dict = {}

    def put(section, key, value):
        if section is None:
            top[key] = value
        else:
            sections.setdefault(section, {})[key] = value

    try:
        for var, (section, key) in _ENV_FLOATS.items():
            if var in env:
                put(section, key, float(env[var]))
        for var, (section, key) in _ENV_INTS.items():
            if var in env:
                put(section, key, int(env[var]))
    except ValueError as e:
        raise ConfigurationError(f"Non-numeric configuration value: {e}") from e
    for var, (section, key) in _ENV_BOOLS.items():
        if var in env:
            put(section, key, _parse_bool(env[var]))

    if env.get("EXPANSION_SANITY_SET"):
        names = tuple(n.strip() for n in env["EXPANSION_SANITY_SET"].split(",") if n.strip())
        put("guardrails", "sanity_set", names)

    # STATE_CAP_NEW_SOUTH_WALES=3 -> {"NEW_SOUTH_WALES": 3}
    # (the allocator folds case and separators when matching sub-regions)
    overrides = {}
    for var, raw in env.items():
        if var.startswith("STATE_CAP_"):
            region = var[len("STATE_CAP_"):]
            try:
                overrides[region] = int(raw)
            except ValueError as e:
                raise ConfigurationError(f"{var} must be an integer, got {raw!r}") from e
    if overrides:
        put("allocation", "manual_overrides", overrides)

    return build_config(**top, **sections)
