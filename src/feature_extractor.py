"""
Feature Extraction
Turns one settlement into a candidate site with a raw feature vector:

- population: reported figure, or a density-based estimate when unknown
- gap: mean distance to the 3 nearest existing outlets (open or planned)
- anchors: deduplicated anchor POIs within the anchor radius, capped per site
- performance: mean turnover of outlets within 10 km (None when none report)
- saturation: outlet counts inside 5 / 10 / 15 km rings

Each candidate depends only on read-only reference data, so a batch is fanned
out over a process pool bounded by the available cores. Settlements with
malformed coordinates are dropped with a logged reason, never scored.
"""

import math
import os
from concurrent.futures import ProcessPoolExecutor
from datetime import date

import numpy as np

from anchor_deduplicator import cap_locality, locality_report
from config import get_logger
from geo import build_tree, count_within, nearest, neighbours_within, valid_coordinates
from models import Candidate, DataQuality, DroppedRecord, FeatureVector, MergeReport

logger = get_logger(__name__)

ANCHOR_CATEGORIES = ("mall", "station", "grocer", "retail")
UNASSIGNED_SUBREGION = "Unassigned"

# below this many settlements the pool start-up costs more than it saves
PARALLEL_MIN_BATCH = 64


class ReferenceData:
    """
    Read-only spatial context shared by every candidate in a run: outlet and
    anchor BallTrees plus the regional merge report.
    """

    def __init__(self, outlets, anchors, merge_report=None, as_of=None, poi_coverage=True):
        self.outlet_ids = [o.id for o in outlets]
        self.outlet_turnover = np.array(
            [np.nan if o.turnover is None else float(o.turnover) for o in outlets], dtype=float
        )
        self.outlet_tree = build_tree([o.lat for o in outlets], [o.lng for o in outlets])

        anchors = [a for a in anchors if a.category in ANCHOR_CATEGORIES]
        self.anchor_ids = [a.id for a in anchors]
        self.anchor_categories = [a.category for a in anchors]
        self.anchor_tree = build_tree([a.lat for a in anchors], [a.lng for a in anchors])

        self.merge_report = merge_report or MergeReport()
        self.as_of = as_of or date.today()
        self.poi_coverage = poi_coverage

    @property
    def n_outlets(self):
        return len(self.outlet_ids)


def estimate_population(settlement_type, density_table):
    """People ≈ density × catchment area (π r²) for the settlement type."""
    density, radius_km = density_table.get(settlement_type, density_table.get("town", (1500.0, 2.0)))
    return float(density * math.pi * radius_km ** 2)


def _population_feature(settlement, features_cfg, flags):
    population = settlement.population
    if population is not None and population < 0:
        flags.append("population_invalid")
        population = None
    if population is None:
        flags.append("population_estimated")
        return estimate_population(settlement.type, features_cfg.density_estimate), True
    return float(population), False


def _gap_feature(settlement, reference, features_cfg):
    cap = features_cfg.gap_cap_km
    dists = nearest(reference.outlet_tree, settlement.lat, settlement.lng, features_cfg.nearest_k)
    dists = [min(float(d), cap) for d in dists]
    # missing slots (fewer outlets than k) count as maximally far
    padded = dists + [cap] * (features_cfg.nearest_k - len(dists))
    return float(np.mean(padded)), dists


def _saturation_feature(settlement, reference, features_cfg):
    counts = {}
    for radius in features_cfg.saturation_radii_km:
        counts[f"{radius:g}km"] = count_within(reference.outlet_tree, settlement.lat, settlement.lng, radius)
    return counts, int(sum(counts.values()))


def _performance_feature(settlement, reference, features_cfg):
    idx, _ = neighbours_within(
        reference.outlet_tree, settlement.lat, settlement.lng, features_cfg.performance_radius_km
    )
    if len(idx) == 0:
        return None, 0
    turnovers = reference.outlet_turnover[idx]
    turnovers = turnovers[~np.isnan(turnovers)]
    if len(turnovers) == 0:
        return None, 0
    return float(turnovers.mean()), int(len(turnovers))


def _anchor_feature(settlement, reference, anchor_cfg):
    idx, dists = neighbours_within(reference.anchor_tree, settlement.lat, settlement.lng, anchor_cfg.radius_km)
    ids = [reference.anchor_ids[int(i)] for i in idx]
    kept_ids, kept_dists, capped_ids = cap_locality(ids, list(dists), anchor_cfg.max_per_site)

    category_of = {reference.anchor_ids[int(i)]: reference.anchor_categories[int(i)] for i in idx}
    breakdown = {cat: 0 for cat in ANCHOR_CATEGORIES}
    for anchor_id in kept_ids:
        breakdown[category_of[anchor_id]] += 1

    report = locality_report(reference.merge_report, kept_ids, capped_ids)
    return kept_ids, kept_dists, capped_ids, breakdown, report


def extract_features(settlement, reference, config):
    """
    Build a Candidate for one settlement.

    Returns
    -------
    (Candidate, None) on success, (None, DroppedRecord) when the settlement is
    unusable (malformed coordinates or below the minimum population).
    """
    if not valid_coordinates(settlement.lat, settlement.lng):
        reason = f"malformed coordinates ({settlement.lat}, {settlement.lng})"
        return None, DroppedRecord(kind="settlement", record_id=settlement.id, reason=reason)

    features_cfg = config.features
    flags = []

    population, population_estimated = _population_feature(settlement, features_cfg, flags)
    if population < config.min_population:
        reason = f"population {population:,.0f} below minimum {config.min_population:,}"
        return None, DroppedRecord(kind="settlement", record_id=settlement.id, reason=reason)

    gap_km, nearest_km = _gap_feature(settlement, reference, features_cfg)
    outlet_counts, saturation = _saturation_feature(settlement, reference, features_cfg)
    performance, sample_size = _performance_feature(settlement, reference, features_cfg)
    performance_estimated = sample_size < features_cfg.min_performance_sample
    if performance_estimated:
        flags.append("performance_insufficient_sample")

    kept_ids, kept_dists, capped_ids, breakdown, report = _anchor_feature(settlement, reference, config.anchors)
    anchor_estimated = bool(capped_ids) or not reference.poi_coverage
    if capped_ids:
        flags.append("anchors_capped")
    if not reference.poi_coverage:
        flags.append("anchor_data_missing")

    recency_known = False
    if settlement.observed_on is not None:
        age_days = (reference.as_of - settlement.observed_on).days
        recency_known = 0 <= age_days <= features_cfg.recency_years * 365.25
    if not recency_known:
        flags.append("data_stale")

    income_estimated = settlement.income_index is None
    if income_estimated:
        flags.append("income_estimated")

    density_radius = features_cfg.performance_radius_km
    n_density = count_within(reference.outlet_tree, settlement.lat, settlement.lng, density_radius)

    candidate = Candidate(
        id=f"cand_{settlement.id}",
        settlement_id=settlement.id,
        settlement_name=settlement.name,
        settlement_type=settlement.type,
        lat=float(settlement.lat),
        lng=float(settlement.lng),
        sub_region=settlement.sub_region or UNASSIGNED_SUBREGION,
        features=FeatureVector(
            population=population,
            gap_distance_km=round(gap_km, 4),
            anchor_count=len(kept_ids),
            anchor_distances_km=[round(d, 4) for d in kept_dists],
            performance=performance,
            saturation_count=saturation,
            nearest_distances_km=[round(d, 4) for d in nearest_km],
            outlet_counts=outlet_counts,
            local_density_per_km2=round(n_density / (math.pi * density_radius ** 2), 4),
            anchor_breakdown=breakdown,
        ),
        quality=DataQuality(
            population_estimated=population_estimated,
            performance_estimated=performance_estimated,
            performance_sample_size=sample_size,
            anchors_capped=len(capped_ids),
            anchor_estimated=anchor_estimated,
            recency_known=recency_known,
            income_estimated=income_estimated,
            flags=flags,
        ),
        merge_report=report,
    )
    return candidate, None


# ── Worker pool ──
_WORKER_CONTEXT = {}


def _init_worker(reference, config):
    _WORKER_CONTEXT["reference"] = reference
    _WORKER_CONTEXT["config"] = config


def _extract_in_worker(settlement):
    return extract_features(settlement, _WORKER_CONTEXT["reference"], _WORKER_CONTEXT["config"])


def resolve_workers(config, n_items):
    """Worker count bounded by available cores and batch size."""
    limit = config.max_workers or os.cpu_count() or 1
    return max(1, min(limit, n_items))


def extract_all(settlements, reference, config):
    """
    Extract features for every settlement.

    Results come back in input order regardless of worker scheduling, and no
    candidate sees another candidate's in-flight state.

    Returns (candidates, dropped).
    """
    settlements = list(settlements)
    workers = resolve_workers(config, len(settlements))

    if workers == 1 or len(settlements) < PARALLEL_MIN_BATCH:
        results = [extract_features(s, reference, config) for s in settlements]
    else:
        chunksize = max(1, len(settlements) // (workers * 4))
        logger.info(f"  Extracting {len(settlements)} feature vectors on {workers} workers")
        with ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(reference, config),
        ) as ex:
            results = list(ex.map(_extract_in_worker, settlements, chunksize=chunksize))

    candidates, dropped = [], []
    for candidate, drop in results:
        if drop is not None:
            logger.warning(f"Dropping settlement {drop.record_id}: {drop.reason}")
            dropped.append(drop)
        else:
            candidates.append(candidate)
    return candidates, dropped
