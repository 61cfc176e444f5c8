"""
Anchor POI Deduplication
Merges overlapping point-of-interest records that describe one physical
commercial complex (a mall and the shops listed inside it, a station and its
kiosks, two grocer entries for the same store) so anchor counts are not
inflated.

Methodology:
1. Run one pass per category pairing, in a fixed order:
   mall↔retail, mall↔grocer (mall-tenant radius), station↔retail,
   grocer↔grocer, retail↔retail
2. Within a pass, find every live pair of those categories closer than the
   pairing's merge radius and process pairs nearest-first (ties by id)
3. The lower-priority member of a pair is removed
   (mall > station > grocer > retail > other; equal priority -> larger id loses)
4. A removed POI is merged into exactly one survivor and recorded in the
   MergeReport; "other" never takes part in merging

After a pass no two live POIs of that pairing remain within its radius, which
makes the whole procedure idempotent and independent of input order.

Per candidate, surviving anchors in range are capped (default 25, nearest
first). Capped anchors are excluded from scoring but listed in the report.
"""

from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

from config import get_logger
from geo import build_tree, haversine_km, km_to_rad, to_radians, valid_coordinates
from models import CATEGORY_PRIORITY, AnchorPOI, MergeRecord, MergeReport

logger = get_logger(__name__)

# (category A, category B, radius field on MergeRadii), in pass order
MERGE_PASSES = (
    ("mall", "retail", "mall_tenant"),
    ("mall", "grocer", "mall_tenant"),
    ("station", "retail", "station_retail"),
    ("grocer", "grocer", "grocer_grocer"),
    ("retail", "retail", "retail_retail"),
)

# query slack so boundary pairs are decided by the canonical distance below
_RADIUS_SLACK_M = 1.0


def _sort_key(poi):
    return (CATEGORY_PRIORITY[poi.category], poi.id)


def _canonical_distance_m(a, b):
    # always measured from the smaller id so shuffled input gives identical floats
    first, second = (a, b) if a.id <= b.id else (b, a)
    return float(haversine_km(first.lat, first.lng, second.lat, second.lng)) * 1000.0


def _survivor_and_loser(a, b):
    """Higher priority survives; equal priority keeps the smaller id."""
    return (a, b) if _sort_key(a) <= _sort_key(b) else (b, a)


def prepare_pois(pois: Iterable[AnchorPOI]) -> Tuple[List[AnchorPOI], List[Tuple[str, str]]]:
    """
    Drop POIs with malformed coordinates and repeated ids.

    Returns the usable POIs (sorted by priority then id) and a list of
    (poi_id, reason) for everything dropped.
    """
    usable: Dict[str, AnchorPOI] = {}
    dropped: List[Tuple[str, str]] = []
    for poi in sorted(pois, key=lambda p: (p.id, p.category, p.lat, p.lng)):
        if not valid_coordinates(poi.lat, poi.lng):
            dropped.append((poi.id, f"malformed coordinates ({poi.lat}, {poi.lng})"))
            continue
        if poi.id in usable:
            dropped.append((poi.id, "duplicate POI id"))
            continue
        usable[poi.id] = poi
    return sorted(usable.values(), key=_sort_key), dropped


def _candidate_pairs(left: Sequence[AnchorPOI], right: Sequence[AnchorPOI], radius_m: float, same: bool):
    """All (distance_m, a, b) pairs between the two groups within radius_m."""
    if not left or not right:
        return []
    tree = build_tree([p.lat for p in right], [p.lng for p in right])
    hits = tree.query_radius(
        to_radians([p.lat for p in left], [p.lng for p in left]),
        r=km_to_rad((radius_m + _RADIUS_SLACK_M) / 1000.0),
    )
    pairs = []
    for i, idx in enumerate(hits):
        a = left[i]
        for j in idx:
            b = right[int(j)]
            if same and a.id >= b.id:
                continue
            d = _canonical_distance_m(a, b)
            if d <= radius_m:
                pairs.append((d, a, b))
    return pairs


def _run_pass(live: Dict[str, AnchorPOI], cat_a: str, cat_b: str, radius_m: float):
    left = sorted((p for p in live.values() if p.category == cat_a), key=_sort_key)
    right = sorted((p for p in live.values() if p.category == cat_b), key=_sort_key)
    pairs = _candidate_pairs(left, right, radius_m, same=(cat_a == cat_b))

    ordered = []
    for d, a, b in pairs:
        survivor, loser = _survivor_and_loser(a, b)
        ordered.append((round(d, 6), survivor.id, loser.id, survivor, loser, d))
    ordered.sort(key=lambda t: t[:3])

    removed = set()
    records = []
    for _, _, _, survivor, loser, d in ordered:
        if survivor.id in removed or loser.id in removed:
            continue
        removed.add(loser.id)
        records.append(MergeRecord(
            survivor_id=survivor.id,
            merged_id=loser.id,
            categories=(survivor.category, loser.category),
            radius_m=radius_m,
            distance_m=round(d, 3),
        ))
    for poi_id in removed:
        del live[poi_id]
    return records


def deduplicate_anchors(pois, radii):
    """
    Merge overlapping anchor POIs.

    Parameters
    ----------
    pois : iterable of AnchorPOI
        Raw POI records for the region.
    radii : config.MergeRadii
        Merge radius (meters) per category pairing.

    Returns
    -------
    (survivors, MergeReport, dropped) where survivors are sorted by category
    priority then id and dropped is a list of (poi_id, reason).
    """
    usable, dropped = prepare_pois(pois)
    for poi_id, reason in dropped:
        logger.warning(f"Dropping POI {poi_id}: {reason}")

    live = {p.id: p for p in usable}
    report = MergeReport()
    for cat_a, cat_b, radius_field in MERGE_PASSES:
        radius_m = float(getattr(radii, radius_field))
        records = _run_pass(live, cat_a, cat_b, radius_m)
        if records:
            logger.info(f"  {cat_a}↔{cat_b} (r={radius_m:.0f}m): merged {len(records)}")
        report.merges.extend(records)

    survivors = sorted(live.values(), key=_sort_key)
    logger.info(f"Anchor dedup: {len(usable)} → {len(survivors)} POIs ({report.merged_count} merged)")
    return survivors, report, dropped


def cap_locality(anchor_ids, distances_km, max_per_site):
    """
    Keep at most max_per_site anchors for one candidate, nearest first.

    anchor_ids / distances_km must already be ordered nearest first.
    Returns (kept_ids, kept_distances, capped_ids).
    """
    order = sorted(range(len(anchor_ids)), key=lambda i: (float(distances_km[i]), anchor_ids[i]))
    kept = order[:max_per_site]
    capped = order[max_per_site:]
    return (
        [anchor_ids[i] for i in kept],
        [float(distances_km[i]) for i in kept],
        [anchor_ids[i] for i in capped],
    )


def locality_report(report, survivor_ids, capped_ids):
    """Subset of a regional MergeReport relevant to one candidate's anchors."""
    in_range = set(survivor_ids) | set(capped_ids)
    return MergeReport(
        merges=[m for m in report.merges if m.survivor_id in in_range],
        capped_ids=list(capped_ids),
    )


def diminishing_anchor_score(count, enabled=True):
    """Σ 1/√rank for rank = 1..count, or the raw count when disabled."""
    if count <= 0:
        return 0.0
    if not enabled:
        return float(count)
    ranks = np.arange(1, count + 1, dtype=float)
    return float(np.sum(1.0 / np.sqrt(ranks)))
