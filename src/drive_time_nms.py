"""
Drive-Time Non-Maximum Suppression
Removes candidates that sit within one drive-time radius of a better candidate.

Methodology:
1. Convert the drive-time threshold to a straight-line distance:
   distance_km = minutes / 60 × speed_kmh (10 min at 50 km/h -> 8.33 km).
   This is a linear approximation, not a routing computation.
2. Walk candidates by descending score (ties by id). Each candidate still
   standing suppresses every later, undecided candidate within the distance,
   except candidates in the preserved top fraction
3. Apply the per-sub-region soft cap by dropping the lowest-scoring survivors

Afterwards no two survivors are closer than the threshold unless both belong
to the preserved top fraction.
"""

import math

import numpy as np

from config import get_logger
from geo import build_tree, haversine_km, neighbours_within
from scoring_engine import rank_by_score

logger = get_logger(__name__)


def km_to_minutes(distance_km, speed_kmh):
    return distance_km / speed_kmh * 60.0


def preserved_count(n, fraction):
    """How many of the top-ranked candidates are exempt from suppression."""
    return int(math.floor(n * fraction + 1e-9))


def suppress(candidates, settings):
    """
    Greedy drive-time NMS.

    Parameters
    ----------
    candidates : list of Candidate
        Scored candidates; annotated in place with survived / nms_status.
    settings : config.NMSSettings

    Returns
    -------
    dict with "survivors" (ranked), "clusters" and "stats"
    """
    ranked = rank_by_score(candidates)
    n = len(ranked)
    radius_km = settings.distance_km
    n_preserved = preserved_count(n, settings.preserve_top_fraction)

    for c in ranked:
        c.survived = False
        c.nms_status = "pending"
        c.suppressed_by = None

    tree = build_tree([c.lat for c in ranked], [c.lng for c in ranked])
    decided = np.zeros(n, dtype=bool)
    suppressed = np.zeros(n, dtype=bool)
    clusters = []

    for i, keeper in enumerate(ranked):
        if suppressed[i]:
            continue
        decided[i] = True
        keeper.survived = True
        keeper.nms_status = "preserved" if i < n_preserved else "survived"

        idx, dists = neighbours_within(tree, keeper.lat, keeper.lng, radius_km)
        members = []
        for j, d in zip(idx, dists):
            j = int(j)
            if j <= i or decided[j] or j < n_preserved:
                continue
            decided[j] = True
            suppressed[j] = True
            loser = ranked[j]
            loser.nms_status = "suppressed"
            loser.suppressed_by = keeper.id
            members.append((loser.id, float(d)))
        if members:
            clusters.append({
                "kept": keeper.id,
                "suppressed": [m[0] for m in members],
                "mean_drive_minutes": round(
                    km_to_minutes(float(np.mean([m[1] for m in members])), settings.speed_kmh), 2
                ),
            })

    capped = _apply_soft_cap(ranked, settings.soft_cap)
    survivors = [c for c in ranked if c.survived]

    logger.info(
        f"Drive-time NMS (r={radius_km:.2f} km, {n_preserved} preserved): "
        f"{n} -> {len(survivors)} ({int(suppressed.sum())} suppressed, {capped} capped)"
    )
    return {
        "survivors": survivors,
        "clusters": clusters,
        "stats": spacing_stats(survivors, settings),
    }


def _apply_soft_cap(ranked, soft_cap):
    """Keep at most soft_cap survivors per sub-region, highest scores first."""
    kept_per_region = {}
    capped = 0
    for c in ranked:
        if not c.survived:
            continue
        kept = kept_per_region.get(c.sub_region, 0)
        if kept >= soft_cap:
            c.survived = False
            c.nms_status = "capped"
            capped += 1
        else:
            kept_per_region[c.sub_region] = kept + 1
    return capped


def spacing_stats(survivors, settings):
    """Nearest-neighbour drive-time statistics across the survivors."""
    n = len(survivors)
    if n < 2:
        return {
            "survivors": n,
            "mean_nearest_minutes": None,
            "min_nearest_minutes": None,
            "max_nearest_minutes": None,
            "pairs_within_threshold": 0,
        }
    lats = np.array([c.lat for c in survivors])
    lngs = np.array([c.lng for c in survivors])
    dist = haversine_km(lats[:, None], lngs[:, None], lats[None, :], lngs[None, :])
    np.fill_diagonal(dist, np.inf)
    nearest_minutes = km_to_minutes(dist.min(axis=1), settings.speed_kmh)
    pairs = int(np.sum(np.triu(dist <= settings.distance_km, k=1)))
    return {
        "survivors": n,
        "mean_nearest_minutes": round(float(nearest_minutes.mean()), 2),
        "min_nearest_minutes": round(float(nearest_minutes.min()), 2),
        "max_nearest_minutes": round(float(nearest_minutes.max()), 2),
        "pairs_within_threshold": pairs,
    }
