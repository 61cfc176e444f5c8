"""
Regional Fairness Allocator
Splits a fixed number of recommendations across sub-regions and picks the
best surviving candidates inside each one.

Methodology:
1. Base quota = round-half-up(population share × total output)
   (equal shares when population weighting is off)
2. Performance bonus: the top-K sub-regions by average candidate performance
   get +1 slot each (ties by name)
3. A manual override replaces base + bonus for its sub-region, unconditionally
4. Reconcile to the target: trim sub-regions furthest above their exact share
   (non-bonus first), then hand slots a sub-region cannot fill to sub-regions
   with spare candidates, furthest below their exact share first
5. Select the top-scoring eligible candidates per sub-region and write one
   FairnessLedgerEntry per sub-region

Only candidates that survived NMS with a "go" recommendation are eligible.
The allocated total never exceeds the target and equals it whenever enough
eligible candidates exist outside override-capped sub-regions.
"""

import math
import re

import pandas as pd

from config import get_logger
from models import FairnessLedgerEntry
from scoring_engine import rank_by_score

logger = get_logger(__name__)


def round_half_up(x):
    return int(math.floor(x + 0.5))


def region_key(name):
    """Case- and separator-insensitive sub-region key ("NEW_SOUTH_WALES" == "New South Wales")."""
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def match_overrides(manual_overrides, region_names):
    """Map configured overrides onto the sub-region names present in this run."""
    by_key = {region_key(name): name for name in region_names}
    matched = {}
    for name, cap in manual_overrides.items():
        region = by_key.get(region_key(name))
        if region is None:
            logger.warning(f"Manual override for unknown sub-region '{name}' ignored")
            continue
        matched[region] = cap
    return matched


def eligible(candidates):
    return [c for c in candidates if c.survived and c.recommendable]


def region_frame(candidates, sub_regions=None):
    """
    Per-sub-region population, performance and availability.

    Population comes from SubRegion records when given, otherwise it is the
    summed population of the sub-region's candidates. Performance is the
    mean candidate performance proxy, falling back to the sub-region's
    historical figure.
    """
    cand = pd.DataFrame(
        [{
            "sub_region": c.sub_region,
            "population": c.features.population,
            "performance": c.features.performance,
            "score": c.score,
            "eligible": bool(c.survived and c.recommendable),
        } for c in candidates],
        columns=["sub_region", "population", "performance", "score", "eligible"],
    )
    cand["performance"] = pd.to_numeric(cand["performance"], errors="coerce")
    pool = cand[cand["eligible"].astype(bool)]

    regions = pd.DataFrame(index=sorted(set(cand["sub_region"]) | {r.name for r in sub_regions or []}))
    regions["population"] = cand.groupby("sub_region")["population"].sum()
    regions["available"] = pool.groupby("sub_region").size()
    regions["avg_score"] = pool.groupby("sub_region")["score"].mean()
    regions["avg_performance"] = pool.groupby("sub_region")["performance"].mean()

    for r in sub_regions or []:
        if r.population is not None and r.population >= 0:
            regions.loc[r.name, "population"] = r.population
        if r.historical_performance is not None and pd.isna(regions.loc[r.name, "avg_performance"]):
            regions.loc[r.name, "avg_performance"] = r.historical_performance

    regions["population"] = regions["population"].fillna(0).astype(float)
    regions["available"] = regions["available"].fillna(0).astype(int)
    regions["avg_score"] = regions["avg_score"].fillna(0.0)
    return regions


def base_quotas(regions, settings):
    """Exact (fractional) shares and rounded base quotas."""
    target = settings.total_output
    n = len(regions)
    total_pop = regions["population"].sum()
    if settings.population_weighted and total_pop > 0:
        share = regions["population"] / total_pop
    else:
        share = pd.Series(1.0 / n if n else 0.0, index=regions.index)
    exact = share * target
    base = exact.apply(round_half_up).astype(int)
    return share, exact, base


def performance_bonus(regions, k):
    """Names of the top-k sub-regions by average performance (ties by name)."""
    if k <= 0:
        return set()
    perf = regions["avg_performance"].dropna()
    order = sorted(perf.index, key=lambda name: (-perf[name], name))
    return set(order[:k])


def reconcile(quota, exact, available, overrides, bonus, target):
    """
    Bring sum(allocated) to min(target, what can be filled) without touching
    overridden sub-regions. Returns the allocated count per sub-region.
    """
    quota = dict(quota)
    names = sorted(quota)
    free = [name for name in names if name not in overrides]

    # trim: non-bonus sub-regions furthest above their exact share first
    while sum(quota.values()) > target:
        trimmable = [name for name in free if quota[name] > 0]
        if not trimmable:
            break
        name = min(trimmable, key=lambda r: (r in bonus, -(quota[r] - exact[r]), r))
        quota[name] -= 1

    allocated = {name: min(quota[name], available[name]) for name in names}

    # fill slots that could not be used, furthest below exact share first
    remaining = target - sum(allocated.values())
    while remaining > 0:
        spare = [name for name in free if available[name] > allocated[name]]
        if not spare:
            break
        name = min(spare, key=lambda r: (-(exact[r] - allocated[r]), r))
        allocated[name] += 1
        remaining -= 1
    return quota, allocated


def allocate(candidates, settings, sub_regions=None):
    """
    Allocate the output quota across sub-regions.

    Parameters
    ----------
    candidates : list of Candidate
        NMS output; the allocated ones get allocated=True and a global rank.
    settings : config.AllocationSettings
    sub_regions : list of SubRegion or None
        Population / historical performance per sub-region.

    Returns
    -------
    dict with "allocated" (ranked Candidates) and "ledger" (FairnessLedgerEntry list)
    """
    for c in candidates:
        c.allocated = False
        c.rank = None

    regions = region_frame(candidates, sub_regions)
    if regions.empty:
        return {"allocated": [], "ledger": []}

    target = settings.total_output
    share, exact, base = base_quotas(regions, settings)
    bonus = performance_bonus(regions, settings.performance_bonus_count)
    overrides = match_overrides(settings.manual_overrides, regions.index)

    quota = {}
    for name in regions.index:
        if name in overrides:
            quota[name] = overrides[name]
        else:
            quota[name] = int(base[name]) + (1 if name in bonus else 0)

    quota, allocated = reconcile(
        quota, exact.to_dict(), regions["available"].to_dict(), overrides, bonus, target
    )

    pool = eligible(candidates)
    chosen = []
    for name in regions.index:
        in_region = rank_by_score([c for c in pool if c.sub_region == name])
        chosen.extend(in_region[:allocated[name]])

    ranked = rank_by_score(chosen)
    for rank, c in enumerate(ranked, start=1):
        c.allocated = True
        c.rank = rank

    ledger = []
    for name in regions.index:
        row = regions.loc[name]
        final_quota = max(quota[name], allocated[name])
        ledger.append(FairnessLedgerEntry(
            sub_region=name,
            population=int(row["population"]),
            population_share=round(float(share[name]), 4),
            base_quota=int(base[name]),
            performance_bonus=1 if name in bonus and name not in overrides else 0,
            manual_override=overrides.get(name),
            allocated=allocated[name],
            available=int(row["available"]),
            shortfall=max(0, final_quota - allocated[name]),
            avg_score=round(float(row["avg_score"]), 4),
            avg_performance=None if pd.isna(row["avg_performance"]) else round(float(row["avg_performance"]), 2),
        ))
        if ledger[-1].shortfall:
            logger.info(f"  {name}: quota {final_quota}, only {allocated[name]} available")

    logger.info(f"Allocated {len(ranked)}/{target} across {len(ledger)} sub-regions")
    return {"allocated": ranked, "ledger": ledger}
