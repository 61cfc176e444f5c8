"""
Scoring Engine
Combines each candidate's raw features into one composite score in [0, 1].

Methodology:
1. Min-max normalise every feature over the candidate batch
   (anchor count goes through diminishing returns first: Σ 1/√rank)
2. Completeness = weighted checklist of five sub-scores, each either its
   high-quality value (measured) or low-quality value (estimated)
3. Sparse-data weight caps: an estimated feature loses part of its weight;
   80% of the removed weight moves to the gap term, the rest is reported as
   the candidate's uncertainty weight and never enters the score
4. score = w_pop·pop + w_gap·gap + w_anchor·anchor + w_perf·perf − w_sat·sat,
   clipped to [0, 1]
5. Minimum-evidence rule: completeness below the threshold -> "hold",
   regardless of score

Scoring never raises for a bad feature value: missing or non-numeric inputs
fall back to neutral values and lower completeness instead.
"""

import numpy as np
import pandas as pd

from anchor_deduplicator import diminishing_anchor_score
from config import get_logger

logger = get_logger(__name__)

FEATURE_COLUMNS = ["population", "gap", "anchor", "performance", "saturation"]
# missing performance sits in the middle of the batch
NEUTRAL_PERFORMANCE = 0.5


def min_max(series, missing=0.0):
    """
    Min-max normalise a Series to [0, 1].

    A constant column maps to 1.0 where the value is positive and 0.0
    otherwise; missing values map to `missing`.
    """
    values = pd.to_numeric(series, errors="coerce").astype(float)
    known = values.dropna()
    if known.empty:
        return pd.Series(missing, index=values.index, dtype=float)
    lo, hi = known.min(), known.max()
    if hi - lo <= 1e-12:
        out = (values > 0).astype(float)
    else:
        out = (values - lo) / (hi - lo)
    return out.where(values.notna(), missing).clip(0.0, 1.0)


def feature_frame(candidates, diminishing_returns=True):
    """One row per candidate (in input order) with the five raw scoring inputs."""
    rows = []
    for c in candidates:
        f = c.features
        rows.append({
            "population": f.population,
            "gap": f.gap_distance_km,
            "anchor": diminishing_anchor_score(f.anchor_count, diminishing_returns),
            "performance": f.performance,
            "saturation": f.saturation_count,
        })
    return pd.DataFrame(rows, columns=FEATURE_COLUMNS)


def normalize_features(frame):
    norm = pd.DataFrame(index=frame.index)
    for col in FEATURE_COLUMNS:
        missing = NEUTRAL_PERFORMANCE if col == "performance" else 0.0
        norm[col] = min_max(frame[col], missing=missing)
    return norm


def completeness_checklist(quality, settings):
    """Sub-score per checklist item: high value when measured, low when estimated."""
    measured = {
        "population_source": not quality.population_estimated,
        "performance_sample": not quality.performance_estimated,
        "anchor_coverage": not quality.anchor_estimated,
        "data_recency": quality.recency_known,
        "income_proxy": not quality.income_estimated,
    }
    return {
        name: (high if measured[name] else low)
        for name, (_, low, high) in settings.checklist.items()
    }


def completeness_score(checklist, settings):
    total = sum(settings.checklist[name][0] * value for name, value in checklist.items())
    return float(np.clip(total, 0.0, 1.0))


def adjust_weights(base_weights, quality, adjustment):
    """
    Cut the weight of every estimated feature and hand most of it to gap.

    Returns (adjusted_weights, uncertainty_weight, moved_to_gap).
    """
    weights = dict(base_weights)
    cuts = {
        "population": adjustment.population_cut if quality.population_estimated else 0.0,
        "performance": adjustment.performance_cut if quality.performance_estimated else 0.0,
        "anchor": adjustment.anchor_cut if quality.anchors_capped > 0 else 0.0,
    }
    removed = 0.0
    for name, cut in cuts.items():
        if cut > 0:
            taken = weights[name] * cut
            weights[name] -= taken
            removed += taken
    moved = removed * adjustment.gap_share
    weights["gap"] += moved
    return weights, removed - moved, moved


def composite(norm_row, weights):
    """Per-term contributions and the clipped composite score for one row."""
    components = {
        "population": weights["population"] * norm_row["population"],
        "gap": weights["gap"] * norm_row["gap"],
        "anchor": weights["anchor"] * norm_row["anchor"],
        "performance": weights["performance"] * norm_row["performance"],
        "saturation": -weights["saturation"] * norm_row["saturation"],
    }
    raw = sum(components.values())
    if not np.isfinite(raw):
        raw = 0.0
    return components, float(np.clip(raw, 0.0, 1.0))


def rank_by_score(candidates):
    """Descending score, ties broken by candidate id."""
    return sorted(candidates, key=lambda c: (-c.score, c.id))


def _batch_scores(candidates, norm, base_weights, config):
    """Composite scores for a batch under the given base weights (no mutation)."""
    scores = np.zeros(len(candidates))
    for i, c in enumerate(candidates):
        adjusted, _, _ = adjust_weights(base_weights, c.quality, config.weight_adjustment)
        _, scores[i] = composite(norm.iloc[i], adjusted)
    return scores


def score_candidates(candidates, config):
    """
    Annotate candidates with completeness, score and recommendation.

    Parameters
    ----------
    candidates : list of Candidate
        Output of FeatureExtractor; annotated in place.
    config : ExpansionConfig

    Returns
    -------
    The same candidates ranked by descending score (ties by id).
    """
    if not candidates:
        return []

    norm = normalize_features(feature_frame(candidates, config.anchors.diminishing_returns))
    base = config.weights.as_dict()
    threshold = config.completeness.min_evidence

    held = 0
    for i, c in enumerate(candidates):
        checklist = completeness_checklist(c.quality, config.completeness)
        adjusted, uncertainty, _ = adjust_weights(base, c.quality, config.weight_adjustment)
        components, score = composite(norm.iloc[i], adjusted)

        c.completeness_checklist = checklist
        c.completeness = round(completeness_score(checklist, config.completeness), 4)
        c.component_scores = {k: round(float(v), 4) for k, v in components.items()}
        c.adjusted_weights = {k: round(v, 4) for k, v in adjusted.items()}
        c.uncertainty_weight = round(uncertainty, 4)
        c.score = score
        c.recommendation = apply_minimum_evidence(c, threshold)
        if c.recommendation == "hold":
            held += 1
            logger.debug(f"  {c.id}: completeness {c.completeness:.2f} < {threshold} -> hold")

    ranked = rank_by_score(candidates)
    logger.info(
        f"Scored {len(ranked)} candidates: top {ranked[0].score:.3f}, "
        f"median {np.median([c.score for c in ranked]):.3f}, {held} on hold"
    )
    return ranked


def apply_minimum_evidence(candidate, threshold):
    """'go' only when completeness reaches the threshold; score is ignored."""
    return "go" if candidate.completeness >= threshold else "hold"


# ══════════════════════════════════════════════════════════════════════════════
# WEIGHT SENSITIVITY
# ══════════════════════════════════════════════════════════════════════════════

def sensitivity_report(candidates, config, top_n=None, delta=0.10):
    """
    Perturb each weight by ±delta, re-score the batch and measure the effect.

    Returns a list of dicts (one per weight and direction) with the mean
    absolute score change and how many of the top-N candidates change.
    """
    if not candidates:
        return []
    top_n = top_n or config.allocation.total_output
    norm = normalize_features(feature_frame(candidates, config.anchors.diminishing_returns))
    base = config.weights.as_dict()
    ids = [c.id for c in candidates]

    def top_set(scores):
        order = sorted(range(len(ids)), key=lambda i: (-scores[i], ids[i]))
        return {ids[i] for i in order[:top_n]}

    baseline = _batch_scores(candidates, norm, base, config)
    baseline_top = top_set(baseline)

    report = []
    for name in FEATURE_COLUMNS:
        for sign in (1, -1):
            weights = dict(base)
            weights[name] = base[name] * (1 + sign * delta)
            scores = _batch_scores(candidates, norm, weights, config)
            report.append({
                "weight": name,
                "change": f"{sign * delta:+.0%}",
                "mean_abs_delta": round(float(np.mean(np.abs(scores - baseline))), 5),
                "max_abs_delta": round(float(np.max(np.abs(scores - baseline))), 5),
                "top_n_changed": len(baseline_top - top_set(scores)),
            })
    return report
