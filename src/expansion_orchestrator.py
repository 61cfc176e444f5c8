"""
Expansion Orchestrator
Runs one generation batch end to end:

[1/7] load settlements, POIs, outlets and sub-regions from the data sources
[2/7] deduplicate anchor POIs
[3/7] extract feature vectors (process pool)
[4/7] score, completeness and minimum-evidence rule
[5/7] drive-time NMS
[6/7] regional fairness allocation
[7/7] quality guardrails -> publishable / blocked

Every run builds its own candidates, ledger and reports; nothing mutable is
shared between runs. Input defects are dropped and reported, configuration
errors abort before any candidate is built, and guardrail failures block
publication without touching the candidate set.
"""

from datetime import date

from anchor_deduplicator import deduplicate_anchors
from config import MLFLOW_DIR, build_config, get_logger
from data_sources import SyntheticDataSource
from drive_time_nms import suppress
from fairness_allocator import allocate
from feature_extractor import ReferenceData, extract_all
from geo import valid_coordinates
from models import DroppedRecord
from quality_guardrails import run_guardrails
from scoring_engine import score_candidates, sensitivity_report

logger = get_logger(__name__)


def _clean_outlets(outlets, dropped):
    usable, seen = [], set()
    for o in outlets:
        if not valid_coordinates(o.lat, o.lng):
            reason = f"malformed coordinates ({o.lat}, {o.lng})"
        elif o.id in seen:
            reason = "duplicate outlet id"
        else:
            seen.add(o.id)
            usable.append(o)
            continue
        logger.warning(f"Dropping outlet {o.id}: {reason}")
        dropped.append(DroppedRecord(kind="outlet", record_id=o.id, reason=reason))
    return usable


def _unique_settlements(settlements, dropped):
    usable, seen = [], set()
    for s in settlements:
        if s.id in seen:
            logger.warning(f"Dropping settlement {s.id}: duplicate settlement id")
            dropped.append(DroppedRecord(kind="settlement", record_id=s.id, reason="duplicate settlement id"))
            continue
        seen.add(s.id)
        usable.append(s)
    return usable


def run_expansion(source, config=None, region=None, poi_source=None, outlet_store=None, as_of=None):
    """
    Generate expansion recommendations for one region.

    Parameters
    ----------
    source : PlaceDataSource
        Settlements and sub-regions (also used for POIs / outlets when it
        provides them and no dedicated source is given).
    config : ExpansionConfig or None
        Defaults to build_config().
    region : str or None
        Passed through to the data sources.
    poi_source, outlet_store : optional dedicated sources
    as_of : date or None
        Reference date for data-recency checks (defaults to today).

    Returns
    -------
    dict with candidates, allocated, ledger, guardrails, verdict, dropped,
    merge_report, nms, sensitivity, stats and summary
    """
    config = config or build_config()
    poi_source = poi_source or source
    outlet_store = outlet_store or source
    as_of = as_of or date.today()
    dropped = []

    logger.info("=" * 60)
    logger.info(f"EXPANSION RUN{f' ({region})' if region else ''}")
    logger.info("=" * 60)

    logger.info("\n[1/7] Loading settlements, POIs and outlets...")
    settlements = _unique_settlements(source.get_settlements(region), dropped)
    sub_regions = source.get_sub_regions(region)
    raw_pois = poi_source.get_anchor_pois(region)
    outlets = _clean_outlets(outlet_store.get_outlets(region), dropped)
    for src in {id(s): s for s in (source, poi_source, outlet_store)}.values():
        dropped.extend(getattr(src, "dropped", []))
    logger.info(
        f"  {len(settlements)} settlements, {len(raw_pois)} POIs, {len(outlets)} outlets, "
        f"{len(sub_regions)} sub-regions"
    )

    logger.info("\n[2/7] Deduplicating anchor POIs...")
    pois, merge_report, poi_drops = deduplicate_anchors(raw_pois, config.merge_radii)
    dropped.extend(DroppedRecord(kind="poi", record_id=pid, reason=why) for pid, why in poi_drops)

    logger.info("\n[3/7] Extracting candidate features...")
    reference = ReferenceData(
        outlets, pois, merge_report=merge_report, as_of=as_of, poi_coverage=bool(raw_pois)
    )
    candidates, settlement_drops = extract_all(settlements, reference, config)
    dropped.extend(settlement_drops)

    logger.info("\n[4/7] Scoring candidates...")
    candidates = score_candidates(candidates, config)

    logger.info("\n[5/7] Drive-time suppression...")
    nms = suppress(candidates, config.nms)

    logger.info("\n[6/7] Allocating across sub-regions...")
    allocation = allocate(candidates, config.allocation, sub_regions)

    logger.info("\n[7/7] Running quality guardrails...")
    guardrails, publishable = run_guardrails(
        allocation["allocated"], allocation["ledger"], len(candidates), config.guardrails
    )
    verdict = "publishable" if publishable else "blocked"

    sensitivity = sensitivity_report(candidates, config) if config.include_sensitivity else []

    stats = {
        "settlements_loaded": len(settlements),
        "pois_raw": len(raw_pois),
        "pois_deduplicated": len(pois),
        "pois_merged": merge_report.merged_count,
        "outlets": len(outlets),
        "candidates_evaluated": len(candidates),
        "candidates_on_hold": sum(1 for c in candidates if not c.recommendable),
        "nms_survivors": len(nms["survivors"]),
        "allocated": len(allocation["allocated"]),
        "target": config.allocation.total_output,
        "dropped_records": len(dropped),
    }

    result = {
        "candidates": candidates,
        "allocated": allocation["allocated"],
        "ledger": allocation["ledger"],
        "guardrails": guardrails,
        "publishable": publishable,
        "verdict": verdict,
        "dropped": dropped,
        "merge_report": merge_report,
        "nms": {"clusters": nms["clusters"], "stats": nms["stats"]},
        "sensitivity": sensitivity,
        "stats": stats,
    }
    result["summary"] = _build_summary(result)

    if config.tracking.enabled:
        track_run(result, config)

    logger.info("\n" + "=" * 60)
    logger.info(f"RUN COMPLETE: {verdict.upper()} ({stats['allocated']}/{stats['target']} allocated)")
    logger.info("=" * 60)
    return result


def track_run(result, config):
    """Log params and run metrics to MLflow; only called after guardrails."""
    import mlflow

    stats = result["stats"]
    try:
        mlflow.set_tracking_uri(config.tracking.tracking_uri or f"file://{MLFLOW_DIR}")
        mlflow.set_experiment(config.tracking.experiment)
        with mlflow.start_run(run_name=f"expansion_{result['verdict']}"):
            mlflow.log_params({f"weight_{k}": v for k, v in config.weights.as_dict().items()})
            mlflow.log_params({
                "drive_time_minutes": config.nms.drive_time_minutes,
                "speed_kmh": config.nms.speed_kmh,
                "total_output": config.allocation.total_output,
                "max_anchors_per_site": config.anchors.max_per_site,
            })
            mlflow.log_metrics({k: float(v) for k, v in stats.items()})
            for r in result["guardrails"]:
                mlflow.log_metric(f"guardrail_{r.rule}", r.observed)
            mlflow.set_tag("verdict", result["verdict"])
    except Exception as e:
        logger.warning(f"MLflow tracking failed: {e}")


def _build_summary(result):
    """Human-readable run summary."""
    stats = result["stats"]
    lines = [
        "EXPANSION RECOMMENDATION SUMMARY",
        "=" * 50,
        "",
        f"Verdict: {result['verdict'].upper()}",
        f"Settlements loaded: {stats['settlements_loaded']}",
        f"Candidates evaluated: {stats['candidates_evaluated']} ({stats['candidates_on_hold']} on hold)",
        f"Anchor POIs: {stats['pois_raw']} raw -> {stats['pois_deduplicated']} after dedup",
        f"NMS survivors: {stats['nms_survivors']}",
        f"Allocated: {stats['allocated']} of {stats['target']}",
        f"Dropped records: {stats['dropped_records']}",
        "",
        "TOP RECOMMENDATIONS:",
        "-" * 50,
    ]
    for c in result["allocated"][:10]:
        lines.append(f"\n  #{c.rank}. {c.settlement_name} ({c.sub_region})")
        lines.append(f"      Score: {c.score:.3f}  Completeness: {c.completeness:.2f}  "
                     f"Uncertainty weight: {c.uncertainty_weight:.3f}")
        lines.append(f"      Population: {c.features.population:,.0f}  Gap: {c.features.gap_distance_km:.1f} km  "
                     f"Anchors: {c.features.anchor_count}")
        if c.quality.flags:
            lines.append(f"      Flags: {', '.join(c.quality.flags)}")

    held = [c for c in result["candidates"] if not c.recommendable][:5]
    if held:
        lines.append("\n\nON HOLD (insufficient evidence):")
        lines.append("-" * 50)
        for c in held:
            lines.append(f"  - {c.settlement_name}: score {c.score:.3f}, completeness {c.completeness:.2f}")

    failed = [r for r in result["guardrails"] if not r.passed]
    if failed:
        lines.append("\n\nBLOCKED BY:")
        lines.append("-" * 50)
        for r in failed:
            lines.append(f"  - {r.rule}: observed {r.observed} vs threshold {r.threshold} ({r.detail})")

    return "\n".join(lines)


# ══════════════════════════════════════════════════════════════════════════════
# AGENT TOOL
# ══════════════════════════════════════════════════════════════════════════════

def candidate_record(c):
    """JSON-safe view of an allocated candidate for downstream collaborators."""
    return {
        "rank": c.rank,
        "candidate_id": c.id,
        "settlement_id": c.settlement_id,
        "settlement": c.settlement_name,
        "type": c.settlement_type,
        "sub_region": c.sub_region,
        "lat": round(c.lat, 6),
        "lng": round(c.lng, 6),
        "score": round(c.score, 4),
        "completeness": c.completeness,
        "uncertainty_weight": c.uncertainty_weight,
        "recommendation": c.recommendation,
        "component_scores": c.component_scores,
        "adjusted_weights": c.adjusted_weights,
        "features": c.features.model_dump(mode="json"),
        "data_quality": c.quality.model_dump(mode="json"),
        "merge_report": {
            "merged_count": c.merge_report.merged_count,
            "by_pairing": c.merge_report.by_pairing(),
            "capped_ids": list(c.merge_report.capped_ids),
        },
    }


def get_expansion_recommendation(source=None, region=None, top_n=None, config=None, as_of=None):
    """
    Tool-style entry point: run the pipeline and return a JSON-safe dict.

    Parameters
    ----------
    source : data source or None
        Defaults to a SyntheticDataSource.
    region : str or None
    top_n : int or None
        Limit the returned recommendations (all allocated by default).
    config : ExpansionConfig or None

    Returns
    -------
    dict with status ("success" / "error"), verdict, recommendations, ledger,
    guardrails, dropped records, stats and summary
    """
    try:
        if source is None:
            source = SyntheticDataSource()
        result = run_expansion(source, config=config, region=region, as_of=as_of)
        allocated = result["allocated"][:top_n] if top_n else result["allocated"]
        return {
            "status": "success",
            "verdict": result["verdict"],
            "publishable": result["publishable"],
            "recommendations": [candidate_record(c) for c in allocated],
            "ledger": [e.model_dump(mode="json") for e in result["ledger"]],
            "guardrails": [r.model_dump(mode="json") for r in result["guardrails"]],
            "dropped": [d.model_dump(mode="json") for d in result["dropped"]],
            "nms": result["nms"],
            "sensitivity": result["sensitivity"],
            "stats": result["stats"],
            "summary": result["summary"],
        }
    except Exception as e:
        logger.error(f"Expansion recommendation error: {e}")
        return {"status": "error", "message": str(e)}


if __name__ == "__main__":
    import json
    output = get_expansion_recommendation(top_n=10)
    print(json.dumps(output, indent=2, default=str))
