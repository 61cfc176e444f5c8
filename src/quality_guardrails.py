"""
Quality Guardrails
Post-hoc checks over the allocated set. Any failing rule marks the run as
blocked; candidates are never modified here.

Rules:
- acceptance_rate: allocated / evaluated >= minimum (default 15%)
- avg_completeness: mean completeness of allocated candidates >= minimum (0.5)
- subregion_concentration: largest sub-region share of the output <= maximum (40%)
- sanity_set: every listed settlement is allocated unless individually
  suppressed with a reason
"""

from config import get_logger
from models import GuardrailResult

logger = get_logger(__name__)


def check_acceptance_rate(allocated, evaluated, threshold):
    observed = len(allocated) / evaluated if evaluated else 0.0
    return GuardrailResult(
        rule="acceptance_rate",
        passed=observed >= threshold,
        observed=round(observed, 4),
        threshold=threshold,
        detail=f"{len(allocated)} of {evaluated} evaluated candidates allocated",
    )


def check_avg_completeness(allocated, threshold):
    observed = sum(c.completeness for c in allocated) / len(allocated) if allocated else 0.0
    return GuardrailResult(
        rule="avg_completeness",
        passed=observed >= threshold,
        observed=round(observed, 4),
        threshold=threshold,
        detail=f"mean completeness over {len(allocated)} allocated candidates",
    )


def check_concentration(ledger, threshold):
    total = sum(entry.allocated for entry in ledger)
    if total == 0:
        return GuardrailResult(
            rule="subregion_concentration", passed=True, observed=0.0, threshold=threshold,
            detail="nothing allocated",
        )
    top = max(ledger, key=lambda e: (e.allocated, e.sub_region))
    observed = top.allocated / total
    return GuardrailResult(
        rule="subregion_concentration",
        passed=observed <= threshold,
        observed=round(observed, 4),
        threshold=threshold,
        detail=f"{top.sub_region} holds {top.allocated} of {total}",
    )


def check_sanity_set(allocated, sanity_set, suppressions):
    """Known-major settlements must be allocated unless suppressed with a reason."""
    present = set()
    for c in allocated:
        present.add(c.settlement_name.strip().lower())
        present.add(c.settlement_id.strip().lower())

    reasons = {key.strip().lower(): reason for key, reason in suppressions.items()}
    missing = []
    for name in sanity_set:
        if name.strip().lower() in present:
            continue
        reason = reasons.get(name.strip().lower())
        if reason:
            logger.warning(f"Sanity-set settlement '{name}' suppressed: {reason}")
            continue
        missing.append(name)

    detail = f"missing: {', '.join(missing)}" if missing else f"{len(sanity_set)} settlements checked"
    return GuardrailResult(
        rule="sanity_set",
        passed=not missing,
        observed=float(len(missing)),
        threshold=0.0,
        detail=detail,
    )


def run_guardrails(allocated, ledger, evaluated, settings):
    """
    Run every rule independently.

    Returns (results, publishable).
    """
    results = [
        check_acceptance_rate(allocated, evaluated, settings.min_acceptance_rate),
        check_avg_completeness(allocated, settings.min_avg_completeness),
        check_concentration(ledger, settings.max_subregion_share),
        check_sanity_set(allocated, settings.sanity_set, settings.sanity_suppressions),
    ]
    for r in results:
        if not r.passed:
            logger.warning(f"Guardrail '{r.rule}' failed: observed {r.observed} vs threshold {r.threshold} ({r.detail})")
    publishable = all(r.passed for r in results)
    return results, publishable
