#!/usr/bin/env python3
"""
Runs the expansion pipeline on the synthetic region and prints stage metrics,
the fairness ledger, guardrail verdicts and the weight sensitivity report.

Usage:
    python3 scripts/evaluate_pipeline.py [--settlements N] [--target N] [--env .env]
"""

import argparse
import os
import sys
import logging

# Setup path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(project_root, "src"))

from config import build_config, load_config
from data_sources import SyntheticDataSource
from expansion_orchestrator import run_expansion


def header(text):
    print("\n" + "=" * 80)
    print(f"  {text}")
    print("=" * 80)


def subheader(text):
    print(f"\n  {text}")
    print("  " + "-" * 70)


def metric(name, value, width=35):
    if isinstance(value, float):
        print(f"    {name:<{width}}: {value:>15.4f}")
    else:
        print(f"    {name:<{width}}: {str(value):>15}")


def report_stages(result):
    header("PIPELINE STAGES")
    for name, value in result["stats"].items():
        metric(name.replace("_", " ").capitalize(), value)

    subheader("Anchor merges by pairing")
    for pairing, count in sorted(result["merge_report"].by_pairing().items()):
        metric(pairing, count)

    subheader("Drive-time spacing of NMS survivors")
    for name, value in result["nms"]["stats"].items():
        metric(name.replace("_", " ").capitalize(), value if value is not None else "-")
    metric("Suppression clusters", len(result["nms"]["clusters"]))


def report_ledger(result):
    header("FAIRNESS LEDGER")
    print(f"    {'Sub-region':<14}{'Share':>8}{'Base':>6}{'Bonus':>7}{'Override':>10}"
          f"{'Alloc':>7}{'Avail':>7}{'Short':>7}{'AvgScore':>10}")
    for e in result["ledger"]:
        override = "-" if e.manual_override is None else str(e.manual_override)
        print(f"    {e.sub_region:<14}{e.population_share:>8.1%}{e.base_quota:>6}{e.performance_bonus:>7}"
              f"{override:>10}{e.allocated:>7}{e.available:>7}{e.shortfall:>7}{e.avg_score:>10.3f}")


def report_guardrails(result):
    header(f"GUARDRAILS: {result['verdict'].upper()}")
    for r in result["guardrails"]:
        status = "PASS" if r.passed else "FAIL"
        print(f"    [{status}] {r.rule:<26} observed {r.observed:<8} threshold {r.threshold:<8} {r.detail}")


def report_sensitivity(result):
    if not result["sensitivity"]:
        return
    header("WEIGHT SENSITIVITY (±10%)")
    for row in result["sensitivity"]:
        bar = "█" * min(40, int(row["mean_abs_delta"] * 2000))
        print(f"    {row['weight']:<12}{row['change']:>6}  mean Δ {row['mean_abs_delta']:.5f}  "
              f"top-N changed {row['top_n_changed']:>3}  {bar}")


def main():
    parser = argparse.ArgumentParser(description="Evaluate the expansion pipeline on synthetic data")
    parser.add_argument("--settlements", type=int, default=200)
    parser.add_argument("--outlets", type=int, default=25)
    parser.add_argument("--target", type=int, default=None, help="override total output")
    parser.add_argument("--env", default=None, help="optional .env file with EXPANSION_* settings")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    if not args.verbose:
        logging.disable(logging.WARNING)

    settings = load_config(dotenv_path=args.env).model_dump()
    settings["include_sensitivity"] = True
    if args.target is not None:
        settings["allocation"]["total_output"] = args.target
    config = build_config(**settings)

    source = SyntheticDataSource(n_settlements=args.settlements, n_outlets=args.outlets)
    result = run_expansion(source, config=config)

    report_stages(result)
    report_ledger(result)
    report_guardrails(result)
    report_sensitivity(result)

    header("SUMMARY")
    print(result["summary"])
    print()


if __name__ == "__main__":
    main()
