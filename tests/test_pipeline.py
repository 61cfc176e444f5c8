"""
End-to-end tests for the expansion pipeline: orchestrator, data sources and
the tool-style JSON output.
"""

import unittest
import sys
import os
import json
import math
import shutil
import tempfile
import logging
from datetime import date

import pandas as pd

# Suppress logging during tests
logging.disable(logging.CRITICAL)

# Add src to path for imports
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(PROJECT_ROOT, 'src'))

from config import build_config, load_config
from models import AnchorPOI, ExistingOutlet, Settlement, SubRegion
from geo import haversine_km
from data_sources import (
    CsvDataSource,
    InMemoryDataSource,
    OutletStore,
    PlaceDataSource,
    PoiDataSource,
    SyntheticDataSource,
)
from expansion_orchestrator import get_expansion_recommendation, run_expansion

AS_OF = date(2025, 1, 1)
UNIFORM_WEIGHTS = {"population": 0.2, "gap": 0.2, "anchor": 0.2, "performance": 0.2, "saturation": 0.2}


class TestEndToEnd(unittest.TestCase):
    """Three settlements, no outlets, uniform weights, target 2"""

    def setUp(self):
        self.source = InMemoryDataSource(settlements=[
            Settlement(id="big", name="Bigton", type="city", lat=10.0, lng=10.0, population=1_000_000),
            Settlement(id="mid", name="Midville", type="town", lat=11.0, lng=10.0, population=50_000),
            Settlement(id="small", name="Smallham", type="village", lat=10.0, lng=11.0, population=5_000),
        ])
        self.config = build_config(weights=UNIFORM_WEIGHTS, allocation={"total_output": 2})

    def test_two_most_populous_allocated(self):
        result = run_expansion(self.source, config=self.config, as_of=AS_OF)
        self.assertEqual([c.settlement_id for c in result["allocated"]], ["big", "mid"])
        self.assertEqual(len(result["candidates"]), 3)
        self.assertEqual(sum(e.allocated for e in result["ledger"]), 2)

    def test_gap_maximal_everywhere(self):
        result = run_expansion(self.source, config=self.config, as_of=AS_OF)
        for c in result["candidates"]:
            self.assertEqual(c.features.gap_distance_km, self.config.features.gap_cap_km)
            self.assertEqual(c.features.saturation_count, 0)
            self.assertAlmostEqual(c.component_scores["gap"], c.adjusted_weights["gap"])
            self.assertAlmostEqual(c.component_scores["saturation"], 0.0)

    def test_scores_and_completeness_bounded(self):
        result = run_expansion(self.source, config=self.config, as_of=AS_OF)
        for c in result["candidates"]:
            self.assertTrue(0.0 <= c.score <= 1.0)
            self.assertTrue(0.0 <= c.completeness <= 1.0)
            self.assertEqual(c.recommendation, "go")

    def test_single_subregion_blocked_by_concentration(self):
        result = run_expansion(self.source, config=self.config, as_of=AS_OF)
        self.assertEqual(result["verdict"], "blocked")
        failed = [r for r in result["guardrails"] if not r.passed]
        self.assertEqual([r.rule for r in failed], ["subregion_concentration"])
        self.assertAlmostEqual(failed[0].observed, 1.0)
        self.assertAlmostEqual(failed[0].threshold, 0.40)
        self.assertIn("BLOCKED BY", result["summary"])
        # blocked runs still return the full set
        self.assertEqual(len(result["allocated"]), 2)

    def test_runs_are_independent(self):
        first = run_expansion(self.source, config=self.config, as_of=AS_OF)
        second = run_expansion(self.source, config=self.config, as_of=AS_OF)
        self.assertEqual(
            [c.model_dump() for c in first["candidates"]],
            [c.model_dump() for c in second["candidates"]],
        )
        self.assertIsNot(first["ledger"], second["ledger"])


class TestPipelineInputs(unittest.TestCase):
    """Input defects are dropped, never fatal"""

    def test_defective_records_dropped(self):
        source = InMemoryDataSource(
            settlements=[
                Settlement(id="a", name="A", lat=0.0, lng=0.0, population=20_000, sub_region="N"),
                Settlement(id="a", name="A again", lat=0.0, lng=0.5, population=20_000, sub_region="N"),
                Settlement(id="bad", name="Bad", lat=float("nan"), lng=0.0, population=20_000),
                Settlement(id="tiny", name="Tiny", lat=0.0, lng=1.0, population=200),
            ],
            pois=[AnchorPOI(id="p1", category="mall", lat=200.0, lng=0.0)],
            outlets=[ExistingOutlet(id="o1", lat=0.0, lng=-95.5), ExistingOutlet(id="o2", lat=0.0, lng=500.0)],
        )
        result = run_expansion(source, config=build_config(), as_of=AS_OF)
        dropped = {(d.kind, d.record_id) for d in result["dropped"]}
        self.assertIn(("settlement", "a"), dropped)
        self.assertIn(("settlement", "bad"), dropped)
        self.assertIn(("settlement", "tiny"), dropped)
        self.assertIn(("poi", "p1"), dropped)
        self.assertIn(("outlet", "o2"), dropped)
        self.assertEqual([c.settlement_id for c in result["candidates"]], ["a"])
        self.assertEqual(result["stats"]["outlets"], 1)

    def test_empty_region(self):
        result = run_expansion(InMemoryDataSource(), config=build_config(), as_of=AS_OF)
        self.assertEqual(result["allocated"], [])
        self.assertEqual(result["verdict"], "blocked")

    def test_sanity_set_and_overrides_flow_through(self):
        settlements = [
            Settlement(id=f"n{i}", name=f"North {i}", lat=0.0, lng=0.5 * i, population=50_000 + i,
                       sub_region="North")
            for i in range(6)
        ] + [
            Settlement(id=f"s{i}", name=f"South {i}", lat=-3.0, lng=0.5 * i, population=40_000 + i,
                       sub_region="South")
            for i in range(6)
        ]
        config = build_config(
            allocation={"total_output": 6, "manual_overrides": {"South": 1}, "performance_bonus_count": 0},
            guardrails={"sanity_set": ("South 0",)},
        )
        result = run_expansion(InMemoryDataSource(settlements=settlements), config=config, as_of=AS_OF)
        ledger = {e.sub_region: e for e in result["ledger"]}
        self.assertEqual(ledger["South"].allocated, 1)
        self.assertEqual(ledger["North"].allocated, 5)
        sanity = next(r for r in result["guardrails"] if r.rule == "sanity_set")
        self.assertFalse(sanity.passed)


    def test_env_overrides_match_acronym_and_hyphenated_regions(self):
        settlements = [
            Settlement(id=f"n{i}", name=f"Nrw {i}", lat=0.0, lng=0.5 * i, population=50_000 + i,
                       sub_region="NRW")
            for i in range(6)
        ] + [
            Settlement(id=f"r{i}", name=f"Rhineland {i}", lat=-3.0, lng=0.5 * i, population=40_000 + i,
                       sub_region="Rhineland-Palatinate")
            for i in range(6)
        ]
        config = load_config(env={
            "STATE_CAP_NRW": "1",
            "STATE_CAP_RHINELAND_PALATINATE": "5",
            "EXPANSION_TOTAL_OUTPUT": "6",
            "STATE_PERF_BONUS": "0",
        })
        result = run_expansion(InMemoryDataSource(settlements=settlements), config=config, as_of=AS_OF)
        ledger = {e.sub_region: e for e in result["ledger"]}
        self.assertEqual(ledger["NRW"].manual_override, 1)
        self.assertEqual(ledger["NRW"].allocated, 1)
        self.assertEqual(ledger["Rhineland-Palatinate"].manual_override, 5)
        self.assertEqual(ledger["Rhineland-Palatinate"].allocated, 5)


class TestSyntheticRun(unittest.TestCase):
    """Full run on the synthetic region"""

    @classmethod
    def setUpClass(cls):
        cls.config = build_config(include_sensitivity=True, max_workers=2)
        cls.result = run_expansion(SyntheticDataSource(n_settlements=150), config=cls.config, as_of=AS_OF)

    def test_allocation_bounded_by_target(self):
        target = self.config.allocation.total_output
        self.assertLessEqual(len(self.result["allocated"]), target)
        self.assertEqual(sum(e.allocated for e in self.result["ledger"]), len(self.result["allocated"]))

    def test_dedup_happened(self):
        self.assertGreater(self.result["stats"]["pois_merged"], 0)
        self.assertLess(self.result["stats"]["pois_deduplicated"], self.result["stats"]["pois_raw"])

    def test_allocated_candidates_are_recommendable_survivors(self):
        for c in self.result["allocated"]:
            self.assertTrue(c.survived)
            self.assertTrue(c.recommendable)
            self.assertGreaterEqual(c.completeness, self.config.completeness.min_evidence)

    def test_survivor_spacing(self):
        survivors = [c for c in self.result["candidates"] if c.survived]
        limit = self.config.nms.distance_km
        for i, a in enumerate(survivors):
            for b in survivors[i + 1:]:
                if float(haversine_km(a.lat, a.lng, b.lat, b.lng)) <= limit:
                    self.assertEqual((a.nms_status, b.nms_status), ("preserved", "preserved"))

    def test_sensitivity_included(self):
        self.assertEqual(len(self.result["sensitivity"]), 10)

    def test_synthetic_source_is_deterministic(self):
        a = SyntheticDataSource(n_settlements=30)
        b = SyntheticDataSource(n_settlements=30)
        self.assertEqual(a.get_settlements(), b.get_settlements())
        self.assertEqual(a.get_anchor_pois(), b.get_anchor_pois())
        self.assertEqual(a.get_outlets(), b.get_outlets())


class TestToolOutput(unittest.TestCase):
    """get_expansion_recommendation returns JSON-safe dicts"""

    def test_success_is_json_serializable(self):
        source = SyntheticDataSource(n_settlements=60)
        result = get_expansion_recommendation(source=source, top_n=5, as_of=AS_OF)
        self.assertEqual(result["status"], "success")
        self.assertIn(result["verdict"], ("publishable", "blocked"))
        self.assertLessEqual(len(result["recommendations"]), 5)
        text = json.dumps(result)
        self.assertIn("ledger", json.loads(text))

    def test_recommendation_fields(self):
        source = SyntheticDataSource(n_settlements=60)
        result = get_expansion_recommendation(source=source, as_of=AS_OF)
        for rec in result["recommendations"]:
            for key in ("score", "completeness", "uncertainty_weight", "sub_region", "merge_report"):
                self.assertIn(key, rec)

    def test_error_status(self):
        class BrokenSource(InMemoryDataSource):
            def get_settlements(self, region=None):
                raise RuntimeError("gazetteer unavailable")

        result = get_expansion_recommendation(source=BrokenSource())
        self.assertEqual(result["status"], "error")
        self.assertIn("gazetteer unavailable", result["message"])


class TestDataSources(unittest.TestCase):
    """Capability interfaces and CSV loading"""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        pd.DataFrame([
            {"id": "s1", "name": "Alpha", "type": "City", "lat": 1.0, "lng": 1.0, "population": 200000,
             "sub_region": "North", "observed_on": "2024-05-01", "region": "test"},
            {"id": "s2", "name": "Beta", "type": "town", "lat": "abc", "lng": 1.5, "population": "",
             "sub_region": "South", "observed_on": "", "region": "test"},
            {"id": "s3", "name": "Gamma", "type": "hamlet", "lat": 1.2, "lng": 1.2, "population": 900,
             "sub_region": "South", "observed_on": "", "region": "test"},
            {"id": "s4", "name": "Delta", "type": "village", "lat": 2.0, "lng": 2.0, "population": 3000,
             "sub_region": "South", "observed_on": "", "region": "other"},
        ]).to_csv(os.path.join(self.tmp, "settlements.csv"), index=False)
        pd.DataFrame([
            {"id": "p1", "category": "Mall", "lat": 1.0, "lng": 1.0},
            {"id": "p2", "category": "cinema", "lat": 1.001, "lng": 1.0},
        ]).to_csv(os.path.join(self.tmp, "pois.csv"), index=False)
        pd.DataFrame([
            {"id": "o1", "lat": 1.05, "lng": 1.05, "status": "open", "turnover": 500000},
            {"id": "o2", "lat": "n/a", "lng": 1.05, "status": "planned", "turnover": ""},
        ]).to_csv(os.path.join(self.tmp, "outlets.csv"), index=False)
        pd.DataFrame([
            {"name": "North", "population": 1200000, "historical_performance": 1.2},
        ]).to_csv(os.path.join(self.tmp, "sub_regions.csv"), index=False)

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_protocols(self):
        for source in (InMemoryDataSource(), CsvDataSource(self.tmp), SyntheticDataSource(n_settlements=5)):
            self.assertIsInstance(source, PlaceDataSource)
            self.assertIsInstance(source, PoiDataSource)
            self.assertIsInstance(source, OutletStore)

    def test_settlements_parsed(self):
        source = CsvDataSource(self.tmp)
        settlements = {s.id: s for s in source.get_settlements()}
        self.assertEqual(settlements["s1"].type, "city")
        self.assertEqual(settlements["s1"].population, 200000)
        self.assertEqual(settlements["s1"].observed_on, date(2024, 5, 1))
        self.assertTrue(math.isnan(settlements["s2"].lat))
        self.assertIsNone(settlements["s2"].population)
        self.assertNotIn("s3", settlements)
        self.assertEqual([(d.kind, d.record_id) for d in source.dropped], [("settlement", "s3")])

    def test_region_filter(self):
        source = CsvDataSource(self.tmp)
        self.assertEqual(sorted(s.id for s in source.get_settlements("other")), ["s4"])

    def test_pois_and_outlets(self):
        source = CsvDataSource(self.tmp)
        pois = {p.id: p for p in source.get_anchor_pois()}
        self.assertEqual(pois["p1"].category, "mall")
        self.assertEqual(pois["p2"].category, "other")
        outlets = source.get_outlets()
        self.assertEqual([o.id for o in outlets], ["o1"])
        self.assertEqual(outlets[0].turnover, 500000)
        self.assertIn(("outlet", "o2"), [(d.kind, d.record_id) for d in source.dropped])

    def test_sub_regions_optional(self):
        source = CsvDataSource(self.tmp)
        self.assertEqual(source.get_sub_regions()[0], SubRegion(name="North", population=1200000,
                                                               historical_performance=1.2))
        os.remove(os.path.join(self.tmp, "sub_regions.csv"))
        self.assertEqual(source.get_sub_regions(), [])

    def test_missing_columns_raise(self):
        pd.DataFrame([{"id": "x", "lat": 1.0}]).to_csv(os.path.join(self.tmp, "outlets.csv"), index=False)
        with self.assertRaises(ValueError):
            CsvDataSource(self.tmp).get_outlets()

    def test_csv_run_end_to_end(self):
        result = run_expansion(CsvDataSource(self.tmp), config=build_config(), as_of=AS_OF)
        dropped = {(d.kind, d.record_id) for d in result["dropped"]}
        self.assertIn(("settlement", "s2"), dropped)
        self.assertIn(("settlement", "s3"), dropped)
        self.assertIn(("outlet", "o2"), dropped)
        self.assertEqual(sorted(c.settlement_id for c in result["candidates"]), ["s1", "s4"])


if __name__ == '__main__':
    unittest.main(verbosity=2)
