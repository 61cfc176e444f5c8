"""
Data sources for the expansion engine.

The pipeline only talks to three capabilities: a place source (settlements and
sub-regions), a POI source and an outlet store. Any object with the right
methods works; the orchestrator never checks which implementation it got.

- InMemoryDataSource: records handed over as lists (tests, callers that
  already fetched their data)
- CsvDataSource: cleaned CSV exports read with pandas
- SyntheticDataSource: seeded generator for development and evaluation
"""

import os
from typing import List, Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd
from pydantic import ValidationError

from config import DATA_DIR, RANDOM_SEED, get_logger, validate_dataframe
from models import AnchorPOI, DroppedRecord, ExistingOutlet, Settlement, SubRegion

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# CAPABILITY INTERFACES
# ══════════════════════════════════════════════════════════════════════════════

@runtime_checkable
class PlaceDataSource(Protocol):
    def get_settlements(self, region: Optional[str] = None) -> List[Settlement]: ...

    def get_sub_regions(self, region: Optional[str] = None) -> List[SubRegion]: ...


@runtime_checkable
class PoiDataSource(Protocol):
    def get_anchor_pois(self, region: Optional[str] = None) -> List[AnchorPOI]: ...


@runtime_checkable
class OutletStore(Protocol):
    def get_outlets(self, region: Optional[str] = None) -> List[ExistingOutlet]: ...


class InMemoryDataSource:
    """All three capabilities backed by plain lists."""

    def __init__(self, settlements=(), pois=(), outlets=(), sub_regions=()):
        self.settlements = list(settlements)
        self.pois = list(pois)
        self.outlets = list(outlets)
        self.sub_regions = list(sub_regions)
        self.dropped: List[DroppedRecord] = []

    def get_settlements(self, region=None):
        return list(self.settlements)

    def get_sub_regions(self, region=None):
        return list(self.sub_regions)

    def get_anchor_pois(self, region=None):
        return list(self.pois)

    def get_outlets(self, region=None):
        return list(self.outlets)


# ══════════════════════════════════════════════════════════════════════════════
# CSV
# ══════════════════════════════════════════════════════════════════════════════

SETTLEMENT_COLUMNS = ["id", "name", "lat", "lng"]
POI_COLUMNS = ["id", "category", "lat", "lng"]
OUTLET_COLUMNS = ["id", "lat", "lng"]
SUBREGION_COLUMNS = ["name"]


def _optional(value):
    """NaN / empty -> None; numpy scalars -> Python scalars."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if pd.isna(value):
        return None
    return value.item() if hasattr(value, "item") else value


class CsvDataSource:
    """
    Reads settlements.csv, pois.csv, outlets.csv and (optionally)
    sub_regions.csv from one directory.

    Numeric columns are coerced; rows that still fail validation are recorded
    in `self.dropped` instead of aborting the load. When a `region` column is
    present, calls with a region keep only matching rows.
    """

    def __init__(self, directory=None, settlements="settlements.csv", pois="pois.csv",
                 outlets="outlets.csv", sub_regions="sub_regions.csv"):
        self.directory = directory or DATA_DIR
        self.files = {
            "settlements": settlements,
            "pois": pois,
            "outlets": outlets,
            "sub_regions": sub_regions,
        }
        self.dropped: List[DroppedRecord] = []

    def _read(self, key, required_columns, region, optional=False):
        path = os.path.join(self.directory, self.files[key])
        if optional and not os.path.exists(path):
            return pd.DataFrame(columns=required_columns)
        df = pd.read_csv(path, dtype={"id": str, "name": str, "sub_region": str, "region": str})
        df.columns = [c.strip().lower() for c in df.columns]
        validate_dataframe(df, required_columns, path)
        if region is not None and "region" in df.columns:
            df = df[df["region"].str.lower() == region.lower()]
        logger.info(f"Loaded {len(df)} rows from {path}")
        return df

    def _build(self, kind, model, rows):
        records = []
        for row in rows:
            try:
                records.append(model(**{k: v for k, v in row.items() if v is not None}))
            except ValidationError as e:
                reason = "; ".join(err["msg"] for err in e.errors())
                record_id = str(row.get("id") or row.get("name") or "?")
                logger.warning(f"Dropping {kind} row {record_id}: {reason}")
                self.dropped.append(DroppedRecord(kind=kind, record_id=record_id, reason=reason))
        return records

    def get_settlements(self, region=None):
        df = self._read("settlements", SETTLEMENT_COLUMNS, region)
        for col in ("lat", "lng", "population", "income_index"):
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors="coerce")
        if "observed_on" in df.columns:
            df["observed_on"] = pd.to_datetime(df["observed_on"], errors="coerce").dt.date
        rows = []
        for rec in df.to_dict("records"):
            row = {k: _optional(rec.get(k)) for k in
                   ("id", "name", "type", "lat", "lng", "sub_region", "income_index", "observed_on")}
            population = _optional(rec.get("population"))
            row["population"] = None if population is None else int(population)
            # NaN coordinates are kept so feature extraction can drop them with a reason
            for coord in ("lat", "lng"):
                if row[coord] is None:
                    row[coord] = float("nan")
            if row["type"] is not None:
                row["type"] = str(row["type"]).strip().lower()
            rows.append(row)
        return self._build("settlement", Settlement, rows)

    def get_sub_regions(self, region=None):
        df = self._read("sub_regions", SUBREGION_COLUMNS, region, optional=True)
        for col in ("population", "historical_performance"):
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors="coerce")
        rows = []
        for rec in df.to_dict("records"):
            population = _optional(rec.get("population"))
            rows.append({
                "name": _optional(rec.get("name")),
                "population": None if population is None else int(population),
                "historical_performance": _optional(rec.get("historical_performance")),
            })
        return self._build("sub_region", SubRegion, rows)

    def get_anchor_pois(self, region=None):
        df = self._read("pois", POI_COLUMNS, region)
        df["lat"] = pd.to_numeric(df["lat"], errors="coerce")
        df["lng"] = pd.to_numeric(df["lng"], errors="coerce")
        # NaN coordinates pass through; the deduplicator drops them with a reason
        rows = []
        for rec in df.to_dict("records"):
            rows.append({
                "id": _optional(rec.get("id")),
                "category": _optional(rec.get("category")) or "other",
                "lat": float(rec["lat"]),
                "lng": float(rec["lng"]),
                "name": _optional(rec.get("name")),
            })
        return self._build("poi", AnchorPOI, rows)

    def get_outlets(self, region=None):
        df = self._read("outlets", OUTLET_COLUMNS, region)
        for col in ("lat", "lng", "turnover"):
            if col in df.columns:
                df[col] = pd.to_numeric(df[col], errors="coerce")
        rows = []
        for rec in df.to_dict("records"):
            rows.append({
                "id": _optional(rec.get("id")),
                "lat": _optional(rec.get("lat")),
                "lng": _optional(rec.get("lng")),
                "status": str(_optional(rec.get("status")) or "open").strip().lower(),
                "turnover": _optional(rec.get("turnover")),
            })
        return self._build("outlet", ExistingOutlet, rows)


# ══════════════════════════════════════════════════════════════════════════════
# SYNTHETIC
# ══════════════════════════════════════════════════════════════════════════════

SUB_REGIONS = ["North", "South", "East", "West"]
SETTLEMENT_MIX = {"city": 0.1, "town": 0.4, "village": 0.5}
POPULATION_RANGE = {
    "city": (150_000, 1_500_000),
    "town": (8_000, 120_000),
    "village": (500, 8_000),
}
POI_PER_SETTLEMENT = {"city": 30, "town": 8, "village": 1}


class SyntheticDataSource:
    """
    Seeded generator of settlements, anchor POIs and outlets inside a bounding
    box split into four sub-regions (quadrants).

    POIs include deliberate near-duplicates (mall tenants, double-listed
    grocers) so deduplication has something to do.
    """

    def __init__(self, n_settlements=120, n_outlets=25, bbox=(47.0, 5.0, 55.0, 15.0),
                 missing_population_rate=0.1, seed=RANDOM_SEED, as_of="2025-06-30"):
        self.n_settlements = n_settlements
        self.n_outlets = n_outlets
        self.bbox = bbox  # (min_lat, min_lng, max_lat, max_lng)
        self.missing_population_rate = missing_population_rate
        self.seed = seed
        self.as_of = pd.Timestamp(as_of)
        self._cache = None

    def _sub_region(self, lat, lng):
        min_lat, min_lng, max_lat, max_lng = self.bbox
        north = lat >= (min_lat + max_lat) / 2
        east = lng >= (min_lng + max_lng) / 2
        if north:
            return "North" if not east else "East"
        return "West" if not east else "South"

    def _generate(self):
        if self._cache is not None:
            return self._cache
        rng = np.random.RandomState(self.seed)
        min_lat, min_lng, max_lat, max_lng = self.bbox

        settlements = []
        types = list(SETTLEMENT_MIX)
        probs = list(SETTLEMENT_MIX.values())
        for i in range(self.n_settlements):
            kind = types[rng.choice(len(types), p=probs)]
            lo, hi = POPULATION_RANGE[kind]
            population = int(np.exp(rng.uniform(np.log(lo), np.log(hi))))
            if rng.rand() < self.missing_population_rate:
                population = None
            lat = round(rng.uniform(min_lat, max_lat), 5)
            lng = round(rng.uniform(min_lng, max_lng), 5)
            observed = self.as_of - pd.Timedelta(days=int(rng.uniform(0, 6 * 365)))
            settlements.append(Settlement(
                id=f"S{i:04d}",
                name=f"{kind.title()} {i:04d}",
                type=kind,
                lat=lat,
                lng=lng,
                population=population,
                sub_region=self._sub_region(lat, lng),
                income_index=round(rng.uniform(0.6, 1.4), 2) if rng.rand() < 0.7 else None,
                observed_on=observed.date(),
            ))

        pois = []
        for s in settlements:
            n = max(0, int(rng.poisson(POI_PER_SETTLEMENT[s.type])))
            for j in range(n):
                category = rng.choice(["mall", "station", "grocer", "retail", "retail", "other"])
                # jitter in degrees; ~0.01 deg ≈ 1.1 km
                lat = s.lat + rng.normal(0, 0.008)
                lng = s.lng + rng.normal(0, 0.012)
                pois.append(AnchorPOI(id=f"{s.id}-P{j:03d}", category=str(category), lat=lat, lng=lng))
                if category in ("mall", "grocer") and rng.rand() < 0.5:
                    # tenant / duplicate listing a few dozen metres away
                    dup_cat = "retail" if category == "mall" else "grocer"
                    pois.append(AnchorPOI(
                        id=f"{s.id}-P{j:03d}d",
                        category=dup_cat,
                        lat=lat + rng.normal(0, 0.0002),
                        lng=lng + rng.normal(0, 0.0003),
                    ))

        big = sorted(
            (s for s in settlements if s.population is not None),
            key=lambda s: (-s.population, s.id),
        )
        outlets = []
        for k, s in enumerate(big[: self.n_outlets]):
            status = "planned" if rng.rand() < 0.15 else "open"
            turnover = None if status == "planned" else round(float(rng.normal(850_000, 200_000)), 0)
            outlets.append(ExistingOutlet(
                id=f"O{k:03d}",
                lat=s.lat + rng.normal(0, 0.01),
                lng=s.lng + rng.normal(0, 0.01),
                status=status,
                turnover=turnover,
            ))

        regions = []
        for name in SUB_REGIONS:
            members = [s.population or 0 for s in settlements if s.sub_region == name]
            regions.append(SubRegion(name=name, population=int(sum(members))))

        logger.info(
            f"Synthetic region: {len(settlements)} settlements, {len(pois)} POIs, {len(outlets)} outlets"
        )
        self._cache = (settlements, pois, outlets, regions)
        return self._cache

    def get_settlements(self, region=None):
        return list(self._generate()[0])

    def get_anchor_pois(self, region=None):
        return list(self._generate()[1])

    def get_outlets(self, region=None):
        return list(self._generate()[2])

    def get_sub_regions(self, region=None):
        return list(self._generate()[3])
