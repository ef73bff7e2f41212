"""Shared fixtures: in-memory SQLite fact store and a pilot with stub input files.

Geometry layout used throughout (all in MN, lon/lat):

    ZIP 55401            -93.30 .. -93.20  x  44.90 .. 44.91
    City A (2743000)     -93.30 .. -93.23  (covers 70% of the ZIP)
    City B (2758000)     -93.23 .. -93.20  (covers 30% of the ZIP)
    Hennepin (27053)     -93.50 .. -93.00  x  44.50 .. 45.00
    Minnesota (27)       -94.00 .. -93.00  x  44.00 .. 45.00
"""

import csv
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
import shapefile
from shapely.geometry import box, mapping
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taxatlas.config import minneapolis
from taxatlas.database import init_db
from taxatlas.provenance import upsert_source_doc_from_text


ZIP_BOX = (-93.30, 44.90, -93.20, 44.91)
CITY_A_BOX = (-93.30, 44.90, -93.23, 44.91)
CITY_B_BOX = (-93.23, 44.90, -93.20, 44.91)
COUNTY_BOX = (-93.50, 44.50, -93.00, 45.00)
STATE_BOX = (-94.00, 44.00, -93.00, 45.00)


def feature(bounds, **properties) -> dict:
    return {"type": "Feature", "properties": properties, "geometry": mapping(box(*bounds))}


def feature_collection(*features) -> dict:
    return {"type": "FeatureCollection", "features": list(features)}


def write_json(path, value) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(value, indent=2), encoding="utf-8")


def write_csv(path, fieldnames, rows) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def clockwise_box(minx, miny, maxx, maxy):
    return [[minx, miny], [minx, maxy], [maxx, maxy], [maxx, miny], [minx, miny]]


def write_tracts(base_path, geoid_field="GEOID"):
    """Two Hennepin tracts, one Ramsey tract and one null shape."""
    writer = shapefile.Writer(str(base_path), shapeType=shapefile.POLYGON)
    writer.field("STATEFP", "C", size=2)
    writer.field("COUNTYFP", "C", size=3)
    writer.field(geoid_field, "C", size=11)
    writer.field("NAMELSAD", "C", size=40)

    writer.poly([clockwise_box(-93.30, 44.90, -93.25, 44.91)])
    writer.record("27", "053", "27053000101", "Census Tract 1.01")
    writer.poly([clockwise_box(-93.25, 44.90, -93.20, 44.91)])
    writer.record("27", "053", "27053000102", "Census Tract 1.02")
    writer.poly([clockwise_box(-93.10, 44.90, -93.05, 44.95)])
    writer.record("27", "123", "27123030100", "Census Tract 301")
    writer.null()
    writer.record("27", "053", "27053999999", "Census Tract 9999.99")
    writer.close()
    return base_path.with_suffix(".shp")


# Jurisdictions are listed child-first so parent links need the second phase.
JURISDICTION_FEATURES = [
    feature(CITY_A_BOX, jurisdiction_type="city", name="City of Minneapolis",
            external_id="2743000", parent_external_id="27053"),
    feature(CITY_B_BOX, jurisdiction_type="city", name="City of St. Anthony",
            external_id="2758000", parent_external_id="27053"),
    feature(COUNTY_BOX, jurisdiction_type="county", name="Hennepin County",
            external_id="27053", parent_external_id="27"),
    feature(STATE_BOX, jurisdiction_type="state", name="State of Minnesota", external_id="27"),
]

SALES_FIELDS = [
    "jurisdiction_external_id", "instrument_name", "effective_date", "end_date",
    "tax_year", "rate_value", "rate_unit", "notes",
]
SALES_ROWS = [
    {"jurisdiction_external_id": "27", "instrument_name": "Minnesota sales tax",
     "effective_date": "2009-07-01", "end_date": "", "tax_year": "", "rate_value": "6.875",
     "rate_unit": "percent", "notes": "Statewide general rate"},
    {"jurisdiction_external_id": "27053", "instrument_name": "Hennepin County transit sales tax",
     "effective_date": "2017-01-01", "end_date": "", "tax_year": "", "rate_value": "0.15",
     "rate_unit": "percent", "notes": ""},
    {"jurisdiction_external_id": "2743000", "instrument_name": "Minneapolis sales tax",
     "effective_date": "2019-01-01", "end_date": "", "tax_year": "", "rate_value": "0.5",
     "rate_unit": "percent", "notes": ""},
    {"jurisdiction_external_id": "2758000", "instrument_name": "St. Anthony sales tax",
     "effective_date": "2019-01-01", "end_date": "", "tax_year": "", "rate_value": "1.0",
     "rate_unit": "", "notes": ""},
    {"jurisdiction_external_id": "2758000", "instrument_name": "St. Anthony lodging surcharge",
     "effective_date": "2020-01-01", "end_date": "", "tax_year": "", "rate_value": "n/a",
     "rate_unit": "percent", "notes": "Rate not yet published"},
]

PROPERTY_FIELDS = [
    "tax_year", "geo_unit_type", "geo_unit_geoid", "jurisdiction_external_id", "instrument_name",
    "levy_amount", "taxable_value_amount", "tax_capacity_amount", "median_bill_amount",
    "bill_p25_amount", "bill_p75_amount", "parcel_count", "household_count", "effective_rate", "notes",
]
PROPERTY_ROWS = [
    {"tax_year": "2023", "geo_unit_type": "zip", "geo_unit_geoid": "55401",
     "jurisdiction_external_id": "2743000", "instrument_name": "Minneapolis property tax levy",
     "levy_amount": "1250000.50", "taxable_value_amount": "98000000", "tax_capacity_amount": "",
     "median_bill_amount": "3120", "bill_p25_amount": "2100", "bill_p75_amount": "4400",
     "parcel_count": "812", "household_count": "oops", "effective_rate": "1.27", "notes": "Stub"},
]

INCOME = {
    "jurisdiction_external_id": "27",
    "instrument_name": "Minnesota individual income tax",
    "effective_date": "2024-01-01",
    "tax_year": 2024,
    "rate_unit": "percent",
    "rate_brackets": [
        {"min": 0, "max": 31690, "rate": 5.35},
        {"min": 31690, "max": 104090, "rate": 6.8},
        {"min": 104090, "max": 193240, "rate": 7.85},
        {"min": 193240, "max": None, "rate": 9.85},
    ],
    "notes": "Single filer",
}

OFFICIALS = {
    "persons": [
        {"person_key": "jacob-frey", "full_name": "Jacob Frey", "given_name": "Jacob",
         "family_name": "Frey"},
    ],
    "offices": [
        {"office_key": "mayor", "jurisdiction_external_id": "2743000", "office_name": "Mayor",
         "office_category": "executive"},
        {"office_key": "ward-3", "jurisdiction_external_id": "2743000",
         "office_name": "City Council Ward 3", "office_category": "legislative",
         "district_geo_unit_type": "zip", "district_geo_unit_geoid": "55401"},
    ],
    "terms": [
        {"person_key": "jacob-frey", "office_key": "mayor", "start_date": "2022-01-03",
         "end_date": "2026-01-05", "party": "DFL"},
    ],
}

DECISIONS = {
    "decisions": [
        {"decision_key": "mpls-2024-budget", "jurisdiction_external_id": "2743000",
         "event_type": "budget", "event_date": "2023-12-06", "effective_date": "2024-01-01",
         "title": "Adopt 2024 city budget and levy",
         "impacts": [
             {"jurisdiction_external_id": "2743000", "tax_type": "sales",
              "instrument_name": "Minneapolis sales tax", "impact_direction": "no_change",
              "tax_year": 2024, "delta_rate_value": 0},
         ],
         "votes": [
             {"vote_type": "roll_call", "vote_date": "2023-12-06", "question": "Adopt budget",
              "passed": True, "counts": {"yes": 9, "no": 4},
              "casts": [{"person_key": "jacob-frey", "vote_value": "yes"}]},
             {"vote_type": "ballot_measure", "vote_date": "2023-11-07",
              "casts": [
                  {"geo_unit_type": "zip", "geo_unit_geoid": "55401", "vote_value": "yes", "weight": 812},
                  {"geo_unit_type": "zip", "geo_unit_geoid": "55401", "vote_value": "no", "weight": 640},
              ]},
         ]},
    ],
}

POLICY_SIGNALS = {
    "signals": [
        {"signal_key": "mpls-sales-increase", "jurisdiction_external_id": "2743000",
         "status": "proposed", "signal_date": "2024-05-01",
         "title": "Proposed increase to Minneapolis sales tax",
         "tax_instrument": {"jurisdiction_external_id": "2743000", "tax_type": "sales",
                            "instrument_name": "Minneapolis sales tax"},
         "details": {"proposed_rate": 0.75}},
    ],
}


def write_pilot_files(pilot) -> None:
    paths = pilot.paths
    write_json(pilot.resolve(paths.custom_geo_units_geojson), feature_collection(
        feature(ZIP_BOX, geo_unit_type="zip", geoid="55401", name="ZIP 55401", county_fips="053"),
        feature((-93.29, 44.901, -93.28, 44.905), geo_unit_type="neighborhood",
                geoid="mpls-downtown-west", name="Downtown West"),
    ))
    write_json(pilot.resolve(paths.place_aliases_json), {
        "state_code": "mn",
        "entries": [
            {"geo_unit_type": "zip", "geoid": "55401", "alias_kind": "zip", "aliases": ["55401"]},
            {"geo_unit_type": "neighborhood", "geoid": "mpls-downtown-west",
             "aliases": [{"text": "Downtown West", "rank": 5, "preferred": True}, "DT West"]},
        ],
    })
    write_json(pilot.resolve(paths.jurisdictions_geojson), feature_collection(*JURISDICTION_FEATURES))
    write_csv(pilot.resolve(paths.sales_tax_rates_csv), SALES_FIELDS, SALES_ROWS)
    write_csv(pilot.resolve(paths.property_tax_context_csv), PROPERTY_FIELDS, PROPERTY_ROWS)
    write_json(pilot.resolve(paths.state_income_tax_json), INCOME)
    write_json(pilot.resolve(paths.officials_json), OFFICIALS)
    write_json(pilot.resolve(paths.decisions_json), DECISIONS)
    write_json(pilot.resolve(paths.policy_signals_json), POLICY_SIGNALS)


@pytest.fixture()
def engine():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def source_doc_id(session):
    doc_id, _sha = upsert_source_doc_from_text(
        session, "taxatlas://repo/tests/fixture.txt", "fixture", is_demo=True, title="Test fixture"
    )
    session.commit()
    return doc_id


@pytest.fixture()
def pilot(tmp_path):
    config = minneapolis(tmp_path, tiger_year=2023)
    write_pilot_files(config)
    return config
