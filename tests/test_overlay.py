"""Tests for the geo unit ↔ jurisdiction spatial overlay (in-process backend)."""

import pytest
from shapely.geometry import box, mapping

from conftest import CITY_A_BOX, CITY_B_BOX, COUNTY_BOX, STATE_BOX, ZIP_BOX
from taxatlas.methodology import ensure_methodology_version
from taxatlas.models import GeoUnitJurisdiction
from taxatlas.overlay import OVERLAY_NOTES, compute_overlay, normalize_ratio
from taxatlas.upserts import upsert_geo_unit, upsert_jurisdiction


def add_unit(session, source_doc_id, geoid, geometry, geo_unit_type="zip"):
    return upsert_geo_unit(
        session, geo_unit_type=geo_unit_type, geoid=geoid, name=f"{geo_unit_type} {geoid}",
        state_code="MN", geometry=geometry, source_doc_id=source_doc_id,
    )


def add_jurisdiction(session, source_doc_id, jurisdiction_type, external_id, bounds, state_code="MN"):
    return upsert_jurisdiction(
        session, jurisdiction_type=jurisdiction_type, name=f"{jurisdiction_type} {external_id}",
        state_code=state_code, external_id=external_id, source_doc_id=source_doc_id,
        geometry=mapping(box(*bounds)),
    )


def edges(session, methodology_version_id):
    rows = (
        session.query(GeoUnitJurisdiction)
        .filter(GeoUnitJurisdiction.methodology_version_id == methodology_version_id)
        .all()
    )
    return {row.jurisdiction_id: row for row in rows}


@pytest.fixture()
def overlay_version_id(session):
    return ensure_methodology_version(session, "pilot:test", "v1-geo-overlay", "estimate")


def test_normalize_ratio_clamps_and_rounds():
    assert normalize_ratio(1.0000001, 1.0) == 1.0
    assert normalize_ratio(-1.0, 1.0) == 0.0
    assert normalize_ratio(1.0, 3.0) == 0.333333


def test_unit_inside_jurisdiction_has_full_coverage(session, source_doc_id, overlay_version_id):
    unit_id = add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    county_id = add_jurisdiction(session, source_doc_id, "county", "27053", COUNTY_BOX)

    stats = compute_overlay(
        session, state_code="mn", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    assert stats.backend == "shapely"
    assert stats.rows_upserted == 1

    edge = edges(session, overlay_version_id)[county_id]
    assert edge.geo_unit_id == unit_id
    assert float(edge.coverage_ratio) == 1.0
    assert edge.coverage_area_m2 > 0
    assert edge.notes == OVERLAY_NOTES


def test_split_unit_gets_proportional_coverage(session, source_doc_id, overlay_version_id):
    add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    city_a = add_jurisdiction(session, source_doc_id, "city", "2743000", CITY_A_BOX)
    city_b = add_jurisdiction(session, source_doc_id, "city", "2758000", CITY_B_BOX)

    compute_overlay(
        session, state_code="MN", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    found = edges(session, overlay_version_id)
    assert float(found[city_a].coverage_ratio) == pytest.approx(0.7, abs=1e-4)
    assert float(found[city_b].coverage_ratio) == pytest.approx(0.3, abs=1e-4)
    assert found[city_a].coverage_area_m2 > found[city_b].coverage_area_m2


def test_disjoint_and_other_state_jurisdictions_are_ignored(session, source_doc_id, overlay_version_id):
    add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    add_jurisdiction(session, source_doc_id, "city", "far-away", (-95.0, 46.0, -94.9, 46.1))
    add_jurisdiction(session, source_doc_id, "state", "55", STATE_BOX, state_code="WI")

    stats = compute_overlay(
        session, state_code="MN", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    assert stats.jurisdictions == 1
    assert stats.rows_upserted == 0


def test_zero_area_unit_is_skipped(session, source_doc_id, overlay_version_id):
    sliver = {
        "type": "Polygon",
        "coordinates": [[[-93.25, 44.905], [-93.24, 44.905], [-93.25, 44.905], [-93.25, 44.905]]],
    }
    add_unit(session, source_doc_id, "sliver", sliver, geo_unit_type="custom")
    add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    add_jurisdiction(session, source_doc_id, "state", "27", STATE_BOX)

    stats = compute_overlay(
        session, state_code="MN", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    assert stats.degenerate_skipped == 1
    assert stats.rows_upserted == 1


def test_rerun_updates_in_place(session, source_doc_id, overlay_version_id):
    add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    add_jurisdiction(session, source_doc_id, "state", "27", STATE_BOX)

    for _ in range(2):
        compute_overlay(
            session, state_code="MN", methodology_version_id=overlay_version_id,
            source_doc_id=source_doc_id,
        )
    session.commit()
    assert session.query(GeoUnitJurisdiction).count() == 1


def test_versions_are_isolated(session, source_doc_id, overlay_version_id):
    add_unit(session, source_doc_id, "55401", mapping(box(*ZIP_BOX)))
    city_a = add_jurisdiction(session, source_doc_id, "city", "2743000", CITY_A_BOX)
    compute_overlay(
        session, state_code="MN", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    v1_ratio = float(edges(session, overlay_version_id)[city_a].coverage_ratio)

    # The city annexes the whole ZIP; only a new version sees it.
    add_jurisdiction(session, source_doc_id, "city", "2743000", ZIP_BOX)
    v2 = ensure_methodology_version(session, "pilot:test", "v2-geo-overlay", "estimate")
    compute_overlay(session, state_code="MN", methodology_version_id=v2, source_doc_id=source_doc_id)

    assert float(edges(session, v2)[city_a].coverage_ratio) == 1.0
    assert float(edges(session, overlay_version_id)[city_a].coverage_ratio) == v1_ratio


def test_empty_inputs(session, source_doc_id, overlay_version_id):
    stats = compute_overlay(
        session, state_code="MN", methodology_version_id=overlay_version_id, source_doc_id=source_doc_id
    )
    assert stats.geo_units == 0
    assert stats.rows_upserted == 0
