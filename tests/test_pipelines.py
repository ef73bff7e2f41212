"""End-to-end pipeline tests against the stub pilot files."""

import zipfile
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import (
    DECISIONS,
    PROPERTY_FIELDS,
    PROPERTY_ROWS,
    SALES_FIELDS,
    SALES_ROWS,
    write_csv,
    write_json,
    write_tracts,
)
from taxatlas.aggregator import get_blended_rate, get_place_jurisdictions, resolve_place
from taxatlas.exceptions import MalformedInputError, MissingReferenceError, SelfParentError
from taxatlas.methodology import resolve_active_methodology
from taxatlas.models import (
    DecisionEvent,
    DecisionTaxImpact,
    GeoUnit,
    GeoUnitJurisdiction,
    Jurisdiction,
    Office,
    Person,
    PlaceAlias,
    PolicySignal,
    PropertyTaxContextSnapshot,
    SourceDoc,
    TaxInstrument,
    TaxRateSnapshot,
    Term,
    VoteCast,
    VoteRecord,
)
from taxatlas.pipelines.accountability import run_accountability
from taxatlas.pipelines.aliases import run_aliases
from taxatlas.pipelines.geos import ingest_tiger_geo_units, run_geos, tiger_cache_paths
from taxatlas.pipelines.jurisdictions import run_jurisdictions
from taxatlas.pipelines.taxes import run_taxes
from taxatlas.schemas import DataKind, GeoUnitType, ImpactDirection, PolicySignalStatus, TaxType, VoteValue

ALL_TABLES = (
    SourceDoc, GeoUnit, PlaceAlias, Jurisdiction, GeoUnitJurisdiction, TaxInstrument,
    TaxRateSnapshot, PropertyTaxContextSnapshot, Person, Office, Term, PolicySignal,
    DecisionEvent, DecisionTaxImpact, VoteRecord, VoteCast,
)


def count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def table_counts(session) -> dict[str, int]:
    return {model.__tablename__: count(session, model) for model in ALL_TABLES}


def run_all(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_aliases(session, pilot)
    run_jurisdictions(session, pilot)
    run_taxes(session, pilot)
    run_accountability(session, pilot)


def test_full_pilot_load(session, pilot):
    [geos] = run_geos(session, pilot, skip_tiger=True)
    assert geos.counts == {"geo_unit": 2}

    aliases = run_aliases(session, pilot)
    assert aliases.counts == {"place_alias": 3}

    jurisdictions = run_jurisdictions(session, pilot)
    assert jurisdictions.counts["jurisdiction"] == 4
    assert jurisdictions.counts["parent_links"] == 3
    # ZIP: state, county, both cities; neighborhood: state, county, city A
    assert jurisdictions.counts["geo_unit_jurisdiction"] == 7

    taxes = run_taxes(session, pilot)
    assert taxes.counts == {"property_tax_context_snapshot": 1, "tax_rate_snapshot": 5}
    assert taxes.records_skipped == 1
    assert "rate_value" in taxes.warnings[0]

    accountability = run_accountability(session, pilot)
    assert accountability.counts == {
        "person": 1, "office": 2, "term": 1, "decision_event": 1, "decision_tax_impact": 1,
        "vote_record": 2, "vote_cast": 3, "policy_signal": 1,
    }


def test_rerun_converges(session, pilot):
    run_all(session, pilot)
    first = table_counts(session)
    first_ids = {row.id for row in session.query(TaxRateSnapshot).all()}

    run_all(session, pilot)
    assert table_counts(session) == first
    assert {row.id for row in session.query(TaxRateSnapshot).all()} == first_ids


def stored_rows(session):
    return {
        "geo_unit": session.execute(
            select(GeoUnit.id, GeoUnit.point_lat, GeoUnit.point_lng, GeoUnit.updated_at)
        ).all(),
        "jurisdiction": session.execute(
            select(Jurisdiction.id, Jurisdiction.point_lat, Jurisdiction.updated_at)
        ).all(),
        "tax_instrument": session.execute(select(TaxInstrument.id, TaxInstrument.updated_at)).all(),
        "edges": session.execute(
            select(GeoUnitJurisdiction.geo_unit_id, GeoUnitJurisdiction.jurisdiction_id, GeoUnitJurisdiction.coverage_ratio)
        ).all(),
        "rates": session.execute(select(TaxRateSnapshot.id, TaxRateSnapshot.rate_value)).all(),
        "context": session.execute(
            select(PropertyTaxContextSnapshot.id, PropertyTaxContextSnapshot.levy_amount)
        ).all(),
    }


def test_rerun_leaves_unchanged_rows_untouched(session, pilot):
    run_all(session, pilot)
    first = stored_rows(session)

    run_all(session, pilot)
    session.expire_all()
    assert stored_rows(session) == first


def test_rerun_with_changed_rate_updates_only_that_row(session, pilot):
    run_all(session, pilot)
    before = {row.id: row.rate_value for row in session.query(TaxRateSnapshot).all()}

    rows = [dict(row) for row in SALES_ROWS]
    rows[0]["rate_value"] = "7.0"
    write_csv(pilot.resolve(pilot.paths.sales_tax_rates_csv), SALES_FIELDS, rows)
    run_taxes(session, pilot)
    session.expire_all()

    after = {row.id: row.rate_value for row in session.query(TaxRateSnapshot).all()}
    changed = {row_id for row_id in after if after[row_id] != before[row_id]}
    assert len(changed) == 1
    assert after[changed.pop()] == Decimal("7.0")


def test_loaded_pilot_answers_queries(session, pilot):
    run_all(session, pilot)
    methodology = resolve_active_methodology(session, pilot)

    [match] = resolve_place(session, "55401", state_code="MN")
    coverage = get_place_jurisdictions(session, match.geo_unit_id, methodology)
    assert [j.external_id for j in coverage.jurisdictions] == ["27", "27053", "2743000", "2758000"]
    assert coverage.is_demo is True

    blended = get_blended_rate(session, match.geo_unit_id, "sales", methodology, as_of=date(2024, 6, 1))
    assert blended.total_rate == pytest.approx(6.875 + 0.15 + 0.5 * 0.7 + 1.0 * 0.3, abs=1e-3)
    assert blended.data_type == DataKind.ESTIMATE
    lodging = next(d for d in blended.contributions if d.instrument_name == "St. Anthony lodging surcharge")
    assert lodging.contributes is False

    income = get_blended_rate(session, match.geo_unit_id, "income", methodology, as_of=date(2024, 6, 1))
    assert income.contributions[0].time_series == []
    assert income.contributions[0].note.startswith("Bracketed rate")


def test_hierarchy_and_provenance(session, pilot):
    run_all(session, pilot)
    city = session.query(Jurisdiction).filter_by(external_id="2743000").one()
    assert city.parent.external_id == "27053"
    assert city.parent.parent.external_id == "27"
    assert city.source_doc.url == "taxatlas://repo/pilot/minneapolis/jurisdictions.geojson"
    assert city.source_doc.is_demo is True

    edge = session.query(GeoUnitJurisdiction).first()
    assert edge.source_doc.url == "taxatlas://pipeline/geo_unit_jurisdiction_overlay_v1"


def test_tax_rows(session, pilot):
    run_all(session, pilot)
    context = session.query(PropertyTaxContextSnapshot).one()
    assert context.tax_year == 2023
    assert context.household_count is None
    assert context.attributes == {"pilot": "minneapolis", "effective_rate": 1.27, "notes": "Stub"}
    assert context.methodology_version.kind == DataKind.ESTIMATE

    income = session.query(TaxInstrument).filter_by(tax_type=TaxType.INCOME).one()
    [snapshot] = income.rate_snapshots
    assert snapshot.rate_value is None
    assert len(snapshot.rate_brackets) == 4
    assert snapshot.methodology_version.kind == DataKind.FACT


def test_accountability_rows(session, pilot):
    run_all(session, pilot)
    person = session.query(Person).filter_by(person_key="jacob-frey").one()
    assert person.external_ids == {"person_key": "jacob-frey"}

    ward = session.query(Office).filter_by(office_key="ward-3").one()
    assert ward.district_geo_unit_id is not None
    term = session.query(Term).one()
    assert term.party == "DFL"

    signal = session.query(PolicySignal).one()
    assert signal.status == PolicySignalStatus.PROPOSED
    assert signal.tax_type == TaxType.SALES
    assert signal.tax_instrument_id is not None
    instrument = session.get(TaxInstrument, signal.tax_instrument_id)
    sales_doc = session.get(SourceDoc, instrument.source_doc_id)
    assert sales_doc.url.endswith("sales_tax_rates.csv")
    assert signal.details == {"signal_key": "mpls-sales-increase", "proposed_rate": 0.75}
    assert signal.methodology_version.kind == DataKind.SIGNAL


def test_decision_and_vote_rows(session, pilot):
    run_all(session, pilot)
    decision = session.query(DecisionEvent).one()
    assert decision.decision_key == "mpls-2024-budget"
    assert decision.jurisdiction.external_id == "2743000"
    assert decision.source_doc.url.endswith("decisions.json")

    [impact] = decision.impacts
    assert impact.impact_direction == ImpactDirection.NO_CHANGE
    assert impact.tax_instrument.name == "Minneapolis sales tax"
    assert impact.delta_rate_value == 0
    assert impact.methodology_version.kind == DataKind.FACT

    roll_call = next(v for v in decision.votes if v.vote_type.value == "roll_call")
    assert (roll_call.passed, roll_call.yes_count, roll_call.no_count) == (True, 9, 4)
    [cast] = roll_call.casts
    assert cast.voter.person_key == "jacob-frey"
    assert cast.vote_value == VoteValue.YES

    ballot = next(v for v in decision.votes if v.vote_type.value == "ballot_measure")
    tallies = {c.vote_value: c.weight for c in ballot.casts}
    assert tallies == {VoteValue.YES: Decimal("812"), VoteValue.NO: Decimal("640")}
    assert all(c.voter_person_id is None and c.voter_geo_unit_id is not None for c in ballot.casts)


# =============================================================================
# Failure handling: each pipeline is all-or-nothing
# =============================================================================


def test_missing_reference_rolls_back_whole_pipeline(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_aliases(session, pilot)
    run_jurisdictions(session, pilot)

    bad_row = dict(SALES_ROWS[0], jurisdiction_external_id="no-such-place", instrument_name="Ghost tax")
    write_csv(pilot.resolve(pilot.paths.sales_tax_rates_csv), SALES_FIELDS, SALES_ROWS + [bad_row])
    before = table_counts(session)

    with pytest.raises(MissingReferenceError):
        run_taxes(session, pilot)
    assert table_counts(session) == before
    assert count(session, PropertyTaxContextSnapshot) == 0


def test_malformed_row_fails_before_writing(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    write_csv(
        pilot.resolve(pilot.paths.property_tax_context_csv),
        PROPERTY_FIELDS,
        PROPERTY_ROWS + [dict(PROPERTY_ROWS[0], tax_year="")],
    )
    before = table_counts(session)
    with pytest.raises(MalformedInputError):
        run_taxes(session, pilot)
    assert table_counts(session) == before


def test_taxes_need_geographies(session, pilot):
    with pytest.raises(MissingReferenceError):
        run_taxes(session, pilot)
    assert count(session, SourceDoc) == 0


def test_unknown_person_in_term(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    officials = {
        "persons": [],
        "offices": [{"office_key": "mayor", "jurisdiction_external_id": "2743000", "office_name": "Mayor"}],
        "terms": [{"person_key": "nobody", "office_key": "mayor", "start_date": "2022-01-03"}],
    }
    write_json(pilot.resolve(pilot.paths.officials_json), officials)
    with pytest.raises(MissingReferenceError):
        run_accountability(session, pilot)
    assert count(session, Office) == 0


def with_cast(cast: dict) -> dict:
    decisions = {"decisions": [dict(DECISIONS["decisions"][0])]}
    decisions["decisions"][0]["votes"] = [
        {"vote_type": "roll_call", "vote_date": "2023-12-06", "casts": [cast]}
    ]
    return decisions


def test_unknown_person_in_vote_cast(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    write_json(
        pilot.resolve(pilot.paths.decisions_json),
        with_cast({"person_key": "nobody", "vote_value": "no"}),
    )
    with pytest.raises(MissingReferenceError) as excinfo:
        run_accountability(session, pilot)
    assert "nobody" in str(excinfo.value)
    assert count(session, Person) == 0
    assert count(session, DecisionEvent) == 0


def test_unknown_geo_unit_in_ballot_tally(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    write_json(
        pilot.resolve(pilot.paths.decisions_json),
        with_cast({"geo_unit_type": "zip", "geo_unit_geoid": "99999", "vote_value": "yes", "weight": 3}),
    )
    with pytest.raises(MissingReferenceError):
        run_accountability(session, pilot)
    assert count(session, VoteCast) == 0


def test_unknown_jurisdiction_in_decision(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    decision = dict(DECISIONS["decisions"][0], jurisdiction_external_id="no-such-place")
    write_json(pilot.resolve(pilot.paths.decisions_json), {"decisions": [decision]})
    with pytest.raises(MissingReferenceError):
        run_accountability(session, pilot)
    assert count(session, DecisionEvent) == 0


def test_vote_cast_needs_one_voter(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    write_json(pilot.resolve(pilot.paths.decisions_json), with_cast({"vote_value": "yes"}))
    with pytest.raises(MalformedInputError):
        run_accountability(session, pilot)
    assert count(session, Person) == 0


def test_self_parent_in_boundary_file(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    path = pilot.resolve(pilot.paths.jurisdictions_geojson)
    write_json(path, {"type": "FeatureCollection", "features": [{
        "type": "Feature",
        "properties": {"jurisdiction_type": "city", "name": "Loop", "external_id": "1",
                       "parent_external_id": "1"},
        "geometry": None,
    }]})
    with pytest.raises(SelfParentError):
        run_jurisdictions(session, pilot)
    assert count(session, Jurisdiction) == 0


def test_not_a_feature_collection(session, pilot):
    write_json(pilot.resolve(pilot.paths.jurisdictions_geojson), {"type": "Feature"})
    with pytest.raises(MalformedInputError):
        run_jurisdictions(session, pilot)


# =============================================================================
# Optional inputs
# =============================================================================


def test_missing_signals_file_is_skipped(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    pilot.resolve(pilot.paths.policy_signals_json).unlink()

    stats = run_accountability(session, pilot)
    assert "policy_signal" not in stats.counts
    assert stats.warnings
    assert count(session, Person) == 1


def test_missing_decisions_file_is_skipped(session, pilot):
    run_geos(session, pilot, skip_tiger=True)
    run_jurisdictions(session, pilot)
    pilot.resolve(pilot.paths.decisions_json).unlink()

    stats = run_accountability(session, pilot)
    assert "decision_event" not in stats.counts
    assert any("decisions skipped" in w for w in stats.warnings)
    assert count(session, PolicySignal) == 1


def test_missing_custom_geo_units_is_skipped(session, pilot):
    pilot.resolve(pilot.paths.custom_geo_units_geojson).unlink()
    [stats] = run_geos(session, pilot, skip_tiger=True)
    assert stats.status == "skipped"
    assert count(session, GeoUnit) == 0


def test_tiger_layer_from_cache(session, pilot, tmp_path):
    url = pilot.tiger.tracts_url
    zip_path, _unzip_dir = tiger_cache_paths(pilot, url, "tracts")
    build_dir = tmp_path / "build"
    build_dir.mkdir()
    shp = write_tracts(build_dir / "tl_2023_27_tract")
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(zip_path, "w") as archive:
        for suffix in (".shp", ".shx", ".dbf"):
            part = shp.with_suffix(suffix)
            archive.write(part, part.name)

    stats = ingest_tiger_geo_units(
        session, pilot, url=url, geo_unit_type=GeoUnitType.TRACT, label="tracts"
    )
    assert stats.records_processed == 4
    assert stats.records_written == 2
    assert stats.records_skipped == 2

    tract = session.query(GeoUnit).filter_by(geoid="27053000101").one()
    assert tract.geo_unit_type == GeoUnitType.TRACT
    assert tract.state_code == "MN"
    assert tract.county_fips == "053"
    assert tract.name == "Census Tract 1.01"
    assert tract.source_doc.url == url
    assert tract.source_doc.is_demo is False
