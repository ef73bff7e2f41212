"""Tests for input record parsing and tolerance rules."""

from datetime import date

import pytest

from taxatlas.exceptions import MalformedInputError
from taxatlas.schemas import GeoUnitType, PolicySignalStatus, VoteValue
from taxatlas.transformations import (
    AliasSeed,
    CustomGeoUnitProperties,
    DecisionsJson,
    JurisdictionFeatureProperties,
    OfficialsJson,
    PipelineStats,
    PolicySignalsJson,
    PropertyTaxCsvRow,
    SalesTaxCsvRow,
    normalize_state,
    parse_record,
    state_code_from_fips,
    to_nullable_date,
    to_nullable_int,
    to_nullable_number,
)


class TestCellParsing:
    @pytest.mark.parametrize("raw,expected", [
        ("6.875", 6.875), (" 0.15 ", 0.15), (7, 7.0), ("", None), (None, None),
        ("n/a", None), ("nan", None), ("inf", None), (True, None),
    ])
    def test_number(self, raw, expected):
        assert to_nullable_number(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("2023", 2023), ("2023.0", 2023), ("2023.5", None), ("12abc", None), ("", None),
    ])
    def test_int(self, raw, expected):
        assert to_nullable_int(raw) == expected

    def test_date(self):
        assert to_nullable_date("2024-01-01") == date(2024, 1, 1)
        assert to_nullable_date("2024-01-01T00:00:00Z") == date(2024, 1, 1)
        assert to_nullable_date("01/02/2024") is None
        assert to_nullable_date("") is None


def test_state_codes():
    assert state_code_from_fips("27") == "MN"
    assert state_code_from_fips("6") == "CA"
    with pytest.raises(MalformedInputError):
        state_code_from_fips("99")
    assert normalize_state(" mn ") == "MN"
    assert normalize_state("  ") is None


def test_parse_record_reports_context():
    with pytest.raises(MalformedInputError) as excinfo:
        parse_record(CustomGeoUnitProperties, {"geo_unit_type": "zip"}, "custom.geojson feature #3")
    assert "custom.geojson feature #3" in str(excinfo.value)
    assert "geoid" in str(excinfo.value)


def test_parse_record_rejects_non_objects():
    with pytest.raises(MalformedInputError):
        parse_record(CustomGeoUnitProperties, ["zip"], "ctx")


def test_custom_geo_unit_coerces_numeric_codes():
    props = parse_record(
        CustomGeoUnitProperties, {"geo_unit_type": "zip", "geoid": 55401, "name": " ZIP 55401 "}, "ctx"
    )
    assert props.geoid == "55401"
    assert props.name == "ZIP 55401"
    assert props.geo_unit_type == GeoUnitType.ZIP


def test_jurisdiction_properties():
    props = parse_record(JurisdictionFeatureProperties, {
        "jurisdiction_type": "county", "name": "Hennepin County", "external_id": 27053,
        "state_code": "mn", "parent_external_id": "",
    }, "ctx")
    assert props.external_id == "27053"
    assert props.state_code == "MN"
    assert props.parent_external_id is None

    with pytest.raises(MalformedInputError):
        parse_record(JurisdictionFeatureProperties, {
            "jurisdiction_type": "galaxy", "name": "x", "external_id": "1",
        }, "ctx")


def test_alias_seed_expands_plain_strings():
    seed = parse_record(AliasSeed, {
        "state_code": "mn",
        "entries": [{"geo_unit_type": "zip", "geoid": "55401", "aliases": ["55401", {"text": "DT", "rank": 2}]}],
    }, "ctx")
    [entry] = seed.entries
    assert seed.state_code == "MN"
    assert [(a.text, a.rank) for a in entry.aliases] == [("55401", 0), ("DT", 2)]


class TestPropertyTaxRow:
    def row(self, **overrides):
        data = {
            "tax_year": "2023", "geo_unit_type": "zip", "geo_unit_geoid": "55401",
            "jurisdiction_external_id": "2743000", "instrument_name": "Levy",
            "levy_amount": "1,000", "parcel_count": "812", "household_count": "",
            "effective_rate": "1.27", "notes": "  ",
        }
        data.update(overrides)
        return parse_record(PropertyTaxCsvRow, data, "ctx")

    def test_tolerant_cells(self):
        row = self.row()
        assert row.tax_year == 2023
        assert row.levy_amount is None
        assert row.parcel_count == 812
        assert row.household_count is None
        assert row.effective_rate == 1.27
        assert row.notes is None

    def test_bad_tax_year_becomes_none(self):
        assert self.row(tax_year="twenty").tax_year is None

    def test_missing_identity_is_malformed(self):
        with pytest.raises(MalformedInputError):
            self.row(geo_unit_geoid="")


class TestSalesTaxRow:
    def row(self, **overrides):
        data = {
            "jurisdiction_external_id": "27", "instrument_name": "Minnesota sales tax",
            "effective_date": "2009-07-01", "end_date": "", "tax_year": "",
            "rate_value": "6.875", "rate_unit": "", "notes": "",
        }
        data.update(overrides)
        return parse_record(SalesTaxCsvRow, data, "ctx")

    def test_defaults(self):
        row = self.row()
        assert row.effective_date == date(2009, 7, 1)
        assert row.end_date is None
        assert row.rate_value == 6.875
        assert row.rate_unit == "percent"

    def test_unparseable_rate_is_none(self):
        assert self.row(rate_value="TBD").rate_value is None

    def test_effective_date_is_strict(self):
        with pytest.raises(MalformedInputError):
            self.row(effective_date="soon")

    def test_bad_end_date_is_none(self):
        assert self.row(end_date="someday").end_date is None


def test_officials_and_signals():
    officials = parse_record(OfficialsJson, {
        "persons": [{"person_key": "p1", "full_name": "Pat"}],
        "offices": [{"office_key": "mayor", "jurisdiction_external_id": "2743000",
                     "office_name": "Mayor", "seats_count": ""}],
        "terms": [{"person_key": "p1", "office_key": "mayor", "start_date": "2022-01-03",
                   "end_date": "bad"}],
    }, "ctx")
    assert officials.offices[0].seats_count == 1
    assert officials.terms[0].end_date is None

    signals = parse_record(PolicySignalsJson, {
        "signals": [{"signal_key": "s1", "jurisdiction_external_id": "27",
                     "signal_date": "2024-05-01", "title": "Proposal"}],
    }, "ctx")
    assert signals.signals[0].status == PolicySignalStatus.UNKNOWN


class TestDecisions:
    def decision(self, **overrides):
        raw = {
            "decision_key": "d1", "jurisdiction_external_id": "2743000", "event_type": "levy",
            "event_date": "2023-12-06", "title": "Adopt levy",
            "impacts": [{"jurisdiction_external_id": "2743000", "tax_type": "property",
                         "instrument_name": "City levy", "impact_direction": "increase",
                         "tax_year": "2024", "delta_revenue_amount": "1,000"}],
        }
        raw.update(overrides)
        return parse_record(DecisionsJson, {"decisions": [raw]}, "ctx").decisions[0]

    def test_impact_needs_some_delta(self):
        # "1,000" is unparseable, so no delta is left
        with pytest.raises(MalformedInputError, match="delta"):
            self.decision()

    def test_tolerant_impact_cells(self):
        impact = {"jurisdiction_external_id": "2743000", "tax_type": "property",
                  "instrument_name": "City levy", "impact_direction": "increase",
                  "tax_year": "n/a", "delta_description": "Levy up 6%"}
        decision = self.decision(impacts=[impact], effective_date="soon")
        assert decision.impacts[0].tax_year is None
        assert decision.effective_date is None

    def test_effective_date_not_before_event(self):
        with pytest.raises(MalformedInputError, match="effective_date"):
            self.decision(impacts=[], effective_date="2023-01-01")

    def test_cast_voter_is_person_or_geo_unit(self):
        person = {"vote_type": "roll_call", "vote_date": "2023-12-06",
                  "casts": [{"person_key": "p1", "vote_value": "yes"}]}
        decision = self.decision(impacts=[], votes=[person])
        assert decision.votes[0].casts[0].vote_value == VoteValue.YES
        assert decision.votes[0].casts[0].weight == 1

        both = {"vote_type": "roll_call", "vote_date": "2023-12-06",
                "casts": [{"person_key": "p1", "geo_unit_type": "zip", "geo_unit_geoid": "55401",
                           "vote_value": "yes"}]}
        with pytest.raises(MalformedInputError):
            self.decision(impacts=[], votes=[both])


def test_pipeline_stats():
    stats = PipelineStats(pipeline="taxes", records_processed=4, records_skipped=1)
    stats.bump("tax_rate_snapshot", 3)
    stats.bump("tax_rate_snapshot")
    assert stats.counts == {"tax_rate_snapshot": 4}
    assert stats.records_written == 4
    assert stats.success_rate == 0.75
    assert PipelineStats(pipeline="empty").success_rate == 0.0
