"""Pydantic models for raw pilot inputs → normalized records.

These models encode the validation and normalization rules applied to stub
CSV / JSON / GeoJSON files before anything is written to the fact store.

Schema Engineering Philosophy:
- Required identity fields (keys, names, types) are strict: a missing one is a
  MalformedInputError and fails the pipeline before any writes
- Numeric and optional date cells are tolerant: unparseable values become None
- Field(description=...) documents where each value comes from
"""

import math
from datetime import date
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import MalformedInputError
from .schemas import (
    DecisionEventType,
    GeoUnitType,
    ImpactDirection,
    JurisdictionType,
    PolicySignalStatus,
    TaxType,
    VoteRecordType,
    VoteValue,
)


# =============================================================================
# State Code Normalization
# =============================================================================

# Census state FIPS → USPS code
STATE_CODES_BY_FIPS = {
    "01": "AL", "02": "AK", "04": "AZ", "05": "AR", "06": "CA",
    "08": "CO", "09": "CT", "10": "DE", "11": "DC", "12": "FL",
    "13": "GA", "15": "HI", "16": "ID", "17": "IL", "18": "IN",
    "19": "IA", "20": "KS", "21": "KY", "22": "LA", "23": "ME",
    "24": "MD", "25": "MA", "26": "MI", "27": "MN", "28": "MS",
    "29": "MO", "30": "MT", "31": "NE", "32": "NV", "33": "NH",
    "34": "NJ", "35": "NM", "36": "NY", "37": "NC", "38": "ND",
    "39": "OH", "40": "OK", "41": "OR", "42": "PA", "44": "RI",
    "45": "SC", "46": "SD", "47": "TN", "48": "TX", "49": "UT",
    "50": "VT", "51": "VA", "53": "WA", "54": "WV", "55": "WI",
    "56": "WY", "60": "AS", "66": "GU", "69": "MP", "72": "PR",
    "78": "VI",
}


def state_code_from_fips(state_fips: str | None) -> str:
    """USPS code for a 2-digit state FIPS. Unknown codes are malformed input."""
    clean = (state_fips or "").strip().zfill(2)
    code = STATE_CODES_BY_FIPS.get(clean)
    if code is None:
        raise MalformedInputError(f"Unknown state FIPS code: {state_fips!r}")
    return code


def normalize_state(raw_state: str | None) -> str | None:
    if raw_state is None:
        return None
    clean = str(raw_state).strip().upper()
    return clean or None


# =============================================================================
# Tolerant cell parsing
# =============================================================================


def _blank(v) -> bool:
    return v is None or (isinstance(v, str) and not v.strip())


def to_nullable_number(v) -> float | None:
    """Parse a numeric cell; blanks and garbage become None."""
    if _blank(v) or isinstance(v, bool):
        return None
    try:
        n = float(str(v).strip()) if not isinstance(v, (int, float)) else float(v)
    except ValueError:
        return None
    return n if math.isfinite(n) else None


def to_nullable_int(v) -> int | None:
    """Parse an integer cell. "2023.0" is accepted; "12abc" is None."""
    n = to_nullable_number(v)
    if n is None or n != int(n):
        return None
    return int(n)


def to_nullable_date(v) -> date | None:
    if _blank(v):
        return None
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v).strip()[:10])
    except ValueError:
        return None


def to_required_date(v) -> date:
    parsed = to_nullable_date(v)
    if parsed is None:
        raise ValueError(f"expected an ISO date (YYYY-MM-DD), got {v!r}")
    return parsed


def to_nullable_text(v) -> str | None:
    if _blank(v):
        return None
    return str(v).strip()


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_record(model: type[ModelT], data: Any, context: str) -> ModelT:
    """Validate one raw record, reporting failures as MalformedInputError."""
    if not isinstance(data, dict):
        raise MalformedInputError(f"Expected an object in {context}, got {type(data).__name__}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise MalformedInputError(f"Invalid record in {context}: {problems}") from e


class _Record(BaseModel):
    """Strips surrounding whitespace from every string value."""

    @model_validator(mode="before")
    @classmethod
    def strip_strings(cls, data):
        if isinstance(data, dict):
            return {k: v.strip() if isinstance(v, str) else v for k, v in data.items()}
        return data


# =============================================================================
# Geographies
# =============================================================================


class CustomGeoUnitProperties(_Record):
    """Properties of a pilot custom geo unit (city, neighborhood, zip) feature."""

    geo_unit_type: GeoUnitType
    geoid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    county_fips: str | None = Field(
        default=None,
        description="3-digit county FIPS, when the unit lies in a single county"
    )

    @field_validator("geoid", "county_fips", mode="before")
    @classmethod
    def coerce_code(cls, v):
        """GeoJSON often carries codes as numbers."""
        return v if v is None else str(v).strip()


class JurisdictionFeatureProperties(_Record):
    """Properties of a jurisdiction boundary feature."""

    jurisdiction_type: JurisdictionType
    name: str = Field(min_length=1)
    state_code: str | None = Field(default=None, description="Defaults to the pilot state")
    external_id: str = Field(min_length=1, description="Stable id from the publishing source")
    parent_external_id: str | None = Field(
        default=None,
        description="external_id of the parent jurisdiction in the same file"
    )

    @field_validator("external_id", "parent_external_id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return to_nullable_text(v)

    @field_validator("state_code", mode="before")
    @classmethod
    def upper_state(cls, v):
        return normalize_state(v)


# =============================================================================
# Aliases
# =============================================================================


class AliasText(_Record):
    text: str = Field(min_length=1)
    rank: int = Field(default=0, ge=0)
    preferred: bool = False


class AliasEntry(_Record):
    geo_unit_type: GeoUnitType
    geoid: str = Field(min_length=1)
    alias_kind: str = "name"
    aliases: list[AliasText]

    @field_validator("aliases", mode="before")
    @classmethod
    def expand_plain_strings(cls, v):
        """Bare strings are shorthand for {"text": ..., "rank": 0}."""
        if not isinstance(v, list):
            return v
        return [{"text": a} if isinstance(a, str) else a for a in v]


class AliasSeed(_Record):
    state_code: str | None = None
    entries: list[AliasEntry]

    @field_validator("state_code", mode="before")
    @classmethod
    def upper_state(cls, v):
        return normalize_state(v)


# =============================================================================
# Taxes
# =============================================================================


class PropertyTaxCsvRow(_Record):
    """One row of property_tax_context.csv (allocated per geo unit and tax year)."""

    tax_year: int | None = Field(description="Required; a row without one fails the pipeline")
    geo_unit_type: GeoUnitType
    geo_unit_geoid: str = Field(min_length=1)
    jurisdiction_external_id: str = Field(min_length=1)
    instrument_name: str = Field(min_length=1)
    levy_amount: float | None = None
    taxable_value_amount: float | None = None
    tax_capacity_amount: float | None = None
    median_bill_amount: float | None = None
    bill_p25_amount: float | None = None
    bill_p75_amount: float | None = None
    parcel_count: int | None = None
    household_count: int | None = None
    effective_rate: float | None = Field(
        default=None,
        description="Effective property tax rate (percent) for the geo unit and year"
    )
    notes: str | None = None

    @field_validator("tax_year", "parcel_count", "household_count", mode="before")
    @classmethod
    def tolerant_int(cls, v):
        return to_nullable_int(v)

    @field_validator(
        "levy_amount", "taxable_value_amount", "tax_capacity_amount",
        "median_bill_amount", "bill_p25_amount", "bill_p75_amount", "effective_rate",
        mode="before",
    )
    @classmethod
    def tolerant_number(cls, v):
        return to_nullable_number(v)

    @field_validator("notes", mode="before")
    @classmethod
    def blank_notes(cls, v):
        return to_nullable_text(v)


class SalesTaxCsvRow(_Record):
    """One row of sales_tax_rates.csv: a dated rate for one instrument."""

    jurisdiction_external_id: str = Field(min_length=1)
    instrument_name: str = Field(min_length=1)
    effective_date: date
    end_date: date | None = None
    tax_year: int | None = None
    rate_value: float | None = Field(description="Percent; None when the cell is unparseable")
    rate_unit: str = Field(default="percent", min_length=1)
    notes: str | None = None

    @field_validator("effective_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)

    @field_validator("end_date", mode="before")
    @classmethod
    def tolerant_date(cls, v):
        return to_nullable_date(v)

    @field_validator("tax_year", mode="before")
    @classmethod
    def tolerant_int(cls, v):
        return to_nullable_int(v)

    @field_validator("rate_value", mode="before")
    @classmethod
    def tolerant_number(cls, v):
        return to_nullable_number(v)

    @field_validator("rate_unit", mode="before")
    @classmethod
    def default_unit(cls, v):
        return to_nullable_text(v) or "percent"

    @field_validator("notes", mode="before")
    @classmethod
    def blank_notes(cls, v):
        return to_nullable_text(v)


class IncomeTaxJson(_Record):
    """State income tax brackets for one tax year."""

    jurisdiction_external_id: str = Field(min_length=1)
    instrument_name: str = Field(min_length=1)
    effective_date: date
    tax_year: int | None = None
    rate_unit: str = Field(default="percent", min_length=1)
    rate_brackets: list | dict = Field(description="Bracket structure, stored as-is")
    notes: str | None = None

    @field_validator("effective_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)

    @field_validator("tax_year", mode="before")
    @classmethod
    def tolerant_int(cls, v):
        return to_nullable_int(v)


# =============================================================================
# Accountability
# =============================================================================


class PersonRecord(_Record):
    person_key: str = Field(min_length=1)
    full_name: str = Field(min_length=1)
    given_name: str | None = None
    family_name: str | None = None
    email: str | None = None
    external_ids: dict = Field(default_factory=dict)


class OfficeRecord(_Record):
    office_key: str = Field(min_length=1)
    jurisdiction_external_id: str = Field(min_length=1)
    office_name: str = Field(min_length=1)
    office_category: str | None = None
    district_geo_unit_type: GeoUnitType | None = None
    district_geo_unit_geoid: str | None = None
    seats_count: int = Field(default=1, ge=1)

    @field_validator("seats_count", mode="before")
    @classmethod
    def default_seats(cls, v):
        parsed = to_nullable_int(v)
        return 1 if parsed is None else parsed


class TermRecord(_Record):
    person_key: str = Field(min_length=1)
    office_key: str = Field(min_length=1)
    start_date: date
    end_date: date | None = None
    elected_date: date | None = None
    party: str | None = None
    metadata: dict = Field(default_factory=dict)

    @field_validator("start_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)

    @field_validator("end_date", "elected_date", mode="before")
    @classmethod
    def tolerant_date(cls, v):
        return to_nullable_date(v)


class OfficialsJson(_Record):
    persons: list[PersonRecord] = Field(default_factory=list)
    offices: list[OfficeRecord] = Field(default_factory=list)
    terms: list[TermRecord] = Field(default_factory=list)


class SignalInstrumentRef(_Record):
    jurisdiction_external_id: str = Field(min_length=1)
    tax_type: TaxType
    instrument_name: str = Field(min_length=1)


class PolicySignalRecord(_Record):
    signal_key: str = Field(min_length=1)
    jurisdiction_external_id: str = Field(min_length=1)
    tax_type: TaxType | None = None
    tax_instrument: SignalInstrumentRef | None = None
    status: PolicySignalStatus = PolicySignalStatus.UNKNOWN
    signal_date: date
    title: str = Field(min_length=1)
    summary: str | None = None
    details: dict = Field(default_factory=dict)

    @field_validator("signal_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)


class PolicySignalsJson(_Record):
    signals: list[PolicySignalRecord] = Field(default_factory=list)


class DecisionImpactRecord(_Record):
    jurisdiction_external_id: str = Field(min_length=1)
    tax_type: TaxType
    instrument_name: str = Field(min_length=1)
    impact_direction: ImpactDirection
    tax_year: int | None = None
    delta_rate_value: float | None = None
    delta_revenue_amount: float | None = None
    delta_description: str | None = None
    metadata: dict = Field(default_factory=dict)

    @field_validator("tax_year", mode="before")
    @classmethod
    def tolerant_year(cls, v):
        return to_nullable_int(v)

    @field_validator("delta_rate_value", "delta_revenue_amount", mode="before")
    @classmethod
    def tolerant_number(cls, v):
        return to_nullable_number(v)

    @model_validator(mode="after")
    def has_delta(self):
        if self.delta_rate_value is None and self.delta_revenue_amount is None and not self.delta_description:
            raise ValueError("impact needs delta_rate_value, delta_revenue_amount or delta_description")
        return self


class VoteCastRecord(_Record):
    """An official's vote (person_key) or a ballot tally for one geo unit."""

    vote_value: VoteValue
    person_key: str | None = None
    geo_unit_type: GeoUnitType | None = None
    geo_unit_geoid: str | None = None
    weight: float = Field(default=1, gt=0)
    notes: str | None = None

    @model_validator(mode="after")
    def one_voter(self):
        by_geo_unit = bool(self.geo_unit_type and self.geo_unit_geoid)
        if bool(self.person_key) == by_geo_unit:
            raise ValueError("vote cast needs either person_key or geo_unit_type + geo_unit_geoid")
        return self


class VoteCounts(_Record):
    yes: int | None = Field(default=None, ge=0)
    no: int | None = Field(default=None, ge=0)
    abstain: int | None = Field(default=None, ge=0)
    absent: int | None = Field(default=None, ge=0)


class DecisionVoteRecord(_Record):
    vote_type: VoteRecordType
    vote_date: date
    question: str | None = None
    passed: bool | None = None
    counts: VoteCounts = Field(default_factory=VoteCounts)
    casts: list[VoteCastRecord] = Field(default_factory=list)

    @field_validator("vote_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)


class DecisionRecord(_Record):
    decision_key: str = Field(min_length=1)
    jurisdiction_external_id: str = Field(min_length=1)
    event_type: DecisionEventType
    event_date: date
    effective_date: date | None = None
    title: str = Field(min_length=1)
    summary: str | None = None
    details: dict = Field(default_factory=dict)
    impacts: list[DecisionImpactRecord] = Field(default_factory=list)
    votes: list[DecisionVoteRecord] = Field(default_factory=list)

    @field_validator("event_date", mode="before")
    @classmethod
    def strict_date(cls, v):
        return to_required_date(v)

    @field_validator("effective_date", mode="before")
    @classmethod
    def tolerant_date(cls, v):
        return to_nullable_date(v)

    @model_validator(mode="after")
    def effective_not_before_event(self):
        if self.effective_date is not None and self.effective_date < self.event_date:
            raise ValueError(f"effective_date {self.effective_date} is before event_date {self.event_date}")
        return self


class DecisionsJson(_Record):
    decisions: list[DecisionRecord] = Field(default_factory=list)


# =============================================================================
# Pipeline Statistics
# =============================================================================


class PipelineStats(BaseModel):
    """Counters from one pipeline run."""

    pipeline: str = Field(description="Pipeline name (geos, jurisdictions, taxes, ...)")
    status: Literal["ok", "failed", "skipped"] = "ok"
    records_processed: int = 0
    records_written: int = 0
    records_skipped: int = 0
    counts: dict[str, int] = Field(
        default_factory=dict,
        description="Per-entity write counts, e.g. {'jurisdiction': 4, 'geo_unit_jurisdiction': 120}"
    )
    warnings: list[str] = Field(default_factory=list)

    def bump(self, key: str, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n
        self.records_written += n

    @property
    def success_rate(self) -> float:
        if self.records_processed == 0:
            return 0.0
        return (self.records_processed - self.records_skipped) / self.records_processed
