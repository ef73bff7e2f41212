"""Enumerations and response schemas for TaxAtlas.

Schema Engineering Philosophy:
- Enums are the canonical value sets shared by ORM tables, input parsing and queries
- Every numeric value leaving the query surface carries a SourceReference and a DataKind;
  the UI's trust indicators depend on this contract
- Field descriptions document how each number was produced
"""

from datetime import date, datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class DataKind(str, Enum):
    """Trust classification attached to every number."""

    FACT = "fact"
    """Taken from an authoritative published source without modification."""

    ESTIMATE = "estimate"
    """Computed or allocated from facts (overlay ratios, blended rates, burdens)."""

    SIGNAL = "signal"
    """Proposed or pending policy that is not enacted."""


class GeoUnitType(str, Enum):
    """Kinds of atomic, queryable geographies."""

    TRACT = "tract"
    BLOCK_GROUP = "block_group"
    ZIP = "zip"
    NEIGHBORHOOD = "neighborhood"
    CITY = "city"
    COUNTY = "county"
    STATE = "state"
    CUSTOM = "custom"


# Geo unit types the spatial overlay attributes to jurisdictions.
OVERLAY_GEO_UNIT_TYPES = (
    GeoUnitType.TRACT,
    GeoUnitType.BLOCK_GROUP,
    GeoUnitType.ZIP,
    GeoUnitType.NEIGHBORHOOD,
    GeoUnitType.CITY,
    GeoUnitType.CUSTOM,
)


class JurisdictionType(str, Enum):
    """Taxing authorities."""

    STATE = "state"
    COUNTY = "county"
    CITY = "city"
    SCHOOL = "school"
    """Independent school district with its own levy."""

    SPECIAL = "special"
    """Special taxing district (parks, transit, watershed, ...)."""

    FEDERAL = "federal"
    OTHER = "other"


class TaxType(str, Enum):
    """Tax categories, in display order."""

    PROPERTY = "property"
    SALES = "sales"
    INCOME = "income"
    PAYROLL = "payroll"
    CORPORATE = "corporate"
    EXCISE = "excise"
    LODGING = "lodging"
    UTILITY = "utility"
    OTHER = "other"


TAX_TYPE_DISPLAY_NAMES = {
    TaxType.PROPERTY: "Property Tax",
    TaxType.SALES: "Sales Tax",
    TaxType.INCOME: "Income Tax",
    TaxType.PAYROLL: "Payroll Tax",
    TaxType.CORPORATE: "Corporate Tax",
    TaxType.EXCISE: "Excise Tax",
    TaxType.LODGING: "Lodging Tax",
    TaxType.UTILITY: "Utility Tax",
    TaxType.OTHER: "Other Taxes",
}

TAX_TYPE_ORDER = list(TaxType)


class PolicySignalStatus(str, Enum):
    PROPOSED = "proposed"
    PENDING = "pending"
    ENACTED = "enacted"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class DecisionEventType(str, Enum):
    BUDGET = "budget"
    LEVY = "levy"
    RATE_CHANGE = "rate_change"
    REFERENDUM = "referendum"
    STATUTE = "statute"
    ORDINANCE = "ordinance"
    OTHER = "other"


class ImpactDirection(str, Enum):
    """How a decision moved a tax instrument."""

    INCREASE = "increase"
    DECREASE = "decrease"
    NO_CHANGE = "no_change"
    RESTRUCTURE = "restructure"
    UNKNOWN = "unknown"


class VoteRecordType(str, Enum):
    ROLL_CALL = "roll_call"
    BALLOT_MEASURE = "ballot_measure"
    REFERENDUM = "referendum"
    OTHER = "other"


class VoteValue(str, Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"
    ABSENT = "absent"
    PRESENT = "present"
    OTHER = "other"


# =============================================================================
# QUERY SURFACE: response models
# =============================================================================


class SourceReference(BaseModel):
    """Audit trail from a number back to the exact bytes it came from."""

    model_config = ConfigDict(frozen=True)

    source_id: UUID
    url: str
    title: str | None = None
    retrieved_at: datetime | None = None
    published_at: date | None = None
    is_demo: bool = False


class JurisdictionCoverage(BaseModel):
    """One overlay edge: how much of the geo unit lies inside a jurisdiction."""

    jurisdiction_id: UUID
    jurisdiction_type: JurisdictionType
    jurisdiction_name: str
    external_id: str | None = None
    parent_jurisdiction_id: UUID | None = None
    coverage_ratio: float = Field(
        ge=0, le=1,
        description="Fraction of the geo unit's area inside the jurisdiction"
    )
    coverage_area_m2: float | None = Field(
        default=None,
        description="Geodesic area of the intersection in square meters"
    )
    data_type: DataKind = DataKind.ESTIMATE
    source: SourceReference


class PlaceJurisdictionsResponse(BaseModel):
    geo_unit_id: UUID
    name: str
    is_demo: bool
    methodology_version: str
    jurisdictions: list[JurisdictionCoverage] = Field(default_factory=list)


class TaxRateDataPoint(BaseModel):
    """A single rate snapshot in a jurisdiction's time series."""

    year: int
    effective_date: date
    end_date: date | None = None
    rate_value: float | None = None
    rate_brackets: list | dict | None = None
    rate_unit: str = "percent"
    data_type: DataKind
    source: SourceReference


class JurisdictionTaxDetail(BaseModel):
    """One jurisdiction's instrument for a tax type, with its selected current rate."""

    jurisdiction_id: UUID
    jurisdiction_type: JurisdictionType
    jurisdiction_name: str
    instrument_id: UUID
    instrument_name: str
    coverage_ratio: float
    current_rate: float | None = None
    weighted_rate: float | None = Field(
        default=None,
        description="current_rate * coverage_ratio; None when the instrument does not contribute"
    )
    contributes: bool = Field(
        default=True,
        description="False when another instrument of the same jurisdiction and tax type won the tie-break"
    )
    rate_unit: str = "percent"
    data_type: DataKind | None = None
    source: SourceReference | None = None
    note: str | None = None
    time_series: list[TaxRateDataPoint] = Field(default_factory=list)


class PropertyTaxContext(BaseModel):
    tax_year: int
    levy_amount: float | None = None
    taxable_value_amount: float | None = None
    median_bill_amount: float | None = None
    bill_p25_amount: float | None = None
    bill_p75_amount: float | None = None
    parcel_count: int | None = None
    household_count: int | None = None
    data_type: DataKind
    source: SourceReference


class TrendPoint(BaseModel):
    """Blended total for one year, built from the snapshots applicable that year."""

    year: int
    total_rate: float
    data_type: Literal[DataKind.ESTIMATE] = DataKind.ESTIMATE
    sources: list[SourceReference] = Field(
        default_factory=list,
        description="Source documents of every rate snapshot summed into total_rate"
    )


class BlendedRate(BaseModel):
    """Coverage-weighted combination of every applicable jurisdiction's rate."""

    geo_unit_id: UUID
    tax_type: TaxType
    total_rate: float | None = Field(
        description="Sum of rate * coverage_ratio over contributing instruments"
    )
    rate_unit: str = "percent"
    data_type: Literal[DataKind.ESTIMATE] = DataKind.ESTIMATE
    contributions: list[JurisdictionTaxDetail] = Field(default_factory=list)


class TaxCategoryDetail(BaseModel):
    tax_type: TaxType
    display_name: str
    total_rate: float | None
    rate_unit: str = "percent"
    data_type: Literal[DataKind.ESTIMATE] = DataKind.ESTIMATE
    jurisdictions: list[JurisdictionTaxDetail] = Field(default_factory=list)
    property_context: list[PropertyTaxContext] | None = None
    trend_data: list[TrendPoint] = Field(default_factory=list)
    change_percent: float | None = None
    change_direction: Literal["up", "down", "stable"] | None = None


class TaxesResponse(BaseModel):
    geo_unit_id: UUID
    name: str
    tax_year: int
    is_demo: bool
    methodology_version: str
    categories: list[TaxCategoryDetail] = Field(default_factory=list)


class PlaceMatch(BaseModel):
    geo_unit_id: UUID
    geo_unit_type: GeoUnitType
    geoid: str
    name: str
    state_code: str
    alias_text: str
    alias_kind: str
    alias_rank: int
    is_preferred: bool
    confidence: Literal["high", "medium", "low"] = Field(
        description="high: the whole alias matched; medium: alias starts with the query; low: substring"
    )
