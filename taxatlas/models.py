"""SQLAlchemy models for the TaxAtlas fact store.

Data Architecture Overview:
- SourceDoc is the ROOT of provenance: every fact row points at the exact bytes it came from
- MethodologyVersion tags derived rows; recomputation mints a new version instead of
  mutating an old one
- GeoUnit / Jurisdiction are canonical polygons (EPSG:4326; PostGIS geometry on PostgreSQL)
- GeoUnitJurisdiction is the overlay edge, keyed by (geo unit, jurisdiction, methodology)
- TaxInstrument / TaxRateSnapshot form a time series of rates per jurisdiction and tax type
- DecisionEvent / VoteRecord / VoteCast tie officials and ballots to the instruments they moved

Key Concepts:
- Identity: every primary key is a UUIDv5 of the entity kind and its natural key
  (see taxatlas.ids), so re-ingesting reproduces the same ids
- coverage_ratio: fraction of the GEO UNIT inside the jurisdiction, never the reverse
- Upserts converge: re-running a pipeline on unchanged input changes nothing
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .geometry import PolygonGeometry
from .schemas import (
    DataKind,
    DecisionEventType,
    GeoUnitType,
    ImpactDirection,
    JurisdictionType,
    PolicySignalStatus,
    TaxType,
    VoteRecordType,
    VoteValue,
)

# JSONB on PostgreSQL, plain JSON on SQLite (for tests)
FlexJSON = JSONB().with_variant(JSON(), "sqlite")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, name: str) -> SQLEnum:
    """Enum column storing the lowercase values rather than member names."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


TAX_TYPE_ENUM = _enum(TaxType, "taxatlas_tax_type")


# =============================================================================
# PROVENANCE + LINEAGE
# =============================================================================


class SourceDoc(Base):
    """A content-addressed source document.

    Identity is (url, content_sha256): one row per distinct byte content per
    origin. Metadata (title, dates, mime type) may be filled in later but is
    never overwritten once set.
    """

    __tablename__ = "source_doc"
    __table_args__ = (
        UniqueConstraint("url", "content_sha256", name="source_doc_url_sha256_key"),
        Index("source_doc_sha256_idx", "content_sha256"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    content_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    is_demo: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retrieved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    published_at: Mapped[date | None] = mapped_column(Date)
    title: Mapped[str | None] = mapped_column(Text)
    mime_type: Mapped[str | None] = mapped_column(String(100))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<SourceDoc {self.url} {self.content_sha256[:12]}>"


class MethodologyVersion(Base):
    """A named, versioned computation lineage.

    Never deleted. A changed computation is published under a new version
    string; rows under different versions are not comparable.
    """

    __tablename__ = "methodology_version"
    __table_args__ = (
        UniqueConstraint("name", "version", name="methodology_version_name_version_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    kind: Mapped[DataKind] = mapped_column(
        _enum(DataKind, "taxatlas_data_kind"), default=DataKind.ESTIMATE, nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def __repr__(self) -> str:
        return f"<MethodologyVersion {self.name}@{self.version} ({self.kind.value})>"


# =============================================================================
# CANONICAL GEOGRAPHIES
# =============================================================================


class GeoUnit(Base):
    """A census, administrative or custom area.

    Identity is (geo_unit_type, geoid). Geometry is not versioned: re-ingestion
    replaces it with the latest canonical shape.
    """

    __tablename__ = "geo_unit"
    __table_args__ = (
        UniqueConstraint("geo_unit_type", "geoid", name="geo_unit_type_geoid_key"),
        Index("geo_unit_state_type_idx", "state_code", "geo_unit_type"),
        Index("geo_unit_geom_gix", "geom", postgresql_using="gist").ddl_if(dialect="postgresql"),
        CheckConstraint("length(state_code) = 2", name="geo_unit_state_code_len"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    geo_unit_type: Mapped[GeoUnitType] = mapped_column(
        _enum(GeoUnitType, "taxatlas_geo_unit_type"), nullable=False
    )
    geoid: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), default="US", nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    state_fips: Mapped[str | None] = mapped_column(String(2))
    county_fips: Mapped[str | None] = mapped_column(String(3))
    geom = mapped_column("geom", PolygonGeometry, nullable=False)
    point_lat: Mapped[Decimal | None] = mapped_column(
        Numeric(9, 6),
        doc="Latitude of a point on the surface (centroid display)"
    )
    point_lng: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")
    aliases: Mapped[list["PlaceAlias"]] = relationship(
        "PlaceAlias", back_populates="geo_unit", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<GeoUnit {self.geo_unit_type.value}:{self.geoid} {self.name}>"


class PlaceAlias(Base):
    """User-searchable alias text (neighborhood name, ZIP, city) for a geo unit.

    alias_key is the case-folded alias text; identity is
    (alias_key, state_code, geo_unit_id, alias_kind).
    """

    __tablename__ = "place_alias"
    __table_args__ = (
        UniqueConstraint(
            "alias_key", "state_code", "geo_unit_id", "alias_kind",
            name="place_alias_identity_key",
        ),
        Index("place_alias_resolve_idx", "alias_key", "state_code", "alias_rank"),
        CheckConstraint("alias_rank >= 0", name="place_alias_rank_nonnegative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    alias_text: Mapped[str] = mapped_column(Text, nullable=False)
    alias_key: Mapped[str] = mapped_column(Text, nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    geo_unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("geo_unit.id", ondelete="CASCADE"), nullable=False
    )
    alias_kind: Mapped[str] = mapped_column(String(50), default="name", nullable=False)
    alias_rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_preferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    geo_unit: Mapped["GeoUnit"] = relationship("GeoUnit", back_populates="aliases")

    def __repr__(self) -> str:
        return f"<PlaceAlias {self.alias_text!r} → {self.geo_unit_id}>"


class Jurisdiction(Base):
    """A taxing authority, with optional boundary and parent.

    Identity is (jurisdiction_type, state_code, external_id). Geometry is null
    for authorities without a mapped boundary; those never appear in overlays.
    """

    __tablename__ = "jurisdiction"
    __table_args__ = (
        UniqueConstraint(
            "jurisdiction_type", "state_code", "external_id",
            name="jurisdiction_type_state_external_key",
        ),
        Index("jurisdiction_type_state_idx", "jurisdiction_type", "state_code"),
        Index(
            "jurisdiction_geom_gix", "geom",
            postgresql_using="gist", postgresql_where=text("geom IS NOT NULL"),
        ).ddl_if(dialect="postgresql"),
        CheckConstraint(
            "parent_jurisdiction_id IS NULL OR parent_jurisdiction_id <> id",
            name="jurisdiction_not_own_parent",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    jurisdiction_type: Mapped[JurisdictionType] = mapped_column(
        _enum(JurisdictionType, "taxatlas_jurisdiction_type"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), default="US", nullable=False)
    state_code: Mapped[str] = mapped_column(String(2), nullable=False)
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    parent_jurisdiction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id"), index=True
    )
    geom = mapped_column("geom", PolygonGeometry, nullable=True)
    point_lat: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    point_lng: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")
    parent: Mapped["Jurisdiction | None"] = relationship(
        "Jurisdiction", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Jurisdiction"]] = relationship(
        "Jurisdiction", back_populates="parent"
    )
    tax_instruments: Mapped[list["TaxInstrument"]] = relationship(
        "TaxInstrument", back_populates="jurisdiction"
    )

    def __repr__(self) -> str:
        return f"<Jurisdiction {self.jurisdiction_type.value}:{self.external_id} {self.name}>"


class GeoUnitJurisdiction(Base):
    """Overlay edge: fraction of a geo unit lying inside a jurisdiction.

    Keyed by (geo_unit_id, jurisdiction_id, methodology_version_id) so the
    same pair can carry independent computations under different versions.
    """

    __tablename__ = "geo_unit_jurisdiction"
    __table_args__ = (
        CheckConstraint(
            "coverage_ratio >= 0 AND coverage_ratio <= 1",
            name="geo_unit_jurisdiction_ratio_bounds",
        ),
        Index("geo_unit_jurisdiction_jurisdiction_idx", "jurisdiction_id", "geo_unit_id"),
        Index(
            "geo_unit_jurisdiction_geo_method_idx",
            "geo_unit_id", "methodology_version_id", "coverage_ratio",
        ),
    )

    geo_unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("geo_unit.id", ondelete="CASCADE"), primary_key=True
    )
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), primary_key=True
    )
    methodology_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("methodology_version.id"), primary_key=True
    )
    coverage_ratio: Mapped[Decimal] = mapped_column(Numeric(7, 6), nullable=False)
    coverage_area_m2: Mapped[float | None] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(Text)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    geo_unit: Mapped["GeoUnit"] = relationship("GeoUnit")
    jurisdiction: Mapped["Jurisdiction"] = relationship("Jurisdiction")
    methodology_version: Mapped["MethodologyVersion"] = relationship("MethodologyVersion")
    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")

    def __repr__(self) -> str:
        return f"<GeoUnitJurisdiction {self.geo_unit_id}→{self.jurisdiction_id} {self.coverage_ratio}>"


# =============================================================================
# TAX INSTRUMENTS + RATES
# =============================================================================


class TaxInstrument(Base):
    """A tax levied by a jurisdiction, e.g. "General sales tax"."""

    __tablename__ = "tax_instrument"
    __table_args__ = (
        UniqueConstraint(
            "jurisdiction_id", "tax_type", "name", name="tax_instrument_identity_key"
        ),
        Index("tax_instrument_jurisdiction_type_idx", "jurisdiction_id", "tax_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), nullable=False
    )
    tax_type: Mapped[TaxType] = mapped_column(TAX_TYPE_ENUM, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    jurisdiction: Mapped["Jurisdiction"] = relationship(
        "Jurisdiction", back_populates="tax_instruments"
    )
    rate_snapshots: Mapped[list["TaxRateSnapshot"]] = relationship(
        "TaxRateSnapshot", back_populates="instrument"
    )

    def __repr__(self) -> str:
        return f"<TaxInstrument {self.tax_type.value}: {self.name}>"


class TaxRateSnapshot(Base):
    """A point-in-time rate (or bracket structure) for an instrument.

    Identity is (tax_instrument_id, methodology_version_id, effective_date);
    successive snapshots form the instrument's time series.
    """

    __tablename__ = "tax_rate_snapshot"
    __table_args__ = (
        UniqueConstraint(
            "tax_instrument_id", "methodology_version_id", "effective_date",
            name="tax_rate_snapshot_identity_key",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date > effective_date",
            name="tax_rate_snapshot_end_after_start",
        ),
        CheckConstraint(
            "tax_year IS NULL OR (tax_year >= 1900 AND tax_year <= 2200)",
            name="tax_rate_snapshot_tax_year_range",
        ),
        CheckConstraint(
            "rate_value IS NOT NULL OR rate_brackets IS NOT NULL",
            name="tax_rate_snapshot_has_rate",
        ),
        Index("tax_rate_snapshot_instrument_effective_idx", "tax_instrument_id", "effective_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tax_instrument_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_instrument.id", ondelete="CASCADE"), nullable=False
    )
    methodology_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("methodology_version.id"), nullable=False
    )
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    tax_year: Mapped[int | None] = mapped_column(SmallInteger)
    rate_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    rate_unit: Mapped[str] = mapped_column(String(32), nullable=False)
    rate_brackets: Mapped[list | dict | None] = mapped_column(FlexJSON)
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    instrument: Mapped["TaxInstrument"] = relationship(
        "TaxInstrument", back_populates="rate_snapshots"
    )
    methodology_version: Mapped["MethodologyVersion"] = relationship("MethodologyVersion")
    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")

    def __repr__(self) -> str:
        return f"<TaxRateSnapshot {self.tax_instrument_id} {self.effective_date} {self.rate_value}>"


class PropertyTaxContextSnapshot(Base):
    """Property-tax context allocated to a geo unit for one tax year."""

    __tablename__ = "property_tax_context_snapshot"
    __table_args__ = (
        UniqueConstraint(
            "tax_instrument_id", "geo_unit_id", "methodology_version_id", "tax_year",
            name="property_tax_context_identity_key",
        ),
        CheckConstraint(
            "tax_year >= 1900 AND tax_year <= 2200", name="property_tax_context_tax_year_range"
        ),
        CheckConstraint(
            "parcel_count IS NULL OR parcel_count >= 0", name="property_tax_context_parcels"
        ),
        CheckConstraint(
            "household_count IS NULL OR household_count >= 0",
            name="property_tax_context_households",
        ),
        Index(
            "property_tax_context_geo_method_year_idx",
            "geo_unit_id", "methodology_version_id", "tax_year",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tax_instrument_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_instrument.id", ondelete="CASCADE"), nullable=False
    )
    geo_unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("geo_unit.id", ondelete="CASCADE"), nullable=False
    )
    methodology_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("methodology_version.id"), nullable=False
    )
    tax_year: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    levy_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    taxable_value_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    tax_capacity_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    median_bill_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    bill_p25_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    bill_p75_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    parcel_count: Mapped[int | None] = mapped_column(Integer)
    household_count: Mapped[int | None] = mapped_column(Integer)
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")
    methodology_version: Mapped["MethodologyVersion"] = relationship("MethodologyVersion")


# =============================================================================
# ACCOUNTABILITY
# =============================================================================


class Person(Base):
    """An official, keyed by [pilot_id, "person", person_key]."""

    __tablename__ = "person"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    person_key: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    given_name: Mapped[str | None] = mapped_column(Text)
    family_name: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(String(255))
    external_ids: Mapped[dict] = mapped_column(FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    terms: Mapped[list["Term"]] = relationship("Term", back_populates="person")

    def __repr__(self) -> str:
        return f"<Person {self.person_key}: {self.full_name}>"


class Office(Base):
    """A seat or body within a jurisdiction (e.g. "City Council Ward 3")."""

    __tablename__ = "office"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    office_key: Mapped[str] = mapped_column(Text, nullable=False)
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), nullable=False
    )
    office_name: Mapped[str] = mapped_column(Text, nullable=False)
    office_category: Mapped[str | None] = mapped_column(String(50))
    district_geo_unit_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("geo_unit.id")
    )
    seats_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    jurisdiction: Mapped["Jurisdiction"] = relationship("Jurisdiction")
    terms: Mapped[list["Term"]] = relationship("Term", back_populates="office")


class Term(Base):
    """A person holding an office over a date range."""

    __tablename__ = "term"
    __table_args__ = (
        CheckConstraint("end_date IS NULL OR end_date >= start_date", name="term_dates"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    person_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("person.id", ondelete="CASCADE"), nullable=False
    )
    office_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("office.id", ondelete="CASCADE"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    elected_date: Mapped[date | None] = mapped_column(Date)
    party: Mapped[str | None] = mapped_column(String(50))
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )

    person: Mapped["Person"] = relationship("Person", back_populates="terms")
    office: Mapped["Office"] = relationship("Office", back_populates="terms")


class PolicySignal(Base):
    """A proposed or pending policy change. Always classified as a signal."""

    __tablename__ = "policy_signal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    signal_key: Mapped[str] = mapped_column(Text, nullable=False)
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), nullable=False
    )
    tax_type: Mapped[TaxType | None] = mapped_column(TAX_TYPE_ENUM)
    tax_instrument_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("tax_instrument.id")
    )
    methodology_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("methodology_version.id"), nullable=False
    )
    status: Mapped[PolicySignalStatus] = mapped_column(
        _enum(PolicySignalStatus, "taxatlas_policy_signal_status"), nullable=False
    )
    signal_date: Mapped[date] = mapped_column(Date, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    jurisdiction: Mapped["Jurisdiction"] = relationship("Jurisdiction")
    tax_instrument: Mapped["TaxInstrument | None"] = relationship("TaxInstrument")
    methodology_version: Mapped["MethodologyVersion"] = relationship("MethodologyVersion")
    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")


class DecisionEvent(Base):
    """A budget, levy, rate change or referendum adopted by a jurisdiction."""

    __tablename__ = "decision_event"
    __table_args__ = (
        CheckConstraint(
            "effective_date IS NULL OR effective_date >= event_date", name="decision_event_dates"
        ),
        Index("decision_event_jurisdiction_date_idx", "jurisdiction_id", "event_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    decision_key: Mapped[str] = mapped_column(Text, nullable=False)
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[DecisionEventType] = mapped_column(
        _enum(DecisionEventType, "taxatlas_decision_event_type"), nullable=False, index=True
    )
    event_date: Mapped[date] = mapped_column(Date, nullable=False)
    effective_date: Mapped[date | None] = mapped_column(Date)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    jurisdiction: Mapped["Jurisdiction"] = relationship("Jurisdiction")
    source_doc: Mapped["SourceDoc"] = relationship("SourceDoc")
    impacts: Mapped[list["DecisionTaxImpact"]] = relationship(
        "DecisionTaxImpact", back_populates="decision_event"
    )
    votes: Mapped[list["VoteRecord"]] = relationship("VoteRecord", back_populates="decision_event")

    def __repr__(self) -> str:
        return f"<DecisionEvent {self.decision_key} {self.event_date}>"


class DecisionTaxImpact(Base):
    """What a decision did to one tax instrument. Recorded as a fact."""

    __tablename__ = "decision_tax_impact"
    __table_args__ = (
        UniqueConstraint(
            "decision_event_id", "tax_instrument_id", "methodology_version_id",
            name="decision_tax_impact_key",
        ),
        CheckConstraint(
            "delta_rate_value IS NOT NULL OR delta_revenue_amount IS NOT NULL "
            "OR delta_description IS NOT NULL",
            name="decision_tax_impact_has_delta",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    decision_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("decision_event.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tax_instrument_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_instrument.id", ondelete="CASCADE"), nullable=False, index=True
    )
    methodology_version_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("methodology_version.id"), nullable=False
    )
    impact_direction: Mapped[ImpactDirection] = mapped_column(
        _enum(ImpactDirection, "taxatlas_impact_direction"), nullable=False
    )
    tax_year: Mapped[int | None] = mapped_column(SmallInteger)
    delta_rate_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 8))
    delta_revenue_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2))
    delta_description: Mapped[str | None] = mapped_column(Text)
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    decision_event: Mapped["DecisionEvent"] = relationship("DecisionEvent", back_populates="impacts")
    tax_instrument: Mapped["TaxInstrument"] = relationship("TaxInstrument")
    methodology_version: Mapped["MethodologyVersion"] = relationship("MethodologyVersion")


class VoteRecord(Base):
    """One vote on a decision: a council roll call or a ballot measure."""

    __tablename__ = "vote_record"
    __table_args__ = (
        CheckConstraint("yes_count IS NULL OR yes_count >= 0", name="vote_record_yes_count"),
        CheckConstraint("no_count IS NULL OR no_count >= 0", name="vote_record_no_count"),
        CheckConstraint("abstain_count IS NULL OR abstain_count >= 0", name="vote_record_abstain_count"),
        CheckConstraint("absent_count IS NULL OR absent_count >= 0", name="vote_record_absent_count"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    decision_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("decision_event.id", ondelete="CASCADE"), nullable=False, index=True
    )
    jurisdiction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jurisdiction.id", ondelete="CASCADE"), nullable=False
    )
    vote_type: Mapped[VoteRecordType] = mapped_column(
        _enum(VoteRecordType, "taxatlas_vote_record_type"), nullable=False
    )
    vote_date: Mapped[date] = mapped_column(Date, nullable=False)
    question: Mapped[str | None] = mapped_column(Text)
    passed: Mapped[bool | None] = mapped_column(Boolean)
    yes_count: Mapped[int | None] = mapped_column(Integer)
    no_count: Mapped[int | None] = mapped_column(Integer)
    abstain_count: Mapped[int | None] = mapped_column(Integer)
    absent_count: Mapped[int | None] = mapped_column(Integer)
    attributes: Mapped[dict] = mapped_column("metadata", FlexJSON, default=dict, nullable=False)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    decision_event: Mapped["DecisionEvent"] = relationship("DecisionEvent", back_populates="votes")
    casts: Mapped[list["VoteCast"]] = relationship("VoteCast", back_populates="vote_record")


class VoteCast(Base):
    """A single voter's choice: an official by person, or a ballot tally by geo unit.

    Ballot tallies store one row per (geo unit, vote value) with the count in weight.
    """

    __tablename__ = "vote_cast"
    __table_args__ = (
        CheckConstraint("weight > 0", name="vote_cast_weight_positive"),
        CheckConstraint(
            "(voter_person_id IS NOT NULL) <> (voter_geo_unit_id IS NOT NULL)",
            name="vote_cast_one_voter",
        ),
        Index(
            "vote_cast_unique_person_idx", "vote_record_id", "voter_person_id",
            unique=True,
            postgresql_where=text("voter_person_id IS NOT NULL"),
            sqlite_where=text("voter_person_id IS NOT NULL"),
        ),
        Index(
            "vote_cast_unique_geo_unit_idx", "vote_record_id", "voter_geo_unit_id", "vote_value",
            unique=True,
            postgresql_where=text("voter_geo_unit_id IS NOT NULL"),
            sqlite_where=text("voter_geo_unit_id IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    vote_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vote_record.id", ondelete="CASCADE"), nullable=False, index=True
    )
    voter_person_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("person.id", ondelete="CASCADE")
    )
    voter_geo_unit_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("geo_unit.id", ondelete="CASCADE")
    )
    vote_value: Mapped[VoteValue] = mapped_column(
        _enum(VoteValue, "taxatlas_vote_value"), nullable=False
    )
    weight: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=1, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    source_doc_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("source_doc.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    vote_record: Mapped["VoteRecord"] = relationship("VoteRecord", back_populates="casts")
    voter: Mapped["Person | None"] = relationship("Person")
