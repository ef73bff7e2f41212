"""Idempotent upserts for the canonical entities.

Each function looks the row up by its natural key, updates it in place when
present, and inserts it with a deterministic id otherwise. Re-running a
pipeline on identical input therefore converges to the same rows.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from .exceptions import MalformedInputError, MissingReferenceError, SelfParentError
from .geometry import CANONICAL_SRID, representative_point, to_multipolygon
from .ids import stable_uuid
from .models import (
    DecisionEvent,
    DecisionTaxImpact,
    GeoUnit,
    Jurisdiction,
    Office,
    Person,
    PlaceAlias,
    PolicySignal,
    PropertyTaxContextSnapshot,
    TaxInstrument,
    TaxRateSnapshot,
    Term,
    VoteCast,
    VoteRecord,
)
from .schemas import GeoUnitType, JurisdictionType, PolicySignalStatus, TaxType, VoteRecordType, VoteValue

logger = logging.getLogger(__name__)

# Marker for "leave the stored value alone" where None is a meaningful value.
UNSET = object()


def to_decimal(value, places: int) -> Decimal | None:
    """Round to the column's scale so re-ingested values compare equal to stored ones."""
    if value is None:
        return None
    return round(Decimal(str(value)), places)


def assign_changed(row, **values) -> bool:
    """Set only the attributes whose value differs. Returns True if any changed.

    Untouched rows emit no UPDATE, so updated_at keeps its original value.
    """
    changed = False
    for name, value in values.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed = True
    return changed


def _point(geom):
    point = representative_point(geom)
    if point is None:
        return None, None
    lat, lng = point
    return to_decimal(lat, 6), to_decimal(lng, 6)


# =============================================================================
# Geographies
# =============================================================================


def upsert_geo_unit(
    session: Session,
    *,
    geo_unit_type: GeoUnitType | str,
    geoid: str,
    name: str,
    state_code: str,
    geometry,
    source_doc_id: uuid.UUID,
    srid: int = CANONICAL_SRID,
    state_fips: str | None = None,
    county_fips: str | None = None,
    country_code: str = "US",
) -> uuid.UUID:
    """Insert or refresh a geo unit keyed by (geo_unit_type, geoid).

    Geometry is normalized to a MultiPolygon in EPSG:4326 and replaces any
    previously stored shape.
    """
    geo_unit_type = GeoUnitType(geo_unit_type)
    geoid = (geoid or "").strip()
    if not geoid:
        raise MalformedInputError(f"geo unit of type {geo_unit_type.value} is missing a geoid")
    geom = to_multipolygon(geometry, srid)
    lat, lng = _point(geom)

    existing = (
        session.query(GeoUnit)
        .filter(GeoUnit.geo_unit_type == geo_unit_type, GeoUnit.geoid == geoid)
        .first()
    )
    if existing:
        assign_changed(
            existing,
            name=name,
            country_code=country_code,
            state_code=state_code.upper(),
            state_fips=state_fips,
            county_fips=county_fips,
            geom=geom,
            point_lat=lat,
            point_lng=lng,
            source_doc_id=source_doc_id,
        )
        return existing.id

    unit = GeoUnit(
        id=stable_uuid(["geo_unit", geo_unit_type.value, geoid]),
        geo_unit_type=geo_unit_type,
        geoid=geoid,
        name=name,
        country_code=country_code,
        state_code=state_code.upper(),
        state_fips=state_fips,
        county_fips=county_fips,
        geom=geom,
        point_lat=lat,
        point_lng=lng,
        source_doc_id=source_doc_id,
    )
    session.add(unit)
    session.flush()
    return unit.id


def get_geo_unit_id(session: Session, geo_unit_type: GeoUnitType | str, geoid: str) -> uuid.UUID | None:
    row = (
        session.query(GeoUnit.id)
        .filter(GeoUnit.geo_unit_type == GeoUnitType(geo_unit_type), GeoUnit.geoid == geoid.strip())
        .first()
    )
    return row[0] if row else None


def require_geo_unit_id(
    session: Session, geo_unit_type: GeoUnitType | str, geoid: str, context: str
) -> uuid.UUID:
    geo_unit_id = get_geo_unit_id(session, geo_unit_type, geoid)
    if geo_unit_id is None:
        raise MissingReferenceError("geo_unit", f"type={GeoUnitType(geo_unit_type).value} geoid={geoid}", context)
    return geo_unit_id


def upsert_place_alias(
    session: Session,
    *,
    alias_text: str,
    state_code: str,
    geo_unit_id: uuid.UUID,
    source_doc_id: uuid.UUID,
    alias_kind: str = "name",
    alias_rank: int = 0,
    is_preferred: bool = False,
) -> uuid.UUID:
    """Alias identity is case-insensitive on the text."""
    alias_text = alias_text.strip()
    alias_key = alias_text.casefold()
    state_code = state_code.upper()

    existing = (
        session.query(PlaceAlias)
        .filter(
            PlaceAlias.alias_key == alias_key,
            PlaceAlias.state_code == state_code,
            PlaceAlias.geo_unit_id == geo_unit_id,
            PlaceAlias.alias_kind == alias_kind,
        )
        .first()
    )
    if existing:
        assign_changed(
            existing, alias_rank=alias_rank, is_preferred=is_preferred, source_doc_id=source_doc_id
        )
        return existing.id

    alias = PlaceAlias(
        id=stable_uuid(["place_alias", alias_key, state_code, geo_unit_id, alias_kind]),
        alias_text=alias_text,
        alias_key=alias_key,
        state_code=state_code,
        geo_unit_id=geo_unit_id,
        alias_kind=alias_kind,
        alias_rank=alias_rank,
        is_preferred=is_preferred,
        source_doc_id=source_doc_id,
    )
    session.add(alias)
    session.flush()
    return alias.id


# =============================================================================
# Jurisdictions
# =============================================================================


def upsert_jurisdiction(
    session: Session,
    *,
    jurisdiction_type: JurisdictionType | str,
    name: str,
    state_code: str,
    external_id: str,
    source_doc_id: uuid.UUID,
    geometry=None,
    srid: int = CANONICAL_SRID,
    parent_jurisdiction_id=UNSET,
    country_code: str = "US",
) -> uuid.UUID:
    """Insert or refresh a jurisdiction keyed by (type, state_code, external_id).

    parent_jurisdiction_id is only written when passed explicitly (None clears
    it); by default an existing parent link is preserved.
    """
    jurisdiction_type = JurisdictionType(jurisdiction_type)
    state_code = state_code.upper()
    geom = to_multipolygon(geometry, srid) if geometry is not None else None
    lat, lng = _point(geom)

    existing = (
        session.query(Jurisdiction)
        .filter(
            Jurisdiction.jurisdiction_type == jurisdiction_type,
            Jurisdiction.state_code == state_code,
            Jurisdiction.external_id == external_id,
        )
        .first()
    )
    if existing:
        if parent_jurisdiction_id is not UNSET and parent_jurisdiction_id == existing.id:
            raise SelfParentError(external_id)
        assign_changed(
            existing,
            name=name,
            country_code=country_code,
            geom=geom,
            point_lat=lat,
            point_lng=lng,
            source_doc_id=source_doc_id,
        )
        if parent_jurisdiction_id is not UNSET:
            assign_changed(existing, parent_jurisdiction_id=parent_jurisdiction_id)
        return existing.id

    jurisdiction_id = stable_uuid(["jurisdiction", jurisdiction_type.value, state_code, external_id])
    if parent_jurisdiction_id is not UNSET and parent_jurisdiction_id == jurisdiction_id:
        raise SelfParentError(external_id)

    jurisdiction = Jurisdiction(
        id=jurisdiction_id,
        jurisdiction_type=jurisdiction_type,
        name=name,
        country_code=country_code,
        state_code=state_code,
        external_id=external_id,
        parent_jurisdiction_id=None if parent_jurisdiction_id is UNSET else parent_jurisdiction_id,
        geom=geom,
        point_lat=lat,
        point_lng=lng,
        source_doc_id=source_doc_id,
    )
    session.add(jurisdiction)
    session.flush()
    return jurisdiction.id


def set_jurisdiction_parent(
    session: Session, jurisdiction_id: uuid.UUID, parent_jurisdiction_id: uuid.UUID | None
) -> None:
    jurisdiction = session.get(Jurisdiction, jurisdiction_id)
    if jurisdiction is None:
        raise MissingReferenceError("jurisdiction", str(jurisdiction_id))
    if parent_jurisdiction_id == jurisdiction_id:
        raise SelfParentError(jurisdiction.external_id)
    jurisdiction.parent_jurisdiction_id = parent_jurisdiction_id


def get_jurisdiction_id_by_external_id(
    session: Session, state_code: str, external_id: str
) -> uuid.UUID | None:
    """Resolve by external id within a state, regardless of jurisdiction type.

    External ids are unique per state in practice; if two types share one the
    first row by type is returned.
    """
    row = (
        session.query(Jurisdiction.id)
        .filter(
            Jurisdiction.state_code == state_code.upper(),
            Jurisdiction.external_id == external_id.strip(),
        )
        .order_by(Jurisdiction.jurisdiction_type)
        .first()
    )
    return row[0] if row else None


def require_jurisdiction_id(
    session: Session, state_code: str, external_id: str, context: str
) -> uuid.UUID:
    jurisdiction_id = get_jurisdiction_id_by_external_id(session, state_code, external_id)
    if jurisdiction_id is None:
        raise MissingReferenceError("jurisdiction", f"external_id={external_id}", context)
    return jurisdiction_id


@dataclass
class JurisdictionNode:
    """One jurisdiction as read from a boundary file, before linking."""

    jurisdiction_type: JurisdictionType
    name: str
    state_code: str
    external_id: str
    geometry: object = None
    parent_external_id: str | None = None


@dataclass
class JurisdictionHierarchyBuilder:
    """Two-phase jurisdiction load.

    Phase one (add_nodes) upserts every node without touching parent links and
    records external_id → id. Phase two (link_parents) resolves each node's
    parent_external_id against that map, so parents may appear anywhere in the
    input, including after their children.
    """

    session: Session
    source_doc_id: uuid.UUID
    srid: int = CANONICAL_SRID
    ids_by_external_id: dict[str, uuid.UUID] = field(default_factory=dict)
    _nodes: list[JurisdictionNode] = field(default_factory=list)

    def add_nodes(self, nodes) -> dict[str, uuid.UUID]:
        for node in nodes:
            if node.parent_external_id and node.parent_external_id == node.external_id:
                raise SelfParentError(node.external_id)
            jurisdiction_id = upsert_jurisdiction(
                self.session,
                jurisdiction_type=node.jurisdiction_type,
                name=node.name,
                state_code=node.state_code,
                external_id=node.external_id,
                geometry=node.geometry,
                srid=self.srid,
                source_doc_id=self.source_doc_id,
            )
            self.ids_by_external_id[node.external_id] = jurisdiction_id
            self._nodes.append(node)
        return dict(self.ids_by_external_id)

    def link_parents(self) -> int:
        """Apply parent links for every added node. Returns the number linked.

        Nodes without a parent_external_id get their parent cleared so the
        stored hierarchy matches the input exactly.
        """
        linked = 0
        for node in self._nodes:
            child_id = self.ids_by_external_id[node.external_id]
            if not node.parent_external_id:
                set_jurisdiction_parent(self.session, child_id, None)
                continue
            parent_id = self.ids_by_external_id.get(node.parent_external_id)
            if parent_id is None:
                raise MissingReferenceError(
                    "jurisdiction",
                    f"parent external_id={node.parent_external_id}",
                    f"child external_id={node.external_id}",
                )
            set_jurisdiction_parent(self.session, child_id, parent_id)
            linked += 1
        self.session.flush()
        return linked


# =============================================================================
# Tax instruments + snapshots
# =============================================================================


def upsert_tax_instrument(
    session: Session,
    *,
    jurisdiction_id: uuid.UUID,
    tax_type: TaxType | str,
    name: str,
    source_doc_id: uuid.UUID,
    description: str | None = None,
    is_active: bool = True,
    attributes: dict | None = None,
) -> uuid.UUID:
    tax_type = TaxType(tax_type)
    name = name.strip()
    existing = (
        session.query(TaxInstrument)
        .filter(
            TaxInstrument.jurisdiction_id == jurisdiction_id,
            TaxInstrument.tax_type == tax_type,
            TaxInstrument.name == name,
        )
        .first()
    )
    if existing:
        if description is not None:
            assign_changed(existing, description=description)
        assign_changed(
            existing, is_active=is_active, attributes=attributes or {}, source_doc_id=source_doc_id
        )
        return existing.id

    instrument = TaxInstrument(
        id=stable_uuid(["tax_instrument", jurisdiction_id, tax_type.value, name]),
        jurisdiction_id=jurisdiction_id,
        tax_type=tax_type,
        name=name,
        description=description,
        is_active=is_active,
        attributes=attributes or {},
        source_doc_id=source_doc_id,
    )
    session.add(instrument)
    session.flush()
    return instrument.id


def get_tax_instrument_id(
    session: Session, jurisdiction_id: uuid.UUID, tax_type: TaxType | str, name: str
) -> uuid.UUID | None:
    row = (
        session.query(TaxInstrument.id)
        .filter(
            TaxInstrument.jurisdiction_id == jurisdiction_id,
            TaxInstrument.tax_type == TaxType(tax_type),
            TaxInstrument.name == name.strip(),
        )
        .first()
    )
    return row[0] if row else None


def upsert_tax_rate_snapshot(
    session: Session,
    *,
    tax_instrument_id: uuid.UUID,
    methodology_version_id: uuid.UUID,
    effective_date: date,
    rate_unit: str,
    source_doc_id: uuid.UUID,
    rate_value: float | Decimal | None = None,
    rate_brackets: list | dict | None = None,
    end_date: date | None = None,
    tax_year: int | None = None,
    attributes: dict | None = None,
) -> uuid.UUID:
    """Insert or overwrite the snapshot for (instrument, methodology, effective_date)."""
    if rate_value is None and rate_brackets is None:
        raise MalformedInputError(
            f"Rate snapshot for instrument {tax_instrument_id} on {effective_date} has neither a rate nor brackets"
        )
    if end_date is not None and end_date <= effective_date:
        raise MalformedInputError(
            f"Rate snapshot end_date {end_date} is not after effective_date {effective_date}"
        )
    rate_value = to_decimal(rate_value, 8)

    existing = (
        session.query(TaxRateSnapshot)
        .filter(
            TaxRateSnapshot.tax_instrument_id == tax_instrument_id,
            TaxRateSnapshot.methodology_version_id == methodology_version_id,
            TaxRateSnapshot.effective_date == effective_date,
        )
        .first()
    )
    if existing:
        assign_changed(
            existing,
            end_date=end_date,
            tax_year=tax_year,
            rate_value=rate_value,
            rate_unit=rate_unit,
            rate_brackets=rate_brackets,
            attributes=attributes or {},
            source_doc_id=source_doc_id,
        )
        return existing.id

    snapshot = TaxRateSnapshot(
        id=stable_uuid([
            "tax_rate_snapshot", tax_instrument_id, methodology_version_id, effective_date.isoformat()
        ]),
        tax_instrument_id=tax_instrument_id,
        methodology_version_id=methodology_version_id,
        effective_date=effective_date,
        end_date=end_date,
        tax_year=tax_year,
        rate_value=rate_value,
        rate_unit=rate_unit,
        rate_brackets=rate_brackets,
        attributes=attributes or {},
        source_doc_id=source_doc_id,
    )
    session.add(snapshot)
    session.flush()
    return snapshot.id


PROPERTY_CONTEXT_FIELDS = (
    "levy_amount",
    "taxable_value_amount",
    "tax_capacity_amount",
    "median_bill_amount",
    "bill_p25_amount",
    "bill_p75_amount",
    "parcel_count",
    "household_count",
)


def upsert_property_tax_context_snapshot(
    session: Session,
    *,
    tax_instrument_id: uuid.UUID,
    geo_unit_id: uuid.UUID,
    methodology_version_id: uuid.UUID,
    tax_year: int,
    source_doc_id: uuid.UUID,
    attributes: dict | None = None,
    **amounts,
) -> uuid.UUID:
    unknown = set(amounts) - set(PROPERTY_CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown property tax context fields: {sorted(unknown)}")
    values = {name: amounts.get(name) for name in PROPERTY_CONTEXT_FIELDS}
    for name in PROPERTY_CONTEXT_FIELDS:
        if name.endswith("_amount"):
            values[name] = to_decimal(values[name], 2)

    existing = (
        session.query(PropertyTaxContextSnapshot)
        .filter(
            PropertyTaxContextSnapshot.tax_instrument_id == tax_instrument_id,
            PropertyTaxContextSnapshot.geo_unit_id == geo_unit_id,
            PropertyTaxContextSnapshot.methodology_version_id == methodology_version_id,
            PropertyTaxContextSnapshot.tax_year == tax_year,
        )
        .first()
    )
    if existing:
        assign_changed(existing, attributes=attributes or {}, source_doc_id=source_doc_id, **values)
        return existing.id

    snapshot = PropertyTaxContextSnapshot(
        id=stable_uuid([
            "property_tax_context", tax_instrument_id, geo_unit_id, methodology_version_id, tax_year
        ]),
        tax_instrument_id=tax_instrument_id,
        geo_unit_id=geo_unit_id,
        methodology_version_id=methodology_version_id,
        tax_year=tax_year,
        attributes=attributes or {},
        source_doc_id=source_doc_id,
        **values,
    )
    session.add(snapshot)
    session.flush()
    return snapshot.id


# =============================================================================
# Accountability
# =============================================================================


def _upsert_by_id(session: Session, model, row_id: uuid.UUID, values: dict):
    existing = session.get(model, row_id)
    if existing:
        assign_changed(existing, **values)
        return existing
    row = model(id=row_id, **values)
    session.add(row)
    session.flush()
    return row


def upsert_person(session: Session, *, pilot_id: str, person_key: str, source_doc_id: uuid.UUID, **values) -> uuid.UUID:
    person_id = stable_uuid([pilot_id, "person", person_key])
    _upsert_by_id(session, Person, person_id, {
        "person_key": person_key, "source_doc_id": source_doc_id, **values,
    })
    return person_id


def upsert_office(
    session: Session,
    *,
    pilot_id: str,
    office_key: str,
    jurisdiction_external_id: str,
    district_geo_unit_type: str | None,
    district_geo_unit_geoid: str | None,
    source_doc_id: uuid.UUID,
    **values,
) -> uuid.UUID:
    office_id = stable_uuid([
        pilot_id, "office", jurisdiction_external_id, office_key,
        district_geo_unit_type or "", district_geo_unit_geoid or "",
    ])
    _upsert_by_id(session, Office, office_id, {
        "office_key": office_key, "source_doc_id": source_doc_id, **values,
    })
    return office_id


def upsert_term(
    session: Session,
    *,
    pilot_id: str,
    person_id: uuid.UUID,
    office_id: uuid.UUID,
    start_date: date,
    source_doc_id: uuid.UUID,
    **values,
) -> uuid.UUID:
    term_id = stable_uuid([pilot_id, "term", person_id, office_id, start_date.isoformat()])
    _upsert_by_id(session, Term, term_id, {
        "person_id": person_id,
        "office_id": office_id,
        "start_date": start_date,
        "source_doc_id": source_doc_id,
        **values,
    })
    return term_id


def upsert_policy_signal(
    session: Session,
    *,
    pilot_id: str,
    jurisdiction_external_id: str,
    signal_date: date,
    title: str,
    status: PolicySignalStatus,
    source_doc_id: uuid.UUID,
    **values,
) -> uuid.UUID:
    signal_id = stable_uuid([
        pilot_id, "policy_signal", jurisdiction_external_id, signal_date.isoformat(), title
    ])
    _upsert_by_id(session, PolicySignal, signal_id, {
        "signal_date": signal_date,
        "title": title,
        "status": status,
        "source_doc_id": source_doc_id,
        **values,
    })
    return signal_id


def upsert_decision_event(
    session: Session,
    *,
    pilot_id: str,
    decision_key: str,
    source_doc_id: uuid.UUID,
    **values,
) -> uuid.UUID:
    decision_id = stable_uuid([pilot_id, "decision_event", decision_key])
    _upsert_by_id(session, DecisionEvent, decision_id, {
        "decision_key": decision_key, "source_doc_id": source_doc_id, **values,
    })
    return decision_id


def upsert_decision_tax_impact(
    session: Session,
    *,
    decision_event_id: uuid.UUID,
    tax_instrument_id: uuid.UUID,
    methodology_version_id: uuid.UUID,
    source_doc_id: uuid.UUID,
    delta_rate_value: float | None = None,
    delta_revenue_amount: float | None = None,
    **values,
) -> uuid.UUID:
    impact_id = stable_uuid([
        "decision_tax_impact", decision_event_id, tax_instrument_id, methodology_version_id
    ])
    _upsert_by_id(session, DecisionTaxImpact, impact_id, {
        "decision_event_id": decision_event_id,
        "tax_instrument_id": tax_instrument_id,
        "methodology_version_id": methodology_version_id,
        "delta_rate_value": to_decimal(delta_rate_value, 8),
        "delta_revenue_amount": to_decimal(delta_revenue_amount, 2),
        "source_doc_id": source_doc_id,
        **values,
    })
    return impact_id


def upsert_vote_record(
    session: Session,
    *,
    pilot_id: str,
    decision_event_id: uuid.UUID,
    vote_type: VoteRecordType,
    vote_date: date,
    question: str | None,
    source_doc_id: uuid.UUID,
    **values,
) -> uuid.UUID:
    vote_record_id = stable_uuid([
        pilot_id, "vote_record", decision_event_id, vote_type.value, vote_date.isoformat(), question or ""
    ])
    _upsert_by_id(session, VoteRecord, vote_record_id, {
        "decision_event_id": decision_event_id,
        "vote_type": vote_type,
        "vote_date": vote_date,
        "question": question,
        "source_doc_id": source_doc_id,
        **values,
    })
    return vote_record_id


def upsert_vote_cast(
    session: Session,
    *,
    pilot_id: str,
    vote_record_id: uuid.UUID,
    vote_value: VoteValue,
    source_doc_id: uuid.UUID,
    voter_person_id: uuid.UUID | None = None,
    voter_geo_unit_id: uuid.UUID | None = None,
    weight: float = 1,
    notes: str | None = None,
) -> uuid.UUID:
    """One row per official, or per (geo unit, vote value) for ballot tallies."""
    if (voter_person_id is None) == (voter_geo_unit_id is None):
        raise MalformedInputError(f"vote cast on {vote_record_id} needs exactly one of a person or a geo unit")
    if voter_person_id is not None:
        key = [pilot_id, "vote_cast", vote_record_id, "person", voter_person_id]
    else:
        key = [pilot_id, "vote_cast", vote_record_id, "geo_unit", voter_geo_unit_id, vote_value.value]
    vote_cast_id = stable_uuid(key)
    _upsert_by_id(session, VoteCast, vote_cast_id, {
        "vote_record_id": vote_record_id,
        "voter_person_id": voter_person_id,
        "voter_geo_unit_id": voter_geo_unit_id,
        "vote_value": vote_value,
        "weight": to_decimal(weight, 6),
        "notes": notes,
        "source_doc_id": source_doc_id,
    })
    return vote_cast_id
