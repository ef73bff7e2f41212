"""Read-time query surface: coverage, blended rates, and rate history.

Everything here is a stateless computation over rows the pipelines already
materialized. The methodology versions to read from are passed in explicitly
as an ActiveMethodology; nothing consults ambient state.

Number labelling:
- coverage ratios and blended totals are always DataKind.ESTIMATE
- each individual rate carries the kind of the methodology version it was
  recorded under (fact for published rates, estimate for allocations)
"""

import logging
import uuid
from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case
from sqlalchemy.orm import Session

from .exceptions import GeoUnitNotFoundError, MissingReferenceError
from .methodology import ActiveMethodology
from .models import (
    GeoUnit,
    GeoUnitJurisdiction,
    Jurisdiction,
    MethodologyVersion,
    PlaceAlias,
    PropertyTaxContextSnapshot,
    SourceDoc,
    TaxInstrument,
    TaxRateSnapshot,
)
from .provenance import source_reference
from .schemas import (
    TAX_TYPE_DISPLAY_NAMES,
    TAX_TYPE_ORDER,
    BlendedRate,
    DataKind,
    JurisdictionCoverage,
    JurisdictionTaxDetail,
    JurisdictionType,
    PlaceJurisdictionsResponse,
    PlaceMatch,
    PropertyTaxContext,
    TaxCategoryDetail,
    TaxesResponse,
    TaxRateDataPoint,
    TaxType,
    TrendPoint,
)

logger = logging.getLogger(__name__)

JURISDICTION_TYPE_ORDER = list(JurisdictionType)
TOTAL_DECIMALS = 4
STABLE_CHANGE_PERCENT = 0.01
DEFAULT_HISTORY_YEARS = 7


def _float(value) -> float | None:
    return None if value is None else float(value)


# =============================================================================
# Snapshot selection
# =============================================================================


def select_applicable_snapshot(
    snapshots: Sequence,
    *,
    as_of: date | None = None,
    tax_year: int | None = None,
):
    """Pick the latest applicable snapshot, or None.

    With a tax_year, a snapshot recorded for exactly that year wins (latest
    effective_date among them). Otherwise the year is read as of December 31
    of that year. As of a date, a snapshot applies when
    effective_date <= as_of and end_date is null or after as_of.
    """
    if tax_year is not None:
        same_year = [s for s in snapshots if s.tax_year == tax_year]
        if same_year:
            return max(same_year, key=lambda s: s.effective_date)
        as_of = date(tax_year, 12, 31)
    elif as_of is None:
        as_of = date.today()

    applicable = [
        s for s in snapshots
        if s.effective_date <= as_of and (s.end_date is None or s.end_date > as_of)
    ]
    if not applicable:
        return None
    return max(applicable, key=lambda s: s.effective_date)


def snapshot_year(snapshot) -> int:
    return snapshot.tax_year if snapshot.tax_year is not None else snapshot.effective_date.year


# =============================================================================
# Internal loaders
# =============================================================================


@dataclass
class _Coverage:
    jurisdiction: Jurisdiction
    edge: GeoUnitJurisdiction
    source: SourceDoc

    @property
    def ratio(self) -> float:
        return float(self.edge.coverage_ratio)


@dataclass
class _Rate:
    snapshot: TaxRateSnapshot
    source: SourceDoc
    kind: DataKind

    # Attribute passthroughs so select_applicable_snapshot works on _Rate.
    @property
    def effective_date(self) -> date:
        return self.snapshot.effective_date

    @property
    def end_date(self) -> date | None:
        return self.snapshot.end_date

    @property
    def tax_year(self) -> int | None:
        return self.snapshot.tax_year

    def data_point(self) -> TaxRateDataPoint:
        s = self.snapshot
        return TaxRateDataPoint(
            year=snapshot_year(s),
            effective_date=s.effective_date,
            end_date=s.end_date,
            rate_value=_float(s.rate_value),
            rate_brackets=s.rate_brackets,
            rate_unit=s.rate_unit,
            data_type=self.kind,
            source=source_reference(self.source),
        )


def _load_geo_unit(session: Session, geo_unit_id: uuid.UUID) -> tuple[GeoUnit, SourceDoc]:
    row = (
        session.query(GeoUnit, SourceDoc)
        .join(SourceDoc, GeoUnit.source_doc_id == SourceDoc.id)
        .filter(GeoUnit.id == geo_unit_id)
        .first()
    )
    if row is None:
        raise GeoUnitNotFoundError(geo_unit_id)
    return row[0], row[1]


def _coverages(
    session: Session, geo_unit_id: uuid.UUID, methodology: ActiveMethodology
) -> list[_Coverage]:
    """Jurisdictions with coverage_ratio > 0 under the active overlay version."""
    rows = (
        session.query(Jurisdiction, GeoUnitJurisdiction, SourceDoc)
        .join(GeoUnitJurisdiction, GeoUnitJurisdiction.jurisdiction_id == Jurisdiction.id)
        .join(SourceDoc, GeoUnitJurisdiction.source_doc_id == SourceDoc.id)
        .filter(
            GeoUnitJurisdiction.geo_unit_id == geo_unit_id,
            GeoUnitJurisdiction.methodology_version_id == methodology.overlay_version_id,
            GeoUnitJurisdiction.coverage_ratio > 0,
        )
        .all()
    )
    coverages = [_Coverage(jurisdiction=j, edge=e, source=s) for j, e, s in rows]
    coverages.sort(key=lambda c: (
        JURISDICTION_TYPE_ORDER.index(c.jurisdiction.jurisdiction_type),
        c.jurisdiction.name,
    ))
    return coverages


def _instruments(
    session: Session, jurisdiction_ids: list[uuid.UUID], tax_type: TaxType | None = None
) -> list[TaxInstrument]:
    if not jurisdiction_ids:
        return []
    query = session.query(TaxInstrument).filter(
        TaxInstrument.jurisdiction_id.in_(jurisdiction_ids),
        TaxInstrument.is_active.is_(True),
    )
    if tax_type is not None:
        query = query.filter(TaxInstrument.tax_type == TaxType(tax_type))
    return query.order_by(TaxInstrument.name).all()


def _rates_by_instrument(
    session: Session, instrument_ids: list[uuid.UUID], methodology: ActiveMethodology
) -> dict[uuid.UUID, list[_Rate]]:
    grouped: dict[uuid.UUID, list[_Rate]] = defaultdict(list)
    if not instrument_ids:
        return grouped
    query = (
        session.query(TaxRateSnapshot, SourceDoc, MethodologyVersion.kind)
        .join(SourceDoc, TaxRateSnapshot.source_doc_id == SourceDoc.id)
        .join(MethodologyVersion, TaxRateSnapshot.methodology_version_id == MethodologyVersion.id)
        .filter(TaxRateSnapshot.tax_instrument_id.in_(instrument_ids))
    )
    if methodology.rate_version_ids is not None:
        query = query.filter(
            TaxRateSnapshot.methodology_version_id.in_(methodology.rate_version_ids)
        )
    for snapshot, source, kind in query.order_by(TaxRateSnapshot.effective_date).all():
        grouped[snapshot.tax_instrument_id].append(_Rate(snapshot, source, kind))
    return grouped


# =============================================================================
# Blending
# =============================================================================


def _detail(
    coverage: _Coverage, instrument: TaxInstrument, selected: _Rate | None
) -> JurisdictionTaxDetail:
    detail = JurisdictionTaxDetail(
        jurisdiction_id=coverage.jurisdiction.id,
        jurisdiction_type=coverage.jurisdiction.jurisdiction_type,
        jurisdiction_name=coverage.jurisdiction.name,
        instrument_id=instrument.id,
        instrument_name=instrument.name,
        coverage_ratio=coverage.ratio,
        note=instrument.description,
    )
    if selected is None:
        detail.contributes = False
        detail.note = "No applicable rate snapshot"
        return detail

    detail.current_rate = _float(selected.snapshot.rate_value)
    detail.rate_unit = selected.snapshot.rate_unit
    detail.data_type = selected.kind
    detail.source = source_reference(selected.source)
    if detail.current_rate is None:
        detail.contributes = False
        detail.note = "Bracketed rate; not included in the blended total"
    return detail


def _apply_tie_break(
    details: list[JurisdictionTaxDetail], selected: dict[uuid.UUID, _Rate | None], tax_type: TaxType
) -> None:
    """Keep one contributing instrument per (jurisdiction, tax type).

    Highest coverage_ratio wins, then the most recent selected effective
    date, then instrument name. Losers stay listed with contributes=False.
    """
    by_jurisdiction: dict[uuid.UUID, list[JurisdictionTaxDetail]] = defaultdict(list)
    for detail in details:
        if detail.contributes:
            by_jurisdiction[detail.jurisdiction_id].append(detail)

    for jurisdiction_id, competing in by_jurisdiction.items():
        if len(competing) < 2:
            continue
        competing.sort(key=lambda d: (
            -d.coverage_ratio,
            -selected[d.instrument_id].effective_date.toordinal(),
            d.instrument_name,
        ))
        winner = competing[0]
        logger.warning(
            "Jurisdiction %s has %d active %s instruments; using %r",
            winner.jurisdiction_name, len(competing), tax_type.value, winner.instrument_name,
        )
        for loser in competing[1:]:
            loser.contributes = False
            loser.note = f"Superseded by {winner.instrument_name!r} for this jurisdiction"

    for detail in details:
        if detail.contributes and detail.current_rate is not None:
            detail.weighted_rate = detail.current_rate * detail.coverage_ratio


def _apply_unit_check(details: list[JurisdictionTaxDetail], tax_type: TaxType) -> None:
    """Only rates in one unit are summed.

    The most common unit among contributing instruments wins (ties go to the
    first in display order); the rest are listed with contributes=False.
    """
    units = Counter(d.rate_unit for d in details if d.contributes)
    if len(units) < 2:
        return
    unit = units.most_common(1)[0][0]
    for detail in details:
        if detail.contributes and detail.rate_unit != unit:
            logger.warning(
                "%s rate for %s is in %r, not %r; excluded from the blended total",
                tax_type.value, detail.jurisdiction_name, detail.rate_unit, unit,
            )
            detail.contributes = False
            detail.weighted_rate = None
            detail.note = f"Rate unit {detail.rate_unit!r} differs from {unit!r}; not included in the blended total"


def _display_key(detail: JurisdictionTaxDetail, selected: dict[uuid.UUID, _Rate | None]):
    chosen = selected.get(detail.instrument_id)
    snapshot_ordinal = chosen.effective_date.toordinal() if chosen else 0
    return (
        JURISDICTION_TYPE_ORDER.index(detail.jurisdiction_type),
        detail.jurisdiction_name,
        -snapshot_ordinal,
        detail.instrument_name,
    )


def _blend(
    coverages: list[_Coverage],
    instruments: list[TaxInstrument],
    rates: dict[uuid.UUID, list[_Rate]],
    tax_type: TaxType,
    *,
    as_of: date | None,
    tax_year: int | None,
) -> tuple[list[JurisdictionTaxDetail], dict[uuid.UUID, _Rate | None], float | None]:
    coverage_by_jurisdiction = {c.jurisdiction.id: c for c in coverages}
    selected: dict[uuid.UUID, _Rate | None] = {}
    details = []
    for instrument in instruments:
        if instrument.tax_type != tax_type:
            continue
        chosen = select_applicable_snapshot(rates.get(instrument.id, []), as_of=as_of, tax_year=tax_year)
        selected[instrument.id] = chosen
        details.append(_detail(coverage_by_jurisdiction[instrument.jurisdiction_id], instrument, chosen))

    _apply_tie_break(details, selected, tax_type)
    details.sort(key=lambda d: _display_key(d, selected))
    _apply_unit_check(details, tax_type)

    contributing = [d.weighted_rate for d in details if d.weighted_rate is not None]
    total = round(sum(contributing), TOTAL_DECIMALS) if contributing else None
    return details, selected, total


def _rate_unit(details: list[JurisdictionTaxDetail]) -> str:
    for detail in details:
        if detail.contributes:
            return detail.rate_unit
    return details[0].rate_unit if details else "percent"


# =============================================================================
# Public queries
# =============================================================================


def get_place_jurisdictions(
    session: Session, geo_unit_id: uuid.UUID, methodology: ActiveMethodology
) -> PlaceJurisdictionsResponse:
    """Jurisdictions overlapping a geo unit, with coverage and provenance.

    A geo unit with no overlay rows yields an empty list, not an error.
    """
    geo_unit, geo_source = _load_geo_unit(session, geo_unit_id)
    overlay_version = session.get(MethodologyVersion, methodology.overlay_version_id)
    coverage_kind = overlay_version.kind if overlay_version is not None else DataKind.ESTIMATE

    jurisdictions = [
        JurisdictionCoverage(
            jurisdiction_id=c.jurisdiction.id,
            jurisdiction_type=c.jurisdiction.jurisdiction_type,
            jurisdiction_name=c.jurisdiction.name,
            external_id=c.jurisdiction.external_id,
            parent_jurisdiction_id=c.jurisdiction.parent_jurisdiction_id,
            coverage_ratio=c.ratio,
            coverage_area_m2=c.edge.coverage_area_m2,
            data_type=coverage_kind,
            source=source_reference(c.source),
        )
        for c in _coverages(session, geo_unit_id, methodology)
    ]
    return PlaceJurisdictionsResponse(
        geo_unit_id=geo_unit.id,
        name=geo_unit.name,
        is_demo=geo_source.is_demo,
        methodology_version=methodology.overlay_version_label,
        jurisdictions=jurisdictions,
    )


def get_blended_rate(
    session: Session,
    geo_unit_id: uuid.UUID,
    tax_type: TaxType | str,
    methodology: ActiveMethodology,
    *,
    as_of: date | None = None,
    tax_year: int | None = None,
) -> BlendedRate:
    """Coverage-weighted current rate for one tax type at a geo unit.

    sum(rate * coverage_ratio) over jurisdictions with coverage_ratio > 0,
    using each instrument's latest applicable snapshot.
    """
    tax_type = TaxType(tax_type)
    _load_geo_unit(session, geo_unit_id)
    coverages = _coverages(session, geo_unit_id, methodology)
    instruments = _instruments(session, [c.jurisdiction.id for c in coverages], tax_type)
    rates = _rates_by_instrument(session, [i.id for i in instruments], methodology)

    details, _selected, total = _blend(
        coverages, instruments, rates, tax_type, as_of=as_of, tax_year=tax_year
    )
    return BlendedRate(
        geo_unit_id=geo_unit_id,
        tax_type=tax_type,
        total_rate=total,
        rate_unit=_rate_unit(details),
        contributions=details,
    )


def calculate_change(trend: list[TrendPoint]) -> tuple[float | None, str | None]:
    """Percent change from the first to the last trend year, and its direction."""
    if len(trend) < 2:
        return None, None
    ordered = sorted(trend, key=lambda p: p.year)
    first, last = ordered[0].total_rate, ordered[-1].total_rate
    if first == 0:
        return None, None
    change = (last - first) / first * 100
    if abs(change) < STABLE_CHANGE_PERCENT:
        direction = "stable"
    elif change > 0:
        direction = "up"
    else:
        direction = "down"
    return round(change, 2), direction


def _trend(
    details: list[JurisdictionTaxDetail], rates: dict[uuid.UUID, list[_Rate]],
    from_year: int, to_year: int,
) -> list[TrendPoint]:
    """Coverage-weighted totals for each year in range where some rate changed.

    Every contributing instrument counts in every such year with the rate
    applicable that year, so a change to one instrument does not drop the
    others out of the total.
    """
    contributing = [d for d in details if d.contributes]
    years = sorted({
        snapshot_year(rate.snapshot)
        for detail in contributing
        for rate in rates.get(detail.instrument_id, [])
        if from_year <= snapshot_year(rate.snapshot) <= to_year
    })
    trend = []
    for year in years:
        total = 0.0
        sources = {}
        for detail in contributing:
            chosen = select_applicable_snapshot(rates.get(detail.instrument_id, []), tax_year=year)
            if chosen is not None and chosen.snapshot.rate_value is not None:
                total += float(chosen.snapshot.rate_value) * detail.coverage_ratio
                sources.setdefault(chosen.source.id, source_reference(chosen.source))
        trend.append(TrendPoint(
            year=year,
            total_rate=round(total, TOTAL_DECIMALS),
            sources=list(sources.values()),
        ))
    return trend


def _property_context(
    session: Session, geo_unit_id: uuid.UUID, methodology: ActiveMethodology,
    from_year: int, to_year: int,
) -> list[PropertyTaxContext]:
    query = (
        session.query(PropertyTaxContextSnapshot, SourceDoc, MethodologyVersion.kind)
        .join(SourceDoc, PropertyTaxContextSnapshot.source_doc_id == SourceDoc.id)
        .join(MethodologyVersion, PropertyTaxContextSnapshot.methodology_version_id == MethodologyVersion.id)
        .filter(
            PropertyTaxContextSnapshot.geo_unit_id == geo_unit_id,
            PropertyTaxContextSnapshot.tax_year.between(from_year, to_year),
        )
    )
    if methodology.rate_version_ids is not None:
        query = query.filter(
            PropertyTaxContextSnapshot.methodology_version_id.in_(methodology.rate_version_ids)
        )
    return [
        PropertyTaxContext(
            tax_year=row.tax_year,
            levy_amount=_float(row.levy_amount),
            taxable_value_amount=_float(row.taxable_value_amount),
            median_bill_amount=_float(row.median_bill_amount),
            bill_p25_amount=_float(row.bill_p25_amount),
            bill_p75_amount=_float(row.bill_p75_amount),
            parcel_count=row.parcel_count,
            household_count=row.household_count,
            data_type=kind,
            source=source_reference(source),
        )
        for row, source, kind in query.order_by(PropertyTaxContextSnapshot.tax_year.desc()).all()
    ]


def get_place_taxes(
    session: Session,
    geo_unit_id: uuid.UUID,
    methodology: ActiveMethodology,
    *,
    from_year: int | None = None,
    to_year: int | None = None,
    tax_type: TaxType | str | None = None,
    tax_year: int | None = None,
    as_of: date | None = None,
) -> TaxesResponse:
    """All tax categories at a geo unit with time series and trend.

    Categories follow TAX_TYPE_ORDER. The current rate per instrument is
    chosen for tax_year when given, otherwise as of `as_of` (default today).
    """
    geo_unit, geo_source = _load_geo_unit(session, geo_unit_id)
    today = as_of or date.today()
    if to_year is None:
        to_year = tax_year if tax_year is not None else today.year
    if from_year is None:
        from_year = to_year - DEFAULT_HISTORY_YEARS
    tax_type = TaxType(tax_type) if tax_type is not None else None

    coverages = _coverages(session, geo_unit_id, methodology)
    instruments = _instruments(session, [c.jurisdiction.id for c in coverages], tax_type)
    rates = _rates_by_instrument(session, [i.id for i in instruments], methodology)

    categories = []
    present = {i.tax_type for i in instruments}
    for category_type in TAX_TYPE_ORDER:
        if category_type not in present:
            continue
        details, _selected, total = _blend(
            coverages, instruments, rates, category_type,
            as_of=None if tax_year is not None else today, tax_year=tax_year,
        )
        for detail in details:
            detail.time_series = [
                rate.data_point()
                for rate in rates.get(detail.instrument_id, [])
                if from_year <= snapshot_year(rate.snapshot) <= to_year
            ]
            detail.time_series.sort(key=lambda p: (p.year, p.effective_date))

        trend = _trend(details, rates, from_year, to_year)
        change_percent, change_direction = calculate_change(trend)
        property_context = None
        if category_type == TaxType.PROPERTY:
            property_context = _property_context(session, geo_unit_id, methodology, from_year, to_year)

        categories.append(TaxCategoryDetail(
            tax_type=category_type,
            display_name=TAX_TYPE_DISPLAY_NAMES[category_type],
            total_rate=total,
            rate_unit=_rate_unit(details),
            jurisdictions=details,
            property_context=property_context,
            trend_data=trend,
            change_percent=change_percent,
            change_direction=change_direction,
        ))

    return TaxesResponse(
        geo_unit_id=geo_unit.id,
        name=geo_unit.name,
        tax_year=tax_year if tax_year is not None else to_year,
        is_demo=geo_source.is_demo,
        methodology_version=methodology.overlay_version_label,
        categories=categories,
    )


def get_rate_history(
    session: Session,
    jurisdiction_id: uuid.UUID,
    tax_type: TaxType | str,
    methodology: ActiveMethodology,
) -> list[TaxRateDataPoint]:
    """Every recorded snapshot of a jurisdiction's instruments of one type, oldest first."""
    if session.get(Jurisdiction, jurisdiction_id) is None:
        raise MissingReferenceError("jurisdiction", str(jurisdiction_id))
    instruments = _instruments(session, [jurisdiction_id], TaxType(tax_type))
    rates = _rates_by_instrument(session, [i.id for i in instruments], methodology)
    points = [rate.data_point() for group in rates.values() for rate in group]
    points.sort(key=lambda p: (p.effective_date, p.year))
    return points


def resolve_place(
    session: Session, text: str, state_code: str | None = None, limit: int = 10
) -> list[PlaceMatch]:
    """Case-insensitive substring lookup over aliases, best match first.

    Whole-alias matches rank before prefix matches, which rank before other
    substrings; within a tier preferred aliases and higher ranks come first.
    """
    alias_key = (text or "").strip().casefold()
    if not alias_key:
        return []
    match_tier = case(
        (PlaceAlias.alias_key == alias_key, 0),
        (PlaceAlias.alias_key.startswith(alias_key, autoescape=True), 1),
        else_=2,
    )
    query = (
        session.query(PlaceAlias, GeoUnit)
        .join(GeoUnit, PlaceAlias.geo_unit_id == GeoUnit.id)
        .filter(PlaceAlias.alias_key.contains(alias_key, autoescape=True))
    )
    if state_code:
        query = query.filter(PlaceAlias.state_code == state_code.upper())
    rows = (
        query.order_by(
            match_tier,
            PlaceAlias.is_preferred.desc(),
            PlaceAlias.alias_rank.desc(),
            GeoUnit.name,
        )
        .limit(limit)
        .all()
    )
    return [
        PlaceMatch(
            geo_unit_id=unit.id,
            geo_unit_type=unit.geo_unit_type,
            geoid=unit.geoid,
            name=unit.name,
            state_code=alias.state_code,
            alias_text=alias.alias_text,
            alias_kind=alias.alias_kind,
            alias_rank=alias.alias_rank,
            is_preferred=alias.is_preferred,
            confidence=_match_confidence(alias.alias_key, alias_key),
        )
        for alias, unit in rows
    ]


def _match_confidence(stored_key: str, query_key: str) -> str:
    if stored_key == query_key:
        return "high"
    if stored_key.startswith(query_key):
        return "medium"
    return "low"
