"""Spatial overlay: geo unit ↔ jurisdiction coverage.

For every geo unit and jurisdiction in the same state whose boundaries
intersect, computes

    coverage_ratio = geodesic_area(geo_unit ∩ jurisdiction) / geodesic_area(geo_unit)

and upserts it keyed by (geo_unit_id, jurisdiction_id, methodology_version_id).
Rows under other methodology versions are never touched.

Two backends produce the same rows:
- PostgreSQL: one INSERT ... SELECT using PostGIS (GiST-indexed ST_Intersects,
  geography areas), executed entirely in the database
- anything else: a shapely STRtree bulk join with pyproj geodesic areas
"""

import logging
import uuid
from datetime import datetime, timezone

import logfire
import shapely
from pydantic import BaseModel, Field
from shapely.errors import ShapelyError
from shapely.strtree import STRtree
from sqlalchemy import Uuid, bindparam, text
from sqlalchemy.orm import Session

from .geometry import geodesic_area
from .models import GeoUnit, GeoUnitJurisdiction, Jurisdiction
from .schemas import OVERLAY_GEO_UNIT_TYPES
from .upserts import assign_changed, to_decimal

logger = logging.getLogger(__name__)

OVERLAY_NOTES = "spatial overlay v1"
RATIO_DECIMALS = 6


class OverlayStats(BaseModel):
    """Counters from one overlay computation."""

    state_code: str
    methodology_version_id: uuid.UUID
    backend: str = Field(description="'postgis' or 'shapely'")
    geo_units: int = 0
    jurisdictions: int = 0
    candidate_pairs: int = Field(default=0, description="Pairs passing the bounding-box filter")
    rows_upserted: int = 0
    degenerate_skipped: int = Field(
        default=0,
        description="Geo units with zero area, for which no ratio is defined"
    )


def normalize_ratio(intersection_area: float, unit_area: float) -> float:
    """Ratio clamped to [0, 1] and rounded to the stored precision."""
    ratio = intersection_area / unit_area
    return round(min(1.0, max(0.0, ratio)), RATIO_DECIMALS)


def compute_overlay(
    session: Session,
    *,
    state_code: str,
    methodology_version_id: uuid.UUID,
    source_doc_id: uuid.UUID,
) -> OverlayStats:
    """Recompute coverage for one state under one methodology version."""
    state_code = state_code.upper()
    # Both backends read geometry from the database, not the identity map.
    session.flush()
    backend = "postgis" if session.get_bind().dialect.name == "postgresql" else "shapely"
    with logfire.span(
        "overlay {state_code}", state_code=state_code, backend=backend
    ):
        if backend == "postgis":
            stats = _overlay_postgis(session, state_code, methodology_version_id, source_doc_id)
        else:
            stats = _overlay_in_process(session, state_code, methodology_version_id, source_doc_id)
    logger.info(
        "Overlay %s (%s): %d rows upserted, %d degenerate geo units skipped",
        state_code, backend, stats.rows_upserted, stats.degenerate_skipped,
    )
    return stats


def _upsert_edge(
    session: Session,
    geo_unit_id: uuid.UUID,
    jurisdiction_id: uuid.UUID,
    methodology_version_id: uuid.UUID,
    coverage_ratio: float,
    coverage_area_m2: float,
    source_doc_id: uuid.UUID,
) -> None:
    coverage_ratio = to_decimal(coverage_ratio, 6)
    existing = session.get(
        GeoUnitJurisdiction, (geo_unit_id, jurisdiction_id, methodology_version_id)
    )
    if existing:
        assign_changed(
            existing,
            coverage_ratio=coverage_ratio,
            coverage_area_m2=coverage_area_m2,
            notes=OVERLAY_NOTES,
            source_doc_id=source_doc_id,
        )
        return
    session.add(GeoUnitJurisdiction(
        geo_unit_id=geo_unit_id,
        jurisdiction_id=jurisdiction_id,
        methodology_version_id=methodology_version_id,
        coverage_ratio=coverage_ratio,
        coverage_area_m2=coverage_area_m2,
        notes=OVERLAY_NOTES,
        source_doc_id=source_doc_id,
    ))


def _overlay_in_process(
    session: Session,
    state_code: str,
    methodology_version_id: uuid.UUID,
    source_doc_id: uuid.UUID,
) -> OverlayStats:
    units = (
        session.query(GeoUnit.id, GeoUnit.geom)
        .filter(
            GeoUnit.state_code == state_code,
            GeoUnit.geo_unit_type.in_(OVERLAY_GEO_UNIT_TYPES),
        )
        .order_by(GeoUnit.id)
        .all()
    )
    jurisdictions = (
        session.query(Jurisdiction.id, Jurisdiction.geom)
        .filter(Jurisdiction.state_code == state_code, Jurisdiction.geom.is_not(None))
        .order_by(Jurisdiction.id)
        .all()
    )
    stats = OverlayStats(
        state_code=state_code,
        methodology_version_id=methodology_version_id,
        backend="shapely",
        geo_units=len(units),
        jurisdictions=len(jurisdictions),
    )
    if not units or not jurisdictions:
        return stats

    unit_areas = {}
    measurable = []
    for unit_id, geom in units:
        area = geodesic_area(geom)
        if area <= 0:
            stats.degenerate_skipped += 1
            logger.warning("Skipping zero-area geo unit %s in overlay", unit_id)
            continue
        unit_areas[unit_id] = area
        measurable.append((unit_id, geom))
    if not measurable:
        return stats

    # One bulk query: bbox filter via the tree, then an exact intersects test.
    tree = STRtree([geom for _, geom in jurisdictions])
    unit_idx, jurisdiction_idx = tree.query(
        [geom for _, geom in measurable], predicate="intersects"
    )
    stats.candidate_pairs = len(unit_idx)

    for i, j in zip(unit_idx.tolist(), jurisdiction_idx.tolist()):
        unit_id, unit_geom = measurable[i]
        jurisdiction_id, jurisdiction_geom = jurisdictions[j]
        unit_area = unit_areas[unit_id]
        try:
            if shapely.covers(jurisdiction_geom, unit_geom):
                intersection_area, ratio = unit_area, 1.0
            else:
                intersection_area = geodesic_area(shapely.intersection(unit_geom, jurisdiction_geom))
                ratio = normalize_ratio(intersection_area, unit_area)
        except ShapelyError as e:
            logger.warning(
                "Skipping geo unit %s / jurisdiction %s: intersection failed (%s)",
                unit_id, jurisdiction_id, e,
            )
            continue

        _upsert_edge(
            session, unit_id, jurisdiction_id, methodology_version_id,
            ratio, intersection_area, source_doc_id,
        )
        stats.rows_upserted += 1

    session.flush()
    return stats


# geom is a native geometry(MULTIPOLYGON, 4326) column with a GiST index.
POSTGIS_OVERLAY_SQL = text(
    """
    WITH pairs AS (
        SELECT
            gu.id AS geo_unit_id,
            j.id AS jurisdiction_id,
            ST_Area(gu.geom::geography) AS unit_area,
            ST_Area(ST_Intersection(gu.geom, j.geom)::geography) AS intersection_area
        FROM geo_unit gu
        JOIN jurisdiction j
          ON j.geom IS NOT NULL
         AND gu.state_code = j.state_code
         AND ST_Intersects(gu.geom, j.geom)
        WHERE gu.state_code = :state_code
          AND gu.geo_unit_type::text = ANY(:geo_unit_types)
    )
    INSERT INTO geo_unit_jurisdiction (
        geo_unit_id,
        jurisdiction_id,
        methodology_version_id,
        coverage_ratio,
        coverage_area_m2,
        notes,
        source_doc_id,
        created_at
    )
    SELECT
        geo_unit_id,
        jurisdiction_id,
        :methodology_version_id,
        LEAST(1, GREATEST(0, intersection_area / NULLIF(unit_area, 0)))::numeric(7, 6),
        intersection_area,
        :notes,
        :source_doc_id,
        :created_at
    FROM pairs
    WHERE unit_area > 0
    ON CONFLICT (geo_unit_id, jurisdiction_id, methodology_version_id)
    DO UPDATE SET
        coverage_ratio = EXCLUDED.coverage_ratio,
        coverage_area_m2 = EXCLUDED.coverage_area_m2,
        notes = EXCLUDED.notes,
        source_doc_id = EXCLUDED.source_doc_id
    """
).bindparams(
    bindparam("methodology_version_id", type_=Uuid),
    bindparam("source_doc_id", type_=Uuid),
)

POSTGIS_COUNTS_SQL = text(
    """
    SELECT
        (SELECT count(*) FROM geo_unit
          WHERE state_code = :state_code AND geo_unit_type::text = ANY(:geo_unit_types)) AS geo_units,
        (SELECT count(*) FROM geo_unit
          WHERE state_code = :state_code AND geo_unit_type::text = ANY(:geo_unit_types)
            AND ST_Area(geom::geography) = 0) AS degenerate,
        (SELECT count(*) FROM jurisdiction
          WHERE state_code = :state_code AND geom IS NOT NULL) AS jurisdictions
    """
)


def _overlay_postgis(
    session: Session,
    state_code: str,
    methodology_version_id: uuid.UUID,
    source_doc_id: uuid.UUID,
) -> OverlayStats:
    params = {
        "state_code": state_code,
        "geo_unit_types": [t.value for t in OVERLAY_GEO_UNIT_TYPES],
    }
    counts = session.execute(POSTGIS_COUNTS_SQL, params).one()
    result = session.execute(
        POSTGIS_OVERLAY_SQL,
        {
            **params,
            "methodology_version_id": methodology_version_id,
            "source_doc_id": source_doc_id,
            "notes": OVERLAY_NOTES,
            "created_at": datetime.now(timezone.utc),
        },
    )
    return OverlayStats(
        state_code=state_code,
        methodology_version_id=methodology_version_id,
        backend="postgis",
        geo_units=counts.geo_units,
        jurisdictions=counts.jurisdictions,
        candidate_pairs=result.rowcount,
        rows_upserted=result.rowcount,
        degenerate_skipped=counts.degenerate,
    )
