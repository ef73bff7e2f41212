"""Geometry normalization and measurement.

Every stored boundary is a MultiPolygon in EPSG:4326 (WGS84 lon/lat). Inputs
arrive as GeoJSON dicts in their source projection (TIGER/Line is NAD83,
EPSG:4269) and are reprojected on the way in.

Areas are geodesic (square meters on the WGS84 ellipsoid), never planar
degrees, so coverage ratios are not distorted by latitude.
"""

from functools import lru_cache

import shapely
from geoalchemy2 import Geometry, WKBElement
from geoalchemy2.shape import from_shape, to_shape
from pyproj import Geod, Transformer
from shapely import wkb
from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient
from shapely.ops import transform
from sqlalchemy import LargeBinary
from sqlalchemy.types import TypeDecorator

from .exceptions import MalformedInputError

CANONICAL_SRID = 4326
NAD83_SRID = 4269

GEOD = Geod(ellps="WGS84")


class PolygonGeometry(TypeDecorator):
    """Canonical MultiPolygon column holding shapely geometries.

    PostgreSQL gets a native PostGIS geometry(MULTIPOLYGON, 4326) column
    through GeoAlchemy2. Other dialects store WKB
    in a binary column so the in-process overlay still works.
    """

    impl = Geometry
    cache_ok = True

    def __init__(self, geometry_type: str = "MULTIPOLYGON", srid: int = CANONICAL_SRID, **kw):
        # GiST indexes are declared on the tables themselves.
        kw.setdefault("spatial_index", False)
        super().__init__(geometry_type=geometry_type, srid=srid, **kw)

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return self.impl_instance
        return dialect.type_descriptor(LargeBinary())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return from_shape(value, srid=CANONICAL_SRID)
        return wkb.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, WKBElement):
            return to_shape(value)
        return wkb.loads(bytes(value))


@lru_cache(maxsize=16)
def _transformer(srid: int) -> Transformer:
    return Transformer.from_crs(f"EPSG:{srid}", f"EPSG:{CANONICAL_SRID}", always_xy=True)


def _polygons(geom: BaseGeometry) -> list[Polygon]:
    if isinstance(geom, Polygon):
        return [] if geom.is_empty else [geom]
    if isinstance(geom, (MultiPolygon, GeometryCollection)):
        found = []
        for part in geom.geoms:
            found.extend(_polygons(part))
        return found
    return []


def to_multipolygon(geometry, srid: int = CANONICAL_SRID) -> MultiPolygon:
    """Normalize a GeoJSON mapping (or shapely geometry) to a canonical MultiPolygon.

    Invalid rings are repaired with make_valid. A polygon that collapses to
    nothing when repaired (zero area) is kept as-is so the overlay can skip it
    as degenerate instead of failing ingestion.
    """
    if geometry is None:
        raise MalformedInputError("Geometry is required")

    try:
        geom = geometry if isinstance(geometry, BaseGeometry) else shape(geometry)
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError) as e:
        raise MalformedInputError(f"Unreadable geometry: {e}") from e

    original = _polygons(geom)
    if not original:
        raise MalformedInputError(f"Expected polygonal geometry, got {geom.geom_type}")

    if srid != CANONICAL_SRID:
        geom = transform(_transformer(srid).transform, geom)
        original = _polygons(geom)

    if not geom.is_valid:
        repaired = _polygons(shapely.make_valid(geom))
        if repaired:
            return MultiPolygon(repaired)

    return MultiPolygon(original)


def to_geojson(geom: BaseGeometry | None) -> dict | None:
    if geom is None:
        return None
    return mapping(geom)


def geodesic_area(geom: BaseGeometry | None) -> float:
    """Area in square meters on the WGS84 ellipsoid."""
    if geom is None or geom.is_empty:
        return 0.0
    total = 0.0
    for polygon in _polygons(geom):
        if polygon.area == 0:
            continue
        area, _perimeter = GEOD.geometry_area_perimeter(orient(polygon, sign=1.0))
        total += abs(area)
    return total


def representative_point(geom: BaseGeometry | None) -> tuple[float, float] | None:
    """(lat, lng) of a point guaranteed to lie on the geometry's surface."""
    if geom is None or geom.is_empty:
        return None
    try:
        point = geom.representative_point()
    except ShapelyError:
        return None
    if point.is_empty:
        return None
    return point.y, point.x
