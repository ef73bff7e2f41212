"""Shapefile feature streaming and TIGER/Line attribute aliases.

A ShapefileSource reads one .shp/.dbf pair lazily, one feature at a time.
It is single-pass per open: iterate it once inside `with source:`, and
re-enter the context to read it again from the start.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import shapefile

from .exceptions import MalformedInputError

logger = logging.getLogger(__name__)


# =============================================================================
# TIGER/Line field aliases
# =============================================================================


@dataclass(frozen=True)
class FieldAliases:
    """Ordered candidate attribute names per logical field.

    Census renames attributes between vintages (GEOID, GEOID20, GEOID10...).
    Candidates are tried in order; the first non-empty value wins.
    """

    version: str
    fields: dict[str, tuple[str, ...]]

    def get(self, properties: dict | None, logical_name: str) -> str | None:
        return first_present(properties, self.fields[logical_name])


TIGER_FIELD_ALIASES = FieldAliases(
    version="tiger-2010-2020",
    fields={
        "state_fips": ("STATEFP", "STATEFP20", "STATEFP10"),
        "county_fips": ("COUNTYFP", "COUNTYFP20", "COUNTYFP10"),
        "geoid": ("GEOID", "GEOID20", "GEOID10"),
        # Legal/statistical name with suffix first ("Census Tract 1001"), then bare name.
        "name": (
            "NAMELSAD", "NAMELSAD20", "NAMELSAD10",
            "NAME", "NAME20", "NAME10",
        ),
    },
)


def first_present(properties: dict | None, candidates: tuple[str, ...]) -> str | None:
    """First candidate whose value is present and not blank, as a string."""
    if not properties:
        return None
    for key in candidates:
        value = properties.get(key)
        if value is not None and str(value).strip() != "":
            return str(value).strip()
    return None


# =============================================================================
# Feature source
# =============================================================================


@dataclass
class ShapefileFeature:
    geometry: dict | None
    properties: dict


class ShapefileSource:
    """Scoped, single-pass reader over a shapefile's features.

    with ShapefileSource(shp_path, dbf_path) as source:
        for feature in source:
            ...
    """

    def __init__(self, shp_path: Path, dbf_path: Path | None = None, encoding: str = "utf-8"):
        self.shp_path = Path(shp_path)
        self.dbf_path = Path(dbf_path) if dbf_path else self.shp_path.with_suffix(".dbf")
        self.encoding = encoding
        self._reader: shapefile.Reader | None = None
        self._handles = []
        self._consumed = False

    def open(self) -> "ShapefileSource":
        if self._reader is not None:
            raise RuntimeError(f"{self.shp_path.name} is already open")
        for path in (self.shp_path, self.dbf_path):
            if not path.is_file():
                raise MalformedInputError(f"Shapefile component not found: {path}")

        # Every handle is registered as soon as it opens so close() can release it.
        kwargs = {}
        try:
            for key, path in (("shp", self.shp_path), ("dbf", self.dbf_path), ("shx", self.shp_path.with_suffix(".shx"))):
                if key == "shx" and not path.is_file():
                    continue
                kwargs[key] = open(path, "rb")
                self._handles.append(kwargs[key])
            self._reader = shapefile.Reader(encoding=self.encoding, **kwargs)
        except shapefile.ShapefileException as e:
            self.close()
            raise MalformedInputError(f"Unreadable shapefile {self.shp_path}: {e}") from e
        except BaseException:
            self.close()
            raise
        self._consumed = False
        return self

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        for handle in self._handles:
            handle.close()
        self._handles = []

    def __enter__(self) -> "ShapefileSource":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __len__(self) -> int:
        if self._reader is None:
            raise RuntimeError(f"{self.shp_path.name} is not open")
        return len(self._reader)

    def __iter__(self) -> Iterator[ShapefileFeature]:
        if self._reader is None:
            raise RuntimeError(f"{self.shp_path.name} is not open")
        if self._consumed:
            raise RuntimeError(f"{self.shp_path.name} was already read; reopen it to start over")
        self._consumed = True
        return self._features(self._reader)

    @staticmethod
    def _features(reader: shapefile.Reader) -> Iterator[ShapefileFeature]:
        for shape_record in reader.iterShapeRecords():
            shape = shape_record.shape
            geometry = None if shape.shapeType == shapefile.NULL else shape.__geo_interface__
            yield ShapefileFeature(geometry=geometry, properties=shape_record.record.as_dict())
