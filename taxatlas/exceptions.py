"""Errors raised by TaxAtlas ingestion and queries.

Parse-tolerant problems (an unparseable number in a CSV cell) are not errors:
they become nulls. Degenerate geometries during overlay are skipped and counted.
Everything here aborts the current pipeline transaction.
"""


class TaxAtlasError(Exception):
    """Base class for all TaxAtlas errors."""


class MissingReferenceError(TaxAtlasError):
    """A record points at a natural key that has not been ingested."""

    def __init__(self, kind: str, key: str, context: str | None = None):
        self.kind = kind
        self.key = key
        self.context = context
        message = f"Missing {kind}: {key}"
        if context:
            message = f"{message} (referenced by {context})"
        super().__init__(message)


class GeoUnitNotFoundError(MissingReferenceError):
    def __init__(self, geo_unit_id):
        super().__init__("geo_unit", str(geo_unit_id))


class MalformedInputError(TaxAtlasError):
    """An input file is absent, of the wrong shape, or lacks required fields."""


class SelfParentError(MalformedInputError):
    """A jurisdiction names itself as its own parent."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Jurisdiction cannot be its own parent: external_id={external_id}")
