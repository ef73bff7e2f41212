"""Methodology version registry.

Derived rows (overlay edges, rate snapshots, signals) are tagged with the
methodology version that produced them. Queries read from one explicitly
chosen version per concern, passed around as an ActiveMethodology.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import MethodologySpec, PilotConfig
from .exceptions import MalformedInputError, MissingReferenceError
from .ids import stable_uuid
from .models import MethodologyVersion
from .schemas import DataKind

logger = logging.getLogger(__name__)


def ensure_methodology_version(
    session: Session,
    name: str,
    version: str,
    kind: DataKind | str,
    description: str | None = None,
) -> uuid.UUID:
    """Create the (name, version) row or refresh its kind and description.

    A None description leaves an existing description untouched.
    """
    if not name or not version:
        raise MalformedInputError("Methodology name and version are required")
    try:
        kind = DataKind(kind)
    except ValueError as e:
        raise MalformedInputError(f"Unknown methodology kind: {kind!r}") from e

    existing = (
        session.query(MethodologyVersion)
        .filter(MethodologyVersion.name == name, MethodologyVersion.version == version)
        .first()
    )

    if existing:
        existing.kind = kind
        if description is not None:
            existing.description = description
        return existing.id

    row = MethodologyVersion(
        id=stable_uuid(["methodology_version", name, version]),
        name=name,
        version=version,
        kind=kind,
        description=description,
    )
    session.add(row)
    session.flush()
    logger.info("Registered methodology %s@%s (%s)", name, version, kind.value)
    return row.id


def ensure_from_spec(session: Session, spec: MethodologySpec, description: str | None = None) -> uuid.UUID:
    return ensure_methodology_version(session, spec.name, spec.version, spec.kind, description)


def get_methodology_version_id(session: Session, name: str, version: str) -> uuid.UUID | None:
    return session.execute(
        select(MethodologyVersion.id).where(
            MethodologyVersion.name == name,
            MethodologyVersion.version == version,
        )
    ).scalar_one_or_none()


def require_methodology_version_id(session: Session, spec: MethodologySpec) -> uuid.UUID:
    version_id = get_methodology_version_id(session, spec.name, spec.version)
    if version_id is None:
        raise MissingReferenceError("methodology_version", f"{spec.name}@{spec.version}")
    return version_id


@dataclass(frozen=True)
class ActiveMethodology:
    """The methodology versions a query reads from.

    overlay_version_id selects GeoUnitJurisdiction rows. rate_version_ids
    selects rate snapshots; None means any version.
    """

    overlay_version_id: uuid.UUID
    overlay_version_label: str = ""
    rate_version_ids: tuple[uuid.UUID, ...] | None = None


def resolve_active_methodology(session: Session, pilot: PilotConfig) -> ActiveMethodology:
    """Look up a pilot's configured versions once, for use across queries."""
    overlay_spec = pilot.methodologies.geo_overlay
    overlay_id = require_methodology_version_id(session, overlay_spec)

    rate_ids = []
    for spec in (pilot.methodologies.fact, pilot.methodologies.estimate):
        version_id = get_methodology_version_id(session, spec.name, spec.version)
        if version_id is not None:
            rate_ids.append(version_id)

    return ActiveMethodology(
        overlay_version_id=overlay_id,
        overlay_version_label=f"{overlay_spec.name}@{overlay_spec.version}",
        rate_version_ids=tuple(rate_ids),
    )
