"""Jurisdictions + overlay pipeline.

- Seeds pilot jurisdictions (state / county / city / school / special) from GeoJSON
- Builds the parent hierarchy in two phases (nodes, then parent links)
- Registers the overlay's own provenance document
- Recomputes geo_unit_jurisdiction coverage for the pilot state
"""

import logging

import logfire
from sqlalchemy.orm import Session

from ..config import PilotConfig
from ..database import transaction
from ..exceptions import MalformedInputError, SelfParentError
from ..fetch import read_feature_collection
from ..geometry import to_multipolygon
from ..methodology import ensure_from_spec
from ..overlay import compute_overlay
from ..provenance import pipeline_url, repo_file_url, upsert_source_doc_from_file, upsert_source_doc_from_json
from ..transformations import JurisdictionFeatureProperties, PipelineStats, parse_record
from ..upserts import JurisdictionHierarchyBuilder, JurisdictionNode

logger = logging.getLogger(__name__)

OVERLAY_PIPELINE_NAME = "geo_unit_jurisdiction_overlay_v1"
OVERLAY_FORMULA = (
    "coverage_ratio = area(intersection(geo_unit.geom, jurisdiction.geom)) / area(geo_unit.geom) "
    "(geodesic, square meters on WGS84)"
)


def load_jurisdiction_nodes(path, default_state_code: str) -> list[JurisdictionNode]:
    """Parse and validate every boundary feature. Raises before any write."""
    nodes = []
    seen = set()
    for index, feature in enumerate(read_feature_collection(path)):
        context = f"{path} feature #{index}"
        if not isinstance(feature, dict):
            raise MalformedInputError(f"Expected a Feature object at {context}")
        props = parse_record(JurisdictionFeatureProperties, feature.get("properties") or {}, context)
        if props.external_id in seen:
            raise MalformedInputError(f"Duplicate external_id {props.external_id!r} at {context}")
        seen.add(props.external_id)
        if props.parent_external_id == props.external_id:
            raise SelfParentError(props.external_id)

        geometry = feature.get("geometry")
        nodes.append(JurisdictionNode(
            jurisdiction_type=props.jurisdiction_type,
            name=props.name,
            state_code=props.state_code or default_state_code,
            external_id=props.external_id,
            geometry=to_multipolygon(geometry) if geometry is not None else None,
            parent_external_id=props.parent_external_id,
        ))
    return nodes


def run_jurisdictions(session: Session, pilot: PilotConfig) -> PipelineStats:
    stats = PipelineStats(pipeline="jurisdictions")
    path = pilot.resolve(pilot.paths.jurisdictions_geojson)
    nodes = load_jurisdiction_nodes(path, pilot.state_code)
    stats.records_processed = len(nodes)

    with logfire.span("ingest jurisdictions + overlay", pilot=pilot.pilot_id):
        with transaction(session):
            source_doc_id, boundaries_sha = upsert_source_doc_from_file(
                session,
                path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot jurisdiction boundaries ({pilot.pilot_id})",
                mime_type="application/geo+json",
            )
            overlay_version_id = ensure_from_spec(
                session,
                pilot.methodologies.geo_overlay,
                description="Spatial overlay: coverage_ratio = area(intersection)/area(geo_unit)",
            )

            builder = JurisdictionHierarchyBuilder(session, source_doc_id)
            ids_by_external_id = builder.add_nodes(nodes)
            stats.bump("jurisdiction", len(ids_by_external_id))
            stats.counts["parent_links"] = builder.link_parents()

            overlay_doc_id, _sha = upsert_source_doc_from_json(
                session,
                pipeline_url(OVERLAY_PIPELINE_NAME),
                {
                    "pipeline": OVERLAY_PIPELINE_NAME,
                    "pilot": pilot.pilot_id,
                    "jurisdiction_boundaries": {
                        "url": repo_file_url(path, pilot.data_dir),
                        "sha256": boundaries_sha,
                    },
                    "formula": OVERLAY_FORMULA,
                },
                is_demo=True,
                title="TaxAtlas spatial overlay (geo_unit_jurisdiction)",
                mime_type="application/json",
            )

            overlay = compute_overlay(
                session,
                state_code=pilot.state_code,
                methodology_version_id=overlay_version_id,
                source_doc_id=overlay_doc_id,
            )
            stats.bump("geo_unit_jurisdiction", overlay.rows_upserted)
            stats.records_skipped += overlay.degenerate_skipped

    logger.info(
        f"Jurisdictions ingest complete: {len(nodes)} jurisdictions, "
        f"{overlay.rows_upserted} overlay rows, {overlay.degenerate_skipped} degenerate geo units"
    )
    return stats
