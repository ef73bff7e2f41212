"""Geography pipeline.

- Downloads TIGER/Line tract and block group shapefiles for the pilot state
- Filters features to the pilot county
- Upserts geo_unit rows (NAD83 input, stored as EPSG:4326)
- Loads pilot custom geo units (city / neighborhood / zip) from GeoJSON
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

import httpx
import logfire
from sqlalchemy.orm import Session

from ..config import PilotConfig
from ..database import transaction
from ..exceptions import MalformedInputError
from ..fetch import ensure_downloaded, ensure_unzipped, find_shapefile_paths, read_feature_collection
from ..geometry import NAD83_SRID, to_multipolygon
from ..provenance import upsert_source_doc_from_file
from ..schemas import GeoUnitType
from ..shapefiles import TIGER_FIELD_ALIASES, ShapefileSource
from ..transformations import CustomGeoUnitProperties, PipelineStats, parse_record, state_code_from_fips
from ..upserts import upsert_geo_unit

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 500


def tiger_cache_paths(pilot: PilotConfig, url: str, label: str) -> tuple[Path, Path]:
    cache_dir = pilot.cache_dir / "tiger" / str(pilot.tiger_year) / label
    return cache_dir / Path(url).name, cache_dir / "unzipped"


def ingest_tiger_geo_units(
    session: Session,
    pilot: PilotConfig,
    *,
    url: str,
    geo_unit_type: GeoUnitType,
    label: str,
    client: httpx.Client | None = None,
) -> PipelineStats:
    """Load one TIGER/Line layer for the pilot county in a single transaction."""
    stats = PipelineStats(pipeline=f"geos:{label}")
    zip_path, unzip_dir = tiger_cache_paths(pilot, url, label)

    downloaded = ensure_downloaded(url, zip_path, client=client)
    if downloaded:
        logger.info(f"Downloaded {label}: {downloaded.bytes} bytes, sha256={downloaded.sha256}")
    else:
        logger.info(f"Using cached {label}: {zip_path}")
    ensure_unzipped(zip_path, unzip_dir)
    shp_path, dbf_path = find_shapefile_paths(unzip_dir)

    aliases = TIGER_FIELD_ALIASES
    with logfire.span("ingest tiger {label}", label=label, pilot=pilot.pilot_id):
        with transaction(session):
            source_doc_id, _sha = upsert_source_doc_from_file(
                session,
                zip_path,
                url=url,
                is_demo=False,
                title=f"US Census TIGER/Line {pilot.tiger_year} {label} ({pilot.state_fips})",
                mime_type="application/zip",
                retrieved_at=datetime.now(timezone.utc),
            )

            with ShapefileSource(shp_path, dbf_path) as source:
                for feature in source:
                    stats.records_processed += 1
                    props = feature.properties
                    if feature.geometry is None:
                        stats.records_skipped += 1
                        continue
                    state_fips = aliases.get(props, "state_fips")
                    county_fips = aliases.get(props, "county_fips")
                    if state_fips != pilot.state_fips or county_fips != pilot.county_fips:
                        stats.records_skipped += 1
                        continue
                    geoid = aliases.get(props, "geoid")
                    if not geoid:
                        stats.records_skipped += 1
                        continue
                    name = aliases.get(props, "name") or f"{geo_unit_type.value} {geoid}"

                    upsert_geo_unit(
                        session,
                        geo_unit_type=geo_unit_type,
                        geoid=geoid,
                        name=name,
                        state_code=state_code_from_fips(state_fips),
                        state_fips=state_fips,
                        county_fips=county_fips,
                        geometry=feature.geometry,
                        srid=NAD83_SRID,  # TIGER/Line is NAD83
                        source_doc_id=source_doc_id,
                    )
                    stats.bump("geo_unit")
                    if stats.records_written % PROGRESS_EVERY == 0:
                        logger.info(f"Ingested {stats.records_written} {label}...")

    logger.info(
        f"Done ingesting {label}: {stats.records_written} upserted, "
        f"{stats.records_skipped} outside {pilot.county_name} or unusable"
    )
    return stats


def ingest_custom_geo_units(session: Session, pilot: PilotConfig) -> PipelineStats:
    """Load custom geo units from GeoJSON. A missing file is skipped, not an error."""
    stats = PipelineStats(pipeline="geos:custom")
    path = pilot.resolve(pilot.paths.custom_geo_units_geojson)
    if not path.is_file():
        logger.warning(f"No custom geo units GeoJSON found at {path}; skipping")
        stats.status = "skipped"
        return stats

    # Validate every feature before writing anything.
    features = read_feature_collection(path)
    parsed = []
    for index, feature in enumerate(features):
        context = f"{path} feature #{index}"
        if not isinstance(feature, dict):
            raise MalformedInputError(f"Expected a Feature object at {context}")
        props = parse_record(CustomGeoUnitProperties, feature.get("properties") or {}, context)
        parsed.append((props, to_multipolygon(feature.get("geometry"))))

    with logfire.span("ingest custom geo units", pilot=pilot.pilot_id):
        with transaction(session):
            source_doc_id, _sha = upsert_source_doc_from_file(
                session,
                path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot custom geo units ({pilot.pilot_id})",
                mime_type="application/geo+json",
            )
            for props, geom in parsed:
                stats.records_processed += 1
                upsert_geo_unit(
                    session,
                    geo_unit_type=props.geo_unit_type,
                    geoid=props.geoid,
                    name=props.name,
                    state_code=pilot.state_code,
                    state_fips=pilot.state_fips,
                    county_fips=props.county_fips,
                    geometry=geom,
                    source_doc_id=source_doc_id,
                )
                stats.bump("geo_unit")

    logger.info(f"Done ingesting custom geo units: {stats.records_written}")
    return stats


def run_geos(
    session: Session,
    pilot: PilotConfig,
    *,
    skip_tiger: bool = False,
    client: httpx.Client | None = None,
) -> list[PipelineStats]:
    """Tracts, block groups, then custom units. Each layer commits on its own."""
    results = []
    if not skip_tiger:
        results.append(ingest_tiger_geo_units(
            session, pilot,
            url=pilot.tiger.tracts_url,
            geo_unit_type=GeoUnitType.TRACT,
            label="tracts",
            client=client,
        ))
        results.append(ingest_tiger_geo_units(
            session, pilot,
            url=pilot.tiger.block_groups_url,
            geo_unit_type=GeoUnitType.BLOCK_GROUP,
            label="block_groups",
            client=client,
        ))
    results.append(ingest_custom_geo_units(session, pilot))
    return results
