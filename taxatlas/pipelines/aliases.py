"""Place alias pipeline: user-searchable names, ZIP codes and city names → geo units."""

import logging

import logfire
from sqlalchemy.orm import Session

from ..config import PilotConfig
from ..database import transaction
from ..fetch import read_json_file
from ..provenance import upsert_source_doc_from_file
from ..transformations import AliasSeed, PipelineStats, parse_record
from ..upserts import require_geo_unit_id, upsert_place_alias

logger = logging.getLogger(__name__)


def run_aliases(session: Session, pilot: PilotConfig) -> PipelineStats:
    stats = PipelineStats(pipeline="aliases")
    path = pilot.resolve(pilot.paths.place_aliases_json)
    seed = parse_record(AliasSeed, read_json_file(path), str(path))
    state_code = seed.state_code or pilot.state_code

    with logfire.span("ingest aliases", pilot=pilot.pilot_id):
        with transaction(session):
            source_doc_id, _sha = upsert_source_doc_from_file(
                session,
                path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot place aliases ({pilot.pilot_id})",
                mime_type="application/json",
            )
            for entry in seed.entries:
                geo_unit_id = require_geo_unit_id(
                    session, entry.geo_unit_type, entry.geoid, context=f"alias seed {path.name}"
                )
                for alias in entry.aliases:
                    stats.records_processed += 1
                    upsert_place_alias(
                        session,
                        alias_text=alias.text,
                        state_code=state_code,
                        geo_unit_id=geo_unit_id,
                        alias_kind=entry.alias_kind,
                        alias_rank=alias.rank,
                        is_preferred=alias.preferred,
                        source_doc_id=source_doc_id,
                    )
                    stats.bump("place_alias")

    logger.info(f"Aliases ingest complete: {stats.records_written} aliases")
    return stats
