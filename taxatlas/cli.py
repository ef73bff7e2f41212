"""TaxAtlas ingestion CLI.

Each pipeline runs in its own transaction, in dependency order:
geos → aliases → jurisdictions (+ overlay) → taxes → accountability.

Usage:
    uv run taxatlas-ingest --all                      # Everything for the default pilot
    uv run taxatlas-ingest --geos --skip-tiger        # Custom geo units only (offline)
    uv run taxatlas-ingest --jurisdictions --taxes    # Re-run selected pipelines
    uv run taxatlas-ingest --stats                    # Row counts per table
    uv run taxatlas-ingest --place "Minneapolis"      # Blended taxes for a place
"""

import argparse
import sys
from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .aggregator import get_place_taxes, resolve_place
from .config import configure_observability, get_pilot_config
from .database import SessionLocal, engine, init_db
from .exceptions import TaxAtlasError
from .methodology import resolve_active_methodology
from .models import (
    DecisionEvent,
    DecisionTaxImpact,
    GeoUnit,
    GeoUnitJurisdiction,
    Jurisdiction,
    MethodologyVersion,
    Office,
    Person,
    PlaceAlias,
    PolicySignal,
    PropertyTaxContextSnapshot,
    SourceDoc,
    TaxInstrument,
    TaxRateSnapshot,
    Term,
    VoteCast,
    VoteRecord,
)
from .pipelines.accountability import run_accountability
from .pipelines.aliases import run_aliases
from .pipelines.geos import run_geos
from .pipelines.jurisdictions import run_jurisdictions
from .pipelines.taxes import run_taxes
from .transformations import PipelineStats

STATS_TABLES = (
    SourceDoc,
    MethodologyVersion,
    GeoUnit,
    PlaceAlias,
    Jurisdiction,
    GeoUnitJurisdiction,
    TaxInstrument,
    TaxRateSnapshot,
    PropertyTaxContextSnapshot,
    Person,
    Office,
    Term,
    DecisionEvent,
    DecisionTaxImpact,
    VoteRecord,
    VoteCast,
    PolicySignal,
)


def print_pipeline_stats(stats: PipelineStats) -> None:
    print(f"\n=== {stats.pipeline} ({stats.status}) ===")
    print(f"Processed: {stats.records_processed}")
    print(f"Written: {stats.records_written}")
    print(f"Skipped: {stats.records_skipped}")
    for key, count in sorted(stats.counts.items()):
        print(f"  {key}: {count:,}")
    if stats.warnings:
        print(f"Warnings ({len(stats.warnings)}):")
        for warning in stats.warnings[:5]:
            print(f"  - {warning}")


def print_stats(session: Session) -> None:
    """Row counts per table."""
    print("\n=== Table counts ===")
    for model in STATS_TABLES:
        count = session.scalar(select(func.count()).select_from(model))
        print(f"  {model.__tablename__}: {count:,}")


def print_place(session: Session, pilot, text: str) -> None:
    matches = resolve_place(session, text, state_code=pilot.state_code, limit=1)
    if not matches:
        print(f"No place matches {text!r}")
        return
    match = matches[0]
    if match.confidence != "high":
        print(f"Closest match for {text!r}: {match.alias_text}")
    methodology = resolve_active_methodology(session, pilot)
    taxes = get_place_taxes(session, match.geo_unit_id, methodology)

    demo = " [demo data]" if taxes.is_demo else ""
    print(f"\n=== {taxes.name} ({match.geo_unit_type.value} {match.geoid}){demo} ===")
    print(f"Methodology: {taxes.methodology_version}")
    for category in taxes.categories:
        total = "n/a" if category.total_rate is None else f"{category.total_rate} {category.rate_unit}"
        print(f"\n{category.display_name}: {total} (estimate)")
        for detail in category.jurisdictions:
            rate = "-" if detail.current_rate is None else f"{detail.current_rate}"
            flag = "" if detail.contributes else f"  ({detail.note})"
            print(
                f"  {detail.jurisdiction_name:<32} {detail.instrument_name:<32} "
                f"{rate:>10} x {detail.coverage_ratio:.4f}{flag}"
            )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest and query TaxAtlas pilot data")
    parser.add_argument("--pilot", help="Pilot id (default: TAXATLAS_PILOT or minneapolis)")
    parser.add_argument("--data-dir", type=Path, help="Pilot data directory (default: TAXATLAS_DATA_DIR)")
    parser.add_argument("--geos", action="store_true", help="Ingest geo units")
    parser.add_argument("--skip-tiger", action="store_true", help="Skip TIGER/Line downloads in --geos")
    parser.add_argument("--aliases", action="store_true", help="Ingest place aliases")
    parser.add_argument("--jurisdictions", action="store_true", help="Ingest jurisdictions and compute overlay")
    parser.add_argument("--taxes", action="store_true", help="Ingest tax instruments and snapshots")
    parser.add_argument("--accountability", action="store_true", help="Ingest officials and policy signals")
    parser.add_argument("--all", action="store_true", help="Run every pipeline in order")
    parser.add_argument("--stats", action="store_true", help="Show row counts")
    parser.add_argument("--place", metavar="TEXT", help="Show blended taxes for a place name or ZIP")
    args = parser.parse_args(argv)

    if args.all:
        args.geos = args.aliases = args.jurisdictions = args.taxes = args.accountability = True

    if not (args.geos or args.aliases or args.jurisdictions or args.taxes
            or args.accountability or args.stats or args.place):
        parser.print_help()
        return 0

    configure_observability(engine)
    pilot = get_pilot_config(args.pilot, args.data_dir)

    print("Creating tables if needed...")
    init_db(engine)

    with SessionLocal() as session:
        try:
            if args.geos:
                for stats in run_geos(session, pilot, skip_tiger=args.skip_tiger):
                    print_pipeline_stats(stats)
            if args.aliases:
                print_pipeline_stats(run_aliases(session, pilot))
            if args.jurisdictions:
                print_pipeline_stats(run_jurisdictions(session, pilot))
            if args.taxes:
                print_pipeline_stats(run_taxes(session, pilot))
            if args.accountability:
                print_pipeline_stats(run_accountability(session, pilot))
            if args.stats:
                print_stats(session)
            if args.place:
                print_place(session, pilot, args.place)
        except TaxAtlasError as e:
            print(f"\nError: {e}", file=sys.stderr)
            return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
