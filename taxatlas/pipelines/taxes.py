"""Tax facts pipeline.

Loads pilot stub inputs in one transaction:
- Property tax context snapshots per geo unit and tax year (CSV, estimate methodology)
- Sales tax rate snapshots (CSV, fact methodology)
- State income tax brackets (JSON, fact methodology)
"""

import logging

import logfire
from sqlalchemy.orm import Session

from ..config import PilotConfig
from ..database import transaction
from ..exceptions import MalformedInputError
from ..fetch import read_csv_records, read_json_file
from ..methodology import ensure_from_spec
from ..provenance import upsert_source_doc_from_file
from ..schemas import TaxType
from ..transformations import (
    IncomeTaxJson,
    PipelineStats,
    PropertyTaxCsvRow,
    SalesTaxCsvRow,
    parse_record,
)
from ..upserts import (
    require_geo_unit_id,
    require_jurisdiction_id,
    upsert_property_tax_context_snapshot,
    upsert_tax_instrument,
    upsert_tax_rate_snapshot,
)

logger = logging.getLogger(__name__)


def _rows(model, path) -> list:
    """Parse a whole CSV up front so malformed rows fail before any write."""
    return [
        parse_record(model, record, f"{path.name} row {index + 2}")
        for index, record in enumerate(read_csv_records(path))
    ]


def run_taxes(session: Session, pilot: PilotConfig) -> PipelineStats:
    stats = PipelineStats(pipeline="taxes")
    property_path = pilot.resolve(pilot.paths.property_tax_context_csv)
    sales_path = pilot.resolve(pilot.paths.sales_tax_rates_csv)
    income_path = pilot.resolve(pilot.paths.state_income_tax_json)

    property_rows = _rows(PropertyTaxCsvRow, property_path)
    for index, row in enumerate(property_rows):
        if row.tax_year is None:
            raise MalformedInputError(f"Invalid tax_year in {property_path.name} row {index + 2}")
    sales_rows = _rows(SalesTaxCsvRow, sales_path)
    income = parse_record(IncomeTaxJson, read_json_file(income_path), str(income_path))

    base_attributes = {"pilot": pilot.pilot_id}

    with logfire.span("ingest taxes", pilot=pilot.pilot_id):
        with transaction(session):
            fact_version_id = ensure_from_spec(
                session,
                pilot.methodologies.fact,
                description="Pilot tax facts (stub inputs, replace with authoritative sources)",
            )
            estimate_version_id = ensure_from_spec(
                session,
                pilot.methodologies.estimate,
                description="Pilot tax estimates (stub inputs, replace with modeled/allocated outputs)",
            )

            # -----------------------------------------------------------------
            # Property tax context (allocated per geo unit: estimate)
            # -----------------------------------------------------------------
            property_doc_id, _sha = upsert_source_doc_from_file(
                session,
                property_path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot property tax context ({pilot.pilot_id})",
                mime_type="text/csv",
            )
            for row in property_rows:
                stats.records_processed += 1
                context = f"property tax context ({row.geo_unit_type.value} {row.geo_unit_geoid})"
                geo_unit_id = require_geo_unit_id(session, row.geo_unit_type, row.geo_unit_geoid, context)
                jurisdiction_id = require_jurisdiction_id(
                    session, pilot.state_code, row.jurisdiction_external_id, context
                )
                instrument_id = upsert_tax_instrument(
                    session,
                    jurisdiction_id=jurisdiction_id,
                    tax_type=TaxType.PROPERTY,
                    name=row.instrument_name,
                    attributes=base_attributes,
                    source_doc_id=property_doc_id,
                )
                attributes = dict(base_attributes)
                if row.effective_rate is not None:
                    attributes["effective_rate"] = row.effective_rate
                if row.notes:
                    attributes["notes"] = row.notes

                upsert_property_tax_context_snapshot(
                    session,
                    tax_instrument_id=instrument_id,
                    geo_unit_id=geo_unit_id,
                    methodology_version_id=estimate_version_id,
                    tax_year=row.tax_year,
                    source_doc_id=property_doc_id,
                    attributes=attributes,
                    levy_amount=row.levy_amount,
                    taxable_value_amount=row.taxable_value_amount,
                    tax_capacity_amount=row.tax_capacity_amount,
                    median_bill_amount=row.median_bill_amount,
                    bill_p25_amount=row.bill_p25_amount,
                    bill_p75_amount=row.bill_p75_amount,
                    parcel_count=row.parcel_count,
                    household_count=row.household_count,
                )
                stats.bump("property_tax_context_snapshot")
            logger.info(f"Property tax context loaded: {len(property_rows)} rows")

            # -----------------------------------------------------------------
            # Sales tax rate snapshots (fact)
            # -----------------------------------------------------------------
            sales_doc_id, _sha = upsert_source_doc_from_file(
                session,
                sales_path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot sales tax rates ({pilot.pilot_id})",
                mime_type="text/csv",
            )
            for row in sales_rows:
                stats.records_processed += 1
                context = f"sales tax rate ({row.instrument_name} {row.effective_date})"
                jurisdiction_id = require_jurisdiction_id(
                    session, pilot.state_code, row.jurisdiction_external_id, context
                )
                instrument_id = upsert_tax_instrument(
                    session,
                    jurisdiction_id=jurisdiction_id,
                    tax_type=TaxType.SALES,
                    name=row.instrument_name,
                    attributes=base_attributes,
                    source_doc_id=sales_doc_id,
                )
                if row.rate_value is None:
                    message = f"Skipping {context}: rate_value is not a number"
                    logger.warning(message)
                    stats.warnings.append(message)
                    stats.records_skipped += 1
                    continue

                attributes = dict(base_attributes)
                if row.notes:
                    attributes["notes"] = row.notes
                upsert_tax_rate_snapshot(
                    session,
                    tax_instrument_id=instrument_id,
                    methodology_version_id=fact_version_id,
                    effective_date=row.effective_date,
                    end_date=row.end_date,
                    tax_year=row.tax_year,
                    rate_value=row.rate_value,
                    rate_unit=row.rate_unit,
                    attributes=attributes,
                    source_doc_id=sales_doc_id,
                )
                stats.bump("tax_rate_snapshot")
            logger.info(f"Sales tax rates loaded: {len(sales_rows)} rows")

            # -----------------------------------------------------------------
            # State income tax brackets (fact)
            # -----------------------------------------------------------------
            income_doc_id, _sha = upsert_source_doc_from_file(
                session,
                income_path,
                root=pilot.data_dir,
                is_demo=True,
                title=f"TaxAtlas pilot state income tax ({pilot.pilot_id})",
                mime_type="application/json",
            )
            stats.records_processed += 1
            jurisdiction_id = require_jurisdiction_id(
                session, pilot.state_code, income.jurisdiction_external_id, "state income tax"
            )
            instrument_id = upsert_tax_instrument(
                session,
                jurisdiction_id=jurisdiction_id,
                tax_type=TaxType.INCOME,
                name=income.instrument_name,
                attributes=base_attributes,
                source_doc_id=income_doc_id,
            )
            attributes = dict(base_attributes)
            if income.notes:
                attributes["notes"] = income.notes
            upsert_tax_rate_snapshot(
                session,
                tax_instrument_id=instrument_id,
                methodology_version_id=fact_version_id,
                effective_date=income.effective_date,
                tax_year=income.tax_year,
                rate_brackets=income.rate_brackets,
                rate_unit=income.rate_unit,
                attributes=attributes,
                source_doc_id=income_doc_id,
            )
            stats.bump("tax_rate_snapshot")
            logger.info(f"State income tax loaded: {income.instrument_name}")

    return stats
