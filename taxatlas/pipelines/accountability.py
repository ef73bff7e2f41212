"""Accountability pipeline.

- Officials: persons, offices (optionally tied to a district geo unit), terms
- Decisions: budget/levy/rate events, their tax impacts, and the votes on them
  (roll calls by official, ballot tallies by geo unit)
- Policy signals: proposals, votes and news items linked to a jurisdiction
  and, optionally, to a tax instrument
"""

import logging

import logfire
from sqlalchemy.orm import Session

from ..config import PilotConfig
from ..database import transaction
from ..exceptions import MissingReferenceError
from ..fetch import read_json_file
from ..methodology import ensure_from_spec
from ..provenance import upsert_source_doc_from_file
from ..transformations import DecisionsJson, OfficialsJson, PipelineStats, PolicySignalsJson, parse_record
from ..upserts import (
    get_tax_instrument_id,
    require_geo_unit_id,
    require_jurisdiction_id,
    upsert_decision_event,
    upsert_decision_tax_impact,
    upsert_office,
    upsert_person,
    upsert_policy_signal,
    upsert_tax_instrument,
    upsert_term,
    upsert_vote_cast,
    upsert_vote_record,
)

logger = logging.getLogger(__name__)


def _load_officials(session: Session, pilot: PilotConfig, officials: OfficialsJson, stats: PipelineStats, path) -> dict:
    source_doc_id, _sha = upsert_source_doc_from_file(
        session,
        path,
        root=pilot.data_dir,
        is_demo=True,
        title=f"TaxAtlas pilot officials ({pilot.pilot_id})",
        mime_type="application/json",
    )

    person_ids = {}
    for person in officials.persons:
        stats.records_processed += 1
        person_ids[person.person_key] = upsert_person(
            session,
            pilot_id=pilot.pilot_id,
            person_key=person.person_key,
            full_name=person.full_name,
            given_name=person.given_name,
            family_name=person.family_name,
            email=person.email,
            external_ids={**person.external_ids, "person_key": person.person_key},
            source_doc_id=source_doc_id,
        )
        stats.bump("person")

    office_ids = {}
    for office in officials.offices:
        stats.records_processed += 1
        context = f"office {office.office_key}"
        jurisdiction_id = require_jurisdiction_id(
            session, pilot.state_code, office.jurisdiction_external_id, context
        )
        district_geo_unit_id = None
        if office.district_geo_unit_type and office.district_geo_unit_geoid:
            district_geo_unit_id = require_geo_unit_id(
                session, office.district_geo_unit_type, office.district_geo_unit_geoid, context
            )
        office_ids[office.office_key] = upsert_office(
            session,
            pilot_id=pilot.pilot_id,
            office_key=office.office_key,
            jurisdiction_external_id=office.jurisdiction_external_id,
            district_geo_unit_type=office.district_geo_unit_type.value if office.district_geo_unit_type else None,
            district_geo_unit_geoid=office.district_geo_unit_geoid,
            jurisdiction_id=jurisdiction_id,
            office_name=office.office_name,
            office_category=office.office_category,
            district_geo_unit_id=district_geo_unit_id,
            seats_count=office.seats_count,
            source_doc_id=source_doc_id,
        )
        stats.bump("office")

    for term in officials.terms:
        stats.records_processed += 1
        person_id = person_ids.get(term.person_key)
        if person_id is None:
            raise MissingReferenceError("person", term.person_key, context=f"term starting {term.start_date}")
        office_id = office_ids.get(term.office_key)
        if office_id is None:
            raise MissingReferenceError("office", term.office_key, context=f"term starting {term.start_date}")
        upsert_term(
            session,
            pilot_id=pilot.pilot_id,
            person_id=person_id,
            office_id=office_id,
            start_date=term.start_date,
            end_date=term.end_date,
            elected_date=term.elected_date,
            party=term.party,
            attributes={"pilot": pilot.pilot_id, **term.metadata},
            source_doc_id=source_doc_id,
        )
        stats.bump("term")

    return person_ids


def _instrument_id(session: Session, pilot: PilotConfig, jurisdiction_external_id, tax_type, name, source_doc_id, context):
    """Look up an instrument, creating it under this file's source doc only if it is new."""
    jurisdiction_id = require_jurisdiction_id(session, pilot.state_code, jurisdiction_external_id, context)
    return get_tax_instrument_id(session, jurisdiction_id, tax_type, name) or upsert_tax_instrument(
        session,
        jurisdiction_id=jurisdiction_id,
        tax_type=tax_type,
        name=name,
        attributes={"pilot": pilot.pilot_id},
        source_doc_id=source_doc_id,
    )


def _load_decisions(
    session: Session,
    pilot: PilotConfig,
    decisions: DecisionsJson,
    person_ids: dict,
    stats: PipelineStats,
    path,
) -> None:
    source_doc_id, _sha = upsert_source_doc_from_file(
        session,
        path,
        root=pilot.data_dir,
        is_demo=True,
        title=f"TaxAtlas pilot decisions/votes ({pilot.pilot_id})",
        mime_type="application/json",
    )
    fact_version_id = ensure_from_spec(
        session,
        pilot.methodologies.fact,
        description="Pilot tax facts (stub inputs, replace with authoritative sources)",
    )

    for decision in decisions.decisions:
        stats.records_processed += 1
        context = f"decision {decision.decision_key}"
        jurisdiction_id = require_jurisdiction_id(
            session, pilot.state_code, decision.jurisdiction_external_id, context
        )
        decision_id = upsert_decision_event(
            session,
            pilot_id=pilot.pilot_id,
            decision_key=decision.decision_key,
            jurisdiction_id=jurisdiction_id,
            event_type=decision.event_type,
            event_date=decision.event_date,
            effective_date=decision.effective_date,
            title=decision.title,
            summary=decision.summary,
            details={"decision_key": decision.decision_key, **decision.details},
            source_doc_id=source_doc_id,
        )
        stats.bump("decision_event")

        for impact in decision.impacts:
            tax_instrument_id = _instrument_id(
                session, pilot, impact.jurisdiction_external_id, impact.tax_type,
                impact.instrument_name, source_doc_id, context,
            )
            upsert_decision_tax_impact(
                session,
                decision_event_id=decision_id,
                tax_instrument_id=tax_instrument_id,
                methodology_version_id=fact_version_id,
                impact_direction=impact.impact_direction,
                tax_year=impact.tax_year,
                delta_rate_value=impact.delta_rate_value,
                delta_revenue_amount=impact.delta_revenue_amount,
                delta_description=impact.delta_description,
                attributes={"decision_key": decision.decision_key, **impact.metadata},
                source_doc_id=source_doc_id,
            )
            stats.bump("decision_tax_impact")

        for vote in decision.votes:
            vote_record_id = upsert_vote_record(
                session,
                pilot_id=pilot.pilot_id,
                decision_event_id=decision_id,
                vote_type=vote.vote_type,
                vote_date=vote.vote_date,
                question=vote.question,
                jurisdiction_id=jurisdiction_id,
                passed=vote.passed,
                yes_count=vote.counts.yes,
                no_count=vote.counts.no,
                abstain_count=vote.counts.abstain,
                absent_count=vote.counts.absent,
                attributes={"decision_key": decision.decision_key},
                source_doc_id=source_doc_id,
            )
            stats.bump("vote_record")

            for cast in vote.casts:
                voter_person_id = voter_geo_unit_id = None
                if cast.person_key:
                    voter_person_id = person_ids.get(cast.person_key)
                    if voter_person_id is None:
                        raise MissingReferenceError("person", cast.person_key, context=f"vote cast in {context}")
                else:
                    voter_geo_unit_id = require_geo_unit_id(
                        session, cast.geo_unit_type, cast.geo_unit_geoid, f"vote cast in {context}"
                    )
                upsert_vote_cast(
                    session,
                    pilot_id=pilot.pilot_id,
                    vote_record_id=vote_record_id,
                    vote_value=cast.vote_value,
                    voter_person_id=voter_person_id,
                    voter_geo_unit_id=voter_geo_unit_id,
                    weight=cast.weight,
                    notes=cast.notes,
                    source_doc_id=source_doc_id,
                )
                stats.bump("vote_cast")


def _load_signals(session: Session, pilot: PilotConfig, signals: PolicySignalsJson, stats: PipelineStats, path) -> None:
    source_doc_id, _sha = upsert_source_doc_from_file(
        session,
        path,
        root=pilot.data_dir,
        is_demo=True,
        title=f"TaxAtlas pilot policy signals ({pilot.pilot_id})",
        mime_type="application/json",
    )
    signal_version_id = ensure_from_spec(
        session,
        pilot.methodologies.signal,
        description="Policy signals (proposals, votes, news); never facts",
    )

    for signal in signals.signals:
        stats.records_processed += 1
        context = f"policy signal {signal.signal_key}"
        jurisdiction_id = require_jurisdiction_id(
            session, pilot.state_code, signal.jurisdiction_external_id, context
        )

        tax_type = signal.tax_type
        tax_instrument_id = None
        if signal.tax_instrument:
            ref = signal.tax_instrument
            tax_type = ref.tax_type
            tax_instrument_id = _instrument_id(
                session, pilot, ref.jurisdiction_external_id, ref.tax_type,
                ref.instrument_name, source_doc_id, context,
            )

        upsert_policy_signal(
            session,
            pilot_id=pilot.pilot_id,
            jurisdiction_external_id=signal.jurisdiction_external_id,
            signal_date=signal.signal_date,
            title=signal.title,
            status=signal.status,
            signal_key=signal.signal_key,
            jurisdiction_id=jurisdiction_id,
            tax_type=tax_type,
            tax_instrument_id=tax_instrument_id,
            methodology_version_id=signal_version_id,
            summary=signal.summary,
            details={"signal_key": signal.signal_key, **signal.details},
            source_doc_id=source_doc_id,
        )
        stats.bump("policy_signal")


def _read_optional(model, path, label: str, stats: PipelineStats):
    if not path.is_file():
        logger.warning(f"No {label} JSON found at {path}; skipping {label}")
        stats.warnings.append(f"{label} skipped: {path.name} not found")
        return None
    return parse_record(model, read_json_file(path), str(path))


def run_accountability(session: Session, pilot: PilotConfig) -> PipelineStats:
    """Officials are required; decisions and policy signals load only when their files exist.

    Every file is parsed before the first write, and vote casts may only
    reference officials from the same officials file.
    """
    stats = PipelineStats(pipeline="accountability")
    officials_path = pilot.resolve(pilot.paths.officials_json)
    decisions_path = pilot.resolve(pilot.paths.decisions_json)
    signals_path = pilot.resolve(pilot.paths.policy_signals_json)

    officials = parse_record(OfficialsJson, read_json_file(officials_path), str(officials_path))
    decisions = _read_optional(DecisionsJson, decisions_path, "decisions", stats)
    signals = _read_optional(PolicySignalsJson, signals_path, "policy signals", stats)

    with logfire.span("ingest accountability", pilot=pilot.pilot_id):
        with transaction(session):
            person_ids = _load_officials(session, pilot, officials, stats, officials_path)
            if decisions is not None:
                _load_decisions(session, pilot, decisions, person_ids, stats, decisions_path)
            if signals is not None:
                _load_signals(session, pilot, signals, stats, signals_path)

    logger.info(
        f"Accountability ingest complete: {stats.counts.get('person', 0)} persons, "
        f"{stats.counts.get('office', 0)} offices, {stats.counts.get('term', 0)} terms, "
        f"{stats.counts.get('decision_event', 0)} decisions, "
        f"{stats.counts.get('vote_cast', 0)} vote casts, "
        f"{stats.counts.get('policy_signal', 0)} signals"
    )
    return stats
