"""
Program Lifecycle Service

Scheduled program transitions:
- health: Active programs whose pathway can no longer be completed become
  UnCompletable; fixed UnCompletable programs return to Active (or Expired /
  LimitReached when that is where they belong); programs left broken past the
  grace period expire
- expiration: programs past their end date expire

Expiry always cascades: Active links expire and Pending usages are
re-evaluated to Expired.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from referral_engine.core.events import EngineEvent, EventType, create_event, publish_all
from referral_engine.core.structured_logger import log_event
from referral_engine.services.links.service import expire_by_program_ids
from referral_engine.services.pathways.progress import is_pathway_completable
from referral_engine.services.referrals.models import Program, ProgramStatus

logger = logging.getLogger(__name__)

HEALTH_CHECK_STATUSES = (ProgramStatus.ACTIVE, ProgramStatus.UNCOMPLETABLE)
EXPIRABLE_STATUSES = (
    ProgramStatus.ACTIVE,
    ProgramStatus.INACTIVE,
    ProgramStatus.UNCOMPLETABLE,
    ProgramStatus.LIMIT_REACHED,
)


@dataclass
class ProgramHealthReport:
    uncompletable: List[str] = field(default_factory=list)
    reactivated: List[str] = field(default_factory=list)
    limit_reached: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.uncompletable) + len(self.reactivated) + len(self.limit_reached) + len(self.expired)


def _event(event_type: EventType, program: Program, now: datetime, correlation_id: Optional[str], **metadata) -> EngineEvent:
    return create_event(event_type, program.id, correlation_id=correlation_id, metadata=metadata, timestamp=now)


async def _is_completable(program: Program, facts) -> tuple:
    if program.pathway is None:
        return True, []
    availability = await facts.availability_snapshot(program.pathway)
    return is_pathway_completable(program.pathway, availability)


async def process_program_health(
    *,
    store,
    facts,
    publisher,
    machine,
    grace_days: int,
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> ProgramHealthReport:
    """
    Re-check pathway satisfiability of Active and UnCompletable programs.

    Args:
        store: ReferralStore
        facts: TaskFactRegistry (availability lookups)
        publisher: EventPublisher
        machine: LinkUsageStateMachine (expiry cascade)
        grace_days: Days an UnCompletable program may stay broken before it expires
        now: Current time
        correlation_id: Iteration correlation id
    """
    now = now or datetime.now(timezone.utc)
    report = ProgramHealthReport()
    events: List[EngineEvent] = []
    grace = timedelta(days=grace_days)

    for program in await store.list_programs(statuses=HEALTH_CHECK_STATUSES):
        completable, reasons = await _is_completable(program, facts)

        if program.status == ProgramStatus.ACTIVE:
            if completable:
                continue
            program.set_status(ProgramStatus.UNCOMPLETABLE, now)
            report.uncompletable.append(program.id)
            events.append(_event(
                EventType.PROGRAM_UNCOMPLETABLE, program, now, correlation_id, unavailable_tasks=len(reasons)
            ))
            logger.warning(f"PROGRAM_UNCOMPLETABLE [program_id={program.id}]: {'; '.join(reasons)}")

        elif completable:
            if program.date_end is not None and now >= program.date_end:
                program.set_status(ProgramStatus.EXPIRED, now)
                report.expired.append(program.id)
                events.append(_event(EventType.PROGRAM_EXPIRED, program, now, correlation_id, reason="date_end"))
            elif program.limit_reached:
                program.set_status(ProgramStatus.LIMIT_REACHED, now)
                report.limit_reached.append(program.id)
                events.append(_event(
                    EventType.PROGRAM_LIMIT_REACHED, program, now, correlation_id,
                    completion_total=program.completion_total,
                ))
            else:
                program.set_status(ProgramStatus.ACTIVE, now)
                report.reactivated.append(program.id)
                events.append(_event(EventType.PROGRAM_REACTIVATED, program, now, correlation_id))

        elif now - program.date_status_changed > grace:
            program.set_status(ProgramStatus.EXPIRED, now)
            report.expired.append(program.id)
            events.append(_event(
                EventType.PROGRAM_EXPIRED, program, now, correlation_id, reason="uncompletable_grace_elapsed"
            ))

        else:
            continue

        await store.save_program(program)

    await publish_all(publisher, events)
    if report.expired:
        await expire_by_program_ids(store, publisher, machine, report.expired, now=now, correlation_id=correlation_id)

    log_event(
        logger,
        component="programs",
        operation="process_program_health",
        outcome="success",
        correlation_id=correlation_id,
        uncompletable=len(report.uncompletable),
        reactivated=len(report.reactivated),
        limit_reached=len(report.limit_reached),
        expired=len(report.expired),
    )
    return report


async def process_program_expiration(
    *,
    store,
    publisher,
    machine,
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> List[str]:
    """
    Expire programs whose end date has passed.

    Returns:
        Ids of the programs expired by this call
    """
    now = now or datetime.now(timezone.utc)
    expired: List[str] = []
    events: List[EngineEvent] = []

    for program in await store.list_programs(statuses=EXPIRABLE_STATUSES):
        if program.date_end is None or now < program.date_end:
            continue
        program.set_status(ProgramStatus.EXPIRED, now)
        await store.save_program(program)
        expired.append(program.id)
        events.append(_event(EventType.PROGRAM_EXPIRED, program, now, correlation_id, reason="date_end"))

    await publish_all(publisher, events)
    if expired:
        await expire_by_program_ids(store, publisher, machine, expired, now=now, correlation_id=correlation_id)

    log_event(
        logger,
        component="programs",
        operation="process_program_expiration",
        outcome="success",
        correlation_id=correlation_id,
        expired=len(expired),
    )
    return expired
