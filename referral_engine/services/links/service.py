"""
Referral Link Service

Link creation and the link maintenance cascades driven by referrer blocks,
program deletion and program expiry.

Status changes are cooperative: a Pending usage on a cancelled link is not
touched here, it is vetoed on its next evaluation. Expiry is the exception:
expired programs expire their Active links, and every Pending usage on them
is re-evaluated so it moves to Expired under its own usage lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from referral_engine.core.events import EngineEvent, EventType, create_event, publish_all
from referral_engine.core.structured_logger import log_event
from referral_engine.services.referrals.exceptions import LinkCreationError
from referral_engine.services.referrals.models import (
    ProgramStatus,
    ReferralLink,
    ReferralLinkStatus,
    ReferralLinkUsageStatus,
)
from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.referrals.store import require_program

logger = logging.getLogger(__name__)


@dataclass
class ExpiryReport:
    links_expired: List[str] = field(default_factory=list)
    usages_expired: List[str] = field(default_factory=list)
    usages_failed: List[str] = field(default_factory=list)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


# ====================================================================================
# Creation
# ====================================================================================

async def create_link(
    store,
    ledger,
    block_registry,
    program_id: str,
    referrer_user_id: str,
    name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReferralLink:
    """
    Create a referral link for a referrer.

    Rules:
    - Program must be Active and inside its start/end dates
    - Referrer must not be blocked
    - One Active link per referrer and program unless multiple_links_allowed

    Raises:
        ProgramNotFoundError: unknown program
        LinkCreationError: any rule above violated
    """
    now = _now(now)
    program = await require_program(store, program_id)

    if program.status != ProgramStatus.ACTIVE:
        raise LinkCreationError(f"Program '{program.id}' is not active (status={program.status.value})")
    if now < program.date_start:
        raise LinkCreationError(f"Program '{program.id}' has not started")
    if program.date_end is not None and now >= program.date_end:
        raise LinkCreationError(f"Program '{program.id}' has ended")

    if await block_registry.get_active_block(referrer_user_id) is not None:
        raise LinkCreationError(f"Referrer '{referrer_user_id}' is blocked")

    if not program.multiple_links_allowed:
        existing = await store.list_links(
            program_id=program.id,
            user_id=str(referrer_user_id),
            statuses=(ReferralLinkStatus.ACTIVE,),
        )
        if existing:
            raise LinkCreationError(
                f"Referrer '{referrer_user_id}' already has an active link for program '{program.id}'"
            )

    link = ReferralLink(
        program_id=program.id,
        user_id=str(referrer_user_id),
        name=name or program.name,
        date_created=now,
        date_status_changed=now,
    )
    await ledger.track_program(program)
    await ledger.track_link(link)
    await store.save_link(link)

    log_event(
        logger,
        component="links",
        operation="create_link",
        outcome="success",
        program_id=program.id,
        link_id=link.id,
    )
    return link


# ====================================================================================
# Maintenance cascades
# ====================================================================================

async def _cancel(store, publisher, links: Iterable[ReferralLink], now: datetime, reason: str,
                  correlation_id: Optional[str]) -> List[ReferralLink]:
    cancelled = []
    events: List[EngineEvent] = []
    for link in links:
        if link.status != ReferralLinkStatus.ACTIVE:
            continue
        link.set_status(ReferralLinkStatus.CANCELLED, now)
        await store.save_link(link)
        cancelled.append(link)
        events.append(create_event(
            EventType.LINK_CANCELLED,
            link.id,
            correlation_id=correlation_id,
            metadata={"program_id": link.program_id, "reason": reason},
            timestamp=now,
        ))

    await publish_all(publisher, events)
    return cancelled


async def cancel_links_by_user(
    store,
    publisher,
    user_id: str,
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> List[ReferralLink]:
    """Cancel every Active link owned by a referrer (block with cancel_links)."""
    links = await store.list_links(user_id=str(user_id), statuses=(ReferralLinkStatus.ACTIVE,))
    cancelled = await _cancel(store, publisher, links, _now(now), "referrer_blocked", correlation_id)
    log_event(
        logger,
        component="links",
        operation="cancel_links_by_user",
        outcome="success",
        correlation_id=correlation_id,
        cancelled=len(cancelled),
    )
    return cancelled


async def cancel_links_by_program(
    store,
    publisher,
    program_id: str,
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> List[ReferralLink]:
    """Cancel every Active link of a program (program deletion)."""
    links = await store.list_links(program_id=program_id, statuses=(ReferralLinkStatus.ACTIVE,))
    cancelled = await _cancel(store, publisher, links, _now(now), "program_deleted", correlation_id)
    log_event(
        logger,
        component="links",
        operation="cancel_links_by_program",
        outcome="success",
        correlation_id=correlation_id,
        program_id=program_id,
        cancelled=len(cancelled),
    )
    return cancelled


async def expire_by_program_ids(
    store,
    publisher,
    machine,
    program_ids: Iterable[str],
    now: Optional[datetime] = None,
    correlation_id: Optional[str] = None,
) -> ExpiryReport:
    """
    Expire the Active links of expired programs and their Pending usages.

    Usages are expired by re-evaluating them through the state machine,
    which sees the Expired program/link and transitions under the usage lock.
    """
    now = _now(now)
    report = ExpiryReport()
    events: List[EngineEvent] = []

    for program_id in program_ids:
        links = await store.list_links(program_id=program_id, statuses=(ReferralLinkStatus.ACTIVE,))
        for link in links:
            link.set_status(ReferralLinkStatus.EXPIRED, now)
            await store.save_link(link)
            report.links_expired.append(link.id)
            events.append(create_event(
                EventType.LINK_EXPIRED,
                link.id,
                correlation_id=correlation_id,
                metadata={"program_id": program_id},
                timestamp=now,
            ))

    await publish_all(publisher, events)

    for program_id in program_ids:
        pending = await store.list_usages(program_id=program_id, statuses=(ReferralLinkUsageStatus.PENDING,))
        for usage in pending:
            try:
                result = await machine.evaluate(usage.id, now=now, correlation_id=correlation_id)
            except Exception as e:
                logger.exception(f"LINK_EXPIRY_USAGE_FAILED [usage_id={usage.id}]: {type(e).__name__}")
                report.usages_failed.append(usage.id)
                continue
            if result.status == ReferralLinkUsageStatus.EXPIRED and result.transitioned:
                report.usages_expired.append(usage.id)
            elif result.reason == OutcomeReason.LOCK_TIMEOUT:
                report.usages_failed.append(usage.id)

    log_event(
        logger,
        component="links",
        operation="expire_by_program_ids",
        outcome="success" if not report.usages_failed else "degraded",
        correlation_id=correlation_id,
        links_expired=len(report.links_expired),
        usages_expired=len(report.usages_expired),
        usages_failed=len(report.usages_failed),
    )
    return report
