"""
Referee claims and progress triggers.

claim_link creates a Pending usage for a referee and runs one evaluation
(a program with nothing required completes immediately). Rejections are
returned as OutcomeReason values, never silently dropped.

process_progress_trigger is called when a referee's task facts change
(opportunity verified, proof of personhood completed): their Pending usages
are stamped and evaluated at once. Failures are left to the sweeper, which
picks up usages whose facts changed after their last evaluation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from referral_engine.core.events import EventType, create_event, publish_all
from referral_engine.core.exceptions import LockTimeoutError
from referral_engine.core.metrics import get_metrics
from referral_engine.core.structured_logger import log_event
from referral_engine.services.capacity.service import check_claimable
from referral_engine.services.referrals.models import (
    ProofOfPersonhoodMethod,
    ReferralLinkUsage,
    ReferralLinkUsageStatus,
)
from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.referrals.store import require_link
from referral_engine.services.usages.state_machine import EvaluationResult, LinkUsageStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Result of a claim attempt"""
    accepted: bool
    reason: OutcomeReason
    usage_id: Optional[str] = None
    status: Optional[ReferralLinkUsageStatus] = None
    evaluation: Optional[EvaluationResult] = None


def _rejected(reason: OutcomeReason, link_id: str, correlation_id: Optional[str]) -> ClaimResult:
    log_event(
        logger,
        component="claims",
        operation="claim_link",
        outcome="rejected",
        reason=reason.value,
        correlation_id=correlation_id,
        link_id=link_id,
    )
    return ClaimResult(accepted=False, reason=reason)


async def claim_link(
    link_id: str,
    referee_user_id: str,
    *,
    machine: LinkUsageStateMachine,
    now: Optional[datetime] = None,
    proof_of_personhood_method: ProofOfPersonhoodMethod = ProofOfPersonhoodMethod.NONE,
    correlation_id: Optional[str] = None,
) -> ClaimResult:
    """
    Claim a referral link as a referee.

    Checks, in order: self-referral, prior participation, referrer block,
    program/link status and dates, capacity pre-check. Another claim by the
    same referee holding the lock past its wait timeout yields LockTimeout.

    Raises:
        LinkNotFoundError: unknown link id
    """
    store = machine.store
    now = now or machine.clock()
    referee_user_id = str(referee_user_id)
    link = await require_link(store, link_id)

    if link.user_id == referee_user_id:
        return _rejected(OutcomeReason.SELF_REFERRAL, link.id, correlation_id)

    try:
        async with machine.locks.hold(referee_user_id, namespace="referee"):
            if await store.list_usages(user_id=referee_user_id):
                return _rejected(OutcomeReason.ALREADY_PARTICIPATED, link.id, correlation_id)

            gate = await machine.gate.check(link.user_id)
            if not gate.allowed:
                return _rejected(gate.reason, link.id, correlation_id)

            program = await store.get_program(link.program_id)
            decision = check_claimable(program, link, now)
            if not decision.allowed:
                return _rejected(decision.reason, link.id, correlation_id)

            usage = ReferralLinkUsage(
                program_id=program.id,
                link_id=link.id,
                user_id=referee_user_id,
                user_id_referrer=link.user_id,
                date_claimed=now,
                pathway_version=program.pathway.version if program.pathway is not None else None,
            )
            if proof_of_personhood_method != ProofOfPersonhoodMethod.NONE:
                usage.record_proof_of_personhood(proof_of_personhood_method)
            await store.save_usage(usage)
    except LockTimeoutError:
        get_metrics().increment_counter("referral_lock_timeout_total")
        return _rejected(OutcomeReason.LOCK_TIMEOUT, link.id, correlation_id)

    await publish_all(machine.publisher, [create_event(
        EventType.USAGE_CLAIMED,
        usage.id,
        correlation_id=correlation_id,
        metadata={"program_id": program.id, "link_id": link.id},
        timestamp=now,
    )])
    log_event(
        logger,
        component="claims",
        operation="claim_link",
        outcome="success",
        correlation_id=correlation_id,
        link_id=link.id,
        usage_id=usage.id,
    )

    evaluation = await machine.evaluate(usage.id, now=now, correlation_id=correlation_id)
    return ClaimResult(
        accepted=True,
        reason=evaluation.reason,
        usage_id=usage.id,
        status=evaluation.status,
        evaluation=evaluation,
    )


async def process_progress_trigger(
    user_id: str,
    *,
    machine: LinkUsageStateMachine,
    now: Optional[datetime] = None,
    proof_of_personhood_method: Optional[ProofOfPersonhoodMethod] = None,
    correlation_id: Optional[str] = None,
) -> List[EvaluationResult]:
    """
    Re-evaluate a referee's Pending usages after their task facts changed.

    Args:
        user_id: Referee user id
        machine: LinkUsageStateMachine
        now: Evaluation time (defaults to the machine clock)
        proof_of_personhood_method: Newly completed POP method, if any
        correlation_id: Trigger correlation id

    Returns:
        Evaluation results of the usages that could be evaluated
    """
    store = machine.store
    now = now or machine.clock()
    usage_ids = await store.mark_facts_changed(str(user_id), now)

    results: List[EvaluationResult] = []
    for usage_id in usage_ids:
        try:
            if proof_of_personhood_method is not None:
                async with machine.locks.hold(usage_id):
                    usage = await store.get_usage(usage_id)
                    if usage is not None and not usage.is_terminal:
                        usage.record_proof_of_personhood(proof_of_personhood_method)
                        await store.save_usage(usage)
            results.append(await machine.evaluate(usage_id, now=now, correlation_id=correlation_id))
        except Exception as e:
            logger.exception(
                f"PROGRESS_TRIGGER_FAILED [usage_id={usage_id}, correlation_id={correlation_id}]: {type(e).__name__}"
            )

    log_event(
        logger,
        component="claims",
        operation="process_progress_trigger",
        outcome="success" if len(results) == len(usage_ids) else "degraded",
        correlation_id=correlation_id,
        usages=len(usage_ids),
        evaluated=len(results),
    )
    return results
