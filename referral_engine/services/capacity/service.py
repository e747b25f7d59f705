"""
Program Capacity Guard

Status gate in front of the evaluation pipeline and the claim operation.
Fails closed: a missing program or link, a link that does not belong to the
program, or any status it does not recognise means "not allowed".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from referral_engine.services.referrals.models import (
    Program,
    ProgramStatus,
    ReferralLink,
    ReferralLinkStatus,
)
from referral_engine.services.referrals.outcomes import OutcomeReason


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: Optional[OutcomeReason] = None


ALLOWED = GuardDecision(allowed=True)


def _deny(reason: OutcomeReason) -> GuardDecision:
    return GuardDecision(allowed=False, reason=reason)


def _program_decision(program: Optional[Program]) -> Optional[GuardDecision]:
    if program is None:
        return _deny(OutcomeReason.PROGRAM_NOT_ACTIVE)
    if program.status == ProgramStatus.ACTIVE:
        return None
    if program.status == ProgramStatus.LIMIT_REACHED:
        return _deny(OutcomeReason.CAPACITY_EXCEEDED)
    if program.status == ProgramStatus.EXPIRED:
        return _deny(OutcomeReason.PROGRAM_EXPIRED)
    return _deny(OutcomeReason.PROGRAM_NOT_ACTIVE)


def _link_decision(program: Program, link: Optional[ReferralLink]) -> Optional[GuardDecision]:
    if link is None or link.program_id != program.id:
        return _deny(OutcomeReason.LINK_NOT_ACTIVE)
    if link.blocked:
        return _deny(OutcomeReason.REFERRER_BLOCKED)
    if link.status == ReferralLinkStatus.ACTIVE:
        return None
    if link.status == ReferralLinkStatus.LIMIT_REACHED:
        return _deny(OutcomeReason.CAPACITY_EXCEEDED)
    return _deny(OutcomeReason.LINK_NOT_ACTIVE)


def check_evaluable(program: Optional[Program], link: Optional[ReferralLink]) -> GuardDecision:
    """
    Gate for re-evaluating a Pending usage.

    Program and link must both be Active and the link not blocked.
    LimitReached maps to CapacityExceeded.
    """
    decision = _program_decision(program)
    if decision is not None:
        return decision
    decision = _link_decision(program, link)
    if decision is not None:
        return decision
    return ALLOWED


def check_claimable(
    program: Optional[Program],
    link: Optional[ReferralLink],
    now: datetime,
) -> GuardDecision:
    """
    Gate for a new claim.

    Adds to check_evaluable: program start/end dates and a capacity
    pre-check (program balance, link referee cap). The pre-check is advisory;
    the atomic reservation happens in the ClaimLedger at completion.
    """
    decision = check_evaluable(program, link)
    if not decision.allowed:
        return decision

    if now < program.date_start:
        return _deny(OutcomeReason.PROGRAM_NOT_STARTED)
    if program.date_end is not None and now >= program.date_end:
        return _deny(OutcomeReason.PROGRAM_EXPIRED)

    balance = program.completion_balance
    if balance is not None and balance <= 0:
        return _deny(OutcomeReason.CAPACITY_EXCEEDED)
    link_balance = link.completion_balance(program)
    if link_balance is not None and link_balance <= 0:
        return _deny(OutcomeReason.CAPACITY_EXCEEDED)

    return ALLOWED
