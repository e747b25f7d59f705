"""
Link Usage Package
"""

from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.usages.state_machine import EvaluationResult, LinkUsageStateMachine
from referral_engine.services.usages.claims import ClaimResult, claim_link, process_progress_trigger

__all__ = [
    "OutcomeReason",
    "EvaluationResult",
    "LinkUsageStateMachine",
    "ClaimResult",
    "claim_link",
    "process_progress_trigger",
]
