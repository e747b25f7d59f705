"""
Outcome reasons shared by the claim and evaluation pipelines.

Every decision the engine makes about a usage is reported with one of these
codes; business failures are never raised as exceptions.
"""

from enum import Enum


class OutcomeReason(str, Enum):
    # Transitions
    COMPLETED = "Completed"
    COMPLETION_WINDOW_ELAPSED = "CompletionWindowElapsed"
    PROGRAM_EXPIRED = "ProgramExpired"
    LINK_EXPIRED = "LinkExpired"

    # No-op / stays Pending
    ALREADY_SETTLED = "AlreadySettled"
    REFERRER_BLOCKED = "ReferrerBlocked"
    PROGRAM_NOT_ACTIVE = "ProgramNotActive"
    LINK_NOT_ACTIVE = "LinkNotActive"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    PATHWAY_INCOMPLETE = "PathwayIncomplete"
    PROOF_OF_PERSONHOOD_REQUIRED = "ProofOfPersonhoodRequired"
    LOCK_TIMEOUT = "LockTimeout"

    # Claim rejections
    SELF_REFERRAL = "SelfReferral"
    ALREADY_PARTICIPATED = "AlreadyParticipated"
    PROGRAM_NOT_STARTED = "ProgramNotStarted"
