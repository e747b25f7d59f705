"""
Referral Domain Package
"""

from referral_engine.services.referrals.models import (
    Program,
    ProgramStatus,
    ReferralLink,
    ReferralLinkStatus,
    ReferralLinkUsage,
    ReferralLinkUsageStatus,
    ProofOfPersonhoodMethod,
    Block,
)
from referral_engine.services.referrals.store import (
    ReferralStore,
    InMemoryReferralStore,
    require_program,
    require_link,
    require_usage,
)
from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.referrals.exceptions import (
    ReferralServiceError,
    ProgramNotFoundError,
    LinkNotFoundError,
    UsageNotFoundError,
    LinkCreationError,
)

__all__ = [
    "Program",
    "ProgramStatus",
    "ReferralLink",
    "ReferralLinkStatus",
    "ReferralLinkUsage",
    "ReferralLinkUsageStatus",
    "ProofOfPersonhoodMethod",
    "Block",
    "OutcomeReason",
    "ReferralStore",
    "InMemoryReferralStore",
    "require_program",
    "require_link",
    "require_usage",
    "ReferralServiceError",
    "ProgramNotFoundError",
    "LinkNotFoundError",
    "UsageNotFoundError",
    "LinkCreationError",
]
