"""
Referral Service Domain Exceptions

Lookup and admin failures. Claim and evaluation decisions are returned as
OutcomeReason values, not raised.
"""


class ReferralServiceError(Exception):
    """Base exception for referral service errors"""
    pass


class ProgramNotFoundError(ReferralServiceError):
    """Raised when a program id does not exist"""
    pass


class LinkNotFoundError(ReferralServiceError):
    """Raised when a referral link id does not exist"""
    pass


class UsageNotFoundError(ReferralServiceError):
    """Raised when a link usage id does not exist"""
    pass


class LinkCreationError(ReferralServiceError):
    """Raised when a referral link cannot be created (program state, block, duplicates)"""
    pass
