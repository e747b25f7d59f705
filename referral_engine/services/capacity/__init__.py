"""
Program Capacity Guard Package
"""

from referral_engine.services.capacity.service import (
    GuardDecision,
    check_evaluable,
    check_claimable,
)

__all__ = [
    "GuardDecision",
    "check_evaluable",
    "check_claimable",
]
