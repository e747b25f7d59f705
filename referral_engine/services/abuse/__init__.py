"""
Referral Abuse Package
"""

from referral_engine.services.abuse.registry import BlockRegistry, InMemoryBlockRegistry
from referral_engine.services.abuse.service import GateDecision, ReferralAbuseGate, BlockService

__all__ = [
    "BlockRegistry",
    "InMemoryBlockRegistry",
    "GateDecision",
    "ReferralAbuseGate",
    "BlockService",
]
