"""
Reward Settlement Package
"""

from referral_engine.services.settlement.service import SettlementResult, reverse_settlement, settle

__all__ = [
    "SettlementResult",
    "reverse_settlement",
    "settle",
]
