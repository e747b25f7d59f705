"""
Claim Ledger Package

The two shared-counter mutation points of the engine:
- try_reserve_completion_slot(program, link) -> bool
- try_reserve_reward_budget(program, amount) -> bool
Both are atomic check-and-increment; a False result has no side effects.

The release_* / debit_* operations undo a reservation when the completion
that made it fails before the usage is persisted.
"""

from decimal import Decimal
from typing import Protocol

from referral_engine.services.referrals.models import Program, ReferralLink
from referral_engine.services.ledger.memory import InMemoryClaimLedger
from referral_engine.services.ledger.postgres import PostgresClaimLedger, LEDGER_SCHEMA_SQL, create_pool


class ClaimLedger(Protocol):
    async def track_program(self, program: Program) -> None:
        ...

    async def track_link(self, link: ReferralLink) -> None:
        ...

    async def try_reserve_completion_slot(self, program: Program, link: ReferralLink) -> bool:
        ...

    async def try_reserve_reward_budget(self, program: Program, amount: Decimal) -> bool:
        ...

    async def credit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        ...

    async def release_completion_slot(self, program: Program, link: ReferralLink) -> None:
        ...

    async def release_reward_budget(self, program: Program, amount: Decimal) -> None:
        ...

    async def debit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        ...


__all__ = [
    "ClaimLedger",
    "InMemoryClaimLedger",
    "PostgresClaimLedger",
    "LEDGER_SCHEMA_SQL",
    "create_pool",
]
