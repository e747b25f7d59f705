"""
In-memory ClaimLedger.

Compare-and-swap under one threading.Lock, so it is safe across event-loop
tasks and worker threads. Counters live on the Program / ReferralLink objects
handed in; the lock makes check-and-increment a single step.
"""

import logging
import threading
from decimal import Decimal

from referral_engine.core.structured_logger import log_event
from referral_engine.services.referrals.models import Program, ReferralLink

logger = logging.getLogger(__name__)


class InMemoryClaimLedger:
    def __init__(self):
        self._lock = threading.Lock()

    async def track_program(self, program: Program) -> None:
        return None

    async def track_link(self, link: ReferralLink) -> None:
        return None

    async def try_reserve_completion_slot(self, program: Program, link: ReferralLink) -> bool:
        with self._lock:
            if program.completion_limit is not None and program.completion_total >= program.completion_limit:
                reserved = False
            elif (
                program.completion_limit_referee is not None
                and link.completion_total >= program.completion_limit_referee
            ):
                reserved = False
            else:
                program.completion_total += 1
                link.completion_total += 1
                reserved = True

        log_event(
            logger,
            component="ledger",
            operation="reserve_completion_slot",
            outcome="reserved" if reserved else "rejected",
            level="debug",
            program_id=program.id,
            link_id=link.id,
        )
        return reserved

    async def try_reserve_reward_budget(self, program: Program, amount: Decimal) -> bool:
        if amount < 0:
            raise ValueError("Reward amount must not be negative")
        with self._lock:
            if (
                program.zlto_reward_pool is not None
                and program.zlto_reward_cumulative + amount > program.zlto_reward_pool
            ):
                reserved = False
            else:
                program.zlto_reward_cumulative += amount
                reserved = True

        log_event(
            logger,
            component="ledger",
            operation="reserve_reward_budget",
            outcome="reserved" if reserved else "rejected",
            level="debug",
            program_id=program.id,
            amount=amount,
        )
        return reserved

    async def credit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        with self._lock:
            link.zlto_reward_cumulative += amount

    async def release_completion_slot(self, program: Program, link: ReferralLink) -> None:
        with self._lock:
            program.completion_total = max(program.completion_total - 1, 0)
            link.completion_total = max(link.completion_total - 1, 0)

        log_event(
            logger,
            component="ledger",
            operation="release_completion_slot",
            outcome="released",
            program_id=program.id,
            link_id=link.id,
        )

    async def release_reward_budget(self, program: Program, amount: Decimal) -> None:
        with self._lock:
            program.zlto_reward_cumulative = max(program.zlto_reward_cumulative - amount, Decimal("0"))

    async def debit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        with self._lock:
            link.zlto_reward_cumulative = max(link.zlto_reward_cumulative - amount, Decimal("0"))
