"""
Reward Settlement

Runs after a completion slot has been reserved. Reward amounts are read from
the program at this moment and locked on the usage; they are never
re-derived from later program rates.

If the reward pool cannot cover referrer + referee, the completion still
stands: both rewards are recorded as 0 and the usage is flagged
`reward_settlement_failed` for manual reconciliation.

A ledger error is not a pool shortfall: the budget reserved by this call is
released and the error propagates, so the completion can be retried.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from referral_engine.core.exceptions import DataInconsistencyError
from referral_engine.services.referrals.models import Program, ReferralLink, ReferralLinkUsage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class SettlementResult:
    """Result of reward settlement"""
    zlto_reward_referrer: Decimal
    zlto_reward_referee: Decimal
    settled: bool
    reward_settlement_failed: bool = False

    @property
    def total(self) -> Decimal:
        return self.zlto_reward_referrer + self.zlto_reward_referee


def _amount(program: Program, name: str) -> Decimal:
    value = getattr(program, name)
    if value is None:
        return ZERO
    amount = Decimal(value)
    if amount < ZERO:
        raise DataInconsistencyError(f"Program '{program.id}' has a negative {name}: {amount}")
    return amount


async def settle(
    program: Program,
    link: ReferralLink,
    usage: ReferralLinkUsage,
    ledger,
) -> SettlementResult:
    """
    Settle rewards for one completed usage.

    Args:
        program: Program the usage belongs to (rates read now)
        link: Referral link credited with the referrer share
        usage: Usage whose reward fields are locked by this call
        ledger: ClaimLedger

    Returns:
        SettlementResult

    Raises:
        DataInconsistencyError: negative reward rate on the program
    """
    referrer_reward = _amount(program, "zlto_reward_referrer")
    referee_reward = _amount(program, "zlto_reward_referee")
    total = referrer_reward + referee_reward

    if total > ZERO and not await ledger.try_reserve_reward_budget(program, total):
        result = SettlementResult(
            zlto_reward_referrer=ZERO,
            zlto_reward_referee=ZERO,
            settled=False,
            reward_settlement_failed=True,
        )
    else:
        if referrer_reward > ZERO:
            try:
                await ledger.credit_link_reward(link, referrer_reward)
            except Exception:
                await ledger.release_reward_budget(program, total)
                raise
        result = SettlementResult(
            zlto_reward_referrer=referrer_reward,
            zlto_reward_referee=referee_reward,
            settled=True,
        )

    usage.zlto_reward_referrer = result.zlto_reward_referrer
    usage.zlto_reward_referee = result.zlto_reward_referee
    usage.reward_settlement_failed = result.reward_settlement_failed
    return result


async def reverse_settlement(
    program: Program,
    link: ReferralLink,
    result: SettlementResult,
    ledger,
) -> None:
    """Give back the budget and link credit of a settlement whose completion was not persisted."""
    if not result.settled or result.total <= ZERO:
        return
    await ledger.release_reward_budget(program, result.total)
    if result.zlto_reward_referrer > ZERO:
        await ledger.debit_link_reward(link, result.zlto_reward_referrer)
    logger.warning(
        f"REWARD_SETTLEMENT_REVERSED [program_id={program.id}, link_id={link.id}, amount={result.total}]"
    )
