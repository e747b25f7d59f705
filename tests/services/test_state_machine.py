"""
Unit tests for the link usage state machine.

Tests focus on business logic:
- Pipeline order (expiry wins over completion)
- Capacity, pathway and proof of personhood gates
- Reward settlement and LimitReached flips
- Idempotence and per-usage locking
- Evaluation against the pathway version a usage was claimed on
"""
import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from referral_engine.core.events import EventType
from referral_engine.core.exceptions import DataInconsistencyError
from referral_engine.core.metrics import get_metrics
from referral_engine.core.usage_locks import LocalUsageLockProvider
from referral_engine.services.abuse import ReferralAbuseGate
from referral_engine.services.ledger import InMemoryClaimLedger
from referral_engine.services.referrals import (
    OutcomeReason,
    ProgramStatus,
    ProofOfPersonhoodMethod,
    ReferralLinkStatus,
    ReferralLinkUsageStatus,
)
from referral_engine.services.usages import LinkUsageStateMachine


class TestCompletion:
    """Usages that satisfy every requirement complete"""

    @pytest.mark.asyncio
    async def test_no_requirements_completes(self, referrals, machine, publisher, now):
        """A program with nothing required completes on first evaluation"""
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.transitioned is True
        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert result.reason == OutcomeReason.COMPLETED
        assert usage.date_completed == now
        assert usage.percent_complete == 100.0
        assert program.completion_total == 1
        assert link.completion_total == 1
        assert len(publisher.of_type(EventType.USAGE_COMPLETED)) == 1
        assert get_metrics().get_counter("referral_usage_completed_total") == 1

    @pytest.mark.asyncio
    async def test_pathway_satisfied_completes_with_rewards(
        self, referrals, machine, opportunities, make_pathway, reward_rates, now
    ):
        program = await referrals.program(pathway=make_pathway(["opp_1", "opp_2"]), pathway_required=True, **reward_rates)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        opportunities.record_completion("referee-1", "opp_1", now - timedelta(hours=2))
        opportunities.record_completion("referee-1", "opp_2", now - timedelta(hours=1))

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert result.zlto_reward_referrer == Decimal("10")
        assert result.zlto_reward_referee == Decimal("5")
        assert result.progress.completed is True
        assert result.progress.date_completed == now - timedelta(hours=1)
        assert program.zlto_reward_cumulative == Decimal("15")
        assert link.zlto_reward_cumulative == Decimal("10")

    @pytest.mark.asyncio
    async def test_optional_pathway_does_not_gate(self, referrals, machine, make_pathway):
        """A pathway that is not required is tracked but does not block completion"""
        program = await referrals.program(pathway=make_pathway(["opp_1", "opp_2"]), pathway_required=False)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert result.progress is not None
        assert result.progress.completed is False

    @pytest.mark.asyncio
    async def test_reward_pool_exhausted_still_completes(self, referrals, machine, publisher, reward_rates):
        """Settlement failure flags the usage but the completion stands"""
        program = await referrals.program(**dict(reward_rates, zlto_reward_cumulative=Decimal("20")))
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert result.reward_settlement_failed is True
        assert usage.zlto_reward_referrer == Decimal("0")
        assert usage.zlto_reward_referee == Decimal("0")
        assert program.zlto_reward_cumulative == Decimal("20")
        assert len(publisher.of_type(EventType.REWARD_SETTLEMENT_FAILED)) == 1
        assert get_metrics().get_counter("referral_reward_settlement_failed_total") == 1


class TestExpiry:
    """Expiry takes priority over completion"""

    @pytest.mark.asyncio
    async def test_window_elapsed_wins_over_satisfied_pathway(
        self, referrals, machine, opportunities, make_pathway, publisher, now
    ):
        """Claimed 10 days ago on a 7 day window: Expired even though the pathway is done"""
        program = await referrals.program(
            pathway=make_pathway(["opp_1"]),
            pathway_required=True,
            completion_window_in_days=7,
        )
        link = await referrals.link(program)
        usage = await referrals.usage(program, link, date_claimed=now - timedelta(days=10))
        opportunities.record_completion("referee-1", "opp_1", now - timedelta(days=1))

        result = await machine.evaluate(usage.id)

        assert result.transitioned is True
        assert result.status == ReferralLinkUsageStatus.EXPIRED
        assert result.reason == OutcomeReason.COMPLETION_WINDOW_ELAPSED
        assert usage.date_expired == now
        assert usage.zlto_reward_referrer is None
        assert program.completion_total == 0
        assert len(publisher.of_type(EventType.USAGE_EXPIRED)) == 1
        assert get_metrics().get_counter("referral_usage_expired_total") == 1

    @pytest.mark.asyncio
    async def test_window_boundary_is_exclusive(self, referrals, machine, now):
        """Exactly at the window end the usage can still complete"""
        program = await referrals.program(completion_window_in_days=7)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link, date_claimed=now - timedelta(days=7))

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_program_end_date_passed(self, referrals, machine, now):
        program = await referrals.program(date_end=now - timedelta(minutes=1))
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.EXPIRED
        assert result.reason == OutcomeReason.PROGRAM_EXPIRED

    @pytest.mark.asyncio
    async def test_expired_program_status(self, referrals, machine):
        program = await referrals.program(status=ProgramStatus.EXPIRED)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.EXPIRED
        assert result.reason == OutcomeReason.PROGRAM_EXPIRED

    @pytest.mark.asyncio
    async def test_expired_link(self, referrals, machine):
        program = await referrals.program()
        link = await referrals.link(program, status=ReferralLinkStatus.EXPIRED)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.EXPIRED
        assert result.reason == OutcomeReason.LINK_EXPIRED


class TestPendingOutcomes:
    """Usages that stay Pending report why"""

    @pytest.mark.asyncio
    async def test_capacity_exceeded(self, referrals, machine, reward_rates):
        """A full program leaves the usage Pending and settles nothing"""
        program = await referrals.program(completion_limit=5, completion_total=5, **reward_rates)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.transitioned is False
        assert result.status == ReferralLinkUsageStatus.PENDING
        assert result.reason == OutcomeReason.CAPACITY_EXCEEDED
        assert usage.zlto_reward_referrer is None
        assert program.zlto_reward_cumulative == Decimal("0")
        assert program.completion_total == 5
        assert get_metrics().get_counter("referral_capacity_exceeded_total") == 1

    @pytest.mark.asyncio
    async def test_pathway_incomplete(self, referrals, machine, opportunities, make_pathway, now):
        program = await referrals.program(pathway=make_pathway(["opp_1", "opp_2"]), pathway_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        opportunities.record_completion("referee-1", "opp_1", now)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.PENDING
        assert result.reason == OutcomeReason.PATHWAY_INCOMPLETE
        assert usage.percent_complete == 50.0
        assert usage.date_last_evaluated == now
        assert usage.last_reason == "PathwayIncomplete"
        assert program.completion_total == 0

    @pytest.mark.asyncio
    async def test_proof_of_personhood_required(self, referrals, machine):
        program = await referrals.program(proof_of_personhood_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.reason == OutcomeReason.PROOF_OF_PERSONHOOD_REQUIRED
        assert usage.percent_complete == 0.0

    @pytest.mark.asyncio
    async def test_proof_of_personhood_completed(self, referrals, machine):
        program = await referrals.program(proof_of_personhood_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        usage.record_proof_of_personhood(ProofOfPersonhoodMethod.OTP)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_program_inactive(self, referrals, machine):
        program = await referrals.program(status=ProgramStatus.INACTIVE)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.PENDING
        assert result.reason == OutcomeReason.PROGRAM_NOT_ACTIVE

    @pytest.mark.asyncio
    async def test_blocked_link_flag(self, referrals, machine):
        """A link flagged blocked vetoes evaluation even without a registry block"""
        program = await referrals.program()
        link = await referrals.link(program, blocked=True)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.reason == OutcomeReason.REFERRER_BLOCKED


class TestLimitReached:
    """Caps flip links and programs to LimitReached"""

    @pytest.mark.asyncio
    async def test_link_cap_flips_link(self, referrals, machine, publisher):
        program = await referrals.program(completion_limit_referee=1)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        await machine.evaluate(usage.id)

        assert link.status == ReferralLinkStatus.LIMIT_REACHED
        assert program.status == ProgramStatus.ACTIVE
        assert len(publisher.of_type(EventType.LINK_LIMIT_REACHED)) == 1

    @pytest.mark.asyncio
    async def test_program_cap_flips_program(self, referrals, machine, publisher, now):
        program = await referrals.program(completion_limit=1)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        await machine.evaluate(usage.id)

        assert program.status == ProgramStatus.LIMIT_REACHED
        assert program.date_status_changed == now
        assert len(publisher.of_type(EventType.PROGRAM_LIMIT_REACHED)) == 1

    @pytest.mark.asyncio
    async def test_pending_after_program_limit(self, referrals, machine):
        """Other Pending usages report CapacityExceeded once the program is full"""
        program = await referrals.program(completion_limit=1)
        link = await referrals.link(program)
        first = await referrals.usage(program, link, user_id="referee-1")
        second = await referrals.usage(program, link, user_id="referee-2")

        await machine.evaluate(first.id)
        result = await machine.evaluate(second.id)

        assert result.status == ReferralLinkUsageStatus.PENDING
        assert result.reason == OutcomeReason.CAPACITY_EXCEEDED


class TestIdempotenceAndLocking:
    """Terminal usages are never re-settled; one evaluation per usage at a time"""

    @pytest.mark.asyncio
    async def test_terminal_usage_is_noop(self, referrals, machine, publisher, reward_rates):
        program = await referrals.program(**reward_rates)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        await machine.evaluate(usage.id)
        result = await machine.evaluate(usage.id)

        assert result.reason == OutcomeReason.ALREADY_SETTLED
        assert result.transitioned is False
        assert result.zlto_reward_referrer == Decimal("10")
        assert program.completion_total == 1
        assert program.zlto_reward_cumulative == Decimal("15")
        assert len(publisher.of_type(EventType.USAGE_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_complete_once(self, referrals, machine, publisher):
        """Parallel evaluations of one usage produce a single transition"""
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        results = await asyncio.gather(*(machine.evaluate(usage.id) for _ in range(5)))

        assert sum(1 for r in results if r.transitioned) == 1
        assert sum(1 for r in results if r.reason == OutcomeReason.ALREADY_SETTLED) == 4
        assert program.completion_total == 1
        assert len(publisher.of_type(EventType.USAGE_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_lock_timeout(self, referrals, machine):
        """A held usage lock yields LockTimeout and leaves the usage untouched"""
        fast_locks = LocalUsageLockProvider(wait_timeout=0.05)
        machine.locks = fast_locks
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        async with fast_locks.hold(usage.id):
            result = await machine.evaluate(usage.id)

        assert result.reason == OutcomeReason.LOCK_TIMEOUT
        assert result.status == ReferralLinkUsageStatus.PENDING
        assert usage.status == ReferralLinkUsageStatus.PENDING
        assert get_metrics().get_counter("referral_lock_timeout_total") == 1
        assert fast_locks.active_keys() == 0

    @pytest.mark.asyncio
    async def test_evaluation_timer_recorded(self, referrals, machine):
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        await machine.evaluate(usage.id)

        assert get_metrics().get_timer_stats("referral_evaluation_ms")["count"] == 1

    @pytest.mark.asyncio
    async def test_publisher_failure_keeps_transition(self, referrals, store, ledger, locks, facts, block_registry, clock):
        """A failing publisher does not undo a persisted completion"""
        class FailingPublisher:
            async def publish(self, event):
                raise RuntimeError("broker down")

        machine = LinkUsageStateMachine(
            store=store,
            ledger=ledger,
            locks=locks,
            facts=facts,
            gate=ReferralAbuseGate(block_registry),
            publisher=FailingPublisher(),
            clock=clock,
        )
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert (await store.get_usage(usage.id)).status == ReferralLinkUsageStatus.COMPLETED


class FlakyRewardLedger(InMemoryClaimLedger):
    """Reward reservation fails with a connection error the first time"""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def try_reserve_reward_budget(self, program, amount):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("ledger unavailable")
        return await super().try_reserve_reward_budget(program, amount)


class TestCompletionRollback:
    """A completion that fails after its slot was reserved gives the slot back"""

    @pytest.mark.asyncio
    async def test_reward_reservation_error_releases_slot(self, referrals, machine, reward_rates):
        """A retry after a ledger error consumes exactly one slot"""
        machine.ledger = FlakyRewardLedger()
        program = await referrals.program(**reward_rates)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        with pytest.raises(ConnectionError):
            await machine.evaluate(usage.id)

        assert usage.status == ReferralLinkUsageStatus.PENDING
        assert program.completion_total == 0
        assert link.completion_total == 0

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert program.completion_total == 1
        assert link.completion_total == 1
        assert program.zlto_reward_cumulative == Decimal("15")

    @pytest.mark.asyncio
    async def test_persist_error_reverses_settlement(self, referrals, machine, store, publisher, reward_rates):
        """A failed usage write restores the usage and gives back slot, budget and link state"""
        program = await referrals.program(completion_limit_referee=1, **reward_rates)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        with patch.object(store, "save_usage", AsyncMock(side_effect=ConnectionError("store unavailable"))):
            with pytest.raises(ConnectionError):
                await machine.evaluate(usage.id)

        assert usage.status == ReferralLinkUsageStatus.PENDING
        assert usage.date_completed is None
        assert usage.zlto_reward_referrer is None
        assert program.completion_total == 0
        assert program.zlto_reward_cumulative == Decimal("0")
        assert link.completion_total == 0
        assert link.zlto_reward_cumulative == Decimal("0")
        assert link.status == ReferralLinkStatus.ACTIVE
        assert publisher.events == []

        result = await machine.evaluate(usage.id)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert program.completion_total == 1
        assert link.status == ReferralLinkStatus.LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_negative_rate_releases_slot(self, referrals, machine):
        program = await referrals.program()
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        program.zlto_reward_referrer = Decimal("-10")

        with pytest.raises(DataInconsistencyError):
            await machine.evaluate(usage.id)

        assert usage.status == ReferralLinkUsageStatus.PENDING
        assert program.completion_total == 0
        assert link.completion_total == 0


class TestPathwayVersions:
    """Usages evaluate against the pathway version they were claimed on"""

    @pytest.mark.asyncio
    async def test_revised_pathway_does_not_affect_claimed_usage(
        self, referrals, store, machine, opportunities, make_pathway, now
    ):
        program = await referrals.program(pathway=make_pathway(["opp_1"]), pathway_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        program.revise_pathway(make_pathway(["opp_2"]))
        await store.save_program(program)
        opportunities.record_completion("referee-1", "opp_1", now)

        result = await machine.evaluate(usage.id)

        assert usage.pathway_version == 1
        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert result.progress.version == 1

    @pytest.mark.asyncio
    async def test_new_claims_use_current_version(self, referrals, store, machine, opportunities, make_pathway, now):
        program = await referrals.program(pathway=make_pathway(["opp_1"]), pathway_required=True)
        program.revise_pathway(make_pathway(["opp_2"]))
        await store.save_program(program)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)
        opportunities.record_completion("referee-1", "opp_1", now)

        result = await machine.evaluate(usage.id)

        assert usage.pathway_version == 2
        assert result.reason == OutcomeReason.PATHWAY_INCOMPLETE

    @pytest.mark.asyncio
    async def test_missing_pathway_version(self, referrals, machine, make_pathway):
        program = await referrals.program(pathway=make_pathway(["opp_1"]), pathway_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link, pathway_version=5)

        with pytest.raises(DataInconsistencyError):
            await machine.evaluate(usage.id)

    @pytest.mark.asyncio
    async def test_required_pathway_missing(self, referrals, machine):
        program = await referrals.program(pathway_required=True)
        link = await referrals.link(program)
        usage = await referrals.usage(program, link)

        with pytest.raises(DataInconsistencyError):
            await machine.evaluate(usage.id)

    @pytest.mark.asyncio
    async def test_unknown_usage(self, machine):
        with pytest.raises(DataInconsistencyError):
            await machine.evaluate("missing-usage")
