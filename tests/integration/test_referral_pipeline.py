"""
Integration tests: referral lifecycle through the public operations.

Scenarios:
- Program -> link -> claim -> opportunity verified -> completion with rewards
- Reward pool and program cap exhaustion across several referees
- Claim window elapsing and the sweeper expiring the usage
- Program expiry and pathway health through the health worker
- Engine wiring without Redis or PostgreSQL
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from referral_engine.config import EngineSettings
from referral_engine.core.events import EventType, InMemoryEventPublisher
from referral_engine.core.usage_locks import LocalUsageLockProvider
from referral_engine.main import build_engine
from referral_engine.services.abuse import BlockService, InMemoryBlockRegistry
from referral_engine.services.ledger import InMemoryClaimLedger
from referral_engine.services.links import create_link
from referral_engine.services.referrals import (
    InMemoryReferralStore,
    OutcomeReason,
    Program,
    ProgramStatus,
    ReferralLinkStatus,
    ReferralLinkUsageStatus,
)
from referral_engine.services.usages import claim_link, process_progress_trigger
from referral_engine.workers.program_health_worker import ProgramHealthWorker
from referral_engine.workers.usage_sweeper import UsageSweeper


class TestReferralLifecycle:
    """End-to-end referral flows"""

    @pytest.mark.asyncio
    async def test_full_referral_flow(
        self, referrals, store, ledger, block_registry, machine, opportunities, make_pathway, publisher, clock, now
    ):
        """Claim, verify both opportunities in order, complete with rewards"""
        program = await referrals.program(
            pathway=make_pathway(["opp_1"], ["opp_2"]),
            pathway_required=True,
            completion_window_in_days=30,
            zlto_reward_referrer=Decimal("20"),
            zlto_reward_referee=Decimal("10"),
            zlto_reward_pool=Decimal("300"),
        )
        link = await create_link(store, ledger, block_registry, program.id, "referrer-1", now=now)

        claim = await claim_link(link.id, "referee-1", machine=machine)
        assert claim.accepted is True
        assert claim.reason == OutcomeReason.PATHWAY_INCOMPLETE

        clock.advance(days=2)
        opportunities.record_completion("referee-1", "opp_1", clock.now)
        first = await process_progress_trigger("referee-1", machine=machine)
        assert first[0].status == ReferralLinkUsageStatus.PENDING
        assert first[0].progress.percent_complete == 50.0
        assert first[0].progress.steps[1].is_completable is True

        clock.advance(days=3)
        opportunities.record_completion("referee-1", "opp_2", clock.now)
        second = await process_progress_trigger("referee-1", machine=machine)

        usage = await store.get_usage(claim.usage_id)
        assert second[0].status == ReferralLinkUsageStatus.COMPLETED
        assert usage.date_completed == clock.now
        assert usage.zlto_reward_referrer == Decimal("20")
        assert usage.zlto_reward_referee == Decimal("10")
        assert usage.time_remaining_in_days(program, clock.now) == 25
        assert program.zlto_reward_cumulative == Decimal("30")
        assert link.zlto_reward_cumulative == Decimal("20")
        assert [e.event_type for e in publisher.events] == [
            EventType.USAGE_CLAIMED,
            EventType.USAGE_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_pool_then_cap_exhaustion(self, referrals, machine, reward_rates, publisher):
        """Pool covers two completions, the cap allows three, the fourth referee is turned away"""
        program = await referrals.program(completion_limit=3, **reward_rates)
        link = await referrals.link(program)

        results = [await claim_link(link.id, f"referee-{i}", machine=machine) for i in range(4)]

        assert [r.status for r in results[:3]] == [ReferralLinkUsageStatus.COMPLETED] * 3
        assert [r.evaluation.reward_settlement_failed for r in results[:3]] == [False, False, True]
        assert results[3].accepted is False
        assert results[3].reason == OutcomeReason.CAPACITY_EXCEEDED
        assert program.status == ProgramStatus.LIMIT_REACHED
        assert program.zlto_reward_cumulative <= program.zlto_reward_pool
        assert len(publisher.of_type(EventType.REWARD_SETTLEMENT_FAILED)) == 1
        assert len(publisher.of_type(EventType.PROGRAM_LIMIT_REACHED)) == 1

    @pytest.mark.asyncio
    async def test_window_elapses_before_completion(
        self, referrals, machine, opportunities, make_pathway, clock, store
    ):
        """The sweeper expires a usage whose window ran out, even if the pathway is done later"""
        program = await referrals.program(
            pathway=make_pathway(["opp_1"]),
            pathway_required=True,
            completion_window_in_days=7,
        )
        link = await referrals.link(program)
        claim = await claim_link(link.id, "referee-1", machine=machine)

        clock.advance(days=8)
        opportunities.record_completion("referee-1", "opp_1", clock.now)
        report = await UsageSweeper(machine, clock=clock).run_once()

        usage = await store.get_usage(claim.usage_id)
        assert report.expired == 1
        assert usage.status == ReferralLinkUsageStatus.EXPIRED
        assert usage.last_reason == "CompletionWindowElapsed"
        assert program.completion_total == 0

    @pytest.mark.asyncio
    async def test_blocked_referrer_flow(self, referrals, machine, block_registry, store, publisher, make_pathway,
                                         opportunities, now):
        """Blocking mid-flight vetoes completion; unblocking lets the usage complete"""
        program = await referrals.program(pathway=make_pathway(["opp_1"]), pathway_required=True)
        link = await referrals.link(program)
        claim = await claim_link(link.id, "referee-1", machine=machine)
        blocks = BlockService(block_registry, store, publisher)

        await blocks.block("referrer-1", reason="suspicious volume", now=now)
        opportunities.record_completion("referee-1", "opp_1", now)
        vetoed = await process_progress_trigger("referee-1", machine=machine)

        await blocks.unblock("referrer-1", now=now)
        await store.mark_facts_changed("referee-1", now + timedelta(seconds=1))
        report = await UsageSweeper(machine, clock=lambda: now + timedelta(seconds=2)).run_once()

        usage = await store.get_usage(claim.usage_id)
        assert vetoed[0].reason == OutcomeReason.REFERRER_BLOCKED
        assert report.completed == 1
        assert usage.status == ReferralLinkUsageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_health_worker_expires_programs(self, referrals, machine, facts, clock, store, now):
        program = await referrals.program(date_end=now + timedelta(days=1), proof_of_personhood_required=True)
        link = await referrals.link(program)
        claim = await claim_link(link.id, "referee-1", machine=machine)
        worker = ProgramHealthWorker(machine, facts, grace_days=14)

        assert await worker.run_once() == 0

        clock.advance(days=2)
        changed = await worker.run_once()

        usage = await store.get_usage(claim.usage_id)
        assert changed == 1
        assert program.status == ProgramStatus.EXPIRED
        assert link.status == ReferralLinkStatus.EXPIRED
        assert usage.status == ReferralLinkUsageStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_health_worker_marks_uncompletable(
        self, referrals, machine, facts, opportunities, make_pathway
    ):
        program = await referrals.program(pathway=make_pathway(["opp_1"]), pathway_required=True)
        opportunities.set_unavailable("opp_1", "opportunity archived")

        changed = await ProgramHealthWorker(machine, facts).run_once()

        assert changed == 1
        assert program.status == ProgramStatus.UNCOMPLETABLE


class TestBuildEngine:
    """Engine wiring"""

    def _settings(self):
        return EngineSettings(
            app_env="local",
            redis_url="",
            database_url="",
            lock_wait_timeout_seconds=2.0,
            lock_ttl_seconds=30,
            sweep_batch_size=10,
            sweep_max_run_seconds=5.0,
            sweep_interval_seconds=30,
            uncompletable_grace_days=7,
            background_workers_enabled=True,
        )

    @pytest.mark.asyncio
    async def test_in_memory_engine(self):
        """Without Redis or PostgreSQL the engine uses in-process locks and ledger"""
        engine = await build_engine(settings=self._settings())

        assert isinstance(engine.machine.locks, LocalUsageLockProvider)
        assert engine.machine.locks.wait_timeout == 2.0
        assert isinstance(engine.machine.ledger, InMemoryClaimLedger)
        assert engine.sweeper.batch_size == 10
        assert engine.health_worker.grace_days == 7
        assert engine.pool is None

    @pytest.mark.asyncio
    async def test_engine_runs_a_claim(self, now):
        store = InMemoryReferralStore()
        publisher = InMemoryEventPublisher()
        block_registry = InMemoryBlockRegistry()
        engine = await build_engine(
            settings=self._settings(),
            store=store,
            block_registry=block_registry,
            publisher=publisher,
        )
        program = Program(name="Engine Program", date_start=now - timedelta(days=1))
        await store.save_program(program)
        link = await create_link(store, engine.machine.ledger, block_registry, program.id, "referrer-1")

        result = await claim_link(link.id, "referee-1", machine=engine.machine)

        assert result.status == ReferralLinkUsageStatus.COMPLETED
        assert len(publisher.of_type(EventType.USAGE_COMPLETED)) == 1
