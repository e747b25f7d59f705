"""
Pytest configuration and shared fixtures for engine tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from referral_engine.core.events import InMemoryEventPublisher
from referral_engine.core.metrics import get_metrics
from referral_engine.core.usage_locks import LocalUsageLockProvider
from referral_engine.services.abuse import InMemoryBlockRegistry, ReferralAbuseGate
from referral_engine.services.ledger import InMemoryClaimLedger
from referral_engine.services.pathways import (
    InMemoryOpportunityFactSource,
    Pathway,
    PathwayCompletionRule,
    PathwayOrderMode,
    PathwayStep,
    PathwayTask,
    PathwayTaskEntityType,
    TaskFactRegistry,
)
from referral_engine.services.referrals import (
    InMemoryReferralStore,
    Program,
    ReferralLink,
    ReferralLinkUsage,
)
from referral_engine.services.usages import LinkUsageStateMachine

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for the state machine and the sweeper"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ReferralFactory:
    """Creates and persists programs, links and usages with sane defaults"""

    def __init__(self, store, ledger, now: datetime):
        self.store = store
        self.ledger = ledger
        self.now = now

    async def program(self, **overrides) -> Program:
        values = {
            "name": "Test Program",
            "date_start": self.now - timedelta(days=30),
            "date_status_changed": self.now - timedelta(days=30),
        }
        values.update(overrides)
        program = Program(**values)
        await self.store.save_program(program)
        await self.ledger.track_program(program)
        return program

    async def link(self, program: Program, user_id: str = "referrer-1", **overrides) -> ReferralLink:
        values = {
            "program_id": program.id,
            "user_id": user_id,
            "date_created": self.now - timedelta(days=20),
            "date_status_changed": self.now - timedelta(days=20),
        }
        values.update(overrides)
        link = ReferralLink(**values)
        await self.store.save_link(link)
        await self.ledger.track_link(link)
        return link

    async def usage(
        self,
        program: Program,
        link: ReferralLink,
        user_id: str = "referee-1",
        **overrides,
    ) -> ReferralLinkUsage:
        values = {
            "program_id": program.id,
            "link_id": link.id,
            "user_id": user_id,
            "user_id_referrer": link.user_id,
            "date_claimed": self.now - timedelta(days=1),
            "pathway_version": program.pathway.version if program.pathway is not None else None,
        }
        values.update(overrides)
        usage = ReferralLinkUsage(**values)
        await self.store.save_usage(usage)
        return usage


def opportunity_pathway(
    *steps,
    rule: PathwayCompletionRule = PathwayCompletionRule.ALL,
    order_mode: PathwayOrderMode = PathwayOrderMode.SEQUENTIAL,
    step_rule: PathwayCompletionRule = PathwayCompletionRule.ALL,
    step_order_mode: PathwayOrderMode = PathwayOrderMode.SEQUENTIAL,
) -> Pathway:
    """
    Build a pathway from lists of opportunity ids, one list per step.

    Example:
        opportunity_pathway(["opp-1", "opp-2"], ["opp-3"])
    """
    return Pathway(
        steps=tuple(
            PathwayStep(
                tasks=tuple(
                    PathwayTask(PathwayTaskEntityType.OPPORTUNITY, opp_id, order=task_order)
                    for task_order, opp_id in enumerate(opp_ids, start=1)
                ),
                rule=step_rule,
                order_mode=step_order_mode,
                order=step_order,
            )
            for step_order, opp_ids in enumerate(steps, start=1)
        ),
        rule=rule,
        order_mode=order_mode,
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are a process-wide singleton"""
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def now():
    """Fixed datetime for deterministic tests"""
    return NOW


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def store():
    return InMemoryReferralStore()


@pytest.fixture
def ledger():
    return InMemoryClaimLedger()


@pytest.fixture
def locks():
    return LocalUsageLockProvider(wait_timeout=0.5)


@pytest.fixture
def opportunities():
    return InMemoryOpportunityFactSource()


@pytest.fixture
def facts(opportunities):
    registry = TaskFactRegistry()
    registry.register(opportunities)
    return registry


@pytest.fixture
def block_registry():
    return InMemoryBlockRegistry()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def machine(store, ledger, locks, facts, block_registry, publisher, clock):
    return LinkUsageStateMachine(
        store=store,
        ledger=ledger,
        locks=locks,
        facts=facts,
        gate=ReferralAbuseGate(block_registry),
        publisher=publisher,
        clock=clock,
    )


@pytest.fixture
def referrals(store, ledger, now):
    return ReferralFactory(store, ledger, now)


@pytest.fixture
def make_pathway():
    return opportunity_pathway


@pytest.fixture
def reward_rates():
    """Referrer/referee rewards and a pool that covers exactly two completions"""
    return {
        "zlto_reward_referrer": Decimal("10"),
        "zlto_reward_referee": Decimal("5"),
        "zlto_reward_pool": Decimal("30"),
    }
