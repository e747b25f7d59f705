"""
Link Usage State Machine

Pending -> Completed and Pending -> Expired, both terminal. One evaluation
runs per usage at a time (per-usage lock held from load to persist).

Pipeline order (first decision wins):
1. Terminal usage -> no-op (AlreadySettled), ledger untouched
2. Expiry: claim window elapsed, program or link expired
3. Abuse gate (referrer blocked)
4. Capacity guard (program/link status, blocked link)
5. Pathway progress (against the pathway version the usage was claimed on)
6. Proof of personhood
7. Completion slot reservation (ClaimLedger)
8. Reward settlement
9. Completed; link/program flip to LimitReached when their caps are hit

Events are published after the new state is persisted and the lock released.
An error between slot reservation and persisting the Completed usage hands
the slot (and any settled reward) back to the ledger and re-raises; the
usage stays Pending and is retried by the next trigger or sweep.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from referral_engine.core.events import EngineEvent, EventType, create_event, publish_all
from referral_engine.core.exceptions import DataInconsistencyError, LockTimeoutError
from referral_engine.core.metrics import get_metrics
from referral_engine.core.structured_logger import log_event
from referral_engine.services.capacity.service import check_evaluable
from referral_engine.services.pathways.models import Pathway
from referral_engine.services.pathways.progress import (
    PathwayProgress,
    evaluate_pathway,
    usage_percent_complete,
)
from referral_engine.services.referrals.models import (
    Program,
    ProgramStatus,
    ReferralLink,
    ReferralLinkStatus,
    ReferralLinkUsage,
    ReferralLinkUsageStatus,
)
from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.settlement.service import SettlementResult, reverse_settlement, settle

logger = logging.getLogger(__name__)

# Usage fields written by a completion; restored if it is rolled back
_COMPLETION_FIELDS = (
    "status",
    "date_completed",
    "date_last_evaluated",
    "last_reason",
    "zlto_reward_referrer",
    "zlto_reward_referee",
    "reward_settlement_failed",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EvaluationResult:
    """Result of one evaluation"""
    usage_id: str
    status: Optional[ReferralLinkUsageStatus]
    reason: OutcomeReason
    transitioned: bool = False
    progress: Optional[PathwayProgress] = None
    zlto_reward_referrer: Optional[Decimal] = None
    zlto_reward_referee: Optional[Decimal] = None
    reward_settlement_failed: bool = False
    events: List[EngineEvent] = field(default_factory=list, repr=False)


class LinkUsageStateMachine:
    """
    Evaluation pipeline for referral link usages.

    Args:
        store: ReferralStore
        ledger: ClaimLedger
        locks: UsageLockProvider
        facts: TaskFactRegistry
        gate: ReferralAbuseGate
        publisher: EventPublisher
        clock: Callable returning the current UTC datetime
    """

    def __init__(
        self,
        store,
        ledger,
        locks,
        facts,
        gate,
        publisher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self.facts = facts
        self.gate = gate
        self.publisher = publisher
        self.clock = clock

    async def evaluate(
        self,
        usage_id: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> EvaluationResult:
        """
        Evaluate one usage.

        Returns:
            EvaluationResult; LockTimeout when the usage lock was not acquired

        Raises:
            DataInconsistencyError: missing usage, missing required pathway, corrupt facts
        """
        now = now or self.clock()
        metrics = get_metrics()
        start = time.perf_counter()

        try:
            async with self.locks.hold(usage_id):
                result = await self._evaluate_locked(str(usage_id), now, correlation_id)
        except LockTimeoutError as e:
            metrics.increment_counter("referral_lock_timeout_total")
            log_event(
                logger,
                component="state_machine",
                operation="evaluate_usage",
                outcome="timeout",
                reason=OutcomeReason.LOCK_TIMEOUT.value,
                level="warning",
                correlation_id=correlation_id,
                usage_id=usage_id,
                wait_timeout=e.wait_timeout,
            )
            usage = await self.store.get_usage(str(usage_id))
            return EvaluationResult(
                usage_id=str(usage_id),
                status=usage.status if usage is not None else None,
                reason=OutcomeReason.LOCK_TIMEOUT,
            )
        finally:
            metrics.record_timer("referral_evaluation_ms", (time.perf_counter() - start) * 1000)

        await publish_all(self.publisher, result.events)

        log_event(
            logger,
            component="state_machine",
            operation="evaluate_usage",
            outcome="transitioned" if result.transitioned else "unchanged",
            reason=result.reason.value,
            level="info" if result.transitioned else "debug",
            correlation_id=correlation_id,
            usage_id=result.usage_id,
            status=result.status.value if result.status else None,
        )
        return result

    # ====================================================================================
    # Pipeline
    # ====================================================================================

    async def _evaluate_locked(
        self,
        usage_id: str,
        now: datetime,
        correlation_id: Optional[str],
    ) -> EvaluationResult:
        usage = await self.store.get_usage(usage_id)
        if usage is None:
            raise DataInconsistencyError(f"Link usage '{usage_id}' does not exist")

        if usage.is_terminal:
            return EvaluationResult(
                usage_id=usage.id,
                status=usage.status,
                reason=OutcomeReason.ALREADY_SETTLED,
                progress=usage.progress,
                zlto_reward_referrer=usage.zlto_reward_referrer,
                zlto_reward_referee=usage.zlto_reward_referee,
                reward_settlement_failed=usage.reward_settlement_failed,
            )

        program = await self.store.get_program(usage.program_id)
        link = await self.store.get_link(usage.link_id)

        expiry_reason = _expiry_reason(usage, program, link, now)
        if expiry_reason is not None:
            return await self._expire(usage, expiry_reason, now, correlation_id)

        gate = await self.gate.check(usage.user_id_referrer)
        if not gate.allowed:
            return await self._stay_pending(usage, gate.reason, now)

        guard = check_evaluable(program, link)
        if not guard.allowed:
            if guard.reason == OutcomeReason.CAPACITY_EXCEEDED:
                get_metrics().increment_counter("referral_capacity_exceeded_total")
            return await self._stay_pending(usage, guard.reason, now)

        pathway = await self._pathway_for(usage, program)
        progress = None
        if pathway is not None:
            provider = await self.facts.snapshot(usage.user_id, pathway)
            progress = evaluate_pathway(pathway, provider)
        usage.progress = progress
        usage.percent_complete = usage_percent_complete(
            progress,
            program.proof_of_personhood_required,
            usage.proof_of_personhood_completed,
        )

        if program.pathway_required and not progress.completed:
            return await self._stay_pending(usage, OutcomeReason.PATHWAY_INCOMPLETE, now)

        if program.proof_of_personhood_required and not usage.proof_of_personhood_completed:
            return await self._stay_pending(usage, OutcomeReason.PROOF_OF_PERSONHOOD_REQUIRED, now)

        if not await self.ledger.try_reserve_completion_slot(program, link):
            get_metrics().increment_counter("referral_capacity_exceeded_total")
            return await self._stay_pending(usage, OutcomeReason.CAPACITY_EXCEEDED, now)

        # The slot is held from here on: any failure before the usage is
        # persisted as Completed must give it back.
        snapshot = {name: getattr(usage, name) for name in _COMPLETION_FIELDS}
        settlement = None
        try:
            settlement = await settle(program, link, usage, self.ledger)
            return await self._complete(usage, program, link, settlement, now, correlation_id)
        except Exception as e:
            await self._roll_back_completion(usage, program, link, snapshot, settlement, e, correlation_id)
            raise

    async def _pathway_for(self, usage: ReferralLinkUsage, program: Program) -> Optional[Pathway]:
        if usage.pathway_version is None:
            pathway = program.pathway
            if pathway is not None:
                usage.pathway_version = pathway.version
        elif program.pathway is not None and program.pathway.version == usage.pathway_version:
            pathway = program.pathway
        else:
            pathway = await self.store.get_pathway(program.id, usage.pathway_version)
            if pathway is None:
                raise DataInconsistencyError(
                    f"Pathway version {usage.pathway_version} of program '{program.id}' does not exist"
                )

        if program.pathway_required and pathway is None:
            raise DataInconsistencyError(f"Program '{program.id}' requires a pathway but none exists")
        return pathway

    async def _stay_pending(
        self,
        usage: ReferralLinkUsage,
        reason: OutcomeReason,
        now: datetime,
    ) -> EvaluationResult:
        usage.date_last_evaluated = now
        usage.last_reason = reason.value
        await self.store.save_usage(usage)
        return EvaluationResult(
            usage_id=usage.id,
            status=usage.status,
            reason=reason,
            progress=usage.progress,
        )

    async def _expire(
        self,
        usage: ReferralLinkUsage,
        reason: OutcomeReason,
        now: datetime,
        correlation_id: Optional[str],
    ) -> EvaluationResult:
        usage.status = ReferralLinkUsageStatus.EXPIRED
        usage.date_expired = now
        usage.date_last_evaluated = now
        usage.last_reason = reason.value
        await self.store.save_usage(usage)

        get_metrics().increment_counter("referral_usage_expired_total")
        event = create_event(
            EventType.USAGE_EXPIRED,
            usage.id,
            correlation_id=correlation_id,
            metadata={
                "program_id": usage.program_id,
                "link_id": usage.link_id,
                "reason": reason,
            },
            timestamp=now,
        )
        return EvaluationResult(
            usage_id=usage.id,
            status=usage.status,
            reason=reason,
            transitioned=True,
            progress=usage.progress,
            events=[event],
        )

    async def _complete(
        self,
        usage: ReferralLinkUsage,
        program: Program,
        link: ReferralLink,
        settlement: SettlementResult,
        now: datetime,
        correlation_id: Optional[str],
    ) -> EvaluationResult:
        usage.status = ReferralLinkUsageStatus.COMPLETED
        usage.date_completed = now
        usage.date_last_evaluated = now
        usage.last_reason = OutcomeReason.COMPLETED.value

        events = [create_event(
            EventType.USAGE_COMPLETED,
            usage.id,
            correlation_id=correlation_id,
            metadata={
                "program_id": program.id,
                "link_id": link.id,
                "zlto_reward_referrer": settlement.zlto_reward_referrer,
                "zlto_reward_referee": settlement.zlto_reward_referee,
            },
            timestamp=now,
        )]

        if settlement.reward_settlement_failed:
            get_metrics().increment_counter("referral_reward_settlement_failed_total")
            events.append(create_event(
                EventType.REWARD_SETTLEMENT_FAILED,
                usage.id,
                correlation_id=correlation_id,
                metadata={
                    "program_id": program.id,
                    "link_id": link.id,
                    "zlto_reward_balance": program.zlto_reward_balance,
                },
                timestamp=now,
            ))

        events.extend(_flip_limit_reached(program, link, now, correlation_id))

        # Usage last: it is the record that makes the completion final
        await self.store.save_link(link)
        await self.store.save_program(program)
        await self.store.save_usage(usage)

        get_metrics().increment_counter("referral_usage_completed_total")
        return EvaluationResult(
            usage_id=usage.id,
            status=usage.status,
            reason=OutcomeReason.COMPLETED,
            transitioned=True,
            progress=usage.progress,
            zlto_reward_referrer=usage.zlto_reward_referrer,
            zlto_reward_referee=usage.zlto_reward_referee,
            reward_settlement_failed=usage.reward_settlement_failed,
            events=events,
        )

    async def _roll_back_completion(
        self,
        usage: ReferralLinkUsage,
        program: Program,
        link: ReferralLink,
        snapshot: dict,
        settlement: Optional[SettlementResult],
        error: Exception,
        correlation_id: Optional[str],
    ) -> None:
        """Undo the ledger reservations of a completion that did not persist."""
        for name, value in snapshot.items():
            setattr(usage, name, value)

        try:
            if settlement is not None:
                await reverse_settlement(program, link, settlement, self.ledger)
            await self.ledger.release_completion_slot(program, link)
        except Exception:
            logger.exception(
                f"COMPLETION_ROLLBACK_FAILED [usage_id={usage.id}, program_id={program.id}, link_id={link.id}]"
            )
        _reopen_after_release(program, link)

        log_event(
            logger,
            component="state_machine",
            operation="complete_usage",
            outcome="rolled_back",
            reason=type(error).__name__,
            level="error",
            correlation_id=correlation_id,
            usage_id=usage.id,
            program_id=program.id,
            link_id=link.id,
        )


def _reopen_after_release(program: Program, link: ReferralLink) -> None:
    link_cap = program.completion_limit_referee
    if link.status == ReferralLinkStatus.LIMIT_REACHED and (link_cap is None or link.completion_total < link_cap):
        link.status = ReferralLinkStatus.ACTIVE
    if program.status == ProgramStatus.LIMIT_REACHED and not program.limit_reached:
        program.status = ProgramStatus.ACTIVE


def _expiry_reason(
    usage: ReferralLinkUsage,
    program: Optional[Program],
    link: Optional[ReferralLink],
    now: datetime,
) -> Optional[OutcomeReason]:
    if program is not None:
        if usage.window_elapsed(program, now):
            return OutcomeReason.COMPLETION_WINDOW_ELAPSED
        if program.status == ProgramStatus.EXPIRED:
            return OutcomeReason.PROGRAM_EXPIRED
        if program.date_end is not None and now >= program.date_end and program.status != ProgramStatus.DELETED:
            return OutcomeReason.PROGRAM_EXPIRED
    if link is not None and link.status == ReferralLinkStatus.EXPIRED:
        return OutcomeReason.LINK_EXPIRED
    return None


def _flip_limit_reached(
    program: Program,
    link: ReferralLink,
    now: datetime,
    correlation_id: Optional[str],
) -> List[EngineEvent]:
    events = []
    link_cap = program.completion_limit_referee
    if link_cap is not None and link.completion_total >= link_cap and link.status == ReferralLinkStatus.ACTIVE:
        link.set_status(ReferralLinkStatus.LIMIT_REACHED, now)
        events.append(create_event(
            EventType.LINK_LIMIT_REACHED,
            link.id,
            correlation_id=correlation_id,
            metadata={"program_id": program.id, "completion_total": link.completion_total},
            timestamp=now,
        ))
    if program.limit_reached and program.status == ProgramStatus.ACTIVE:
        program.set_status(ProgramStatus.LIMIT_REACHED, now)
        events.append(create_event(
            EventType.PROGRAM_LIMIT_REACHED,
            program.id,
            correlation_id=correlation_id,
            metadata={"completion_total": program.completion_total},
            timestamp=now,
        ))
    return events
