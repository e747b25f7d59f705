"""
Background usage sweeper.

Time-based transitions (claim windows elapsing) and missed progress
triggers are picked up here. Each run is a bounded work-queue consumer:

- fetch a batch of Pending usages due for re-evaluation
- evaluate each one independently (a failure is logged and counted,
  the rest of the batch continues)
- stop when a batch comes back empty or the deadline passes

The clock is injected so runs are testable without sleeping.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

import asyncpg

from referral_engine import config
from referral_engine.core.metrics import get_metrics, timer
from referral_engine.core.structured_logger import log_event
from referral_engine.services.referrals.models import ReferralLinkUsageStatus
from referral_engine.services.referrals.outcomes import OutcomeReason
from referral_engine.services.usages.state_machine import utcnow
from referral_engine.utils.logging_helpers import (
    classify_error,
    get_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "usage_sweeper"

# Minimum safe sleep on failure to prevent tight retry storms
MINIMUM_SAFE_SLEEP_ON_FAILURE = 10  # seconds


@dataclass
class SweepReport:
    processed: int = 0
    completed: int = 0
    expired: int = 0
    unchanged: int = 0
    lock_timeouts: int = 0
    failed: int = 0
    batches: int = 0
    deadline_reached: bool = False

    @property
    def outcome(self) -> str:
        if self.failed or self.lock_timeouts:
            return "degraded"
        return "success"


class UsageSweeper:
    """
    Args:
        machine: LinkUsageStateMachine
        batch_size: Usages fetched per batch
        max_run_seconds: Time budget of one run (default deadline)
        interval_seconds: Sleep between runs in run_forever
        clock: Callable returning the current UTC datetime
        enabled: Kill switch checked before every run
    """

    def __init__(
        self,
        machine,
        batch_size: int = 100,
        max_run_seconds: float = 15.0,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
        enabled: Callable[[], bool] = config.background_workers_enabled,
    ):
        self.machine = machine
        self.batch_size = batch_size
        self.max_run_seconds = max_run_seconds
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.enabled = enabled
        self._run_lock = asyncio.Lock()

    async def run_once(self, deadline: Optional[datetime] = None) -> SweepReport:
        """
        Sweep until no due usages are left or the deadline passes.

        Args:
            deadline: Absolute cut-off; defaults to now + max_run_seconds
        """
        async with self._run_lock:
            with timer("referral_sweep_ms"):
                return await self._sweep(deadline)

    async def _sweep(self, deadline: Optional[datetime]) -> SweepReport:
        metrics = get_metrics()
        report = SweepReport()
        deadline = deadline or self.clock() + timedelta(seconds=self.max_run_seconds)
        seen: Set[str] = set()
        correlation_id = get_correlation_id()

        while not report.deadline_reached:
            now = self.clock()
            if now >= deadline:
                report.deadline_reached = True
                break

            batch = await self.machine.store.list_sweep_candidates(now, self.batch_size, exclude_ids=seen)
            if not batch:
                break
            report.batches += 1

            for usage in batch:
                if self.clock() >= deadline:
                    report.deadline_reached = True
                    break

                seen.add(usage.id)
                report.processed += 1
                try:
                    result = await self.machine.evaluate(usage.id, now=self.clock(), correlation_id=correlation_id)
                except Exception as e:
                    report.failed += 1
                    metrics.increment_counter("referral_sweep_failures_total")
                    logger.exception(
                        f"USAGE_SWEEP_ITEM_FAILED [usage_id={usage.id}, error_type={classify_error(e)}]: "
                        f"{type(e).__name__}"
                    )
                    continue

                if result.reason == OutcomeReason.LOCK_TIMEOUT:
                    report.lock_timeouts += 1
                elif result.transitioned and result.status == ReferralLinkUsageStatus.COMPLETED:
                    report.completed += 1
                elif result.transitioned and result.status == ReferralLinkUsageStatus.EXPIRED:
                    report.expired += 1
                else:
                    report.unchanged += 1

            # Yield to the event loop between batches
            await asyncio.sleep(0)

        log_event(
            logger,
            component="sweeper",
            operation="run_once",
            outcome=report.outcome,
            correlation_id=correlation_id,
            processed=report.processed,
            completed=report.completed,
            expired=report.expired,
            failed=report.failed,
            deadline_reached=report.deadline_reached,
        )
        return report

    async def run_forever(self) -> None:
        """Scheduled loop: sleep, check the kill switch, sweep, repeat."""
        logger.info(
            f"Usage sweeper started (interval={self.interval_seconds}s, batch_size={self.batch_size}, "
            f"max_run={self.max_run_seconds}s)"
        )
        iteration_number = 0

        while True:
            iteration_start_time = time.time()
            iteration_number += 1
            log_worker_iteration_start(worker_name=WORKER_NAME, iteration_number=iteration_number)

            try:
                await asyncio.sleep(self.interval_seconds)

                if not self.enabled():
                    logger.warning(
                        f"[FEATURE_FLAG] Background workers disabled, skipping iteration in {WORKER_NAME} "
                        f"(iteration={iteration_number})"
                    )
                    log_worker_iteration_end(
                        worker_name=WORKER_NAME,
                        outcome="skipped",
                        items_processed=0,
                        duration_ms=(time.time() - iteration_start_time) * 1000,
                        reason="background_workers_enabled=false",
                    )
                    continue

                report = await self.run_once()
                log_worker_iteration_end(
                    worker_name=WORKER_NAME,
                    outcome=report.outcome,
                    items_processed=report.processed,
                    duration_ms=(time.time() - iteration_start_time) * 1000,
                    completed=report.completed,
                    expired=report.expired,
                    failed=report.failed,
                )

            except asyncio.CancelledError:
                log_event(
                    logger,
                    component="worker",
                    operation=f"{WORKER_NAME}_iteration",
                    outcome="cancelled",
                )
                break
            except (asyncpg.PostgresError, asyncio.TimeoutError) as e:
                logger.warning(f"{WORKER_NAME}: Database temporarily unavailable: {type(e).__name__}: {str(e)[:100]}")
                log_worker_iteration_end(
                    worker_name=WORKER_NAME,
                    outcome="degraded",
                    items_processed=0,
                    error_type="infra_error",
                    duration_ms=(time.time() - iteration_start_time) * 1000,
                )
                await asyncio.sleep(MINIMUM_SAFE_SLEEP_ON_FAILURE)
            except Exception as e:
                logger.error(f"{WORKER_NAME}: Unexpected error in task loop: {type(e).__name__}: {str(e)[:100]}")
                logger.debug(f"{WORKER_NAME}: Full traceback for task loop", exc_info=True)
                log_worker_iteration_end(
                    worker_name=WORKER_NAME,
                    outcome="failed",
                    items_processed=0,
                    error_type=classify_error(e),
                    duration_ms=(time.time() - iteration_start_time) * 1000,
                )
                await asyncio.sleep(MINIMUM_SAFE_SLEEP_ON_FAILURE)
