"""Scheduled program expiration and pathway health checks."""
import asyncio
import logging
import time
from typing import Callable

import asyncpg

from referral_engine import config
from referral_engine.core.structured_logger import log_event
from referral_engine.services.programs.service import process_program_expiration, process_program_health
from referral_engine.utils.logging_helpers import (
    classify_error,
    get_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "program_health_worker"
MINIMUM_SAFE_SLEEP_ON_FAILURE = 10  # seconds


class ProgramHealthWorker:
    def __init__(
        self,
        machine,
        facts,
        grace_days: int = 14,
        interval_seconds: int = 300,
        enabled: Callable[[], bool] = config.background_workers_enabled,
    ):
        self.machine = machine
        self.facts = facts
        self.grace_days = grace_days
        self.interval_seconds = interval_seconds
        self.enabled = enabled

    async def run_once(self) -> int:
        """Expire ended programs, then re-check pathway health. Returns programs changed."""
        now = self.machine.clock()
        correlation_id = get_correlation_id()
        expired = await process_program_expiration(
            store=self.machine.store,
            publisher=self.machine.publisher,
            machine=self.machine,
            now=now,
            correlation_id=correlation_id,
        )
        report = await process_program_health(
            store=self.machine.store,
            facts=self.facts,
            publisher=self.machine.publisher,
            machine=self.machine,
            grace_days=self.grace_days,
            now=now,
            correlation_id=correlation_id,
        )
        return len(expired) + report.changed

    async def run_forever(self) -> None:
        logger.info(f"Program health worker started (interval={self.interval_seconds}s, grace={self.grace_days}d)")
        iteration_number = 0

        while True:
            iteration_start_time = time.time()
            iteration_number += 1
            log_worker_iteration_start(worker_name=WORKER_NAME, iteration_number=iteration_number)

            try:
                await asyncio.sleep(self.interval_seconds)

                if not self.enabled():
                    log_worker_iteration_end(
                        worker_name=WORKER_NAME,
                        outcome="skipped",
                        items_processed=0,
                        duration_ms=(time.time() - iteration_start_time) * 1000,
                        reason="background_workers_enabled=false",
                    )
                    continue

                changed = await self.run_once()
                log_worker_iteration_end(
                    worker_name=WORKER_NAME,
                    outcome="success",
                    items_processed=changed,
                    duration_ms=(time.time() - iteration_start_time) * 1000,
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
