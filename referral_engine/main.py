"""
Engine entry point.

Wires the engine from EngineSettings and runs the background workers.
Embedding services call build_engine() with their own ReferralStore and task
fact sources; running this module starts the workers against in-memory stores.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from referral_engine.config import EngineSettings, get_settings, log_level
from referral_engine.core.events import LoggingEventPublisher
from referral_engine.core.logging_config import setup_logging
from referral_engine.core.redis_client import check_redis_connection, close_redis_client, get_redis_client
from referral_engine.core.usage_locks import build_lock_provider
from referral_engine.services.abuse import BlockService, InMemoryBlockRegistry, ReferralAbuseGate
from referral_engine.services.ledger import InMemoryClaimLedger, PostgresClaimLedger, create_pool
from referral_engine.services.pathways import InMemoryOpportunityFactSource, TaskFactRegistry
from referral_engine.services.referrals import InMemoryReferralStore
from referral_engine.services.usages import LinkUsageStateMachine
from referral_engine.workers.program_health_worker import ProgramHealthWorker
from referral_engine.workers.usage_sweeper import UsageSweeper

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: EngineSettings
    machine: LinkUsageStateMachine
    sweeper: UsageSweeper
    health_worker: ProgramHealthWorker
    block_service: BlockService
    pool: Optional[object] = None


async def build_engine(
    settings: Optional[EngineSettings] = None,
    store=None,
    facts: Optional[TaskFactRegistry] = None,
    block_registry=None,
    publisher=None,
) -> Engine:
    settings = settings or get_settings()
    store = store or InMemoryReferralStore()
    block_registry = block_registry or InMemoryBlockRegistry()
    publisher = publisher or LoggingEventPublisher()
    if facts is None:
        facts = TaskFactRegistry()
        facts.register(InMemoryOpportunityFactSource())

    redis_client = None
    if settings.redis_enabled and await check_redis_connection():
        redis_client = await get_redis_client()
    locks = build_lock_provider(
        redis_client,
        wait_timeout=settings.lock_wait_timeout_seconds,
        ttl_seconds=settings.lock_ttl_seconds,
    )

    pool = None
    if settings.database_enabled:
        pool = await create_pool(settings.database_url)
        ledger = PostgresClaimLedger(pool)
        await ledger.ensure_schema()
        logger.info("CLAIM_LEDGER: using PostgreSQL ledger")
    else:
        ledger = InMemoryClaimLedger()
        logger.info("CLAIM_LEDGER: database not configured, using in-memory ledger")

    machine = LinkUsageStateMachine(
        store=store,
        ledger=ledger,
        locks=locks,
        facts=facts,
        gate=ReferralAbuseGate(block_registry),
        publisher=publisher,
    )
    return Engine(
        settings=settings,
        machine=machine,
        sweeper=UsageSweeper(
            machine,
            batch_size=settings.sweep_batch_size,
            max_run_seconds=settings.sweep_max_run_seconds,
            interval_seconds=settings.sweep_interval_seconds,
        ),
        health_worker=ProgramHealthWorker(
            machine,
            facts,
            grace_days=settings.uncompletable_grace_days,
        ),
        block_service=BlockService(block_registry, store, publisher),
        pool=pool,
    )


async def main():
    engine = await build_engine()
    tasks = [
        asyncio.create_task(engine.sweeper.run_forever(), name="usage_sweeper"),
        asyncio.create_task(engine.health_worker.run_forever(), name="program_health_worker"),
    ]
    logger.info(f"Referral engine started (environment={engine.settings.app_env})")

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_redis_client()
        if engine.pool is not None:
            await engine.pool.close()
        logger.info("Referral engine stopped")


def run() -> None:
    setup_logging(log_level())
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Referral engine interrupted")


if __name__ == "__main__":
    run()
