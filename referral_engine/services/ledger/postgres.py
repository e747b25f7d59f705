"""
PostgreSQL ClaimLedger (asyncpg).

Every reservation is one conditional UPDATE ... RETURNING; PostgreSQL row
locks make the check and the increment atomic. The completion slot touches
two rows (program, link) inside one transaction: if the link update finds
no capacity the program increment is rolled back.

Ledger rows are upserted at the start of each reservation transaction, so
programs and links loaded by an embedding store need no prior registration
and limit edits (completion_limit, completion_limit_referee,
zlto_reward_pool) take effect on the next reservation.

Committed totals are mirrored onto the in-memory Program / ReferralLink.
"""

import logging
from decimal import Decimal
from typing import Any

import asyncpg

from referral_engine.core.exceptions import DataInconsistencyError
from referral_engine.core.structured_logger import log_event
from referral_engine.services.referrals.models import Program, ReferralLink

logger = logging.getLogger(__name__)


LEDGER_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS referral_program_ledger (
    program_id TEXT PRIMARY KEY,
    completion_limit INTEGER NULL,
    completion_limit_referee INTEGER NULL,
    completion_total INTEGER NOT NULL DEFAULT 0,
    zlto_reward_pool NUMERIC(12, 2) NULL,
    zlto_reward_cumulative NUMERIC(12, 2) NOT NULL DEFAULT 0,
    CHECK (completion_total >= 0),
    CHECK (zlto_reward_cumulative >= 0)
);

CREATE TABLE IF NOT EXISTS referral_link_ledger (
    link_id TEXT PRIMARY KEY,
    program_id TEXT NOT NULL REFERENCES referral_program_ledger (program_id),
    completion_total INTEGER NOT NULL DEFAULT 0,
    zlto_reward_cumulative NUMERIC(12, 2) NOT NULL DEFAULT 0,
    CHECK (completion_total >= 0),
    CHECK (zlto_reward_cumulative >= 0)
);
"""

_TRACK_PROGRAM_SQL = """
INSERT INTO referral_program_ledger (
    program_id, completion_limit, completion_limit_referee,
    completion_total, zlto_reward_pool, zlto_reward_cumulative
)
VALUES ($1, $2, $3, $4, $5, $6)
ON CONFLICT (program_id) DO UPDATE
SET completion_limit = EXCLUDED.completion_limit,
    completion_limit_referee = EXCLUDED.completion_limit_referee,
    zlto_reward_pool = EXCLUDED.zlto_reward_pool
"""

_TRACK_LINK_SQL = """
INSERT INTO referral_link_ledger (link_id, program_id, completion_total, zlto_reward_cumulative)
VALUES ($1, $2, $3, $4)
ON CONFLICT (link_id) DO NOTHING
"""

_RESERVE_PROGRAM_SLOT_SQL = """
UPDATE referral_program_ledger
SET completion_total = completion_total + 1
WHERE program_id = $1
  AND (completion_limit IS NULL OR completion_total < completion_limit)
RETURNING completion_total
"""

_RESERVE_LINK_SLOT_SQL = """
UPDATE referral_link_ledger l
SET completion_total = l.completion_total + 1
FROM referral_program_ledger p
WHERE l.link_id = $1
  AND p.program_id = l.program_id
  AND (p.completion_limit_referee IS NULL OR l.completion_total < p.completion_limit_referee)
RETURNING l.completion_total
"""

_RESERVE_REWARD_SQL = """
UPDATE referral_program_ledger
SET zlto_reward_cumulative = zlto_reward_cumulative + $2
WHERE program_id = $1
  AND (zlto_reward_pool IS NULL OR zlto_reward_cumulative + $2 <= zlto_reward_pool)
RETURNING zlto_reward_cumulative
"""

_CREDIT_LINK_SQL = """
UPDATE referral_link_ledger
SET zlto_reward_cumulative = zlto_reward_cumulative + $2
WHERE link_id = $1
RETURNING zlto_reward_cumulative
"""


_RELEASE_PROGRAM_SLOT_SQL = """
UPDATE referral_program_ledger
SET completion_total = GREATEST(completion_total - 1, 0)
WHERE program_id = $1
RETURNING completion_total
"""

_RELEASE_LINK_SLOT_SQL = """
UPDATE referral_link_ledger
SET completion_total = GREATEST(completion_total - 1, 0)
WHERE link_id = $1
RETURNING completion_total
"""

_RELEASE_REWARD_SQL = """
UPDATE referral_program_ledger
SET zlto_reward_cumulative = GREATEST(zlto_reward_cumulative - $2, 0)
WHERE program_id = $1
RETURNING zlto_reward_cumulative
"""

_DEBIT_LINK_SQL = """
UPDATE referral_link_ledger
SET zlto_reward_cumulative = GREATEST(zlto_reward_cumulative - $2, 0)
WHERE link_id = $1
RETURNING zlto_reward_cumulative
"""


class _LinkSlotUnavailable(Exception):
    """Raised inside the slot transaction to roll back the program increment"""
    pass


async def create_pool(database_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(database_url, min_size=1, max_size=5)


class PostgresClaimLedger:
    def __init__(self, pool: Any):
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(LEDGER_SCHEMA_SQL)

    async def track_program(self, program: Program) -> None:
        """Register a program's counters; limits are refreshed, totals are not."""
        async with self._pool.acquire() as conn:
            await _upsert_program(conn, program)

    async def track_link(self, link: ReferralLink) -> None:
        async with self._pool.acquire() as conn:
            await _upsert_link(conn, link)

    async def try_reserve_completion_slot(self, program: Program, link: ReferralLink) -> bool:
        program_row = None
        link_row = None
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await _upsert_program(conn, program)
                    await _upsert_link(conn, link)
                    program_row = await conn.fetchrow(_RESERVE_PROGRAM_SLOT_SQL, program.id)
                    if program_row is None:
                        raise _LinkSlotUnavailable()
                    link_row = await conn.fetchrow(_RESERVE_LINK_SLOT_SQL, link.id)
                    if link_row is None:
                        raise _LinkSlotUnavailable()
        except _LinkSlotUnavailable:
            log_event(
                logger,
                component="ledger",
                operation="reserve_completion_slot",
                outcome="rejected",
                reason="program_cap" if program_row is None else "link_cap",
                program_id=program.id,
                link_id=link.id,
            )
            return False
        except asyncpg.PostgresError as e:
            log_event(
                logger,
                component="ledger",
                operation="reserve_completion_slot",
                outcome="failed",
                reason=str(e)[:100],
                level="error",
                program_id=program.id,
                link_id=link.id,
            )
            raise

        program.completion_total = program_row["completion_total"]
        link.completion_total = link_row["completion_total"]
        log_event(
            logger,
            component="ledger",
            operation="reserve_completion_slot",
            outcome="reserved",
            level="debug",
            program_id=program.id,
            link_id=link.id,
        )
        return True

    async def try_reserve_reward_budget(self, program: Program, amount: Decimal) -> bool:
        if amount < 0:
            raise ValueError("Reward amount must not be negative")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await _upsert_program(conn, program)
                row = await conn.fetchrow(_RESERVE_REWARD_SQL, program.id, amount)
        if row is None:
            log_event(
                logger,
                component="ledger",
                operation="reserve_reward_budget",
                outcome="rejected",
                reason="pool_exhausted",
                program_id=program.id,
                amount=amount,
            )
            return False
        program.zlto_reward_cumulative = Decimal(row["zlto_reward_cumulative"])
        return True

    async def credit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        """
        Raises:
            DataInconsistencyError: the link has no ledger row (no slot was reserved for it)
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_CREDIT_LINK_SQL, link.id, amount)
        if row is None:
            raise DataInconsistencyError(f"Referral link '{link.id}' has no ledger row")
        link.zlto_reward_cumulative = Decimal(row["zlto_reward_cumulative"])

    async def release_completion_slot(self, program: Program, link: ReferralLink) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                program_row = await conn.fetchrow(_RELEASE_PROGRAM_SLOT_SQL, program.id)
                link_row = await conn.fetchrow(_RELEASE_LINK_SLOT_SQL, link.id)
        if program_row is not None:
            program.completion_total = program_row["completion_total"]
        if link_row is not None:
            link.completion_total = link_row["completion_total"]
        log_event(
            logger,
            component="ledger",
            operation="release_completion_slot",
            outcome="released",
            program_id=program.id,
            link_id=link.id,
        )

    async def release_reward_budget(self, program: Program, amount: Decimal) -> None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_RELEASE_REWARD_SQL, program.id, amount)
        if row is not None:
            program.zlto_reward_cumulative = Decimal(row["zlto_reward_cumulative"])

    async def debit_link_reward(self, link: ReferralLink, amount: Decimal) -> None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_DEBIT_LINK_SQL, link.id, amount)
        if row is not None:
            link.zlto_reward_cumulative = Decimal(row["zlto_reward_cumulative"])


async def _upsert_program(conn, program: Program) -> None:
    await conn.execute(
        _TRACK_PROGRAM_SQL,
        program.id,
        program.completion_limit,
        program.completion_limit_referee,
        program.completion_total,
        program.zlto_reward_pool,
        program.zlto_reward_cumulative,
    )


async def _upsert_link(conn, link: ReferralLink) -> None:
    await conn.execute(
        _TRACK_LINK_SQL,
        link.id,
        link.program_id,
        link.completion_total,
        link.zlto_reward_cumulative,
    )
