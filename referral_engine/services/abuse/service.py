"""
Referral Abuse Gate and referrer Block service.

The gate is read-only: it vetoes claims and evaluations for referrers with an
active Block. Completed usages are never revisited.

Blocking is idempotent (an existing active block is returned unchanged).
Unblocking does not retry claims that were vetoed while the block was active.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from referral_engine.core.events import EventType, create_event, publish_all
from referral_engine.core.structured_logger import log_event
from referral_engine.services.links.service import cancel_links_by_user
from referral_engine.services.referrals.models import Block
from referral_engine.services.referrals.outcomes import OutcomeReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[OutcomeReason] = None
    block_id: Optional[str] = None


class ReferralAbuseGate:
    def __init__(self, registry):
        self._registry = registry

    async def check(self, referrer_user_id: str) -> GateDecision:
        block = await self._registry.get_active_block(referrer_user_id)
        if block is not None and block.active:
            return GateDecision(allowed=False, reason=OutcomeReason.REFERRER_BLOCKED, block_id=block.id)
        return GateDecision(allowed=True)


class BlockService:
    """
    Block / unblock referrers.

    Args:
        registry: BlockRegistry
        store: ReferralStore (links are flagged / cancelled)
        publisher: EventPublisher
    """

    def __init__(self, registry, store, publisher):
        self._registry = registry
        self._store = store
        self._publisher = publisher

    async def block(
        self,
        user_id: str,
        reason: str,
        comment: Optional[str] = None,
        cancel_links: bool = False,
        now: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> Block:
        existing = await self._registry.get_active_block(user_id)
        if existing is not None:
            log_event(
                logger,
                component="abuse",
                operation="block",
                outcome="noop",
                reason="already_blocked",
                correlation_id=correlation_id,
                block_id=existing.id,
            )
            return existing

        now = now or datetime.now(timezone.utc)
        block = Block(
            user_id=str(user_id),
            reason=reason,
            comment_block=comment,
            cancel_links=cancel_links,
            date_created=now,
            date_modified=now,
        )
        await self._registry.save_block(block)
        await self._flag_links(user_id, blocked=True)

        if cancel_links:
            await cancel_links_by_user(self._store, self._publisher, user_id, now=now, correlation_id=correlation_id)

        await publish_all(self._publisher, [create_event(
            EventType.REFERRER_BLOCKED,
            user_id,
            correlation_id=correlation_id,
            metadata={"block_id": block.id, "cancel_links": cancel_links},
            timestamp=now,
        )])
        log_event(
            logger,
            component="abuse",
            operation="block",
            outcome="success",
            correlation_id=correlation_id,
            block_id=block.id,
        )
        return block

    async def unblock(
        self,
        user_id: str,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[Block]:
        block = await self._registry.get_active_block(user_id)
        if block is None:
            return None

        now = now or datetime.now(timezone.utc)
        block.active = False
        block.comment_unblock = comment
        block.date_modified = now
        await self._registry.save_block(block)
        await self._flag_links(user_id, blocked=False)

        await publish_all(self._publisher, [create_event(
            EventType.REFERRER_UNBLOCKED,
            user_id,
            correlation_id=correlation_id,
            metadata={"block_id": block.id},
            timestamp=now,
        )])
        log_event(
            logger,
            component="abuse",
            operation="unblock",
            outcome="success",
            correlation_id=correlation_id,
            block_id=block.id,
        )
        return block

    async def _flag_links(self, user_id: str, blocked: bool) -> List:
        links = await self._store.list_links(user_id=str(user_id))
        for link in links:
            if link.blocked != blocked:
                link.blocked = blocked
                await self._store.save_link(link)
        return links
