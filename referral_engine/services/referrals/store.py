"""
Referral store interface and in-memory implementation.

The engine does not own a persistence technology for programs, links and
usages; the embedding service supplies a ReferralStore. Counter columns are
written by the ClaimLedger, everything else through save_*().
"""

from datetime import datetime
from typing import Collection, Dict, Iterable, List, Optional, Protocol, Tuple

from referral_engine.services.pathways.models import Pathway
from referral_engine.services.referrals.exceptions import (
    LinkNotFoundError,
    ProgramNotFoundError,
    UsageNotFoundError,
)
from referral_engine.services.referrals.models import (
    Program,
    ProgramStatus,
    ReferralLink,
    ReferralLinkStatus,
    ReferralLinkUsage,
    ReferralLinkUsageStatus,
)


class ReferralStore(Protocol):
    async def get_program(self, program_id: str) -> Optional[Program]:
        ...

    async def get_link(self, link_id: str) -> Optional[ReferralLink]:
        ...

    async def get_usage(self, usage_id: str) -> Optional[ReferralLinkUsage]:
        ...

    async def get_pathway(self, program_id: str, version: int) -> Optional[Pathway]:
        ...

    async def save_program(self, program: Program) -> None:
        ...

    async def save_link(self, link: ReferralLink) -> None:
        ...

    async def save_usage(self, usage: ReferralLinkUsage) -> None:
        ...

    async def list_programs(self, statuses: Optional[Collection[ProgramStatus]] = None) -> List[Program]:
        ...

    async def list_links(
        self,
        program_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Collection[ReferralLinkStatus]] = None,
    ) -> List[ReferralLink]:
        ...

    async def list_usages(
        self,
        link_id: Optional[str] = None,
        program_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Collection[ReferralLinkUsageStatus]] = None,
    ) -> List[ReferralLinkUsage]:
        ...

    async def list_sweep_candidates(
        self,
        now: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
    ) -> List[ReferralLinkUsage]:
        """
        Pending usages due for re-evaluation: claim window elapsed, program or
        link expired, or facts changed since the last evaluation.
        """
        ...

    async def mark_facts_changed(self, user_id: str, now: datetime) -> List[str]:
        """Stamp date_facts_changed on the referee's Pending usages; returns their ids."""
        ...


class InMemoryReferralStore:
    """
    Dict-backed ReferralStore.

    Objects are held by reference: callers mutate the loaded record and
    save it back, the same way a unit-of-work would.
    """

    def __init__(self):
        self.programs: Dict[str, Program] = {}
        self.links: Dict[str, ReferralLink] = {}
        self.usages: Dict[str, ReferralLinkUsage] = {}
        self._pathways: Dict[Tuple[str, int], Pathway] = {}

    async def get_program(self, program_id: str) -> Optional[Program]:
        return self.programs.get(str(program_id))

    async def get_link(self, link_id: str) -> Optional[ReferralLink]:
        return self.links.get(str(link_id))

    async def get_usage(self, usage_id: str) -> Optional[ReferralLinkUsage]:
        return self.usages.get(str(usage_id))

    async def get_pathway(self, program_id: str, version: int) -> Optional[Pathway]:
        return self._pathways.get((str(program_id), version))

    async def save_program(self, program: Program) -> None:
        self.programs[program.id] = program
        if program.pathway is not None:
            self._pathways.setdefault((program.id, program.pathway.version), program.pathway)

    async def save_link(self, link: ReferralLink) -> None:
        self.links[link.id] = link

    async def save_usage(self, usage: ReferralLinkUsage) -> None:
        self.usages[usage.id] = usage

    async def list_programs(self, statuses: Optional[Collection[ProgramStatus]] = None) -> List[Program]:
        return [p for p in self.programs.values() if statuses is None or p.status in statuses]

    async def list_links(
        self,
        program_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Collection[ReferralLinkStatus]] = None,
    ) -> List[ReferralLink]:
        return [
            link for link in self.links.values()
            if (program_id is None or link.program_id == program_id)
            and (user_id is None or link.user_id == user_id)
            and (statuses is None or link.status in statuses)
        ]

    async def list_usages(
        self,
        link_id: Optional[str] = None,
        program_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Collection[ReferralLinkUsageStatus]] = None,
    ) -> List[ReferralLinkUsage]:
        return [
            usage for usage in self.usages.values()
            if (link_id is None or usage.link_id == link_id)
            and (program_id is None or usage.program_id == program_id)
            and (user_id is None or usage.user_id == user_id)
            and (statuses is None or usage.status in statuses)
        ]

    async def list_sweep_candidates(
        self,
        now: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
    ) -> List[ReferralLinkUsage]:
        candidates = []
        for usage in self._pending(exclude_ids):
            program = self.programs.get(usage.program_id)
            link = self.links.get(usage.link_id)
            window_elapsed = program is not None and usage.window_elapsed(program, now)
            expired = (
                (program is not None and program.status == ProgramStatus.EXPIRED)
                or (link is not None and link.status == ReferralLinkStatus.EXPIRED)
            )
            if window_elapsed or expired or _facts_changed(usage):
                candidates.append(usage)
        candidates.sort(key=lambda u: u.date_claimed)
        return candidates[:limit]

    async def mark_facts_changed(self, user_id: str, now: datetime) -> List[str]:
        changed = []
        for usage in self._pending(()):
            if usage.user_id == str(user_id):
                usage.date_facts_changed = now
                changed.append(usage.id)
        return changed

    def _pending(self, exclude_ids: Collection[str]) -> Iterable[ReferralLinkUsage]:
        excluded = set(exclude_ids)
        for usage in self.usages.values():
            if usage.status == ReferralLinkUsageStatus.PENDING and usage.id not in excluded:
                yield usage


def _facts_changed(usage: ReferralLinkUsage) -> bool:
    if usage.date_facts_changed is None:
        return False
    return usage.date_last_evaluated is None or usage.date_facts_changed > usage.date_last_evaluated


# ====================================================================================
# Lookup helpers
# ====================================================================================

async def require_program(store: ReferralStore, program_id: str) -> Program:
    program = await store.get_program(program_id)
    if program is None:
        raise ProgramNotFoundError(f"Program '{program_id}' does not exist")
    return program


async def require_link(store: ReferralStore, link_id: str) -> ReferralLink:
    link = await store.get_link(link_id)
    if link is None:
        raise LinkNotFoundError(f"Referral link '{link_id}' does not exist")
    return link


async def require_usage(store: ReferralStore, usage_id: str) -> ReferralLinkUsage:
    usage = await store.get_usage(usage_id)
    if usage is None:
        raise UsageNotFoundError(f"Link usage '{usage_id}' does not exist")
    return usage
