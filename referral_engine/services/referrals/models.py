"""
Referral domain models: programs, links, usages and referrer blocks.

Programs, links and usages are mutable records; counters on them are only
changed through a ClaimLedger. Pathways attached to programs are immutable
and versioned.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum, Flag
from typing import Optional

from referral_engine.services.pathways.models import Pathway
from referral_engine.services.pathways.progress import PathwayProgress


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ZERO = Decimal("0")


# ====================================================================================
# Statuses
# ====================================================================================

class ProgramStatus(str, Enum):
    """Program lifecycle states"""
    ACTIVE = "Active"
    INACTIVE = "Inactive"  # Manually paused
    EXPIRED = "Expired"  # End date reached or UnCompletable grace elapsed
    LIMIT_REACHED = "LimitReached"  # Global completion cap hit
    UNCOMPLETABLE = "UnCompletable"  # Pathway references unavailable entities
    DELETED = "Deleted"


class ReferralLinkStatus(str, Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    LIMIT_REACHED = "LimitReached"
    EXPIRED = "Expired"


class ReferralLinkUsageStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    EXPIRED = "Expired"


class ProofOfPersonhoodMethod(Flag):
    NONE = 0
    OTP = 1
    SOCIAL_LOGIN = 2


TERMINAL_USAGE_STATUSES = (ReferralLinkUsageStatus.COMPLETED, ReferralLinkUsageStatus.EXPIRED)


# ====================================================================================
# Program
# ====================================================================================

@dataclass
class Program:
    name: str
    id: str = field(default_factory=_new_id)
    status: ProgramStatus = ProgramStatus.ACTIVE
    completion_limit: Optional[int] = None
    completion_limit_referee: Optional[int] = None
    completion_total: int = 0
    completion_window_in_days: Optional[int] = None
    zlto_reward_referrer: Optional[Decimal] = None
    zlto_reward_referee: Optional[Decimal] = None
    zlto_reward_pool: Optional[Decimal] = None
    zlto_reward_cumulative: Decimal = ZERO
    proof_of_personhood_required: bool = False
    pathway_required: bool = False
    multiple_links_allowed: bool = False
    is_default: bool = False
    date_start: datetime = field(default_factory=_utcnow)
    date_end: Optional[datetime] = None
    date_status_changed: datetime = field(default_factory=_utcnow)
    pathway: Optional[Pathway] = None

    def __post_init__(self):
        for name in ("zlto_reward_referrer", "zlto_reward_referee", "zlto_reward_pool"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must not be negative, got: {value}")

    @property
    def completion_balance(self) -> Optional[int]:
        if self.completion_limit is None:
            return None
        return self.completion_limit - self.completion_total

    @property
    def zlto_reward_balance(self) -> Optional[Decimal]:
        if self.zlto_reward_pool is None:
            return None
        return self.zlto_reward_pool - self.zlto_reward_cumulative

    @property
    def limit_reached(self) -> bool:
        return self.completion_limit is not None and self.completion_total >= self.completion_limit

    def set_status(self, status: ProgramStatus, now: Optional[datetime] = None) -> None:
        if status == self.status:
            return
        self.status = status
        self.date_status_changed = now or _utcnow()

    def revise_pathway(self, pathway: Pathway) -> Pathway:
        """
        Attach a new pathway revision.

        Usages claimed against earlier versions keep evaluating against them.
        """
        version = self.pathway.version + 1 if self.pathway is not None else 1
        self.pathway = pathway.with_version(version)
        return self.pathway


# ====================================================================================
# Links and usages
# ====================================================================================

@dataclass
class ReferralLink:
    program_id: str
    user_id: str  # Referrer
    name: Optional[str] = None
    id: str = field(default_factory=_new_id)
    status: ReferralLinkStatus = ReferralLinkStatus.ACTIVE
    completion_total: int = 0
    zlto_reward_cumulative: Decimal = ZERO
    blocked: bool = False
    date_created: datetime = field(default_factory=_utcnow)
    date_status_changed: datetime = field(default_factory=_utcnow)

    def completion_balance(self, program: Program) -> Optional[int]:
        if program.completion_limit_referee is None:
            return None
        return program.completion_limit_referee - self.completion_total

    def set_status(self, status: ReferralLinkStatus, now: Optional[datetime] = None) -> None:
        if status == self.status:
            return
        self.status = status
        self.date_status_changed = now or _utcnow()


@dataclass
class ReferralLinkUsage:
    program_id: str
    link_id: str
    user_id: str  # Referee
    user_id_referrer: str
    date_claimed: datetime
    pathway_version: Optional[int] = None
    id: str = field(default_factory=_new_id)
    status: ReferralLinkUsageStatus = ReferralLinkUsageStatus.PENDING
    date_completed: Optional[datetime] = None
    date_expired: Optional[datetime] = None
    proof_of_personhood_completed: bool = False
    proof_of_personhood_method: ProofOfPersonhoodMethod = ProofOfPersonhoodMethod.NONE
    progress: Optional[PathwayProgress] = None
    percent_complete: float = 0.0
    zlto_reward_referrer: Optional[Decimal] = None
    zlto_reward_referee: Optional[Decimal] = None
    reward_settlement_failed: bool = False
    date_facts_changed: Optional[datetime] = None
    date_last_evaluated: Optional[datetime] = None
    last_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_USAGE_STATUSES

    def window_end(self, program: Program) -> Optional[datetime]:
        if program.completion_window_in_days is None:
            return None
        return self.date_claimed + timedelta(days=program.completion_window_in_days)

    def window_elapsed(self, program: Program, now: datetime) -> bool:
        end = self.window_end(program)
        return end is not None and now > end

    def date_complete_by(self, program: Program) -> Optional[datetime]:
        """Earliest of the claim window end and the program end date."""
        candidates = [d for d in (self.window_end(program), program.date_end) if d is not None]
        return min(candidates) if candidates else None

    def time_remaining_in_days(self, program: Program, now: datetime) -> Optional[int]:
        complete_by = self.date_complete_by(program)
        if complete_by is None:
            return None
        remaining = complete_by - now
        if remaining <= timedelta(0):
            return 0
        return math.ceil(remaining.total_seconds() / 86400)

    def record_proof_of_personhood(self, method: ProofOfPersonhoodMethod) -> None:
        self.proof_of_personhood_method |= method
        self.proof_of_personhood_completed = self.proof_of_personhood_method != ProofOfPersonhoodMethod.NONE


# ====================================================================================
# Blocks
# ====================================================================================

@dataclass
class Block:
    user_id: str
    reason: str
    comment_block: Optional[str] = None
    comment_unblock: Optional[str] = None
    active: bool = True
    cancel_links: bool = False
    id: str = field(default_factory=_new_id)
    date_created: datetime = field(default_factory=_utcnow)
    date_modified: datetime = field(default_factory=_utcnow)
