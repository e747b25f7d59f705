"""
Task facts: the per-referee completion facts a pathway is evaluated against.

Facts are fetched asynchronously from one TaskFactSource per entity type and
frozen into a snapshot provider, so progress evaluation itself stays a pure
synchronous function of (pathway, facts).
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from referral_engine.core.exceptions import DataInconsistencyError
from referral_engine.services.pathways.models import (
    Pathway,
    PathwayTask,
    PathwayTaskEntityType,
)


@dataclass(frozen=True)
class TaskFact:
    """Whether the referee completed the task's entity, and when"""
    completed: bool
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class TaskAvailability:
    """Whether the task's entity can still be completed at all"""
    available: bool
    reason: Optional[str] = None


NOT_COMPLETED = TaskFact(completed=False)
AVAILABLE = TaskAvailability(available=True)

TaskFactProvider = Callable[[PathwayTask], TaskFact]
TaskAvailabilityProvider = Callable[[PathwayTask], TaskAvailability]


class TaskFactSource(Protocol):
    """Fetches facts for one entity type (e.g. opportunity verifications)."""

    entity_type: PathwayTaskEntityType

    async def fetch_fact(self, user_id: str, task: PathwayTask) -> TaskFact:
        ...

    async def fetch_availability(self, task: PathwayTask) -> TaskAvailability:
        ...


class SnapshotProvider:
    """Frozen, dict-backed provider keyed by PathwayTask.key."""

    def __init__(self, values: Mapping[Tuple[str, str], object], default):
        self._values: Dict[Tuple[str, str], object] = dict(values)
        self._default = default

    def __call__(self, task: PathwayTask):
        return self._values.get(task.key, self._default)

    def __len__(self) -> int:
        return len(self._values)


class TaskFactRegistry:
    """
    Dispatches fact lookups by task entity type.

    Example:
        registry = TaskFactRegistry()
        registry.register(opportunity_source)
        provider = await registry.snapshot(user_id, pathway)
        progress = evaluate_pathway(pathway, provider)
    """

    def __init__(self):
        self._sources: Dict[PathwayTaskEntityType, TaskFactSource] = {}

    def register(self, source: TaskFactSource) -> None:
        self._sources[source.entity_type] = source

    def source_for(self, entity_type: PathwayTaskEntityType) -> TaskFactSource:
        source = self._sources.get(entity_type)
        if source is None:
            raise DataInconsistencyError(f"No task fact source registered for entity type '{entity_type}'")
        return source

    async def snapshot(self, user_id: str, pathway: Pathway) -> SnapshotProvider:
        tasks = _unique_tasks(pathway)
        facts = await asyncio.gather(
            *(self.source_for(task.entity_type).fetch_fact(user_id, task) for task in tasks)
        )
        return SnapshotProvider({task.key: fact for task, fact in zip(tasks, facts)}, NOT_COMPLETED)

    async def availability_snapshot(self, pathway: Pathway) -> SnapshotProvider:
        tasks = _unique_tasks(pathway)
        availability = await asyncio.gather(
            *(self.source_for(task.entity_type).fetch_availability(task) for task in tasks)
        )
        return SnapshotProvider({task.key: item for task, item in zip(tasks, availability)}, AVAILABLE)


def _unique_tasks(pathway: Pathway):
    seen = set()
    tasks = []
    for _, _, _, task in pathway.walk():
        if task.key in seen:
            continue
        seen.add(task.key)
        tasks.append(task)
    return tasks


class InMemoryOpportunityFactSource:
    """Opportunity verifications held in memory (embedding services, tests)."""

    entity_type = PathwayTaskEntityType.OPPORTUNITY

    def __init__(self):
        self._completions: Dict[Tuple[str, str], datetime] = {}
        self._unavailable: Dict[str, str] = {}

    def record_completion(self, user_id, opportunity_id, completed_at: datetime) -> None:
        self._completions[(str(user_id), str(opportunity_id))] = completed_at

    def revoke_completion(self, user_id, opportunity_id) -> None:
        self._completions.pop((str(user_id), str(opportunity_id)), None)

    def set_unavailable(self, opportunity_id, reason: str) -> None:
        self._unavailable[str(opportunity_id)] = reason

    def set_available(self, opportunity_id) -> None:
        self._unavailable.pop(str(opportunity_id), None)

    async def fetch_fact(self, user_id, task: PathwayTask) -> TaskFact:
        completed_at = self._completions.get((str(user_id), str(task.entity_id)))
        if completed_at is None:
            return NOT_COMPLETED
        return TaskFact(completed=True, completed_at=completed_at)

    async def fetch_availability(self, task: PathwayTask) -> TaskAvailability:
        reason = self._unavailable.get(str(task.entity_id))
        if reason is None:
            return AVAILABLE
        return TaskAvailability(available=False, reason=reason)
