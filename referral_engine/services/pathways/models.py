"""
Pathway Model

Immutable definition of a program pathway: ordered steps, each holding ordered
tasks, with completion rules and order modes at both levels.

Structure is validated once, on construction. `order_display` is derived from
`order` (stable sort, contiguous 1..N) and is never accepted as input.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from referral_engine.services.pathways.exceptions import ValidationError


class PathwayCompletionRule(str, Enum):
    """Whether all children or any one child satisfies the parent"""
    ALL = "All"
    ANY = "Any"


class PathwayOrderMode(str, Enum):
    """Whether children must be satisfied in declared order"""
    SEQUENTIAL = "Sequential"
    ANY_ORDER = "AnyOrder"


class PathwayTaskEntityType(str, Enum):
    """External entity kinds a task can reference"""
    OPPORTUNITY = "Opportunity"


def _display_sort_key(indexed_item):
    index, item = indexed_item
    order = item.order
    # Unordered children keep declaration order after the ordered ones
    return (order is None, order if order is not None else 0, index)


def _with_display_order(items: Sequence) -> Tuple:
    ordered = sorted(enumerate(items), key=_display_sort_key)
    result = []
    for display, (_, item) in enumerate(ordered, start=1):
        copy = dataclasses.replace(item)
        object.__setattr__(copy, "order_display", display)
        result.append(copy)
    return tuple(result)


@dataclass(frozen=True)
class PathwayTask:
    entity_type: PathwayTaskEntityType
    entity_id: Optional[str]
    order: Optional[int] = None
    order_display: int = field(default=0, init=False, compare=False)

    @property
    def key(self) -> Tuple[str, str]:
        """Fact lookup key: (entity type, entity id)"""
        entity_type = self.entity_type.value if isinstance(self.entity_type, Enum) else str(self.entity_type)
        return (entity_type, str(self.entity_id))


@dataclass(frozen=True)
class PathwayStep:
    tasks: Tuple[PathwayTask, ...]
    rule: PathwayCompletionRule = PathwayCompletionRule.ALL
    order_mode: PathwayOrderMode = PathwayOrderMode.SEQUENTIAL
    order: Optional[int] = None
    name: Optional[str] = None
    order_display: int = field(default=0, init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "tasks", _with_display_order(tuple(self.tasks or ())))


@dataclass(frozen=True)
class Pathway:
    """
    Program pathway (immutable value object).

    Args:
        steps: Steps in any order; display order is derived from `order`
        rule: All steps or any one step completes the pathway
        order_mode: Sequential pathways unlock steps one by one
        version: Pathway revision, bumped by Program.revise_pathway

    Raises:
        ValidationError: on a malformed tree (all problems reported at once)
    """
    steps: Tuple[PathwayStep, ...]
    rule: PathwayCompletionRule = PathwayCompletionRule.ALL
    order_mode: PathwayOrderMode = PathwayOrderMode.SEQUENTIAL
    version: int = 1
    name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "steps", _with_display_order(tuple(self.steps or ())))
        self.validate()

    def validate(self) -> None:
        """Re-check structural validity; raises ValidationError."""
        problems = _collect_problems(self)
        if problems:
            raise ValidationError(problems)

    def walk(self) -> Iterator[Tuple[int, PathwayStep, int, PathwayTask]]:
        """
        Read-only tree walk in display order.

        Yields:
            (step_index, step, task_index, task) with 1-based display indexes
        """
        for step in self.steps:
            for task in step.tasks:
                yield step.order_display, step, task.order_display, task

    @property
    def tasks_total(self) -> int:
        return sum(len(step.tasks) for step in self.steps)

    def with_version(self, version: int) -> "Pathway":
        return Pathway(
            steps=tuple(_strip_display(step) for step in self.steps),
            rule=self.rule,
            order_mode=self.order_mode,
            version=version,
            name=self.name,
        )


def _strip_display(step: PathwayStep) -> PathwayStep:
    return PathwayStep(
        tasks=step.tasks,
        rule=step.rule,
        order_mode=step.order_mode,
        order=step.order,
        name=step.name,
    )


def _duplicate_orders(items: Sequence) -> List[int]:
    seen = set()
    duplicates = []
    for item in items:
        if item.order is None:
            continue
        if item.order in seen and item.order not in duplicates:
            duplicates.append(item.order)
        seen.add(item.order)
    return duplicates


def _check_enum(value, enum_cls, label: str, problems: List[str]) -> None:
    if not isinstance(value, enum_cls):
        problems.append(f"{label} has unknown value '{value}'")


def _check_siblings(items: Sequence, order_mode, label: str, problems: List[str]) -> None:
    if order_mode != PathwayOrderMode.SEQUENTIAL:
        return
    for duplicate in _duplicate_orders(items):
        problems.append(f"{label} have duplicate order {duplicate} under Sequential order mode")


def _collect_problems(pathway: Pathway) -> List[str]:
    problems: List[str] = []
    _check_enum(pathway.rule, PathwayCompletionRule, "pathway rule", problems)
    _check_enum(pathway.order_mode, PathwayOrderMode, "pathway order mode", problems)
    if pathway.version < 1:
        problems.append("pathway version must be 1 or greater")

    if not pathway.steps:
        problems.append("pathway must have at least one step")
        return problems

    _check_siblings(pathway.steps, pathway.order_mode, "steps", problems)

    for step in pathway.steps:
        label = f"step {step.order_display}"
        _check_enum(step.rule, PathwayCompletionRule, f"{label} rule", problems)
        _check_enum(step.order_mode, PathwayOrderMode, f"{label} order mode", problems)
        if not step.tasks:
            problems.append(f"{label} must have at least one task")
            continue
        _check_siblings(step.tasks, step.order_mode, f"{label} tasks", problems)
        for task in step.tasks:
            task_label = f"{label} task {task.order_display}"
            _check_enum(task.entity_type, PathwayTaskEntityType, f"{task_label} entity type", problems)
            if task.entity_id is None or not str(task.entity_id).strip():
                problems.append(f"{task_label} has no entity reference")

    return problems
