"""
Progress Evaluator

Pure, deterministic evaluation of a pathway against a snapshot of task facts.
No I/O, no clock: the same pathway and facts always give the same progress.

Rules:
- Task completion comes straight from the fact provider
- Step/pathway `All` needs every child completed, `Any` needs at least one
- Under Sequential order mode a child is reachable only when every preceding
  sibling (display order) is completed; a task inside an unreachable step is
  unreachable too
- Step percent is an integer floor; pathway percent is the mean of step percents
- `date_completed`: All -> latest child timestamp, Any -> earliest completed child
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from referral_engine.core.exceptions import DataInconsistencyError
from referral_engine.services.pathways.facts import (
    TaskAvailability,
    TaskAvailabilityProvider,
    TaskFact,
    TaskFactProvider,
)
from referral_engine.services.pathways.models import (
    Pathway,
    PathwayCompletionRule,
    PathwayOrderMode,
    PathwayTask,
    PathwayTaskEntityType,
)


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass(frozen=True)
class TaskProgress:
    step_order_display: int
    order_display: int
    entity_type: PathwayTaskEntityType
    entity_id: str
    completed: bool
    date_completed: Optional[datetime]
    is_completable: bool
    non_completable_reason: Optional[str] = None


@dataclass(frozen=True)
class StepProgress:
    order_display: int
    rule: PathwayCompletionRule
    order_mode: PathwayOrderMode
    tasks: Tuple[TaskProgress, ...]
    completed: bool
    date_completed: Optional[datetime]
    percent_complete: int
    is_completable: bool
    non_completable_reason: Optional[str] = None

    @property
    def tasks_total(self) -> int:
        return len(self.tasks)

    @property
    def tasks_completed(self) -> int:
        return sum(1 for task in self.tasks if task.completed)


@dataclass(frozen=True)
class PathwayProgress:
    version: int
    rule: PathwayCompletionRule
    order_mode: PathwayOrderMode
    steps: Tuple[StepProgress, ...]
    completed: bool
    date_completed: Optional[datetime]
    percent_complete: float

    @property
    def steps_completed(self) -> int:
        return sum(1 for step in self.steps if step.completed)

    def to_dict(self) -> dict:
        """Serializable snapshot (ids, flags and dates only)."""
        return {
            "version": self.version,
            "completed": self.completed,
            "date_completed": self.date_completed.isoformat() if self.date_completed else None,
            "percent_complete": self.percent_complete,
            "steps": [
                {
                    "order_display": step.order_display,
                    "completed": step.completed,
                    "percent_complete": step.percent_complete,
                    "is_completable": step.is_completable,
                    "tasks": [
                        {
                            "order_display": task.order_display,
                            "entity_id": task.entity_id,
                            "completed": task.completed,
                            "is_completable": task.is_completable,
                            "non_completable_reason": task.non_completable_reason,
                        }
                        for task in step.tasks
                    ],
                }
                for step in self.steps
            ],
        }


# ====================================================================================
# Evaluation
# ====================================================================================

def _read_fact(fact_provider: TaskFactProvider, task: PathwayTask) -> TaskFact:
    fact = fact_provider(task)
    if not isinstance(fact, TaskFact):
        raise DataInconsistencyError(
            f"Task fact for {task.entity_type.value} '{task.entity_id}' is not a TaskFact: {type(fact).__name__}"
        )
    if not fact.completed and fact.completed_at is not None:
        raise DataInconsistencyError(
            f"Task fact for {task.entity_type.value} '{task.entity_id}' has a completion date but is not completed"
        )
    return fact


def combine(rule: PathwayCompletionRule, children: Iterable[Tuple[bool, Optional[datetime]]]) -> Tuple[bool, Optional[datetime]]:
    """
    Fold child (completed, date_completed) pairs under a completion rule.

    Returns:
        (completed, date_completed); date is None when incomplete or unknown
    """
    children = list(children)
    if rule == PathwayCompletionRule.ALL:
        completed = bool(children) and all(done for done, _ in children)
        if not completed:
            return False, None
        dates = [date for _, date in children if date is not None]
        return True, max(dates) if dates else None

    completed = any(done for done, _ in children)
    if not completed:
        return False, None
    dates = [date for done, date in children if done and date is not None]
    return True, min(dates) if dates else None


def evaluate_pathway(pathway: Pathway, fact_provider: TaskFactProvider) -> PathwayProgress:
    """
    Evaluate pathway progress for one referee.

    Args:
        pathway: Validated pathway
        fact_provider: Callable task -> TaskFact (usually a registry snapshot)

    Returns:
        PathwayProgress snapshot

    Raises:
        DataInconsistencyError: corrupt fact data
    """
    steps: List[StepProgress] = []
    blocking_step: Optional[int] = None

    for step in pathway.steps:
        step_reachable = pathway.order_mode == PathwayOrderMode.ANY_ORDER or blocking_step is None
        step_reason = None if step_reachable else f"step {blocking_step} not yet completed"

        tasks: List[TaskProgress] = []
        blocking_task: Optional[int] = None
        for task in step.tasks:
            fact = _read_fact(fact_provider, task)

            if not step_reachable:
                reachable, reason = False, step_reason
            elif step.order_mode == PathwayOrderMode.SEQUENTIAL and blocking_task is not None:
                reachable = False
                reason = f"step {step.order_display} task {blocking_task} not yet completed"
            else:
                reachable, reason = True, None

            tasks.append(TaskProgress(
                step_order_display=step.order_display,
                order_display=task.order_display,
                entity_type=task.entity_type,
                entity_id=str(task.entity_id),
                completed=fact.completed,
                date_completed=fact.completed_at if fact.completed else None,
                is_completable=reachable,
                non_completable_reason=reason,
            ))

            if not fact.completed and blocking_task is None:
                blocking_task = task.order_display

        completed, date_completed = combine(step.rule, ((t.completed, t.date_completed) for t in tasks))
        done = sum(1 for t in tasks if t.completed)
        steps.append(StepProgress(
            order_display=step.order_display,
            rule=step.rule,
            order_mode=step.order_mode,
            tasks=tuple(tasks),
            completed=completed,
            date_completed=date_completed,
            percent_complete=done * 100 // len(tasks),
            is_completable=step_reachable,
            non_completable_reason=step_reason,
        ))

        if not completed and blocking_step is None:
            blocking_step = step.order_display

    completed, date_completed = combine(pathway.rule, ((s.completed, s.date_completed) for s in steps))
    percent = sum(s.percent_complete for s in steps) / len(steps)

    return PathwayProgress(
        version=pathway.version,
        rule=pathway.rule,
        order_mode=pathway.order_mode,
        steps=tuple(steps),
        completed=completed,
        date_completed=date_completed,
        percent_complete=percent,
    )


def usage_percent_complete(
    pathway_progress: Optional[PathwayProgress],
    proof_of_personhood_required: bool,
    proof_of_personhood_completed: bool,
) -> float:
    """
    Overall usage percentage combining proof of personhood and pathway.

    - no pathway: 100 when POP is satisfied or not required, else 0
    - pathway and POP required: 50 for POP plus half the pathway percent
    - pathway only: the pathway percent
    """
    pop_satisfied = proof_of_personhood_completed or not proof_of_personhood_required
    if pathway_progress is None:
        return 100.0 if pop_satisfied else 0.0
    if proof_of_personhood_required:
        return (50.0 if proof_of_personhood_completed else 0.0) + pathway_progress.percent_complete * 0.5
    return float(pathway_progress.percent_complete)


# ====================================================================================
# Structural satisfiability
# ====================================================================================

def is_pathway_completable(
    pathway: Pathway,
    availability: TaskAvailabilityProvider,
) -> Tuple[bool, List[str]]:
    """
    Check whether a pathway can still be completed by anyone.

    Returns:
        (completable, reasons) where reasons list the unavailable tasks
    """
    reasons: List[str] = []
    step_results = []
    for step in pathway.steps:
        task_results = []
        for task in step.tasks:
            item = availability(task)
            if not isinstance(item, TaskAvailability):
                raise DataInconsistencyError(
                    f"Availability for {task.entity_type.value} '{task.entity_id}' is not a TaskAvailability"
                )
            task_results.append(item.available)
            if not item.available:
                reasons.append(
                    f"step {step.order_display} task {task.order_display}: {item.reason or 'unavailable'}"
                )
        step_results.append(_rule_holds(step.rule, task_results))
    return _rule_holds(pathway.rule, step_results), reasons


def _rule_holds(rule: PathwayCompletionRule, values: List[bool]) -> bool:
    if rule == PathwayCompletionRule.ALL:
        return bool(values) and all(values)
    return any(values)
