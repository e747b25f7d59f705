"""
Pathway Service Package
"""

from referral_engine.services.pathways.exceptions import ValidationError
from referral_engine.services.pathways.models import (
    Pathway,
    PathwayStep,
    PathwayTask,
    PathwayCompletionRule,
    PathwayOrderMode,
    PathwayTaskEntityType,
)
from referral_engine.services.pathways.facts import (
    TaskFact,
    TaskAvailability,
    TaskFactSource,
    TaskFactRegistry,
    SnapshotProvider,
    InMemoryOpportunityFactSource,
)
from referral_engine.services.pathways.progress import (
    TaskProgress,
    StepProgress,
    PathwayProgress,
    evaluate_pathway,
    is_pathway_completable,
    usage_percent_complete,
)

__all__ = [
    "ValidationError",
    "Pathway",
    "PathwayStep",
    "PathwayTask",
    "PathwayCompletionRule",
    "PathwayOrderMode",
    "PathwayTaskEntityType",
    "TaskFact",
    "TaskAvailability",
    "TaskFactSource",
    "TaskFactRegistry",
    "SnapshotProvider",
    "InMemoryOpportunityFactSource",
    "TaskProgress",
    "StepProgress",
    "PathwayProgress",
    "evaluate_pathway",
    "is_pathway_completable",
    "usage_percent_complete",
]
