"""Buildflow Types - Shared type definitions.

Package Structure:
    - enums.py: EventSource, ActorTrust, RuleOutcome, StageStatus, PipelineStatus, ...
    - models.py: PipelineEvent, Stage, TriggerRule, CacheEntry, Artifact, results
    - exceptions.py: BuildflowError and the stage-level taxonomy

Usage:
    >>> from buildflow.types import PipelineEvent, EventSource, ActorTrust
    >>> event = PipelineEvent(EventSource.BRANCH_PUSH, "dev", actor_trust=ActorTrust.UPSTREAM)
    >>> event.variables()["CI_PIPELINE_SOURCE"]
    'push'
"""

from .enums import (
    CI_PIPELINE_SOURCES,
    ActorTrust,
    CachePolicy,
    EventSource,
    FailureReason,
    PipelineStatus,
    RuleOutcome,
    StageStatus,
)
from .exceptions import (
    BuildflowError,
    CacheMiss,
    CacheStoreError,
    DefinitionError,
    DependencyAbort,
    ExecutionFailure,
    InvalidConfigError,
    ManualGateOpen,
    RuleSyntaxError,
    StageNotFoundError,
    StageTimeoutError,
    TriggerMismatch,
)
from .models import (
    Artifact,
    CacheEntry,
    CacheSpec,
    PipelineEvent,
    PipelineResult,
    Stage,
    StageResult,
    TriggerRule,
)

__all__ = [
    # Enums
    "CI_PIPELINE_SOURCES",
    "ActorTrust",
    "CachePolicy",
    "EventSource",
    "FailureReason",
    "PipelineStatus",
    "RuleOutcome",
    "StageStatus",
    # Exceptions
    "BuildflowError",
    "CacheMiss",
    "CacheStoreError",
    "DefinitionError",
    "DependencyAbort",
    "ExecutionFailure",
    "InvalidConfigError",
    "ManualGateOpen",
    "RuleSyntaxError",
    "StageNotFoundError",
    "StageTimeoutError",
    "TriggerMismatch",
    # Models
    "Artifact",
    "CacheEntry",
    "CacheSpec",
    "PipelineEvent",
    "PipelineResult",
    "Stage",
    "StageResult",
    "TriggerRule",
]
