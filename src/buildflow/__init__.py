"""Build-and-release pipeline orchestration.

Runs CI-style pipelines locally or on a runner: ordered first-match trigger
rules decide which stages run for an event, phases run in declared order
with concurrent stages inside each phase, caches are restored and saved per
stage, and artifacts flow only from earlier phases to later ones.

Basic Usage:
    >>> from buildflow import PipelineDefinition, PipelineEvent, PipelineOrchestrator
    >>> definition = PipelineDefinition.from_yaml(".gitlab-ci.yml")
    >>> event = PipelineEvent.from_env()
    >>> result = await PipelineOrchestrator().run(definition, event)
    >>> result.success
    True

Plan Only:
    >>> plan = PipelineOrchestrator().plan(definition, event)
    >>> [stage.name for _, entries in plan.phases for stage, d in entries if d.included]

Presets:
    >>> from buildflow import LOCAL_CONFIG
    >>> orchestrator = PipelineOrchestrator(LOCAL_CONFIG.with_parallelism(2))
"""

__version__ = "0.1.0"

from buildflow.cache import CacheStore, HttpCacheStore, LocalCacheStore, resolve_cache_key
from buildflow.config import CI_CONFIG, DEFAULT_CONFIG, LOCAL_CONFIG, BuildflowConfig
from buildflow.executor import BuildExecutor, CommandResult, CommandRunner, ExecutionResult, ShellRunner
from buildflow.pipeline import (
    ArtifactPropagator,
    PipelineDefinition,
    PipelineOrchestrator,
    PipelinePlan,
    PipelineReportWriter,
    PipelineRun,
    RunRegistry,
    schedule,
)
from buildflow.triggers import (
    TriggerDecision,
    TriggerEvaluator,
    all_of,
    always,
    any_of,
    branch_is,
    decide,
    evaluate,
    flag_equals,
    flag_set,
    not_,
    protected_is,
    rule,
    source_is,
    trust_is,
    when,
)
from buildflow.types import (
    ActorTrust,
    Artifact,
    BuildflowError,
    CacheEntry,
    CacheMiss,
    CachePolicy,
    CacheSpec,
    CacheStoreError,
    DefinitionError,
    DependencyAbort,
    EventSource,
    ExecutionFailure,
    FailureReason,
    InvalidConfigError,
    ManualGateOpen,
    PipelineEvent,
    PipelineResult,
    PipelineStatus,
    RuleOutcome,
    RuleSyntaxError,
    Stage,
    StageNotFoundError,
    StageResult,
    StageStatus,
    StageTimeoutError,
    TriggerMismatch,
    TriggerRule,
)

__all__ = [
    "__version__",
    # Config
    "BuildflowConfig",
    "DEFAULT_CONFIG",
    "LOCAL_CONFIG",
    "CI_CONFIG",
    # Orchestration
    "PipelineOrchestrator",
    "PipelinePlan",
    "PipelineDefinition",
    "PipelineRun",
    "RunRegistry",
    "PipelineReportWriter",
    "ArtifactPropagator",
    "schedule",
    # Triggers
    "TriggerDecision",
    "TriggerEvaluator",
    "evaluate",
    "decide",
    "rule",
    "always",
    "source_is",
    "branch_is",
    "protected_is",
    "trust_is",
    "flag_equals",
    "flag_set",
    "all_of",
    "any_of",
    "not_",
    "when",
    # Cache
    "CacheStore",
    "LocalCacheStore",
    "HttpCacheStore",
    "resolve_cache_key",
    # Execution
    "BuildExecutor",
    "CommandRunner",
    "CommandResult",
    "ExecutionResult",
    "ShellRunner",
    # Types
    "ActorTrust",
    "CachePolicy",
    "EventSource",
    "FailureReason",
    "PipelineStatus",
    "RuleOutcome",
    "StageStatus",
    "Artifact",
    "CacheEntry",
    "CacheSpec",
    "PipelineEvent",
    "PipelineResult",
    "Stage",
    "StageResult",
    "TriggerRule",
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
]
