"""Buildflow Types - Data Models.

Core data structures shared by the trigger evaluator, scheduler, cache,
executor and artifact propagator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..utils import slugify, utc_now
from .enums import (
    ActorTrust,
    CachePolicy,
    EventSource,
    FailureReason,
    PipelineStatus,
    RuleOutcome,
    StageStatus,
)

if TYPE_CHECKING:
    from ..triggers.conditions import Condition


# =============================================================================
# Event
# =============================================================================


# Variables consumed by PipelineEvent.from_env and not copied into env_flags
_EVENT_VARIABLES = frozenset(
    {
        "CI",
        "CI_PIPELINE_SOURCE",
        "CI_COMMIT_BRANCH",
        "CI_COMMIT_REF_NAME",
        "CI_COMMIT_REF_SLUG",
        "CI_COMMIT_REF_PROTECTED",
        "CI_COMMIT_SHA",
        "CI_PIPELINE_ID",
        "CI_MERGE_REQUEST_IID",
        "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME",
        "IS_UPSTREAM_CI",
    }
)


@dataclass(frozen=True)
class PipelineEvent:
    """Event that creates one pipeline run. Immutable.

    Attributes:
        source: What produced the event
        branch: Branch (or MR source branch) the event refers to
        is_protected: Whether the branch is protected
        actor_trust: Trust level of the actor
        env_flags: Opaque environment inputs (CI_OPEN_MERGE_REQUESTS, ...)
        commit_sha: Commit the pipeline builds
        merge_request_id: MR identifier for merge request events
        pipeline_id: External pipeline identifier, if any
    """

    source: EventSource
    branch: str
    is_protected: bool = False
    actor_trust: ActorTrust = ActorTrust.UNKNOWN
    env_flags: Mapping[str, str] = field(default_factory=dict)
    commit_sha: str = ""
    merge_request_id: Optional[str] = None
    pipeline_id: Optional[str] = None

    def __post_init__(self) -> None:
        # Freeze a private copy so callers cannot mutate the event afterwards
        object.__setattr__(self, "env_flags", dict(self.env_flags))

    def __hash__(self) -> int:
        return hash(
            (
                self.source,
                self.branch,
                self.is_protected,
                self.actor_trust,
                tuple(sorted(self.env_flags.items())),
                self.commit_sha,
                self.merge_request_id,
                self.pipeline_id,
            )
        )

    @property
    def scope(self) -> str:
        """Trigger scope used to decide which older runs this event supersedes."""
        if self.merge_request_id:
            return f"mr:{self.merge_request_id}"
        return f"branch:{self.branch}"

    def variables(self) -> dict[str, str]:
        """Map the event onto CI variables visible to rules and commands.

        Event-derived variables take precedence over env_flags.
        """
        variables = dict(self.env_flags)
        variables["CI"] = "true"
        variables["CI_PIPELINE_SOURCE"] = self.source.ci_value
        variables["CI_COMMIT_REF_NAME"] = self.branch
        variables["CI_COMMIT_REF_SLUG"] = slugify(self.branch)
        variables["CI_COMMIT_REF_PROTECTED"] = "true" if self.is_protected else "false"

        if self.source == EventSource.MERGE_REQUEST:
            # MR pipelines expose the source branch, not CI_COMMIT_BRANCH
            variables.pop("CI_COMMIT_BRANCH", None)
            variables["CI_MERGE_REQUEST_SOURCE_BRANCH_NAME"] = self.branch
            if self.merge_request_id:
                variables["CI_MERGE_REQUEST_IID"] = str(self.merge_request_id)
        else:
            variables["CI_COMMIT_BRANCH"] = self.branch

        if self.actor_trust == ActorTrust.UPSTREAM:
            variables["IS_UPSTREAM_CI"] = "true"
        elif self.actor_trust == ActorTrust.FORK:
            variables["IS_UPSTREAM_CI"] = "false"
        else:
            variables.pop("IS_UPSTREAM_CI", None)

        if self.commit_sha:
            variables["CI_COMMIT_SHA"] = self.commit_sha
        if self.pipeline_id:
            variables["CI_PIPELINE_ID"] = str(self.pipeline_id)
        return variables

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineEvent":
        """Build an event from CI environment variables (default: os.environ).

        CI_* and IS_* variables that are not part of the event itself are
        kept as env_flags.
        """
        env = dict(os.environ if environ is None else environ)

        source = EventSource.from_ci_value(env.get("CI_PIPELINE_SOURCE", "push"))
        branch = (
            env.get("CI_COMMIT_BRANCH")
            or env.get("CI_MERGE_REQUEST_SOURCE_BRANCH_NAME")
            or env.get("CI_COMMIT_REF_NAME")
            or ""
        )

        upstream = env.get("IS_UPSTREAM_CI")
        if upstream is None:
            trust = ActorTrust.UNKNOWN
        elif upstream.strip().lower() == "true":
            trust = ActorTrust.UPSTREAM
        else:
            trust = ActorTrust.FORK

        flags = {
            key: value
            for key, value in env.items()
            if key.startswith(("CI_", "IS_")) and key not in _EVENT_VARIABLES
        }

        return cls(
            source=source,
            branch=branch,
            is_protected=env.get("CI_COMMIT_REF_PROTECTED", "false").strip().lower() == "true",
            actor_trust=trust,
            env_flags=flags,
            commit_sha=env.get("CI_COMMIT_SHA", ""),
            merge_request_id=env.get("CI_MERGE_REQUEST_IID"),
            pipeline_id=env.get("CI_PIPELINE_ID"),
        )

    def to_dict(self) -> dict:
        return {
            "source": self.source.value,
            "branch": self.branch,
            "is_protected": self.is_protected,
            "actor_trust": self.actor_trust.value,
            "env_flags": dict(self.env_flags),
            "commit_sha": self.commit_sha,
            "merge_request_id": self.merge_request_id,
            "pipeline_id": self.pipeline_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineEvent":
        return cls(
            source=EventSource(data["source"]),
            branch=data.get("branch", ""),
            is_protected=data.get("is_protected", False),
            actor_trust=ActorTrust(data.get("actor_trust", "unknown")),
            env_flags=data.get("env_flags", {}),
            commit_sha=data.get("commit_sha", ""),
            merge_request_id=data.get("merge_request_id"),
            pipeline_id=data.get("pipeline_id"),
        )


# =============================================================================
# Stage definition
# =============================================================================


@dataclass(frozen=True)
class TriggerRule:
    """One ordered (condition, outcome) pair.

    Attributes:
        condition: Predicate over PipelineEvent
        outcome: Outcome applied when the condition matches
        allow_failure: Overrides the stage's allow_failure when this rule wins
    """

    condition: "Condition"
    outcome: RuleOutcome
    allow_failure: Optional[bool] = None

    def matches(self, event: PipelineEvent) -> bool:
        return bool(self.condition(event))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        expression = str(self.condition)
        if expression != "always":
            data["if"] = expression
        data["when"] = self.outcome.when_value
        if self.outcome == RuleOutcome.ALLOW_FAILURE:
            data["allow_failure"] = True
        elif self.allow_failure is not None:
            data["allow_failure"] = self.allow_failure
        return data


@dataclass(frozen=True)
class CacheSpec:
    """Declared cache of a stage.

    Attributes:
        key: Key template; ``$VAR`` references expand against run variables
        paths: Paths (relative to the working dir) kept across runs
        key_files: Files whose content hash forms the key
        prefix: Prefix combined with the key_files hash
        policy: pull-push, pull or push
    """

    key: str = "default"
    paths: tuple[str, ...] = ()
    key_files: tuple[str, ...] = ()
    prefix: str = ""
    policy: CachePolicy = CachePolicy.PULL_PUSH


@dataclass(frozen=True)
class Stage:
    """Statically declared pipeline stage (a CI job).

    Attributes:
        name: Unique stage name
        phase: Phase the stage belongs to
        command_sequence: Shell commands run in order
        cache: Cache declaration (key + paths)
        artifact_paths: Paths published for later phases
        rules: Ordered trigger rules, first match wins
        interruptible: Whether a superseding event may cancel it
        allow_failure: Failure does not fail the pipeline
        dependencies: Stages whose artifacts are fetched (None = all earlier)
        variables: Stage-level variables
        before_script: Commands run first (None = pipeline default)
        timeout: Seconds before the stage is failed (None = config default)
        artifact_expiry: Artifact retention (None = config default)
    """

    name: str
    phase: str
    command_sequence: tuple[str, ...] = ()
    cache: Optional[CacheSpec] = None
    artifact_paths: tuple[str, ...] = ()
    rules: tuple[TriggerRule, ...] = ()
    interruptible: bool = False
    allow_failure: bool = False
    dependencies: Optional[tuple[str, ...]] = None
    variables: Mapping[str, str] = field(default_factory=dict)
    before_script: Optional[tuple[str, ...]] = None
    timeout: Optional[float] = None
    artifact_expiry: Optional[timedelta] = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("Stage.name must be a non-empty string")
        if not isinstance(self.phase, str) or not self.phase.strip():
            raise TypeError(f"Stage.phase must be a non-empty string (stage={self.name})")
        object.__setattr__(self, "command_sequence", tuple(self.command_sequence))
        object.__setattr__(self, "artifact_paths", tuple(dict.fromkeys(self.artifact_paths)))
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "variables", dict(self.variables))
        if self.dependencies is not None:
            object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if self.before_script is not None:
            object.__setattr__(self, "before_script", tuple(self.before_script))

    def __hash__(self) -> int:
        return hash((self.name, self.phase))

    @property
    def cache_key(self) -> Optional[str]:
        return self.cache.key if self.cache else None

    @property
    def cache_paths(self) -> tuple[str, ...]:
        return self.cache.paths if self.cache else ()

    def with_rules(self, rules: list[TriggerRule]) -> "Stage":
        return replace(self, rules=tuple(rules))


# =============================================================================
# Cache / artifacts
# =============================================================================


@dataclass
class CacheEntry:
    """Stored cache entry.

    Attributes:
        key: Resolved cache key
        paths: Relative paths held by the entry
        created_at: When the entry was (last) written
        last_used_at: When it was last restored
        size_bytes: Total stored size
    """

    key: str
    paths: tuple[str, ...]
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: Optional[datetime] = None
    size_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "paths": list(self.paths),
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class Artifact:
    """Outputs published by one successful stage.

    Attributes:
        stage_name: Producing stage
        phase: Producing stage's phase
        paths: Relative paths stored under root
        root: Directory holding the stored copies
        expiry: Retention period (None = until pipeline completion)
        created_at: Publication time
    """

    stage_name: str
    phase: str
    paths: tuple[str, ...]
    root: Path
    expiry: Optional[timedelta] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.expiry is None:
            return None
        return self.created_at + self.expiry

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or utc_now()) >= expires_at

    def to_dict(self) -> dict:
        return {
            "stage_name": self.stage_name,
            "phase": self.phase,
            "paths": list(self.paths),
            "root": str(self.root),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# =============================================================================
# Results
# =============================================================================


@dataclass
class StageResult:
    """Outcome of one stage in one pipeline run.

    Attributes:
        stage_name: Stage name
        phase: Stage phase
        status: Terminal status
        allow_failure: Effective allow_failure for this run
        exit_code: Exit code of the last command run (None if never run)
        reason: Failure reason for non-successful runs
        message: Human readable detail
        cache_key: Resolved cache key, if any
        cache_hit: Whether a cache entry was restored
        cache_saved: Whether the cache was written after the run
        restored_paths: Paths restored from cache
        artifact: Published artifact, if any
        log: Combined command output
        duration_ms: Execution time
    """

    stage_name: str
    phase: str
    status: StageStatus
    allow_failure: bool = False
    exit_code: Optional[int] = None
    reason: Optional[FailureReason] = None
    message: str = ""
    cache_key: Optional[str] = None
    cache_hit: bool = False
    cache_saved: bool = False
    restored_paths: tuple[str, ...] = ()
    artifact: Optional[Artifact] = None
    log: str = ""
    duration_ms: int = 0

    @property
    def blocks_pipeline(self) -> bool:
        """Whether this result fails the pipeline."""
        return self.status == StageStatus.FAILED and not self.allow_failure

    def to_dict(self) -> dict:
        return {
            "stage_name": self.stage_name,
            "phase": self.phase,
            "status": self.status.value,
            "allow_failure": self.allow_failure,
            "exit_code": self.exit_code,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "cache_key": self.cache_key,
            "cache_hit": self.cache_hit,
            "cache_saved": self.cache_saved,
            "restored_paths": list(self.restored_paths),
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class PipelineResult:
    """Result of a pipeline run.

    Attributes:
        run_id: Pipeline run identifier
        pipeline_name: Definition name
        status: Overall status
        stages: Results in phase order
        exported_paths: Terminal artifacts copied to the output directory
        total_duration_ms: Total execution time
        report_path: Path to the generated report file
    """

    run_id: str
    pipeline_name: str = ""
    status: PipelineStatus = PipelineStatus.PENDING
    stages: list[StageResult] = field(default_factory=list)
    exported_paths: list[str] = field(default_factory=list)
    total_duration_ms: int = 0
    report_path: Optional[str] = None

    @property
    def success(self) -> bool:
        """True iff no non-allow_failure stage failed."""
        return not any(result.blocks_pipeline for result in self.stages)

    def stage(self, name: str) -> StageResult:
        for result in self.stages:
            if result.stage_name == name:
                return result
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "success": self.success,
            "stages": [s.to_dict() for s in self.stages],
            "exported_paths": list(self.exported_paths),
            "total_duration_ms": self.total_duration_ms,
            "report_path": self.report_path,
        }


__all__ = [
    "PipelineEvent",
    "TriggerRule",
    "CacheSpec",
    "Stage",
    "CacheEntry",
    "Artifact",
    "StageResult",
    "PipelineResult",
]
