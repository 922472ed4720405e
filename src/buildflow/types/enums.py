"""Buildflow Types - Enums.

Enums for pipeline events, trigger outcomes, stage and pipeline statuses.
"""

from __future__ import annotations

from enum import Enum


class EventSource(Enum):
    """What produced the pipeline event.

    Attributes:
        MERGE_REQUEST: Merge request opened or updated
        BRANCH_PUSH: Commit pushed to a branch
        MANUAL: Pipeline started by hand (web/API)
        SCHEDULED: Scheduled pipeline
    """
    MERGE_REQUEST = "merge_request"
    BRANCH_PUSH = "branch_push"
    MANUAL = "manual"
    SCHEDULED = "scheduled"

    @property
    def ci_value(self) -> str:
        """Value of CI_PIPELINE_SOURCE for this source."""
        return CI_PIPELINE_SOURCES[self]

    @classmethod
    def from_ci_value(cls, value: str) -> "EventSource":
        """Parse a CI_PIPELINE_SOURCE value (or an enum value)."""
        normalized = (value or "").strip().lower()
        for source, ci_value in CI_PIPELINE_SOURCES.items():
            if normalized in (ci_value, source.value):
                return source
        # api/trigger/pipeline sources are all hand-started
        if normalized in ("api", "trigger", "pipeline", "chat"):
            return cls.MANUAL
        raise ValueError(f"Unknown pipeline source: {value!r}")


CI_PIPELINE_SOURCES = {
    EventSource.MERGE_REQUEST: "merge_request_event",
    EventSource.BRANCH_PUSH: "push",
    EventSource.MANUAL: "web",
    EventSource.SCHEDULED: "schedule",
}


class ActorTrust(Enum):
    """Trust level of whoever triggered the event.

    Attributes:
        UPSTREAM: Maintainer on upstream runners
        FORK: Contribution from a fork
        UNKNOWN: Trust could not be established
    """
    UPSTREAM = "upstream"
    FORK = "fork"
    UNKNOWN = "unknown"


class RuleOutcome(Enum):
    """Outcome of a trigger rule.

    Attributes:
        RUN: Stage runs automatically
        MANUAL: Stage waits for an explicit confirmation
        SKIP: Stage is left out of the pipeline
        ALLOW_FAILURE: Stage runs automatically, failure does not fail the pipeline
    """
    RUN = "run"
    MANUAL = "manual"
    SKIP = "skip"
    ALLOW_FAILURE = "allow_failure"

    @classmethod
    def from_when(cls, when: str | None) -> "RuleOutcome":
        """Parse a rule's ``when:`` keyword."""
        if when is None:
            return cls.RUN
        normalized = str(when).strip().lower()
        aliases = {
            "on_success": cls.RUN,
            "always": cls.RUN,
            "never": cls.SKIP,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)

    @property
    def when_value(self) -> str:
        """The ``when:`` keyword written for this outcome."""
        return {
            RuleOutcome.RUN: "on_success",
            RuleOutcome.MANUAL: "manual",
            RuleOutcome.SKIP: "never",
            RuleOutcome.ALLOW_FAILURE: "on_success",
        }[self]


class StageStatus(Enum):
    """Terminal status of a stage within one pipeline run.

    Attributes:
        SUCCESS: All commands exited 0
        FAILED: A command exited non-zero or timed out
        SKIPPED: Trigger rules left the stage out
        MANUAL_PENDING: Waiting for (or never given) confirmation
        ABORTED: Not attempted because an earlier phase failed
        CANCELED: Interrupted because a newer event superseded the run
        BLOCKED: Not started, an earlier blocking manual stage awaits confirmation
    """
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    MANUAL_PENDING = "manual_pending"
    ABORTED = "aborted"
    CANCELED = "canceled"
    BLOCKED = "blocked"

    @property
    def is_terminal_ok(self) -> bool:
        """Whether this status lets the phase complete."""
        return self in (StageStatus.SUCCESS, StageStatus.SKIPPED)


class FailureReason(Enum):
    """Why a stage did not succeed."""
    EXECUTION_FAILURE = "execution_failure"
    TIMEOUT = "timeout"
    DEPENDENCY_ABORT = "dependency_abort"
    CANCELED = "canceled"


class PipelineStatus(Enum):
    """Overall status of a pipeline run.

    Attributes:
        PENDING: Created, not started
        RUNNING: Phases are executing
        SUCCESS: No required stage failed
        FAILED: A required stage failed
        BLOCKED: A blocking manual stage awaits confirmation
        CANCELED: Superseded by a newer event
        SKIPPED: Workflow rules created no pipeline
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELED = "canceled"
    SKIPPED = "skipped"


class CachePolicy(Enum):
    """Which direction a stage's cache flows."""
    PULL_PUSH = "pull-push"
    PULL = "pull"
    PUSH = "push"

    @property
    def restores(self) -> bool:
        return self in (CachePolicy.PULL_PUSH, CachePolicy.PULL)

    @property
    def saves(self) -> bool:
        return self in (CachePolicy.PULL_PUSH, CachePolicy.PUSH)


__all__ = [
    "EventSource",
    "CI_PIPELINE_SOURCES",
    "ActorTrust",
    "RuleOutcome",
    "StageStatus",
    "FailureReason",
    "PipelineStatus",
    "CachePolicy",
]
