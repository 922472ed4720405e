"""Buildflow Types - Exception Classes.

This module defines all exceptions used by buildflow.
All exceptions inherit from BuildflowError for easy catching.

The stage-level taxonomy (TriggerMismatch, ManualGateOpen, ExecutionFailure,
CacheMiss, DependencyAbort) is raised inside the orchestrator and converted
into StageResult statuses; those never escape PipelineOrchestrator.run().

Usage:
    try:
        definition = PipelineDefinition.from_yaml(".buildflow.yml")
    except BuildflowError as e:
        print(f"buildflow error: {e}")
"""

from __future__ import annotations

from typing import Optional


class BuildflowError(Exception):
    """Base exception for all buildflow errors."""
    pass


# =============================================================================
# Stage taxonomy
# =============================================================================


class TriggerMismatch(BuildflowError):
    """Stage was legitimately left out by its trigger rules. Not a failure."""

    def __init__(self, stage_name: str, rule_index: Optional[int] = None):
        self.stage_name = stage_name
        self.rule_index = rule_index
        msg = f"Stage {stage_name} skipped by trigger rules"
        if rule_index is not None:
            msg += f" (rule #{rule_index})"
        super().__init__(msg)


class ManualGateOpen(BuildflowError):
    """Stage is waiting for an explicit confirmation. Not a failure."""

    def __init__(self, stage_name: str, blocking: bool = True):
        self.stage_name = stage_name
        self.blocking = blocking
        msg = f"Stage {stage_name} awaits manual confirmation"
        if not blocking:
            msg += " (non-blocking)"
        super().__init__(msg)


class ExecutionFailure(BuildflowError):
    """A command in the stage's sequence exited non-zero."""

    def __init__(self, stage_name: str, command: str = "", exit_code: int = 1):
        self.stage_name = stage_name
        self.command = command
        self.exit_code = exit_code
        msg = f"Stage {stage_name} failed with exit code {exit_code}"
        if command:
            msg += f": {command}"
        super().__init__(msg)


class StageTimeoutError(ExecutionFailure):
    """The stage exceeded its timeout. Reported as a failure."""

    def __init__(self, stage_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(stage_name, exit_code=-1)
        self.args = (f"Stage {stage_name} timed out after {timeout}s",)


class CacheMiss(BuildflowError):
    """No cache entry exists for a key. Non-fatal: the stage proceeds cold."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Cache miss: {key}")


class DependencyAbort(BuildflowError):
    """Stage was never attempted because an earlier phase failed."""

    def __init__(self, stage_name: str, failed_phase: str, failed_stages: Optional[list[str]] = None):
        self.stage_name = stage_name
        self.failed_phase = failed_phase
        self.failed_stages = failed_stages or []
        msg = f"Stage {stage_name} not attempted: phase {failed_phase} failed"
        if self.failed_stages:
            msg += f" ({', '.join(self.failed_stages)})"
        super().__init__(msg)


# =============================================================================
# Definition / configuration errors
# =============================================================================


class InvalidConfigError(BuildflowError):
    """Raised when configuration is invalid."""

    def __init__(self, message: str):
        super().__init__(f"Invalid configuration: {message}")


class DefinitionError(BuildflowError):
    """Raised when a pipeline definition is malformed."""

    def __init__(self, message: str, job: str = ""):
        self.job = job
        msg = "Invalid pipeline definition"
        if job:
            msg += f" (job {job})"
        super().__init__(f"{msg}: {message}")


class RuleSyntaxError(DefinitionError):
    """Raised when a rule expression cannot be parsed."""

    def __init__(self, expression: str, position: int, reason: str, job: str = ""):
        self.expression = expression
        self.position = position
        self.reason = reason
        super().__init__(f"rule expression at {position}: {reason}: {expression!r}", job=job)


class StageNotFoundError(BuildflowError):
    """Raised when a stage name is unknown to the pipeline run."""

    def __init__(self, stage_name: str):
        self.stage_name = stage_name
        super().__init__(f"Stage not found: {stage_name}")


class CacheStoreError(BuildflowError):
    """Raised when the cache store itself is unusable."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        msg = f"Cache store error for {key}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


__all__ = [
    "BuildflowError",
    "TriggerMismatch",
    "ManualGateOpen",
    "ExecutionFailure",
    "StageTimeoutError",
    "CacheMiss",
    "DependencyAbort",
    "InvalidConfigError",
    "DefinitionError",
    "RuleSyntaxError",
    "StageNotFoundError",
    "CacheStoreError",
]
