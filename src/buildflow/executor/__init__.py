"""Build execution behind a CommandRunner capability."""

from .base import (
    BuildExecutor,
    CommandResult,
    CommandRunner,
    CommandSession,
    ExecutionResult,
    LineCallback,
)
from .shell import ShellRunner

__all__ = [
    "BuildExecutor",
    "CommandResult",
    "CommandRunner",
    "CommandSession",
    "ExecutionResult",
    "LineCallback",
    "ShellRunner",
]
