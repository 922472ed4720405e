"""Build Executor.

Runs a stage's command sequence strictly in order inside its working
directory, within one runner session so that exported variables and the
current directory carry from one command to the next. The first non-zero
exit aborts the remainder of the sequence.

Commands are executed through a CommandRunner capability, so the
orchestrator never touches processes directly and tests can substitute a
scripted runner.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Mapping, Optional, Sequence, Union

from ..utils import expand_paths

logger = logging.getLogger(__name__)

# Called once per output line: (line)
LineCallback = Callable[[str], None]


@dataclass
class CommandResult:
    """Result of one command.

    Attributes:
        command: Command line as given
        exit_code: Process exit code (-1 when killed on timeout)
        output: Combined stdout/stderr
        timed_out: Whether the command was killed for exceeding its timeout
        duration_ms: Wall time
    """

    command: str
    exit_code: int
    output: str = ""
    timed_out: bool = False
    duration_ms: int = 0


class CommandRunner(ABC):
    """Capability interface for running one shell command."""

    @abstractmethod
    async def run(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> CommandResult:
        """Run command to completion.

        Implementations must kill the process on timeout (returning
        timed_out=True) and on task cancellation (re-raising CancelledError).
        """

    @asynccontextmanager
    async def session(self, cwd: Path, env: Mapping[str, str]) -> AsyncIterator["CommandSession"]:
        """Open a session for one command sequence.

        Runners that can carry shell state (exported variables, current
        directory) from one command to the next override this. The default
        session runs every command on its own.

        Usage:
            async with runner.session(workdir, env) as session:
                await session.run("make")
        """
        yield CommandSession(self, cwd, env)


class CommandSession:
    """Commands of one sequence, bound to a working directory and environment."""

    def __init__(self, runner: CommandRunner, cwd: Path, env: Mapping[str, str]):
        self.runner = runner
        self.cwd = cwd
        self.env = env

    async def run(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> CommandResult:
        return await self.runner.run(
            command, cwd=self.cwd, env=self.env, timeout=timeout, on_line=on_line
        )


@dataclass
class ExecutionResult:
    """Outcome of a command sequence.

    Attributes:
        exit_code: Exit code of the last command run (0 when nothing ran)
        log: Combined output of every command run
        produced_paths: Inspected paths present after execution
        timed_out: Whether the sequence hit its timeout
        failed_command: Command that failed, if any
        commands_run: Number of commands started
    """

    exit_code: int
    log: str = ""
    produced_paths: list[str] = field(default_factory=list)
    timed_out: bool = False
    failed_command: Optional[str] = None
    commands_run: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class BuildExecutor:
    """Runs command sequences through a CommandRunner.

    Example:
        >>> executor = BuildExecutor(ShellRunner())
        >>> result = await executor.execute(["make", "make test"], workdir, env)
        >>> result.exit_code
        0
    """

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    async def execute(
        self,
        commands: Sequence[str],
        working_dir: Union[str, Path],
        env: Mapping[str, str],
        *,
        timeout: Optional[float] = None,
        inspect_paths: Sequence[str] = (),
        on_output: Optional[LineCallback] = None,
    ) -> ExecutionResult:
        """Execute commands in order; stop at the first non-zero exit.

        Args:
            commands: Command sequence
            working_dir: Directory commands run in
            env: Environment variables for every command
            timeout: Budget in seconds for the whole sequence
            inspect_paths: Declared cache/artifact paths; only these are
                checked for produced outputs
            on_output: Per-line output callback

        Returns:
            ExecutionResult
        """
        working_dir = Path(working_dir)
        deadline = time.monotonic() + timeout if timeout else None
        logs: list[str] = []
        exit_code = 0
        commands_run = 0

        async with self.runner.session(working_dir, env) as session:
            for command in commands:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return ExecutionResult(
                            exit_code=-1,
                            log="".join(logs),
                            timed_out=True,
                            failed_command=command,
                            commands_run=commands_run,
                        )

                logger.debug(f"$ {command}")
                logs.append(f"$ {command}\n")
                commands_run += 1
                result = await session.run(command, timeout=remaining, on_line=on_output)
                logs.append(result.output)
                exit_code = result.exit_code

                if result.timed_out:
                    return ExecutionResult(
                        exit_code=result.exit_code,
                        log="".join(logs),
                        timed_out=True,
                        failed_command=command,
                        commands_run=commands_run,
                    )
                if result.exit_code != 0:
                    logger.debug(f"Command exited {result.exit_code}: {command}")
                    return ExecutionResult(
                        exit_code=result.exit_code,
                        log="".join(logs),
                        failed_command=command,
                        commands_run=commands_run,
                    )

        return ExecutionResult(
            exit_code=exit_code,
            log="".join(logs),
            produced_paths=expand_paths(working_dir, inspect_paths) if inspect_paths else [],
            commands_run=commands_run,
        )


__all__ = [
    "LineCallback",
    "CommandResult",
    "CommandRunner",
    "CommandSession",
    "ExecutionResult",
    "BuildExecutor",
]
