"""ShellRunner - CommandRunner backed by a real shell."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import tempfile
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Mapping, Optional

from .base import CommandResult, CommandRunner, CommandSession, LineCallback

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

# Runs around every command of a session: restore the previous command's
# exported variables and directory, then save them again on exit.
_SESSION_PROLOGUE = """\
if [ -f {env} ]; then
  . {env}
  cd -- "$(cat {cwd})" || exit 1
fi
__buildflow_save() {{
  __buildflow_rc=$?
  export -p > {env}
  pwd > {cwd}
  exit $__buildflow_rc
}}
trap __buildflow_save EXIT
"""


class ShellSession(CommandSession):
    """Commands sharing exported variables and the current directory.

    Each command still gets its own process (and process group), so a
    timeout or cancellation kills exactly the command that is running.
    State is handed over through files in a private directory.
    """

    def __init__(self, runner: "ShellRunner", cwd: Path, env: Mapping[str, str], state_dir: Path):
        super().__init__(runner, cwd, env)
        self.state_dir = state_dir

    async def run(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
    ) -> CommandResult:
        return await self.runner.run(
            command,
            cwd=self.cwd,
            env=self.env,
            timeout=timeout,
            on_line=on_line,
            state_dir=self.state_dir,
        )


class ShellRunner(CommandRunner):
    """Runs commands with ``asyncio.create_subprocess_shell``.

    stderr is merged into stdout so the log keeps the original interleaving.
    Each command runs in its own process group; timeouts and cancellation
    kill the whole group, not only the shell. Output is read in chunks, so
    lines of any length are passed through.

    Args:
        inherit_env: Start from os.environ and overlay the stage environment
    """

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env

    @asynccontextmanager
    async def session(self, cwd: Path, env: Mapping[str, str]) -> AsyncIterator[ShellSession]:
        state_dir = Path(tempfile.mkdtemp(prefix="buildflow-shell-"))
        try:
            yield ShellSession(self, cwd, env, state_dir)
        finally:
            shutil.rmtree(state_dir, ignore_errors=True)

    @staticmethod
    def _session_script(command: str, state_dir: Path) -> str:
        prologue = _SESSION_PROLOGUE.format(
            env=shlex.quote(str(state_dir / "env")),
            cwd=shlex.quote(str(state_dir / "cwd")),
        )
        return f"{prologue}{command}\n"

    async def run(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        on_line: Optional[LineCallback] = None,
        state_dir: Optional[Path] = None,
    ) -> CommandResult:
        start_time = time.monotonic()
        full_env = {**os.environ, **env} if self.inherit_env else dict(env)
        script = self._session_script(command, state_dir) if state_dir is not None else command

        process = await asyncio.create_subprocess_shell(
            script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd),
            env=full_env,
            start_new_session=(os.name == "posix"),
        )

        lines: list[str] = []
        try:
            await asyncio.wait_for(self._pump(process, lines, on_line), timeout=timeout)
            exit_code = process.returncode if process.returncode is not None else -1
            timed_out = False
        except asyncio.TimeoutError:
            await self._kill(process)
            exit_code = -1
            timed_out = True
            lines.append(f"Command timed out after {timeout}s\n")
        except BaseException:
            # Cancellation or a failure while reading; never leave the group running
            await self._kill(process)
            raise

        return CommandResult(
            command=command,
            exit_code=exit_code,
            output="".join(lines),
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )

    @staticmethod
    async def _pump(
        process: asyncio.subprocess.Process,
        lines: list[str],
        on_line: Optional[LineCallback],
    ) -> None:
        assert process.stdout is not None

        def emit(raw: bytes) -> None:
            line = raw.decode("utf-8", errors="replace")
            lines.append(line)
            if on_line is not None:
                on_line(line.rstrip("\n"))

        partial: list[bytes] = []
        while True:
            chunk = await process.stdout.read(READ_CHUNK)
            if not chunk:
                break
            first, *rest = chunk.split(b"\n")
            partial.append(first)
            if not rest:
                continue
            emit(b"".join(partial) + b"\n")
            for raw in rest[:-1]:
                emit(raw + b"\n")
            partial = [rest[-1]]
        if any(partial):
            emit(b"".join(partial))
        await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.debug(f"Killed process group {process.pid}")


__all__ = ["ShellRunner", "ShellSession"]
