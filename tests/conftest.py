"""Test configuration for buildflow."""
import asyncio
import inspect
import sys
from dataclasses import dataclass
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from buildflow.config import DEFAULT_CONFIG
from buildflow.executor.base import CommandResult, CommandRunner
from buildflow.types import ActorTrust, EventSource, PipelineEvent


@dataclass
class RecordedCall:
    command: str
    cwd: Path
    env: dict


class FakeRunner(CommandRunner):
    """Scripted command runner.

    ``script`` maps a command to one of:
        - an exit code
        - (exit_code, output)
        - a callable (cwd, env) -> any of the above, sync or async
    Unlisted commands exit 0.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls: list[RecordedCall] = []

    async def run(self, command, *, cwd, env, timeout=None, on_line=None):
        self.calls.append(RecordedCall(command, Path(cwd), dict(env)))
        action = self.script.get(command, 0)
        if callable(action):
            action = action(Path(cwd), env)
            if inspect.isawaitable(action):
                action = await action
        if isinstance(action, CommandResult):
            return action
        if isinstance(action, tuple):
            exit_code, output = action
        else:
            exit_code, output = (action if action is not None else 0), ""
        if on_line is not None:
            for line in output.splitlines():
                on_line(line)
        return CommandResult(command=command, exit_code=exit_code, output=output)

    @property
    def commands(self) -> list[str]:
        return [call.command for call in self.calls]

    def calls_in(self, cwd_name: str) -> list[str]:
        return [call.command for call in self.calls if call.cwd.name == cwd_name]


def write_file(relative: str, content: str = "x"):
    """Script action that creates a file in the command's working dir."""

    def _action(cwd, env):
        path = cwd / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return 0

    return _action


async def hang(cwd, env):
    """Script action that never finishes on its own."""
    await asyncio.sleep(3600)
    return 0


@pytest.fixture
def fake_runner():
    """Scripted runner with an empty script."""
    return FakeRunner()


@pytest.fixture
def config(tmp_path):
    """Config with every state directory under tmp_path and no reports."""
    from dataclasses import replace

    return replace(DEFAULT_CONFIG.with_root(tmp_path / "state"), report_enabled=False)


@pytest.fixture
def source_dir(tmp_path):
    """Small source tree stages run against."""
    root = tmp_path / "src"
    root.mkdir()
    (root / "Cargo.lock").write_text("lock-v1")
    (root / "main.rs").write_text("fn main() {}")
    return root


@pytest.fixture
def push_event():
    """Push to an unprotected branch by an upstream maintainer."""
    return PipelineEvent(
        source=EventSource.BRANCH_PUSH,
        branch="dev",
        is_protected=False,
        actor_trust=ActorTrust.UPSTREAM,
    )


@pytest.fixture
def protected_push_event():
    """Push to the protected 'next' branch on upstream runners."""
    return PipelineEvent(
        source=EventSource.BRANCH_PUSH,
        branch="next",
        is_protected=True,
        actor_trust=ActorTrust.UPSTREAM,
    )


@pytest.fixture
def mr_event():
    """Merge request from an upstream maintainer."""
    return PipelineEvent(
        source=EventSource.MERGE_REQUEST,
        branch="feature/x",
        actor_trust=ActorTrust.UPSTREAM,
        merge_request_id="42",
    )


@pytest.fixture
def fork_mr_event():
    """Merge request from a fork."""
    return PipelineEvent(
        source=EventSource.MERGE_REQUEST,
        branch="patch-1",
        actor_trust=ActorTrust.FORK,
        merge_request_id="43",
    )
