"""Tests for the buildflow command line."""

import asyncio
import json
from unittest.mock import patch

import pytest
from conftest import FakeRunner

from buildflow import cli
from buildflow.cache import LocalCacheStore
from buildflow.pipeline import PipelineOrchestrator
from buildflow.types import ActorTrust, EventSource

DEFINITION = """
stages: [build, deploy]
build:
  stage: build
  script: make
deploy:
  stage: deploy
  script: ship
  rules:
    - if: $CI_COMMIT_BRANCH == "main"
    - if: $CI
      when: manual
"""


@pytest.fixture
def state_options(tmp_path):
    """-O flags putting every state directory under tmp_path."""
    state = tmp_path / "state"
    options = []
    for key, name in [
        ("work_root", "work"),
        ("cache_dir", "cache"),
        ("artifacts_dir", "artifacts"),
        ("output_dir", "public"),
        ("report_dir", "reports"),
    ]:
        options += ["-O", f"{key}={state / name}"]
    return options + ["-O", "report_enabled=false"]


@pytest.fixture
def definition_file(tmp_path):
    path = tmp_path / "pipeline.yml"
    path.write_text(DEFINITION)
    return path


@pytest.fixture
def runner():
    """Route every orchestrator the CLI creates through a FakeRunner."""
    fake = FakeRunner()

    class _Orchestrator(PipelineOrchestrator):
        def __init__(self, config, **kwargs):
            super().__init__(config, runner=fake, **kwargs)

    with patch.object(cli, "PipelineOrchestrator", _Orchestrator):
        yield fake


class TestEventFromArgs:
    """Test event_from_args()."""

    def parse(self, *argv):
        return cli.event_from_args(cli.build_parser().parse_args(["plan", *argv]))

    def test_explicit_flags(self):
        event = self.parse(
            "--source", "merge_request_event",
            "--branch", "feature/x",
            "--trust", "fork",
            "--merge-request", "7",
            "--flag", "NIGHTLY=1",
        )
        assert event.source == EventSource.MERGE_REQUEST
        assert event.branch == "feature/x"
        assert event.actor_trust == ActorTrust.FORK
        assert event.merge_request_id == "7"
        assert event.env_flags == {"NIGHTLY": "1"}
        assert event.scope == "mr:7"

    def test_protected_flags(self):
        assert self.parse("--branch", "main", "--protected").is_protected
        assert not self.parse("--branch", "main", "--unprotected").is_protected

    def test_from_env_with_override(self, monkeypatch):
        monkeypatch.setenv("CI_PIPELINE_SOURCE", "push")
        monkeypatch.setenv("CI_COMMIT_BRANCH", "next")
        monkeypatch.setenv("CI_COMMIT_REF_NAME", "next")
        monkeypatch.setenv("CI_COMMIT_REF_PROTECTED", "true")
        event = self.parse("--from-env", "--branch", "hotfix")
        assert event.source == EventSource.BRANCH_PUSH
        assert event.branch == "hotfix"
        assert event.is_protected

    def test_bad_flag(self):
        with pytest.raises(ValueError):
            self.parse("--flag", "NOVALUE")

    def test_bad_source(self):
        with pytest.raises(ValueError):
            self.parse("--source", "carrier-pigeon")


class TestPlanCommand:
    """Test `buildflow plan`."""

    def test_json(self, definition_file, state_options, capsys):
        code = cli.main([*state_options, "plan", "-f", str(definition_file), "--branch", "dev", "--json"])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["created"]
        stages = {s["name"]: s["outcome"] for phase in data["phases"] for s in phase["stages"]}
        assert stages == {"build": "run", "deploy": "manual"}

    def test_text(self, definition_file, state_options, capsys):
        code = cli.main([*state_options, "plan", "-f", str(definition_file), "--branch", "main"])
        assert code == 0
        out = capsys.readouterr().out
        assert "deploy:" in out
        assert "run [rule #0]" in out

    def test_missing_definition(self, tmp_path, state_options, capsys):
        code = cli.main([*state_options, "plan", "-f", str(tmp_path / "nope.yml")])
        assert code == cli.EXIT_INVALID
        assert "buildflow:" in capsys.readouterr().err

    def test_bad_option(self, definition_file, capsys):
        code = cli.main(["-O", "colour=blue", "plan", "-f", str(definition_file)])
        assert code == cli.EXIT_INVALID


class TestRunCommand:
    """Test `buildflow run` exit codes and output."""

    def run(self, definition_file, state_options, tmp_path, *extra):
        source = tmp_path / "src"
        source.mkdir(exist_ok=True)
        return cli.main(
            [*state_options, "run", "-f", str(definition_file), "--source-dir", str(source), *extra]
        )

    def test_success(self, runner, definition_file, state_options, tmp_path, capsys):
        code = self.run(definition_file, state_options, tmp_path, "--branch", "main")
        assert code == 0
        assert runner.commands == ["make", "ship"]
        out = capsys.readouterr().out
        assert "PIPELINE SUMMARY" in out
        assert "Status: SUCCESS" in out

    def test_failure(self, runner, definition_file, state_options, tmp_path):
        runner.script["make"] = 2
        code = self.run(definition_file, state_options, tmp_path, "--branch", "main")
        assert code == cli.EXIT_CODES[cli.PipelineStatus.FAILED]
        assert runner.commands == ["make"]

    def test_blocked_on_manual(self, runner, definition_file, state_options, tmp_path, capsys):
        code = self.run(definition_file, state_options, tmp_path, "--branch", "dev", "--json")
        assert code == 2
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "blocked"
        assert [s["status"] for s in data["stages"]] == ["success", "manual_pending"]

    def test_confirm_up_front(self, runner, definition_file, state_options, tmp_path):
        code = self.run(definition_file, state_options, tmp_path, "--branch", "dev", "--confirm", "deploy")
        assert code == 0
        assert runner.commands == ["make", "ship"]

    def test_output_lines_are_prefixed(self, runner, definition_file, state_options, tmp_path, capsys):
        runner.script["make"] = (0, "compiling\n")
        self.run(definition_file, state_options, tmp_path, "--branch", "main")
        assert "[build] compiling" in capsys.readouterr().out

    def test_invalid_definition(self, runner, tmp_path, state_options):
        path = tmp_path / "bad.yml"
        path.write_text("build:\n  stage: build\n")
        assert self.run(path, state_options, tmp_path) == cli.EXIT_INVALID


class TestCacheCommand:
    """Test `buildflow cache`."""

    @pytest.fixture
    def populated(self, tmp_path):
        workdir = tmp_path / "work"
        (workdir / "target").mkdir(parents=True)
        (workdir / "target" / "app").write_text("bin")
        store = LocalCacheStore(tmp_path / "state" / "cache")
        asyncio.run(store.save("deps", ["target"], workdir))
        asyncio.run(store.save("tools", ["target"], workdir))
        return store

    def test_list_empty(self, state_options, capsys):
        assert cli.main([*state_options, "cache", "list"]) == 0
        assert "Cache is empty" in capsys.readouterr().out

    def test_list(self, populated, state_options, capsys):
        assert cli.main([*state_options, "cache", "list"]) == 0
        out = capsys.readouterr().out
        assert "deps" in out
        assert "tools" in out

    def test_delete(self, populated, state_options):
        assert cli.main([*state_options, "cache", "delete", "deps"]) == 0
        assert asyncio.run(populated.lookup("deps")) is None
        assert cli.main([*state_options, "cache", "delete", "deps"]) == 1

    def test_prune(self, populated, state_options, capsys):
        assert cli.main([*state_options, "cache", "prune", "--max-entries", "1"]) == 0
        assert "Evicted 1 entry" in capsys.readouterr().out
        assert len(asyncio.run(populated.entries())) == 1
