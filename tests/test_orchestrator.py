"""Tests for PipelineOrchestrator."""

import asyncio
import time
from dataclasses import replace
from pathlib import Path

import pytest
from conftest import FakeRunner, hang, write_file

from buildflow.cache import LocalCacheStore
from buildflow.executor import CommandResult
from buildflow.pipeline import PipelineDefinition, PipelineOrchestrator
from buildflow.types import FailureReason, PipelineStatus, RuleOutcome, StageStatus

FIXTURE = Path(__file__).parent / "fixtures" / "gitlab-ci.yml"


async def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def exit_unless_exists(relative, code=5):
    """Script action failing when the path is absent from the working dir."""

    def _action(cwd, env):
        return 0 if (cwd / relative).exists() else code

    return _action


def exit_if_exists(relative, code=7):
    def _action(cwd, env):
        return code if (cwd / relative).exists() else 0

    return _action


class TestSampleDefinition:
    """Run the sample CI file end to end."""

    @pytest.mark.asyncio
    async def test_upstream_mr_runs_ci_and_artifacts(self, config, source_dir, mr_event):
        runner = FakeRunner()
        orchestrator = PipelineOrchestrator(config, runner=runner)
        definition = PipelineDefinition.from_yaml(FIXTURE)

        result = await orchestrator.run(definition, mr_event, source_dir=source_dir)

        assert result.status == PipelineStatus.SUCCESS
        assert result.stage("ci").status == StageStatus.SUCCESS
        assert result.stage("artifacts").status == StageStatus.SUCCESS
        assert result.stage("pages").status == StageStatus.SKIPPED
        assert [r.stage_name for r in result.stages] == ["ci", "artifacts", "pages"]
        # Pipeline before_script runs ahead of each job's script
        assert runner.calls_in("ci")[-1] == "direnv exec . engage"
        assert len(runner.calls_in("ci")) == 4

    @pytest.mark.asyncio
    async def test_unprotected_push_blocks_on_manual_ci(self, config, source_dir, push_event):
        runner = FakeRunner()
        orchestrator = PipelineOrchestrator(config, runner=runner)
        definition = PipelineDefinition.from_yaml(FIXTURE)

        result = await orchestrator.run(definition, push_event, source_dir=source_dir)

        assert result.status == PipelineStatus.BLOCKED
        assert result.stage("ci").status == StageStatus.MANUAL_PENDING
        assert result.stage("artifacts").status == StageStatus.BLOCKED
        assert result.stage("pages").status == StageStatus.SKIPPED
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_protected_push_exports_pages(self, config, source_dir, protected_push_event):
        runner = FakeRunner(
            {
                "cp -r --dereference result public": write_file("public/index.html", "<html/>"),
                "cp result/bin/conduit x86_64-linux-musl": write_file("x86_64-linux-musl", "elf"),
            }
        )
        orchestrator = PipelineOrchestrator(config, runner=runner)
        definition = PipelineDefinition.from_yaml(FIXTURE)

        result = await orchestrator.run(definition, protected_push_event, source_dir=source_dir)

        assert result.status == PipelineStatus.SUCCESS
        assert result.exported_paths == ["public"]
        assert (config.output_dir / "public" / "index.html").read_text() == "<html/>"
        assert not (config.output_dir / "x86_64-linux-musl").exists()

    def test_plan(self, config, push_event):
        definition = PipelineDefinition.from_yaml(FIXTURE)
        plan = PipelineOrchestrator(config).plan(definition, push_event)
        assert plan.created
        assert [phase for phase, _ in plan.phases] == ["ci", "artifacts", "publish"]
        outcomes = {stage.name: decision.outcome for _, entries in plan.phases for stage, decision in entries}
        assert outcomes["ci"] == RuleOutcome.MANUAL
        data = plan.to_dict()
        assert data["phases"][0]["stages"][0]["outcome"] == "manual"
        assert not config.cache_dir.exists()


class TestCaching:
    """Test cache restore/save around stage execution."""

    DEFINITION = {
        "stages": ["build"],
        "build": {
            "stage": "build",
            "script": ["check-warm", "compile"],
            "cache": {"key": "deps", "paths": ["target"]},
        },
    }

    @pytest.mark.asyncio
    async def test_second_run_restores_cache(self, config, source_dir, push_event):
        warm = []

        def check_warm(cwd, env):
            warm.append((cwd / "target" / "app").exists())
            return 0

        runner = FakeRunner({"check-warm": check_warm, "compile": write_file("target/app", "bin")})
        orchestrator = PipelineOrchestrator(config, runner=runner)
        definition = PipelineDefinition.from_dict(self.DEFINITION)

        first = await orchestrator.run(definition, push_event, source_dir=source_dir)
        assert not first.stage("build").cache_hit
        assert first.stage("build").cache_saved

        second = await orchestrator.run(definition, push_event, source_dir=source_dir)
        build = second.stage("build")
        assert build.cache_hit
        assert build.restored_paths == ("target",)
        assert warm == [False, True]

    @pytest.mark.asyncio
    async def test_failed_stage_does_not_save(self, config, source_dir, push_event):
        runner = FakeRunner({"check-warm": 0, "compile": 1})
        orchestrator = PipelineOrchestrator(config, runner=runner)
        definition = PipelineDefinition.from_dict(self.DEFINITION)
        (source_dir / "target").mkdir()
        (source_dir / "target" / "partial").write_text("half")

        result = await orchestrator.run(definition, push_event, source_dir=source_dir)

        build = result.stage("build")
        assert build.status == StageStatus.FAILED
        assert not build.cache_saved
        assert await LocalCacheStore(config.cache_dir).lookup(build.cache_key) is None

    @pytest.mark.asyncio
    async def test_pull_policy_never_saves(self, config, source_dir, push_event):
        data = {
            "build": {
                "stage": "build",
                "script": "compile",
                "cache": {"key": "deps", "paths": ["target"], "policy": "pull"},
            }
        }
        runner = FakeRunner({"compile": write_file("target/app")})
        result = await PipelineOrchestrator(config, runner=runner).run(
            PipelineDefinition.from_dict(data), push_event, source_dir=source_dir
        )
        assert result.stage("build").status == StageStatus.SUCCESS
        assert not result.stage("build").cache_saved


class TestFailures:
    """Test failure propagation across phases."""

    @pytest.mark.asyncio
    async def test_allowed_failure_keeps_pipeline_green(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "lint": {"stage": "test", "script": "lint", "allow_failure": True},
                "unit": {"stage": "test", "script": "pytest"},
                "deploy": {"stage": "deploy", "script": "ship"},
            }
        )
        runner = FakeRunner({"lint": 1})
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)

        assert result.status == PipelineStatus.SUCCESS
        assert result.success
        lint = result.stage("lint")
        assert lint.status == StageStatus.FAILED
        assert lint.allow_failure
        assert lint.exit_code == 1
        assert result.stage("deploy").status == StageStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_required_failure_aborts_later_phases(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "compile": {"stage": "build", "script": "make"},
                "unit": {"stage": "test", "script": "pytest"},
                "nightly": {"stage": "test", "script": "soak", "rules": [{"if": "$NIGHTLY"}]},
                "deploy": {"stage": "deploy", "script": "ship"},
            }
        )
        runner = FakeRunner({"make": 2})
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)

        assert result.status == PipelineStatus.FAILED
        assert not result.success
        compile_result = result.stage("compile")
        assert compile_result.reason == FailureReason.EXECUTION_FAILURE
        assert compile_result.exit_code == 2
        for name in ("unit", "deploy"):
            assert result.stage(name).status == StageStatus.ABORTED
            assert result.stage(name).reason == FailureReason.DEPENDENCY_ABORT
        assert result.stage("nightly").status == StageStatus.SKIPPED
        assert runner.commands == ["make"]

    @pytest.mark.asyncio
    async def test_sibling_stages_still_complete(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "a": {"stage": "build", "script": "fail"},
                "b": {"stage": "build", "script": "ok"},
            }
        )
        runner = FakeRunner({"fail": 1})
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        assert result.stage("b").status == StageStatus.SUCCESS
        assert result.status == PipelineStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict({"slow": {"script": "sleep 600", "timeout": "1m"}})
        runner = FakeRunner({"sleep 600": CommandResult("sleep 600", -1, "", timed_out=True)})
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        slow = result.stage("slow")
        assert slow.status == StageStatus.FAILED
        assert slow.reason == FailureReason.TIMEOUT
        assert "60" in slow.message

    @pytest.mark.asyncio
    async def test_runner_error_becomes_failed_stage(self, config, source_dir, push_event):
        def explode(cwd, env):
            raise RuntimeError("runner broke")

        definition = PipelineDefinition.from_dict({"unit": {"script": "pytest"}})
        result = await PipelineOrchestrator(config, runner=FakeRunner({"pytest": explode})).run(
            definition, push_event, source_dir=source_dir
        )
        assert result.stage("unit").status == StageStatus.FAILED
        assert "runner broke" in result.stage("unit").message


class TestArtifacts:
    """Test artifact flow between phases."""

    @pytest.mark.asyncio
    async def test_artifacts_reach_later_phases_only(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "compile": {"stage": "build", "script": "make", "artifacts": {"paths": ["dist"]}},
                "sibling": {"stage": "build", "script": "look"},
                "check": {"stage": "test", "script": "verify"},
                "pages": {"stage": "deploy", "script": "render", "artifacts": {"paths": ["public"]}},
            }
        )
        runner = FakeRunner(
            {
                "make": write_file("dist/app", "bin"),
                "look": exit_if_exists("dist/app"),
                "verify": exit_unless_exists("dist/app"),
                "render": write_file("public/index.html", "<html/>"),
            }
        )
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)

        assert result.status == PipelineStatus.SUCCESS
        assert result.stage("compile").artifact.paths == ("dist",)
        assert result.exported_paths == ["public"]
        assert (config.output_dir / "public" / "index.html").exists()
        assert not (config.output_dir / "dist").exists()
        # Per-run storage is discarded once the run ends
        assert not (config.artifacts_dir / result.run_id).exists()
        assert not (config.work_root / result.run_id).exists()

    @pytest.mark.asyncio
    async def test_empty_dependencies_fetch_nothing(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "compile": {"stage": "build", "script": "make", "artifacts": {"paths": ["dist"]}},
                "check": {"stage": "test", "script": "look", "dependencies": []},
            }
        )
        runner = FakeRunner({"make": write_file("dist/app"), "look": exit_if_exists("dist/app")})
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        assert result.stage("check").status == StageStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_source_tree_is_not_modified(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict({"compile": {"script": "make"}})
        runner = FakeRunner({"make": write_file("build.log")})
        await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        assert not (source_dir / "build.log").exists()
        assert runner.calls[0].cwd != source_dir


class TestManualStages:
    """Test manual gates."""

    DEFINITION = {
        "package": {"stage": "build", "script": "pack", "rules": [{"when": "manual"}]},
        "unit": {"stage": "test", "script": "pytest"},
    }

    @pytest.mark.asyncio
    async def test_blocking_manual_blocks_later_phases(self, config, source_dir, push_event):
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(
            PipelineDefinition.from_dict(self.DEFINITION), push_event, source_dir=source_dir
        )
        assert result.status == PipelineStatus.BLOCKED
        assert result.stage("package").status == StageStatus.MANUAL_PENDING
        assert result.stage("unit").status == StageStatus.BLOCKED
        assert "package" in result.stage("unit").message
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_confirmed_manual_runs(self, config, source_dir, push_event):
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(
            PipelineDefinition.from_dict(self.DEFINITION),
            push_event,
            confirmed=["package"],
            source_dir=source_dir,
        )
        assert result.status == PipelineStatus.SUCCESS
        assert runner.commands == ["pack", "pytest"]

    @pytest.mark.asyncio
    async def test_optional_manual_does_not_block(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "package": {
                    "stage": "build",
                    "script": "pack",
                    "rules": [{"when": "manual", "allow_failure": True}],
                },
                "unit": {"stage": "test", "script": "pytest"},
            }
        )
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        assert result.status == PipelineStatus.SUCCESS
        assert result.stage("package").status == StageStatus.MANUAL_PENDING
        assert runner.commands == ["pytest"]

    @pytest.mark.asyncio
    async def test_wait_for_confirmation(self, config, source_dir, push_event):
        runner = FakeRunner()
        orchestrator = PipelineOrchestrator(replace(config, wait_for_manual=True), runner=runner)
        run = orchestrator.create_run(PipelineDefinition.from_dict(self.DEFINITION), push_event)
        task = asyncio.ensure_future(orchestrator.execute(run, source_dir=source_dir))

        await asyncio.sleep(0.05)
        assert not task.done()
        orchestrator.confirm(run.run_id, "package")

        result = await asyncio.wait_for(task, 10)
        assert result.status == PipelineStatus.SUCCESS
        assert runner.commands == ["pack", "pytest"]


class TestSupersession:
    """Test that newer events cancel interruptible work of older runs."""

    @pytest.mark.asyncio
    async def test_interruptible_stage_is_canceled(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "ci": {
                    "stage": "build",
                    "script": "build-forever",
                    "interruptible": True,
                    "cache": {"key": "deps", "paths": ["target"]},
                },
                "unit": {"stage": "test", "script": "pytest"},
            }
        )
        runner = FakeRunner({"build-forever": hang})
        orchestrator = PipelineOrchestrator(config, runner=runner)
        task = asyncio.ensure_future(orchestrator.run(definition, push_event, source_dir=source_dir))
        await wait_until(lambda: "build-forever" in runner.commands)

        newer = orchestrator.create_run(definition, push_event)

        result = await asyncio.wait_for(task, 10)
        assert result.status == PipelineStatus.CANCELED
        ci = result.stage("ci")
        assert ci.status == StageStatus.CANCELED
        assert ci.reason == FailureReason.CANCELED
        assert newer.run_id in ci.message
        assert not ci.cache_saved
        assert result.stage("unit").status == StageStatus.CANCELED
        assert "pytest" not in runner.commands

    @pytest.mark.asyncio
    async def test_non_interruptible_stage_finishes(self, config, source_dir, push_event):
        release = asyncio.Event()

        async def slow_deploy(cwd, env):
            await release.wait()
            return 0

        definition = PipelineDefinition.from_dict(
            {
                "deploy": {"stage": "build", "script": "deploy"},
                "notify": {"stage": "test", "script": "notify"},
            }
        )
        runner = FakeRunner({"deploy": slow_deploy})
        orchestrator = PipelineOrchestrator(config, runner=runner)
        task = asyncio.ensure_future(orchestrator.run(definition, push_event, source_dir=source_dir))
        await wait_until(lambda: "deploy" in runner.commands)

        orchestrator.create_run(definition, push_event)
        release.set()

        result = await asyncio.wait_for(task, 10)
        assert result.stage("deploy").status == StageStatus.SUCCESS
        assert result.stage("notify").status == StageStatus.CANCELED
        assert result.status == PipelineStatus.CANCELED

    @pytest.mark.asyncio
    async def test_other_scopes_are_untouched(self, config, source_dir, push_event, mr_event):
        definition = PipelineDefinition.from_dict({"ci": {"script": "check", "interruptible": True}})
        release = asyncio.Event()

        async def check(cwd, env):
            await release.wait()
            return 0

        runner = FakeRunner({"check": check})
        orchestrator = PipelineOrchestrator(config, runner=runner)
        task = asyncio.ensure_future(orchestrator.run(definition, push_event, source_dir=source_dir))
        await wait_until(lambda: "check" in runner.commands)

        orchestrator.create_run(definition, mr_event)
        release.set()

        result = await asyncio.wait_for(task, 10)
        assert result.status == PipelineStatus.SUCCESS


class TestRunEnvironment:
    """Test workflow rules, variables and reports."""

    @pytest.mark.asyncio
    async def test_workflow_rules_skip_pipeline(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "workflow": {"rules": [{"if": '$CI_PIPELINE_SOURCE == "merge_request_event"'}]},
                "unit": {"script": "pytest"},
            }
        )
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(definition, push_event, source_dir=source_dir)
        assert result.status == PipelineStatus.SKIPPED
        assert result.stages == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_invalid_pattern_in_flag_skips_stage(self, config, source_dir, push_event):
        """Test that a flag holding a broken regex does not abort the run."""
        definition = PipelineDefinition.from_dict(
            {
                "build": {"stage": "build", "script": "make"},
                "release": {
                    "stage": "deploy",
                    "script": "ship",
                    "rules": [{"if": "$CI_COMMIT_BRANCH =~ $RELEASE_PATTERN"}],
                },
            }
        )
        event = replace(push_event, env_flags={"RELEASE_PATTERN": "/release-(/"})
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(definition, event, source_dir=source_dir)
        assert result.status == PipelineStatus.SUCCESS
        assert result.stage("release").status == StageStatus.SKIPPED
        assert runner.commands == ["make"]

    @pytest.mark.asyncio
    async def test_variable_precedence(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict(
            {
                "variables": {"TARGET": "pipeline", "MODE": "pipeline"},
                "build": {"stage": "build", "script": "make", "variables": {"MODE": "job"}},
            }
        )
        runner = FakeRunner()
        result = await PipelineOrchestrator(config, runner=runner).run(
            definition, push_event, run_id="run-7", source_dir=source_dir
        )
        env = runner.calls[0].env
        assert env["TARGET"] == "pipeline"
        assert env["MODE"] == "job"
        assert env["CI_JOB_NAME"] == "build"
        assert env["CI_JOB_STAGE"] == "build"
        assert env["CI_COMMIT_BRANCH"] == "dev"
        assert env["BUILDFLOW_RUN_ID"] == "run-7"
        assert env["CI_PROJECT_DIR"] == str(runner.calls[0].cwd)
        assert result.run_id == "run-7"

    @pytest.mark.asyncio
    async def test_report_written(self, config, source_dir, push_event):
        definition = PipelineDefinition.from_dict({"unit": {"script": "pytest"}})
        orchestrator = PipelineOrchestrator(replace(config, report_enabled=True), runner=FakeRunner())
        result = await orchestrator.run(definition, push_event, source_dir=source_dir)
        report = Path(result.report_path)
        assert report.parent == config.report_dir
        assert "unit" in report.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_stage_callbacks(self, config, source_dir, push_event):
        started, ended, output = [], [], []
        orchestrator = PipelineOrchestrator(
            config,
            runner=FakeRunner({"echo": (0, "hello\n")}),
            on_stage_start=started.append,
            on_stage_end=ended.append,
            on_output=lambda stage, line: output.append((stage, line)),
        )
        await orchestrator.run(
            PipelineDefinition.from_dict({"unit": {"script": "echo"}}), push_event, source_dir=source_dir
        )
        assert started == ["unit"]
        assert [r.stage_name for r in ended] == ["unit"]
        assert ("unit", "hello") in output

    @pytest.mark.asyncio
    async def test_in_place_execution(self, config, source_dir, push_event):
        runner = FakeRunner({"make": write_file("out.txt")})
        orchestrator = PipelineOrchestrator(replace(config, isolate_workdirs=False), runner=runner)
        await orchestrator.run(
            PipelineDefinition.from_dict({"compile": {"script": "make"}}), push_event, source_dir=source_dir
        )
        assert runner.calls[0].cwd == source_dir.resolve()
        assert (source_dir / "out.txt").exists()
