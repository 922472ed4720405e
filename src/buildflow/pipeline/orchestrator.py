"""Pipeline orchestrator.

Executes a PipelineDefinition for one PipelineEvent:

    1. Workflow rules decide whether a pipeline is created at all
    2. Trigger rules decide each stage's outcome (run/manual/skip/allow_failure)
    3. Phases run in declared order; stages of a phase run concurrently,
       bounded by max_parallel_stages
    4. Per stage: restore cache, fetch artifacts of earlier phases, run
       before_script + script, then (on exit 0 only) save cache and publish
       artifacts
    5. A required failure aborts every later phase; a pending blocking
       manual stage blocks them; supersession cancels them

Stage-level errors are converted into StageResult statuses here and never
escape run().
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from ..cache.keys import resolve_cache_key
from ..cache.remote import HttpCacheStore
from ..cache.store import CacheStore, LocalCacheStore
from ..config import DEFAULT_CONFIG, BuildflowConfig
from ..executor.base import BuildExecutor, CommandRunner
from ..executor.shell import ShellRunner
from ..triggers.evaluator import TriggerDecision, TriggerEvaluator
from ..types.enums import FailureReason, PipelineStatus, StageStatus
from ..types.exceptions import (
    CacheStoreError,
    DependencyAbort,
    ExecutionFailure,
    ManualGateOpen,
    StageTimeoutError,
    TriggerMismatch,
)
from ..types.models import PipelineEvent, PipelineResult, Stage, StageResult
from .artifacts import ArtifactPropagator
from .definition import PipelineDefinition
from .report import PipelineReportWriter
from .run import PipelineRun, RunRegistry
from .scheduler import failed_required, phase_complete, schedule

logger = logging.getLogger(__name__)


@dataclass
class PipelinePlan:
    """Trigger decisions for an event, without executing anything.

    Attributes:
        created: Whether workflow rules create a pipeline
        phases: (phase, [(stage, decision), ...]) in declared order
    """

    created: bool
    phases: list[tuple[str, list[tuple[Stage, TriggerDecision]]]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "phases": [
                {
                    "phase": phase,
                    "stages": [
                        {
                            "name": stage.name,
                            "outcome": decision.outcome.value,
                            "rule_index": decision.rule_index,
                            "allow_failure": decision.allow_failure,
                        }
                        for stage, decision in entries
                    ],
                }
                for phase, entries in self.phases
            ],
        }


class PipelineOrchestrator:
    """Runs pipelines.

    Example:
        >>> orchestrator = PipelineOrchestrator(config)
        >>> definition = PipelineDefinition.from_yaml(".gitlab-ci.yml")
        >>> result = await orchestrator.run(definition, PipelineEvent.from_env())
        >>> result.status
        <PipelineStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        config: BuildflowConfig = DEFAULT_CONFIG,
        *,
        runner: Optional[CommandRunner] = None,
        cache_store: Optional[CacheStore] = None,
        registry: Optional[RunRegistry] = None,
        on_stage_start: Optional[Callable[[str], None]] = None,
        on_stage_end: Optional[Callable[[StageResult], None]] = None,
        on_output: Optional[Callable[[str, str], None]] = None,
    ):
        """Initialize orchestrator.

        Args:
            config: Orchestrator configuration
            runner: Command runner (default: ShellRunner)
            cache_store: Cache store (default: from config)
            registry: Run registry shared by orchestrators of one process
            on_stage_start: Callback when a stage starts executing
            on_stage_end: Callback with each executed stage's result
            on_output: Callback per output line (stage_name, line)
        """
        self.config = config
        self.executor = BuildExecutor(runner or ShellRunner())
        self._cache_store = cache_store
        self.registry = registry or RunRegistry()
        self.on_stage_start = on_stage_start
        self.on_stage_end = on_stage_end
        self.on_output = on_output

    @property
    def cache_store(self) -> CacheStore:
        """Configured store, created on first use."""
        if self._cache_store is None:
            config = self.config
            if config.remote_cache_url:
                self._cache_store = HttpCacheStore(
                    config.remote_cache_url,
                    timeout=config.remote_cache_timeout,
                    max_retries=config.remote_cache_retries,
                )
            else:
                self._cache_store = LocalCacheStore(config.cache_dir)
        return self._cache_store

    async def close(self) -> None:
        if self._cache_store is not None:
            await self._cache_store.close()

    # =========================================================================
    # Public API
    # =========================================================================

    def plan(self, definition: PipelineDefinition, event: PipelineEvent) -> PipelinePlan:
        """Evaluate workflow and stage rules for an event."""
        evaluator = TriggerEvaluator(event)
        if not evaluator.pipeline_created(definition.workflow_rules):
            return PipelinePlan(created=False)
        decisions = evaluator.plan(definition.stages)
        return PipelinePlan(
            created=True,
            phases=[
                (batch.phase, [(stage, decisions[stage.name]) for stage in batch.stages])
                for batch in schedule(definition.stages, definition.phases)
            ],
        )

    def create_run(
        self,
        definition: PipelineDefinition,
        event: PipelineEvent,
        *,
        run_id: Optional[str] = None,
        confirmed: Iterable[str] = (),
    ) -> PipelineRun:
        """Create and register a run. Older runs of the same scope are superseded."""
        run = PipelineRun(definition, event, run_id=run_id, confirmed=confirmed)
        superseded = self.registry.register(run)
        if superseded:
            logger.info(f"[{run.run_id}] Supersedes {', '.join(r.run_id for r in superseded)}")
        return run

    def confirm(self, run_id: str, stage_name: str) -> None:
        """Confirm a manual stage of an active run."""
        self.registry.get(run_id).confirm(stage_name)

    async def run(
        self,
        definition: PipelineDefinition,
        event: PipelineEvent,
        *,
        run_id: Optional[str] = None,
        confirmed: Iterable[str] = (),
        source_dir: Optional[Union[str, Path]] = None,
    ) -> PipelineResult:
        """Create a run for the event and execute it."""
        run = self.create_run(definition, event, run_id=run_id, confirmed=confirmed)
        return await self.execute(run, source_dir=source_dir)

    async def execute(self, run: PipelineRun, *, source_dir: Optional[Union[str, Path]] = None) -> PipelineResult:
        """Execute a registered run.

        Args:
            run: Run created by create_run()
            source_dir: Source tree stages work on (default: cwd)

        Returns:
            PipelineResult
        """
        source = Path(source_dir or Path.cwd()).resolve()
        definition = run.definition
        start_time = time.monotonic()
        run.status = PipelineStatus.RUNNING
        result = PipelineResult(run_id=run.run_id, pipeline_name=definition.name)

        report_writer = None
        if self.config.report_enabled:
            report_writer = PipelineReportWriter(
                run.run_id,
                definition.name,
                run.event,
                report_dir=self.config.report_dir,
            )

        logger.info(f"[{run.run_id}] Pipeline {definition.name} started for {run.scope}")
        try:
            evaluator = TriggerEvaluator(run.event)
            if not evaluator.pipeline_created(definition.workflow_rules):
                run.status = PipelineStatus.SKIPPED
            else:
                run.decisions = evaluator.plan(definition.stages)
                result.exported_paths = await self._execute_phases(run, source)
                run.status = self._final_status(run)
        finally:
            self.registry.unregister(run)

        result.status = run.status
        result.stages = [run.results[s.name] for s in definition.stages if s.name in run.results]
        result.stages.sort(key=lambda r: definition.phases.index(r.phase))
        result.total_duration_ms = int((time.monotonic() - start_time) * 1000)

        if report_writer:
            for stage_result in result.stages:
                decision = run.decisions.get(stage_result.stage_name)
                report_writer.record_stage(stage_result, decision=decision.describe() if decision else "")
            report_path = report_writer.finalize(result)
            if report_path:
                result.report_path = str(report_path)

        logger.info(
            f"[{run.run_id}] Pipeline {definition.name} finished: {result.status.value} "
            f"({result.total_duration_ms}ms)"
        )
        return result

    # =========================================================================
    # Phases
    # =========================================================================

    async def _execute_phases(self, run: PipelineRun, source: Path) -> list[str]:
        definition = run.definition
        propagator = ArtifactPropagator(
            self.config.artifacts_dir,
            run.run_id,
            definition.phases,
            default_expiry=self.config.default_artifact_expiry,
        )
        semaphore = asyncio.Semaphore(self.config.max_parallel_stages)
        failure: Optional[tuple[str, list[str]]] = None
        blocked_by: list[str] = []

        try:
            for batch in schedule(definition.stages, definition.phases):
                if run.superseded:
                    for stage in batch.stages:
                        run.record(self._canceled(run, stage, started=False))
                    continue

                if failure is not None:
                    failed_phase, failed_stages = failure
                    for stage in batch.stages:
                        if not run.decisions[stage.name].included:
                            run.record(self._skipped(run, stage))
                            continue
                        abort = DependencyAbort(stage.name, failed_phase, failed_stages)
                        run.record(
                            StageResult(
                                stage_name=stage.name,
                                phase=stage.phase,
                                status=StageStatus.ABORTED,
                                allow_failure=run.decisions[stage.name].allow_failure,
                                reason=FailureReason.DEPENDENCY_ABORT,
                                message=str(abort),
                            )
                        )
                    continue

                if blocked_by:
                    for stage in batch.stages:
                        if not run.decisions[stage.name].included:
                            run.record(self._skipped(run, stage))
                            continue
                        run.record(
                            StageResult(
                                stage_name=stage.name,
                                phase=stage.phase,
                                status=StageStatus.BLOCKED,
                                allow_failure=run.decisions[stage.name].allow_failure,
                                message=f"Waiting on manual stage(s): {', '.join(blocked_by)}",
                            )
                        )
                    continue

                logger.info(f"[{run.run_id}] Phase {batch.phase}: {', '.join(batch.names)}")
                tasks = []
                for stage in batch.stages:
                    task = asyncio.ensure_future(self._stage_task(run, stage, source, propagator, semaphore))
                    run.track(stage.name, task)
                    tasks.append(task)
                try:
                    results = await asyncio.gather(*tasks)
                finally:
                    for stage in batch.stages:
                        run.untrack(stage.name)

                for stage_result in results:
                    run.record(stage_result)

                failed = failed_required(results)
                await propagator.seal_phase(batch.phase, ok=not failed and not run.superseded)
                if failed:
                    failure = (batch.phase, failed)
                    logger.warning(f"[{run.run_id}] Phase {batch.phase} failed: {', '.join(failed)}")
                elif not phase_complete(results):
                    blocked_by = [
                        r.stage_name
                        for r in results
                        if r.status == StageStatus.MANUAL_PENDING and not r.allow_failure
                    ]

            if run.superseded or failure is not None or blocked_by:
                return []
            return await propagator.export(self.config.output_dir)

        finally:
            await propagator.discard()
            if self.config.isolate_workdirs:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(
                    None, partial(shutil.rmtree, Path(self.config.work_root) / run.run_id, ignore_errors=True)
                )

    @staticmethod
    def _final_status(run: PipelineRun) -> PipelineStatus:
        results = list(run.results.values())
        if run.superseded:
            return PipelineStatus.CANCELED
        if any(r.blocks_pipeline for r in results):
            return PipelineStatus.FAILED
        if any(r.status == StageStatus.BLOCKED for r in results) or any(
            r.status == StageStatus.MANUAL_PENDING and not r.allow_failure for r in results
        ):
            return PipelineStatus.BLOCKED
        return PipelineStatus.SUCCESS

    # =========================================================================
    # Stages
    # =========================================================================

    async def _stage_task(
        self,
        run: PipelineRun,
        stage: Stage,
        source: Path,
        propagator: ArtifactPropagator,
        semaphore: asyncio.Semaphore,
    ) -> StageResult:
        """Run one stage; every outcome becomes a StageResult."""
        decision = run.decisions[stage.name]
        try:
            return await self._run_stage(run, stage, decision, source, propagator, semaphore)
        except asyncio.CancelledError:
            if not run.superseded:
                raise
            logger.info(f"[{run.run_id}] Stage {stage.name} canceled")
            return self._canceled(run, stage, started=True)
        except Exception as e:
            logger.exception(f"[{run.run_id}] Stage {stage.name} errored: {e}")
            return StageResult(
                stage_name=stage.name,
                phase=stage.phase,
                status=StageStatus.FAILED,
                allow_failure=decision.allow_failure,
                reason=FailureReason.EXECUTION_FAILURE,
                message=f"Stage {stage.name} errored: {e}",
            )

    async def _run_stage(
        self,
        run: PipelineRun,
        stage: Stage,
        decision: TriggerDecision,
        source: Path,
        propagator: ArtifactPropagator,
        semaphore: asyncio.Semaphore,
    ) -> StageResult:
        if not decision.included:
            return self._skipped(run, stage)

        if decision.is_manual and not run.is_confirmed(stage.name):
            gate = ManualGateOpen(stage.name, blocking=decision.blocking)
            if not (decision.blocking and self.config.wait_for_manual):
                logger.info(f"[{run.run_id}] {gate}")
                return StageResult(
                    stage_name=stage.name,
                    phase=stage.phase,
                    status=StageStatus.MANUAL_PENDING,
                    allow_failure=decision.allow_failure,
                    message=str(gate),
                )
            logger.info(f"[{run.run_id}] {gate}; waiting")
            if not await run.wait_for_confirmation(stage.name):
                return self._canceled(run, stage, started=False)

        async with semaphore:
            if run.superseded:
                return self._canceled(run, stage, started=False)
            return await self._execute_stage(run, stage, decision, source, propagator)

    async def _execute_stage(
        self,
        run: PipelineRun,
        stage: Stage,
        decision: TriggerDecision,
        source: Path,
        propagator: ArtifactPropagator,
    ) -> StageResult:
        start_time = time.monotonic()
        if self.on_stage_start:
            self.on_stage_start(stage.name)
        logger.info(f"[{run.run_id}] Stage {stage.name} started ({decision.describe()})")

        workdir = await self._prepare_workdir(run, stage, source)
        variables = self._stage_variables(run, stage, workdir)
        result = StageResult(
            stage_name=stage.name,
            phase=stage.phase,
            status=StageStatus.FAILED,
            allow_failure=decision.allow_failure,
        )

        # Cache restore
        if stage.cache is not None and stage.cache_paths:
            result.cache_key = resolve_cache_key(stage.cache, variables, workdir)
            if stage.cache.policy.restores:
                restored = await self._restore_cache(result.cache_key, workdir)
                if restored is not None:
                    result.cache_hit = True
                    result.restored_paths = tuple(restored)

        # Artifacts of earlier phases
        artifacts = propagator.fetch(stage.phase, stage.dependencies)
        if artifacts:
            materialized = await propagator.materialize(artifacts, workdir)
            logger.debug(f"[{run.run_id}] {stage.name}: materialized {materialized}")

        before_script = stage.before_script if stage.before_script is not None else run.definition.before_script
        timeout = stage.timeout if stage.timeout is not None else self.config.default_timeout
        execution = await self.executor.execute(
            list(before_script) + list(stage.command_sequence),
            workdir,
            variables,
            timeout=timeout,
            inspect_paths=list(stage.cache_paths) + list(stage.artifact_paths),
            on_output=partial(self._emit_output, stage.name),
        )
        result.exit_code = execution.exit_code
        result.log = execution.log

        if execution.timed_out:
            error = StageTimeoutError(stage.name, timeout)
            result.reason = FailureReason.TIMEOUT
            result.message = str(error)
        elif execution.exit_code != 0:
            error = ExecutionFailure(stage.name, execution.failed_command or "", execution.exit_code)
            result.reason = FailureReason.EXECUTION_FAILURE
            result.message = str(error)
        else:
            result.status = StageStatus.SUCCESS
            if stage.cache is not None and stage.cache_paths and stage.cache.policy.saves:
                result.cache_saved = await self._save_cache(
                    result.cache_key, stage.cache_paths, workdir, holder_id=f"{run.run_id}/{stage.name}"
                )
            if stage.artifact_paths:
                result.artifact = await propagator.publish(
                    stage.name, stage.phase, workdir, stage.artifact_paths, stage.artifact_expiry
                )

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        log = logger.info if result.status == StageStatus.SUCCESS or result.allow_failure else logger.warning
        log(f"[{run.run_id}] Stage {stage.name} finished: {result.status.value} ({result.duration_ms}ms)")
        if self.on_stage_end:
            self.on_stage_end(result)
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _prepare_workdir(self, run: PipelineRun, stage: Stage, source: Path) -> Path:
        """Isolated copy of the source tree, or the tree itself without isolation."""
        if not self.config.isolate_workdirs:
            return source

        workdir = (Path(self.config.work_root) / run.run_id / stage.name).resolve()
        excluded = {
            Path(p).resolve()
            for p in (
                self.config.work_root,
                self.config.cache_dir,
                self.config.artifacts_dir,
                self.config.output_dir,
                self.config.report_dir,
            )
        }

        def _ignore(directory: str, names: list[str]) -> list[str]:
            base = Path(directory)
            return [name for name in names if (base / name).resolve() in excluded]

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            partial(shutil.copytree, source, workdir, symlinks=True, ignore=_ignore, dirs_exist_ok=True),
        )
        return workdir

    @staticmethod
    def _stage_variables(run: PipelineRun, stage: Stage, workdir: Path) -> dict[str, str]:
        variables = run.event.variables()
        variables.setdefault("CI_PIPELINE_ID", run.run_id)
        variables.update(run.definition.variables)
        variables.update(stage.variables)
        variables.update(
            {
                "CI_JOB_NAME": stage.name,
                "CI_JOB_STAGE": stage.phase,
                "CI_PROJECT_DIR": str(workdir),
                "BUILDFLOW_RUN_ID": run.run_id,
            }
        )
        return variables

    async def _restore_cache(self, key: str, workdir: Path) -> Optional[tuple[str, ...]]:
        try:
            return await self.cache_store.restore(key, workdir)
        except (CacheStoreError, OSError) as e:
            logger.warning(f"Cache restore failed for {key}, continuing cold: {e}")
            return None

    async def _save_cache(self, key: Optional[str], paths: Iterable[str], workdir: Path, holder_id: str) -> bool:
        if key is None:
            return False
        try:
            entry = await self.cache_store.save(key, paths, workdir, holder_id=holder_id)
        except (CacheStoreError, OSError) as e:
            logger.warning(f"Cache save failed for {key}: {e}")
            return False
        return entry is not None

    def _emit_output(self, stage_name: str, line: str) -> None:
        logger.debug(f"[{stage_name}] {line}")
        if self.on_output:
            self.on_output(stage_name, line)

    @staticmethod
    def _skipped(run: PipelineRun, stage: Stage) -> StageResult:
        decision = run.decisions[stage.name]
        mismatch = TriggerMismatch(stage.name, decision.rule_index)
        logger.debug(f"[{run.run_id}] {mismatch}")
        return StageResult(
            stage_name=stage.name,
            phase=stage.phase,
            status=StageStatus.SKIPPED,
            allow_failure=decision.allow_failure,
            message=str(mismatch),
        )

    @staticmethod
    def _canceled(run: PipelineRun, stage: Stage, *, started: bool) -> StageResult:
        decision = run.decisions.get(stage.name)
        detail = "interrupted" if started else "not started"
        return StageResult(
            stage_name=stage.name,
            phase=stage.phase,
            status=StageStatus.CANCELED,
            allow_failure=decision.allow_failure if decision else False,
            reason=FailureReason.CANCELED,
            message=f"Stage {stage.name} {detail}: superseded by {run.superseded_by}",
        )


__all__ = [
    "PipelineOrchestrator",
    "PipelinePlan",
]
