"""Pipeline run context and registry.

A PipelineRun carries everything one execution needs: the event, the
definition, per-stage trigger decisions, results, manual gates and the
in-flight stage tasks. Nothing about a run lives in module globals, so
several runs may execute in one process.

RunRegistry tracks active runs by trigger scope. Registering a newer run
supersedes older runs of the same scope:
    - their in-flight interruptible stages are cancelled (process killed,
      no cache save, no artifact publish)
    - non-interruptible stages are left to finish
    - no further phases are scheduled and the run ends CANCELED
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Iterable, Optional

from ..triggers.evaluator import TriggerDecision
from ..types.enums import PipelineStatus
from ..types.exceptions import StageNotFoundError
from ..types.models import PipelineEvent, StageResult
from ..utils import slugify
from .definition import PipelineDefinition

logger = logging.getLogger(__name__)


class PipelineRun:
    """State of one pipeline execution.

    Example:
        >>> run = PipelineRun(definition, event)
        >>> run.confirm("ci")          # open the manual gate of stage "ci"
        >>> result = await orchestrator.execute(run)
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        event: PipelineEvent,
        *,
        run_id: Optional[str] = None,
        confirmed: Iterable[str] = (),
    ):
        self.run_id = run_id or f"{slugify(definition.name) or 'pipeline'}-{uuid.uuid4().hex[:8]}"
        self.definition = definition
        self.event = event
        self.status = PipelineStatus.PENDING
        self.decisions: dict[str, TriggerDecision] = {}
        self.results: dict[str, StageResult] = {}
        self.superseded_by: Optional[str] = None

        self._confirmed: set[str] = set()
        self._gates: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._superseded = asyncio.Event()

        for stage_name in confirmed:
            self.confirm(stage_name)

    @property
    def scope(self) -> str:
        return self.event.scope

    # =========================================================================
    # Manual gates
    # =========================================================================

    def confirm(self, stage_name: str) -> None:
        """Confirm a manual stage, before or while the run executes.

        Raises:
            StageNotFoundError: If the definition has no such stage
        """
        self.definition.stage(stage_name)
        self._confirmed.add(stage_name)
        gate = self._gates.get(stage_name)
        if gate is not None:
            gate.set()
        logger.info(f"[{self.run_id}] Manual stage {stage_name} confirmed")

    def is_confirmed(self, stage_name: str) -> bool:
        return stage_name in self._confirmed

    async def wait_for_confirmation(self, stage_name: str) -> bool:
        """Wait until the stage is confirmed or the run is superseded.

        Returns:
            True if confirmed, False if superseded first
        """
        if self.is_confirmed(stage_name):
            return True
        gate = self._gates.setdefault(stage_name, asyncio.Event())
        gate_wait = asyncio.ensure_future(gate.wait())
        superseded_wait = asyncio.ensure_future(self._superseded.wait())
        try:
            await asyncio.wait({gate_wait, superseded_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gate_wait.cancel()
            superseded_wait.cancel()
        return self.is_confirmed(stage_name) and not self.superseded

    # =========================================================================
    # Stage tasks / supersession
    # =========================================================================

    def track(self, stage_name: str, task: asyncio.Task) -> None:
        self._tasks[stage_name] = task

    def untrack(self, stage_name: str) -> None:
        self._tasks.pop(stage_name, None)

    @property
    def superseded(self) -> bool:
        return self._superseded.is_set()

    def supersede(self, by_run_id: str) -> list[str]:
        """Mark the run superseded and cancel its interruptible stages.

        Returns:
            Names of stages whose tasks were cancelled
        """
        if self.superseded:
            return []
        self.superseded_by = by_run_id
        self._superseded.set()

        cancelled = []
        for stage_name, task in list(self._tasks.items()):
            stage = self.definition.stage(stage_name)
            if stage.interruptible and not task.done():
                task.cancel()
                cancelled.append(stage_name)
        logger.info(
            f"[{self.run_id}] Superseded by {by_run_id}; "
            f"cancelled {cancelled or 'no'} interruptible stage(s)"
        )
        return cancelled

    def record(self, result: StageResult) -> None:
        self.results[result.stage_name] = result


class RunRegistry:
    """Active runs grouped by trigger scope."""

    def __init__(self):
        self._active: dict[str, list[PipelineRun]] = {}

    def register(self, run: PipelineRun) -> list[PipelineRun]:
        """Add a run, superseding older active runs of the same scope.

        Returns:
            Runs that were superseded
        """
        older = [r for r in self._active.get(run.scope, []) if r is not run]
        for previous in older:
            previous.supersede(run.run_id)
        self._active[run.scope] = [run]
        return older

    def unregister(self, run: PipelineRun) -> None:
        runs = self._active.get(run.scope, [])
        if run in runs:
            runs.remove(run)
        if not runs:
            self._active.pop(run.scope, None)

    def active(self, scope: Optional[str] = None) -> list[PipelineRun]:
        if scope is not None:
            return list(self._active.get(scope, []))
        return [run for runs in self._active.values() for run in runs]

    def get(self, run_id: str) -> PipelineRun:
        for run in self.active():
            if run.run_id == run_id:
                return run
        raise KeyError(run_id)


__all__ = [
    "PipelineRun",
    "RunRegistry",
]
