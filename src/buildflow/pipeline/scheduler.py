"""Stage Scheduler.

Groups stages into phase batches. Phases run strictly in declared order;
stages inside one phase may run concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from ..types.enums import StageStatus
from ..types.exceptions import DefinitionError
from ..types.models import Stage, StageResult


@dataclass
class PhaseBatch:
    """Stages of one phase.

    Attributes:
        phase: Phase name
        index: Position in the declared phase order
        stages: Stages of the phase, in declaration order
    """

    phase: str
    index: int
    stages: list[Stage] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [stage.name for stage in self.stages]


def schedule(stages: Iterable[Stage], phase_order: Optional[Sequence[str]] = None) -> list[PhaseBatch]:
    """Group stages by phase, phases in declared order.

    Args:
        stages: Stages to schedule
        phase_order: Declared phases; defaults to first-appearance order

    Returns:
        One batch per phase that has stages

    Raises:
        DefinitionError: If a stage names a phase outside phase_order
    """
    stages = list(stages)
    if phase_order is None:
        phase_order = list(dict.fromkeys(stage.phase for stage in stages))

    batches = {phase: PhaseBatch(phase=phase, index=index) for index, phase in enumerate(phase_order)}
    for stage in stages:
        batch = batches.get(stage.phase)
        if batch is None:
            raise DefinitionError(f"Stage '{stage.phase}' is not declared", job=stage.name)
        batch.stages.append(stage)

    return [batch for batch in batches.values() if batch.stages]


def phase_complete(results: Iterable[StageResult]) -> bool:
    """A phase is complete when every required stage succeeded or was skipped.

    allow_failure stages never hold a phase back. Manual stages that are not
    blocking are recorded with allow_failure set and pass as well.
    """
    return all(result.allow_failure or result.status.is_terminal_ok for result in results)


def failed_required(results: Iterable[StageResult]) -> list[str]:
    """Names of required stages that failed."""
    return [r.stage_name for r in results if r.status == StageStatus.FAILED and not r.allow_failure]


__all__ = [
    "PhaseBatch",
    "schedule",
    "phase_complete",
    "failed_required",
]
