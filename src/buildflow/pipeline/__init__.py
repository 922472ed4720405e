"""Pipeline definition, scheduling, artifacts and orchestration.

Key Components:
    - PipelineDefinition: Stages + phases loaded from YAML
    - schedule: Group stages into ordered phase batches
    - ArtifactPropagator: Phase-scoped artifact visibility
    - PipelineRun / RunRegistry: Per-run state and supersession
    - PipelineOrchestrator: Executes a definition for one event
    - PipelineReportWriter: Markdown run reports
"""

from .artifacts import ArtifactPropagator
from .definition import DEFAULT_PHASES, PipelineDefinition
from .orchestrator import PipelineOrchestrator, PipelinePlan
from .report import PipelineReport, PipelineReportWriter, StageReportEntry
from .run import PipelineRun, RunRegistry
from .scheduler import PhaseBatch, failed_required, phase_complete, schedule

__all__ = [
    "ArtifactPropagator",
    "DEFAULT_PHASES",
    "PipelineDefinition",
    "PipelineOrchestrator",
    "PipelinePlan",
    "PipelineReport",
    "PipelineReportWriter",
    "StageReportEntry",
    "PipelineRun",
    "RunRegistry",
    "PhaseBatch",
    "failed_required",
    "phase_complete",
    "schedule",
]
