"""Pipeline run report generator.

Generates human-readable markdown reports for completed pipeline runs.
The JSON form of a run is PipelineResult.to_dict(); this is the one for people.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from ..types.enums import PipelineStatus, StageStatus
from ..types.models import PipelineEvent, PipelineResult, StageResult
from ..utils import utc_now

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    StageStatus.SUCCESS: "✅",
    StageStatus.FAILED: "❌",
    StageStatus.SKIPPED: "⏭️",
    StageStatus.MANUAL_PENDING: "⏸️",
    StageStatus.ABORTED: "⛔",
    StageStatus.CANCELED: "🚫",
    StageStatus.BLOCKED: "⏳",
}

PIPELINE_ICONS = {
    PipelineStatus.SUCCESS: "✅",
    PipelineStatus.FAILED: "❌",
    PipelineStatus.BLOCKED: "⏸️",
    PipelineStatus.CANCELED: "🚫",
    PipelineStatus.SKIPPED: "⏭️",
}


@dataclass
class StageReportEntry:
    """Report entry for a single stage."""

    name: str
    phase: str
    status: StageStatus
    allow_failure: bool = False
    decision: str = ""
    duration_ms: int = 0
    exit_code: Optional[int] = None
    message: str = ""
    cache: str = ""
    artifacts: list[str] = field(default_factory=list)
    log_tail: str = ""


@dataclass
class PipelineReport:
    """Complete pipeline run report."""

    # Metadata
    run_id: str
    pipeline_name: str
    event: PipelineEvent
    started_at: datetime
    ended_at: datetime

    # Summary
    status: PipelineStatus = PipelineStatus.PENDING
    total_stages: int = 0
    succeeded: int = 0
    failed: int = 0
    total_duration_ms: int = 0
    exported_paths: list[str] = field(default_factory=list)

    # Stage details, in phase order
    stages: list[StageReportEntry] = field(default_factory=list)


class PipelineReportWriter:
    """Generates and writes pipeline run reports.

    Collects stage results during the run and writes a markdown report
    at completion.

    Example:
        >>> writer = PipelineReportWriter(run_id, "ci", event, report_dir=".buildflow/reports")
        >>> writer.record_stage(stage_result, decision="run [rule #0]")
        >>> report_path = writer.finalize(result)
    """

    def __init__(
        self,
        run_id: str,
        pipeline_name: str,
        event: PipelineEvent,
        *,
        report_dir: Union[str, Path] = ".buildflow/reports",
        log_tail_lines: int = 20,
    ):
        """Initialize report writer.

        Args:
            run_id: Pipeline run identifier
            pipeline_name: Definition name
            event: Event that created the run
            report_dir: Directory for reports
            log_tail_lines: Lines of output kept for failed stages
        """
        self.run_id = run_id
        self.pipeline_name = pipeline_name
        self.event = event
        self.report_dir = Path(report_dir)
        self.log_tail_lines = log_tail_lines

        self.started_at = utc_now()
        self.stages: list[StageReportEntry] = []

    def record_stage(self, result: StageResult, *, decision: str = "") -> None:
        """Record a finished stage.

        Args:
            result: Stage result
            decision: Human readable trigger decision
        """
        cache = ""
        if result.cache_key:
            parts = ["hit" if result.cache_hit else "miss"]
            if result.cache_saved:
                parts.append("saved")
            cache = f"`{result.cache_key}` ({', '.join(parts)})"

        log_tail = ""
        if result.status == StageStatus.FAILED and result.log:
            log_tail = "\n".join(result.log.rstrip("\n").splitlines()[-self.log_tail_lines:])

        self.stages.append(
            StageReportEntry(
                name=result.stage_name,
                phase=result.phase,
                status=result.status,
                allow_failure=result.allow_failure,
                decision=decision,
                duration_ms=result.duration_ms,
                exit_code=result.exit_code,
                message=result.message,
                cache=cache,
                artifacts=list(result.artifact.paths) if result.artifact else [],
                log_tail=log_tail,
            )
        )

    def finalize(self, result: PipelineResult) -> Optional[Path]:
        """Generate and write the final report.

        Returns:
            Path to generated report file, or None on failure
        """
        report = PipelineReport(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            event=self.event,
            started_at=self.started_at,
            ended_at=utc_now(),
            status=result.status,
            total_stages=len(self.stages),
            succeeded=sum(1 for s in self.stages if s.status == StageStatus.SUCCESS),
            failed=sum(1 for s in self.stages if s.status == StageStatus.FAILED),
            total_duration_ms=result.total_duration_ms,
            exported_paths=list(result.exported_paths),
            stages=self.stages,
        )

        markdown = self._generate_markdown(report)

        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            report_path = self.report_dir / f"buildflow-{self.run_id}.md"
            report_path.write_text(markdown, encoding="utf-8")
            logger.info(f"Pipeline report saved: {report_path}")
            return report_path

        except OSError as e:
            logger.error(f"Failed to write report: {e}")
            return None

    def _generate_markdown(self, report: PipelineReport) -> str:
        """Generate markdown report content."""
        lines = []

        # Header
        lines.append(f"# Buildflow Pipeline Report: {report.pipeline_name}")
        lines.append("")
        lines.append(f"**Run:** `{report.run_id}`  ")
        lines.append(f"**Generated:** {report.ended_at.strftime('%Y-%m-%d %H:%M:%S %Z')}")
        lines.append("")

        # Status banner
        icon = PIPELINE_ICONS.get(report.status, "⚪")
        lines.append(f"## {icon} Status: {report.status.value.upper()}")
        lines.append("")

        # Summary table
        event = report.event
        lines.append("## Summary")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Source | `{event.source.ci_value}` |")
        lines.append(f"| Branch | `{event.branch}`{' (protected)' if event.is_protected else ''} |")
        lines.append(f"| Actor trust | {event.actor_trust.value} |")
        if event.merge_request_id:
            lines.append(f"| Merge request | !{event.merge_request_id} |")
        if event.commit_sha:
            lines.append(f"| Commit | `{event.commit_sha[:12]}` |")
        lines.append(f"| Duration | {report.total_duration_ms / 1000:.1f}s |")
        lines.append(f"| Stages | {report.succeeded}/{report.total_stages} succeeded, {report.failed} failed |")
        lines.append("")

        # Stage table per phase
        lines.append("## Stages")
        lines.append("")
        current_phase = None
        for stage in report.stages:
            if stage.phase != current_phase:
                if current_phase is not None:
                    lines.append("")
                current_phase = stage.phase
                lines.append(f"### Phase: {stage.phase}")
                lines.append("")
                lines.append("| Stage | Status | Decision | Duration | Cache |")
                lines.append("|-------|--------|----------|----------|-------|")
            status = f"{STATUS_ICONS.get(stage.status, '⚪')} {stage.status.value}"
            if stage.allow_failure and stage.status == StageStatus.FAILED:
                status += " (allowed)"
            lines.append(
                f"| {stage.name} | {status} | {stage.decision or '-'} | "
                f"{stage.duration_ms}ms | {stage.cache or '-'} |"
            )
        lines.append("")

        # Failures
        failures = [s for s in report.stages if s.status in (StageStatus.FAILED, StageStatus.ABORTED)]
        if failures:
            lines.append("## Failures")
            lines.append("")
            for stage in failures:
                lines.append(f"### {STATUS_ICONS[stage.status]} {stage.name}")
                lines.append("")
                if stage.message:
                    lines.append(f"**Error:** {stage.message}")
                    lines.append("")
                if stage.log_tail:
                    lines.append("**Output (tail):**")
                    lines.append("```")
                    lines.append(stage.log_tail)
                    lines.append("```")
                    lines.append("")

        # Artifacts
        published = [s for s in report.stages if s.artifacts]
        if published or report.exported_paths:
            lines.append("## Artifacts")
            lines.append("")
            for stage in published:
                lines.append(f"- **{stage.name}:** {', '.join(f'`{p}`' for p in stage.artifacts)}")
            if report.exported_paths:
                lines.append(f"- **Exported:** {', '.join(f'`{p}`' for p in report.exported_paths)}")
            lines.append("")

        # Footer
        lines.append("---")
        lines.append("*Report generated by buildflow*")
        lines.append(
            f"*Execution: {report.started_at.strftime('%H:%M:%S')} → {report.ended_at.strftime('%H:%M:%S')}*"
        )

        return "\n".join(lines)


__all__ = [
    "StageReportEntry",
    "PipelineReport",
    "PipelineReportWriter",
]
