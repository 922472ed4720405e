"""Command-line interface.

Usage:
    buildflow run -f .gitlab-ci.yml --source push --branch main --protected
    buildflow plan -f .gitlab-ci.yml --from-env
    buildflow cache list
    buildflow cache prune --max-entries 50

Exit codes of ``run``: 0 success (or no pipeline created), 1 failed,
2 blocked on a manual stage, 3 canceled, 4 invalid definition/configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from . import __version__
from .cache.store import LocalCacheStore
from .config import BuildflowConfig
from .pipeline.definition import PipelineDefinition
from .pipeline.orchestrator import PipelineOrchestrator
from .pipeline.run import PipelineRun
from .types.enums import ActorTrust, EventSource, PipelineStatus, StageStatus
from .types.exceptions import BuildflowError, StageNotFoundError
from .types.models import PipelineEvent

logger = logging.getLogger(__name__)

DEFAULT_DEFINITION = ".gitlab-ci.yml"

EXIT_CODES = {
    PipelineStatus.SUCCESS: 0,
    PipelineStatus.SKIPPED: 0,
    PipelineStatus.FAILED: 1,
    PipelineStatus.BLOCKED: 2,
    PipelineStatus.CANCELED: 3,
}
EXIT_INVALID = 4


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="buildflow",
        description="Build-and-release pipeline orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-c", "--config", type=Path, help="YAML config file")
    parser.add_argument(
        "-O",
        "--option",
        dest="options",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Config override (repeatable)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a pipeline")
    _add_definition_args(run_parser)
    _add_event_args(run_parser)
    run_parser.add_argument(
        "--confirm",
        action="append",
        default=[],
        metavar="STAGE",
        help="Confirm a manual stage up front (repeatable)",
    )
    run_parser.add_argument(
        "--wait-manual",
        action="store_true",
        help="Wait at blocking manual stages; confirm by typing stage names on stdin",
    )
    run_parser.add_argument("--source-dir", type=Path, default=None, help="Source tree (default: cwd)")
    run_parser.add_argument("--run-id", default=None, help="Explicit run identifier")
    run_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    plan_parser = subparsers.add_parser("plan", help="Show trigger decisions without executing")
    _add_definition_args(plan_parser)
    _add_event_args(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    cache_parser = subparsers.add_parser("cache", help="Local cache maintenance")
    cache_sub = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_sub.add_parser("list", help="List cache entries")
    prune_parser = cache_sub.add_parser("prune", help="Evict least recently used entries")
    prune_parser.add_argument("--max-entries", type=int, default=0, help="Entries to keep (default: 0)")
    delete_parser = cache_sub.add_parser("delete", help="Delete one entry")
    delete_parser.add_argument("key", help="Resolved cache key")

    return parser


def _add_definition_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-f",
        "--file",
        type=Path,
        default=Path(DEFAULT_DEFINITION),
        help=f"Pipeline definition (default: {DEFAULT_DEFINITION})",
    )


def _add_event_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("event")
    group.add_argument("--from-env", action="store_true", help="Read the event from CI_* variables")
    group.add_argument(
        "--source",
        help="Event source: push, merge_request_event, web, schedule (or branch_push, ...)",
    )
    group.add_argument("--branch", help="Branch the event refers to")
    protected = group.add_mutually_exclusive_group()
    protected.add_argument("--protected", dest="protected", action="store_true", default=None)
    protected.add_argument("--unprotected", dest="protected", action="store_false")
    group.add_argument("--trust", choices=[t.value for t in ActorTrust], help="Actor trust")
    group.add_argument("--merge-request", dest="merge_request_id", help="Merge request id")
    group.add_argument("--commit", dest="commit_sha", help="Commit SHA")
    group.add_argument(
        "--flag",
        dest="flags",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment flag visible to rules (repeatable)",
    )


def event_from_args(args: argparse.Namespace) -> PipelineEvent:
    """Build the event from --from-env and explicit event flags (flags win)."""
    if args.from_env:
        event = PipelineEvent.from_env()
    else:
        event = PipelineEvent(source=EventSource.BRANCH_PUSH, branch="")

    changes = {}
    if args.source:
        changes["source"] = EventSource.from_ci_value(args.source)
    if args.branch is not None:
        changes["branch"] = args.branch
    if args.protected is not None:
        changes["is_protected"] = args.protected
    if args.trust:
        changes["actor_trust"] = ActorTrust(args.trust)
    if args.merge_request_id:
        changes["merge_request_id"] = args.merge_request_id
    if args.commit_sha:
        changes["commit_sha"] = args.commit_sha
    if args.flags:
        flags = dict(event.env_flags)
        for item in args.flags:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise ValueError(f"--flag must be KEY=VALUE, got {item!r}")
            flags[key] = value
        changes["env_flags"] = flags
    return replace(event, **changes) if changes else event


# =============================================================================
# Commands
# =============================================================================


def _confirm_from_stdin(run: PipelineRun, loop: asyncio.AbstractEventLoop) -> None:
    """Read stage names from stdin and confirm them on the run's loop."""

    def _confirm(name: str) -> None:
        try:
            run.confirm(name)
        except StageNotFoundError as e:
            logger.warning(str(e))

    for line in sys.stdin:
        name = line.strip()
        if name:
            loop.call_soon_threadsafe(_confirm, name)


async def _run_pipeline(
    config: BuildflowConfig,
    definition: PipelineDefinition,
    event: PipelineEvent,
    args: argparse.Namespace,
):
    def _print_line(stage_name: str, line: str) -> None:
        if not args.json:
            print(f"[{stage_name}] {line}", flush=True)

    orchestrator = PipelineOrchestrator(config, on_output=_print_line)
    try:
        run = orchestrator.create_run(definition, event, run_id=args.run_id, confirmed=args.confirm)
        if config.wait_for_manual:
            reader = threading.Thread(
                target=_confirm_from_stdin,
                args=(run, asyncio.get_running_loop()),
                daemon=True,
            )
            reader.start()
        return await orchestrator.execute(run, source_dir=args.source_dir)
    finally:
        await orchestrator.close()


def cmd_run(config: BuildflowConfig, args: argparse.Namespace) -> int:
    definition = PipelineDefinition.from_yaml(args.file)
    event = event_from_args(args)
    if args.wait_manual:
        config = replace(config, wait_for_manual=True)

    result = asyncio.run(_run_pipeline(config, definition, event, args))

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return EXIT_CODES.get(result.status, 1)

    print("\n" + "=" * 60)
    print("PIPELINE SUMMARY")
    print("=" * 60)
    print(f"Run ID: {result.run_id}")
    print(f"Status: {result.status.value.upper()}")
    print(f"Duration: {result.total_duration_ms / 1000:.2f}s")
    if result.stages:
        print("\nStages:")
        for stage in result.stages:
            suffix = " (allowed to fail)" if stage.allow_failure and stage.status == StageStatus.FAILED else ""
            print(f"  [{stage.phase}] {stage.stage_name}: {stage.status.value}{suffix}")
            if stage.message and stage.status != StageStatus.SUCCESS:
                print(f"      {stage.message}")
    if result.exported_paths:
        print(f"\nExported to {config.output_dir}: {', '.join(result.exported_paths)}")
    if result.report_path:
        print(f"\nReport: {result.report_path}")
    print("=" * 60)

    return EXIT_CODES.get(result.status, 1)


def cmd_plan(config: BuildflowConfig, args: argparse.Namespace) -> int:
    definition = PipelineDefinition.from_yaml(args.file)
    event = event_from_args(args)
    plan = PipelineOrchestrator(config).plan(definition, event)

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
        return 0

    if not plan.created:
        print("No pipeline: workflow rules do not match this event")
        return 0

    for phase, entries in plan.phases:
        print(f"{phase}:")
        for stage, decision in entries:
            print(f"  {stage.name:<30} {decision.describe()}")
    return 0


def cmd_cache(config: BuildflowConfig, args: argparse.Namespace) -> int:
    store = LocalCacheStore(config.cache_dir)

    if args.cache_command == "list":
        entries = asyncio.run(store.entries())
        if not entries:
            print("Cache is empty")
            return 0
        for entry in entries:
            last_used = entry.last_used_at.isoformat() if entry.last_used_at else "never"
            print(f"{entry.key:<40} {entry.size_bytes:>12} bytes  last used: {last_used}")
        return 0

    if args.cache_command == "prune":
        evicted = asyncio.run(store.prune(args.max_entries))
        print(f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}")
        return 0

    if args.cache_command == "delete":
        if not asyncio.run(store.delete(args.key)):
            print(f"No cache entry for {args.key}", file=sys.stderr)
            return 1
        print(f"Deleted {args.key}")
        return 0

    return 1


COMMANDS = {
    "run": cmd_run,
    "plan": cmd_plan,
    "cache": cmd_cache,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    try:
        config = BuildflowConfig.load(args.config, args.options)
        return COMMANDS[args.command](config, args)
    except (BuildflowError, ValueError) as e:
        print(f"buildflow: {e}", file=sys.stderr)
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
