"""Pipeline definition format.

Loads a GitLab-CI-style YAML file into Stage objects:

    stages: [ci, artifacts, publish]
    variables: {TERM: ansi}
    before_script: [...]
    workflow:
      rules:
        - if: $CI_PIPELINE_SOURCE == "merge_request_event"
        - if: $CI_COMMIT_BRANCH && $CI_OPEN_MERGE_REQUESTS
          when: never
        - if: $CI
    ci:
      stage: ci
      script: [...]
      cache: {key: nix, paths: [target, .gitlab-ci.d]}
      rules: [...]
      interruptible: true

Every top-level mapping key that is not reserved is a job. Jobs whose name
starts with '.' are hidden and ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from ..triggers.conditions import Always, branch_filter, when
from ..types.enums import CachePolicy, RuleOutcome
from ..types.exceptions import DefinitionError, RuleSyntaxError, StageNotFoundError
from ..types.models import CacheSpec, Stage, TriggerRule
from ..utils import check_relative, parse_duration

logger = logging.getLogger(__name__)

RESERVED_KEYS = frozenset(
    {"stages", "variables", "before_script", "workflow", "default", "include", "image", "services", "name"}
)

JOB_KEYS = frozenset(
    {
        "stage",
        "script",
        "before_script",
        "variables",
        "cache",
        "artifacts",
        "rules",
        "only",
        "except",
        "dependencies",
        "interruptible",
        "allow_failure",
        "timeout",
    }
)

# Accepted for compatibility with existing CI files; no effect on local runs
IGNORED_JOB_KEYS = frozenset({"image", "services", "tags", "retry", "after_script", "environment", "needs"})

DEFAULT_PHASES = ("build", "test", "deploy")
DEFAULT_JOB_PHASE = "test"


def _as_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_str_list(value: Any, job: Optional[str], key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise DefinitionError(f"'{key}' must be a string or a list", job=job)
    return tuple(_as_str(item) for item in value)


def _variables(value: Any, job: Optional[str]) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError("'variables' must be a mapping", job=job)
    variables = {}
    for name, raw in value.items():
        # Extended form {value: ..., description: ...}
        if isinstance(raw, dict):
            raw = raw.get("value", "")
        variables[str(name)] = _as_str(raw)
    return variables


def _seconds(value: Any, job: Optional[str], key: str) -> Optional[float]:
    try:
        duration = parse_duration(value)
    except ValueError as e:
        raise DefinitionError(f"Invalid '{key}': {e}", job=job) from e
    return duration.total_seconds() if duration is not None else None


@dataclass
class PipelineDefinition:
    """A loaded pipeline definition.

    Attributes:
        name: Definition name (file stem when loaded from YAML)
        phases: Declared phase order
        stages: Jobs in declaration order
        variables: Pipeline-level variables
        before_script: Pipeline-level before_script
        workflow_rules: Rules deciding whether a pipeline is created
    """

    name: str
    phases: list[str]
    stages: list[Stage] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    before_script: tuple[str, ...] = ()
    workflow_rules: tuple[TriggerRule, ...] = ()

    def __post_init__(self) -> None:
        self.validate()

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> PipelineDefinition:
        """Load definition from a YAML file.

        Raises:
            DefinitionError: On malformed YAML or invalid definitions
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML in {path}: {e}") from e
        except OSError as e:
            raise DefinitionError(f"Cannot read {path}: {e}") from e

        if not isinstance(data, dict):
            raise DefinitionError(f"{path} must contain a mapping at the top level")
        data.setdefault("name", path.stem.lstrip("."))
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PipelineDefinition:
        """Create from a parsed mapping."""
        phases = list(_as_str_list(data.get("stages"), None, "stages")) or list(DEFAULT_PHASES)
        variables = _variables(data.get("variables"), None)
        before_script = _as_str_list(data.get("before_script"), None, "before_script")

        defaults = data.get("default") or {}
        if not isinstance(defaults, dict):
            raise DefinitionError("'default' must be a mapping")
        if "before_script" in defaults and not before_script:
            before_script = _as_str_list(defaults["before_script"], None, "before_script")

        workflow = data.get("workflow") or {}
        if not isinstance(workflow, dict):
            raise DefinitionError("'workflow' must be a mapping")
        workflow_rules = _parse_rules(workflow.get("rules"), variables, None)

        stages = []
        for job_name, job in data.items():
            job_name = str(job_name)
            if job_name in RESERVED_KEYS:
                continue
            if job_name.startswith("."):
                logger.debug(f"Ignoring hidden job {job_name}")
                continue
            if not isinstance(job, dict):
                raise DefinitionError("Job definition must be a mapping", job=job_name)
            stages.append(_parse_job(job_name, {**defaults, **job}, variables))

        return cls(
            name=str(data.get("name", "pipeline")),
            phases=phases,
            stages=stages,
            variables=variables,
            before_script=before_script,
            workflow_rules=workflow_rules,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def validate(self) -> None:
        """Check phase references, name uniqueness and dependencies.

        Raises:
            DefinitionError: On the first problem found
        """
        if len(set(self.phases)) != len(self.phases):
            raise DefinitionError(f"Duplicate entries in stages: {self.phases}")

        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise DefinitionError("Duplicate job name", job=stage.name)
            seen.add(stage.name)
            if stage.phase not in self.phases:
                raise DefinitionError(
                    f"Stage '{stage.phase}' is not declared in stages {self.phases}", job=stage.name
                )

        order = {phase: index for index, phase in enumerate(self.phases)}
        by_name = {stage.name: stage for stage in self.stages}
        for stage in self.stages:
            for dependency in stage.dependencies or ():
                upstream = by_name.get(dependency)
                if upstream is None:
                    raise DefinitionError(f"Unknown dependency '{dependency}'", job=stage.name)
                if order[upstream.phase] >= order[stage.phase]:
                    raise DefinitionError(
                        f"Dependency '{dependency}' must belong to an earlier stage", job=stage.name
                    )

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise StageNotFoundError(name)

    def stages_in(self, phase: str) -> list[Stage]:
        return [stage for stage in self.stages if stage.phase == phase]

    def to_dict(self) -> dict:
        """Serialize back to the YAML mapping form."""
        data: dict[str, Any] = {"stages": list(self.phases)}
        if self.variables:
            data["variables"] = dict(self.variables)
        if self.before_script:
            data["before_script"] = list(self.before_script)
        if self.workflow_rules:
            data["workflow"] = {"rules": [r.to_dict() for r in self.workflow_rules]}
        for stage in self.stages:
            data[stage.name] = _job_to_dict(stage)
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


# =============================================================================
# Job parsing
# =============================================================================


def _parse_rules(value: Any, variables: Mapping[str, str], job: Optional[str]) -> tuple[TriggerRule, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise DefinitionError("'rules' must be a list", job=job)

    rules = []
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise DefinitionError(f"Rule #{index} must be a mapping", job=job)
        unknown = set(entry) - {"if", "when", "allow_failure"}
        if unknown:
            raise DefinitionError(f"Rule #{index} has unknown keys {sorted(unknown)}", job=job)

        if "if" in entry:
            try:
                condition = when(str(entry["if"]), defaults=variables)
            except RuleSyntaxError as e:
                raise RuleSyntaxError(e.expression, e.position, e.reason, job=job or "") from None
        else:
            condition = Always()

        try:
            outcome = RuleOutcome.from_when(entry.get("when"))
        except ValueError as e:
            raise DefinitionError(f"Rule #{index} has invalid when: {entry.get('when')!r}", job=job) from e

        allow_failure = entry.get("allow_failure")
        if allow_failure is not None and not isinstance(allow_failure, bool):
            raise DefinitionError(f"Rule #{index} allow_failure must be a boolean", job=job)
        rules.append(TriggerRule(condition=condition, outcome=outcome, allow_failure=allow_failure))
    return tuple(rules)


def _parse_cache(value: Any, job: str) -> Optional[CacheSpec]:
    if value is None:
        return None
    if isinstance(value, list):
        if len(value) != 1:
            raise DefinitionError("Only a single cache per job is supported", job=job)
        value = value[0]
    if not isinstance(value, dict):
        raise DefinitionError("'cache' must be a mapping", job=job)

    paths = tuple(check_relative(p) for p in _as_str_list(value.get("paths"), job, "cache.paths"))
    try:
        policy = CachePolicy(str(value.get("policy", "pull-push")))
    except ValueError as e:
        raise DefinitionError(f"Invalid cache policy {value.get('policy')!r}", job=job) from e

    key = value.get("key", "default")
    if isinstance(key, dict):
        files = _as_str_list(key.get("files"), job, "cache.key.files")
        if not files:
            raise DefinitionError("cache.key.files must list at least one file", job=job)
        return CacheSpec(
            key="default",
            paths=paths,
            key_files=files,
            prefix=_as_str(key.get("prefix", "")),
            policy=policy,
        )
    return CacheSpec(key=_as_str(key), paths=paths, policy=policy)


def _parse_job(name: str, job: Mapping[str, Any], global_variables: Mapping[str, str]) -> Stage:
    unknown = set(job) - JOB_KEYS - IGNORED_JOB_KEYS
    if unknown:
        raise DefinitionError(f"Unknown keys {sorted(unknown)}", job=name)
    ignored = set(job) & IGNORED_JOB_KEYS
    if ignored:
        logger.debug(f"Job {name}: ignoring {sorted(ignored)}")

    script = _as_str_list(job.get("script"), name, "script")
    if not script:
        raise DefinitionError("'script' is required", job=name)

    variables = _variables(job.get("variables"), name)
    rule_variables = {**global_variables, **variables}

    if "rules" in job and ("only" in job or "except" in job):
        raise DefinitionError("'rules' cannot be combined with 'only'/'except'", job=name)
    if "rules" in job:
        rules = _parse_rules(job["rules"], rule_variables, name)
    elif "only" in job or "except" in job:
        try:
            condition = branch_filter(
                _as_str_list(job.get("only"), name, "only"),
                _as_str_list(job.get("except"), name, "except"),
            )
        except ValueError as e:
            raise DefinitionError(str(e), job=name) from e
        rules = (TriggerRule(condition=condition, outcome=RuleOutcome.RUN),)
    else:
        rules = (TriggerRule(condition=Always(), outcome=RuleOutcome.RUN),)

    artifacts = job.get("artifacts") or {}
    if not isinstance(artifacts, dict):
        raise DefinitionError("'artifacts' must be a mapping", job=name)
    try:
        artifact_paths = tuple(
            check_relative(p) for p in _as_str_list(artifacts.get("paths"), name, "artifacts.paths")
        )
        artifact_expiry = parse_duration(artifacts.get("expire_in"))
    except ValueError as e:
        raise DefinitionError(f"Invalid artifacts: {e}", job=name) from e

    dependencies = job.get("dependencies")
    allow_failure = job.get("allow_failure", False)
    if isinstance(allow_failure, dict):
        # allow_failure: {exit_codes: [...]} still means failure is tolerated
        allow_failure = True
    interruptible = job.get("interruptible", False)
    for key, value in (("allow_failure", allow_failure), ("interruptible", interruptible)):
        if not isinstance(value, bool):
            raise DefinitionError(f"'{key}' must be a boolean, got {value!r}", job=name)

    try:
        return Stage(
            name=name,
            phase=_as_str(job.get("stage", DEFAULT_JOB_PHASE)),
            command_sequence=script,
            cache=_parse_cache(job.get("cache"), name),
            artifact_paths=artifact_paths,
            rules=rules,
            interruptible=interruptible,
            allow_failure=allow_failure,
            dependencies=None if dependencies is None else _as_str_list(dependencies, name, "dependencies"),
            variables=variables,
            before_script=(
                _as_str_list(job["before_script"], name, "before_script") if "before_script" in job else None
            ),
            timeout=_seconds(job.get("timeout"), name, "timeout"),
            artifact_expiry=artifact_expiry,
        )
    except (TypeError, ValueError) as e:
        raise DefinitionError(str(e), job=name) from e


def _job_to_dict(stage: Stage) -> dict:
    job: dict[str, Any] = {"stage": stage.phase, "script": list(stage.command_sequence)}
    if stage.before_script is not None:
        job["before_script"] = list(stage.before_script)
    if stage.variables:
        job["variables"] = dict(stage.variables)
    if stage.cache is not None:
        cache: dict[str, Any] = {"paths": list(stage.cache.paths)}
        if stage.cache.key_files:
            key: dict[str, Any] = {"files": list(stage.cache.key_files)}
            if stage.cache.prefix:
                key["prefix"] = stage.cache.prefix
            cache["key"] = key
        else:
            cache["key"] = stage.cache.key
        if stage.cache.policy != CachePolicy.PULL_PUSH:
            cache["policy"] = stage.cache.policy.value
        job["cache"] = cache
    if stage.artifact_paths:
        artifacts: dict[str, Any] = {"paths": list(stage.artifact_paths)}
        if stage.artifact_expiry is not None:
            artifacts["expire_in"] = f"{int(stage.artifact_expiry.total_seconds())} seconds"
        job["artifacts"] = artifacts
    job["rules"] = [rule.to_dict() for rule in stage.rules]
    if stage.dependencies is not None:
        job["dependencies"] = list(stage.dependencies)
    if stage.interruptible:
        job["interruptible"] = True
    if stage.allow_failure:
        job["allow_failure"] = True
    if stage.timeout is not None:
        job["timeout"] = f"{int(stage.timeout)} seconds"
    return job


__all__ = [
    "PipelineDefinition",
    "DEFAULT_PHASES",
    "RESERVED_KEYS",
    "JOB_KEYS",
]
