"""Buildflow Configuration.

This module defines the BuildflowConfig class and preset configurations.

Sources, lowest to highest precedence:
    1. Dataclass defaults
    2. YAML config file (BuildflowConfig.from_yaml)
    3. BUILDFLOW_* environment variables (with_env)
    4. key=value overrides (with_overrides, the CLI -O flag)
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

import yaml

from .types.exceptions import InvalidConfigError
from .utils import parse_duration

logger = logging.getLogger(__name__)

ENV_PREFIX = "BUILDFLOW_"


@dataclass(frozen=True)
class BuildflowConfig:
    """Orchestrator configuration.

    Attributes:
        work_root: Root of per-run isolated working directories
        cache_dir: Local cache store root
        artifacts_dir: Per-run artifact storage root
        output_dir: Stable directory receiving exported terminal artifacts
        report_dir: Directory for markdown run reports
        max_parallel_stages: Concurrent stages within one phase
        default_timeout: Stage timeout in seconds when the stage sets none
        default_artifact_expiry: Artifact retention when the stage sets none
        isolate_workdirs: Copy the source tree per stage (False = run in place)
        remote_cache_url: Use an HTTP cache server instead of cache_dir
        remote_cache_timeout: Remote cache request timeout in seconds
        remote_cache_retries: Retries on remote cache transport errors
        wait_for_manual: Wait for confirmation of blocking manual stages
            instead of ending the run BLOCKED
        report_enabled: Write a markdown report per run

    Example:
        >>> config = BuildflowConfig.from_yaml("buildflow.yml").with_env()
        >>> config = config.with_overrides(["max_parallel_stages=2"])
    """

    work_root: Path = Path(".buildflow/work")
    cache_dir: Path = Path(".buildflow/cache")
    artifacts_dir: Path = Path(".buildflow/artifacts")
    output_dir: Path = Path(".buildflow/public")
    report_dir: Path = Path(".buildflow/reports")
    max_parallel_stages: int = 4
    default_timeout: float = 3600.0
    default_artifact_expiry: Optional[timedelta] = field(default_factory=lambda: timedelta(days=30))
    isolate_workdirs: bool = True
    remote_cache_url: Optional[str] = None
    remote_cache_timeout: float = 30.0
    remote_cache_retries: int = 2
    wait_for_manual: bool = False
    report_enabled: bool = True

    def __post_init__(self) -> None:
        if self.max_parallel_stages < 1:
            raise InvalidConfigError("max_parallel_stages must be >= 1")
        if self.default_timeout <= 0:
            raise InvalidConfigError("default_timeout must be > 0")
        if self.remote_cache_timeout <= 0:
            raise InvalidConfigError("remote_cache_timeout must be > 0")
        if self.remote_cache_retries < 0:
            raise InvalidConfigError("remote_cache_retries must be >= 0")

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def from_yaml(cls, path: Union[str, Path], base: Optional[BuildflowConfig] = None) -> BuildflowConfig:
        """Load configuration from a YAML mapping.

        Raises:
            InvalidConfigError: On unreadable files, unknown keys or bad values
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InvalidConfigError(f"cannot load {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidConfigError(f"{path} must contain a mapping")
        return (base or cls()).with_values(data)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> BuildflowConfig:
        """Apply BUILDFLOW_<FIELD> environment variables.

        Unrelated BUILDFLOW_* variables are ignored.
        """
        env = os.environ if environ is None else environ
        known = {f.name for f in fields(self)}
        values = {}
        for name, raw in env.items():
            if not name.startswith(ENV_PREFIX):
                continue
            key = name[len(ENV_PREFIX):].lower()
            if key in known:
                values[key] = _parse_scalar(raw)
            else:
                logger.debug(f"Ignoring environment variable {name}")
        return self.with_values(values) if values else self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> BuildflowConfig:
        """Defaults plus BUILDFLOW_* environment variables."""
        return cls().with_env(environ)

    def with_overrides(self, overrides: Iterable[str]) -> BuildflowConfig:
        """Apply ``key=value`` strings; values are parsed as YAML scalars.

        Raises:
            InvalidConfigError: On malformed pairs or unknown keys
        """
        values = {}
        for item in overrides:
            key, sep, raw = item.partition("=")
            if not sep or not key.strip():
                raise InvalidConfigError(f"override must be key=value, got {item!r}")
            values[key.strip().replace("-", "_")] = _parse_scalar(raw)
        return self.with_values(values) if values else self

    def with_values(self, values: Mapping[str, Any]) -> BuildflowConfig:
        """Return a new config with the given field values coerced and applied."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidConfigError(f"unknown keys {unknown}")
        coerced = {key: _coerce(key, value) for key, value in values.items()}
        return replace(self, **coerced)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        overrides: Iterable[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ) -> BuildflowConfig:
        """Resolve configuration from every source in precedence order."""
        config = cls.from_yaml(config_file) if config_file else cls()
        return config.with_env(environ).with_overrides(overrides)

    # =========================================================================
    # Copy helpers
    # =========================================================================

    def with_root(self, root: Union[str, Path]) -> BuildflowConfig:
        """Return a new config with every state directory under root."""
        root = Path(root)
        return replace(
            self,
            work_root=root / "work",
            cache_dir=root / "cache",
            artifacts_dir=root / "artifacts",
            output_dir=root / "public",
            report_dir=root / "reports",
        )

    def with_parallelism(self, max_parallel_stages: int) -> BuildflowConfig:
        """Return a new config with a different concurrency bound."""
        return replace(self, max_parallel_stages=max_parallel_stages)

    def with_remote_cache(self, url: Optional[str]) -> BuildflowConfig:
        """Return a new config using (or, with None, not using) a remote cache."""
        return replace(self, remote_cache_url=url)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
            elif isinstance(value, timedelta):
                data[key] = f"{int(value.total_seconds())} seconds"
        return data


# =============================================================================
# Coercion
# =============================================================================

_PATH_FIELDS = {"work_root", "cache_dir", "artifacts_dir", "output_dir", "report_dir"}
_INT_FIELDS = {"max_parallel_stages", "remote_cache_retries"}
_FLOAT_FIELDS = {"remote_cache_timeout"}
_BOOL_FIELDS = {"isolate_workdirs", "wait_for_manual", "report_enabled"}
_DURATION_FIELDS = {"default_timeout"}
_EXPIRY_FIELDS = {"default_artifact_expiry"}
_OPTIONAL_STR_FIELDS = {"remote_cache_url"}

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def _parse_scalar(raw: str) -> Any:
    try:
        return yaml.safe_load(raw) if raw.strip() else ""
    except yaml.YAMLError:
        return raw


def _coerce(key: str, value: Any) -> Any:
    try:
        if key in _PATH_FIELDS:
            if value in (None, ""):
                raise ValueError("path must not be empty")
            return Path(str(value))
        if key in _INT_FIELDS:
            if isinstance(value, bool):
                raise ValueError("expected an integer")
            return int(value)
        if key in _FLOAT_FIELDS:
            if isinstance(value, bool):
                raise ValueError("expected a number")
            return float(value)
        if key in _BOOL_FIELDS:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError("expected a boolean")
        if key in _DURATION_FIELDS:
            duration = parse_duration(value)
            if duration is None:
                raise ValueError("a timeout is required")
            return duration.total_seconds()
        if key in _EXPIRY_FIELDS:
            return parse_duration(value)
        if key in _OPTIONAL_STR_FIELDS:
            return None if value in (None, "") else str(value)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"{key}: {e} (got {value!r})") from e
    return value


# =============================================================================
# Preset Configurations
# =============================================================================

DEFAULT_CONFIG = BuildflowConfig()

# Developer machine: run in place, one stage at a time, no reports
LOCAL_CONFIG = BuildflowConfig(
    isolate_workdirs=False,
    max_parallel_stages=1,
    report_enabled=False,
)

# CI runner: isolated copies, wait for manual gates driven by the API
CI_CONFIG = BuildflowConfig(
    isolate_workdirs=True,
    max_parallel_stages=8,
    wait_for_manual=True,
)


__all__ = [
    "BuildflowConfig",
    "DEFAULT_CONFIG",
    "LOCAL_CONFIG",
    "CI_CONFIG",
    "ENV_PREFIX",
]
