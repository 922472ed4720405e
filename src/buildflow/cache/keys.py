"""Cache key resolution.

A declared cache key is a template. Resolution turns it into a stable
identifier for the store:

    key: "$TOOLCHAIN-$TARGET"          -> "nightly-x86_64-linux-musl"
    key: {files: [Cargo.lock], prefix: "cargo"} -> "cargo-<sha256 of Cargo.lock>[:16]"
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Mapping, Union

from ..types.models import CacheSpec
from ..utils import file_digest

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def expand_variables(template: str, variables: Mapping[str, str]) -> str:
    """Expand ``$VAR`` and ``${VAR}``; undefined variables expand to ''."""

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        return variables.get(name, "")

    return _VAR_RE.sub(_sub, template)


def sanitize_key(key: str) -> str:
    """Reduce a key to ``[A-Za-z0-9._-]``; degenerate keys become 'default'."""
    cleaned = _UNSAFE_RE.sub("-", key.strip()).strip("-")
    if cleaned in ("", ".", ".."):
        return DEFAULT_KEY
    return cleaned


def files_digest(files: tuple[str, ...], workdir: Union[str, Path]) -> str:
    """Combined digest of the named files; empty string if none exist."""
    root = Path(workdir)
    combined = hashlib.sha256()
    found = 0
    for name in files:
        path = root / name
        if not path.is_file():
            logger.debug(f"Cache key file missing: {path}")
            continue
        combined.update(name.encode("utf-8"))
        combined.update(b"\0")
        combined.update(file_digest(path).encode("ascii"))
        found += 1
    return combined.hexdigest() if found else ""


def resolve_cache_key(
    spec: CacheSpec,
    variables: Mapping[str, str],
    workdir: Union[str, Path],
) -> str:
    """Resolve a stage's declared cache key into a store key."""
    if spec.key_files:
        digest = files_digest(spec.key_files, workdir)
        prefix = expand_variables(spec.prefix, variables) if spec.prefix else ""
        if not digest:
            # Same fallback as a literal key when none of the files exist
            return sanitize_key(f"{prefix}-{DEFAULT_KEY}" if prefix else DEFAULT_KEY)
        return sanitize_key(f"{prefix}-{digest[:16]}" if prefix else digest[:16])

    return sanitize_key(expand_variables(spec.key, variables))


__all__ = [
    "DEFAULT_KEY",
    "expand_variables",
    "sanitize_key",
    "files_digest",
    "resolve_cache_key",
]
