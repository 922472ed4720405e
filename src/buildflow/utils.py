"""Small helpers shared across buildflow modules."""

from __future__ import annotations

import hashlib
import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Union

_DURATION_UNITS = {
    "s": 1,
    "sec": 1,
    "second": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "d": 86400,
    "day": 86400,
    "w": 604800,
    "wk": 604800,
    "week": 604800,
    "mo": 2592000,
    "month": 2592000,
    "y": 31536000,
    "yr": 31536000,
    "year": 31536000,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def parse_duration(value: Union[str, int, float, timedelta, None]) -> Optional[timedelta]:
    """Parse a human duration such as ``"1 week"``, ``"2h 30m"`` or ``"30 days"``.

    Numbers are seconds. ``"never"`` and ``None`` return None (no expiry).

    Raises:
        ValueError: If the string has no recognizable duration parts
    """
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip().lower()
    if text in ("never", "none", ""):
        return None
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return timedelta(seconds=float(text))

    total = 0.0
    consumed = 0
    for match in _DURATION_PART.finditer(text):
        amount, unit = match.groups()
        unit_key = unit.rstrip("s") if unit not in _DURATION_UNITS else unit
        if unit_key not in _DURATION_UNITS:
            raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
        total += float(amount) * _DURATION_UNITS[unit_key]
        consumed += 1
    if not consumed:
        raise ValueError(f"Invalid duration: {value!r}")
    return timedelta(seconds=total)


def slugify(value: str, max_length: int = 63) -> str:
    """Lowercase, replace anything outside [a-z0-9] with '-', trim dashes."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def file_digest(path: Path, chunk_size: int = 65536) -> str:
    """sha256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def text_digest(value: str) -> str:
    """sha256 hex digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# =============================================================================
# Path helpers (cache and artifact copies)
# =============================================================================


def check_relative(path: str) -> str:
    """Normalize a declared path and reject anything escaping the working dir.

    Raises:
        ValueError: For absolute paths or paths climbing out with '..'
    """
    pure = PurePosixPath(path.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Path must stay inside the working directory: {path!r}")
    normalized = str(pure)
    if normalized in ("", "."):
        raise ValueError(f"Path must name something inside the working directory: {path!r}")
    return normalized


def expand_paths(root: Path, patterns: Iterable[str]) -> list[str]:
    """Existing relative paths under root matching the declared patterns.

    Plain entries are kept when they exist; entries with glob characters are
    expanded. Order follows the declaration, duplicates dropped.
    """
    found: dict[str, None] = {}
    for pattern in patterns:
        normalized = check_relative(pattern)
        if any(ch in normalized for ch in "*?["):
            for match in sorted(root.glob(normalized)):
                found[match.relative_to(root).as_posix()] = None
        elif (root / normalized).exists() or (root / normalized).is_symlink():
            found[normalized] = None
    return list(found)


def copy_path(src_root: Path, relative: str, dest_root: Path, *, dereference: bool = False) -> int:
    """Copy root-relative file or directory into dest_root at the same relative path.

    Existing files at the destination are overwritten; directories merge.

    Returns:
        Number of bytes copied
    """
    src = src_root / relative
    dest = dest_root / relative
    dest.parent.mkdir(parents=True, exist_ok=True)

    if src.is_dir() and (dereference or not src.is_symlink()):
        shutil.copytree(src, dest, symlinks=not dereference, dirs_exist_ok=True)
        return sum(p.stat().st_size for p in dest.rglob("*") if p.is_file() and not p.is_symlink())

    if dest.is_dir() and not dest.is_symlink():
        shutil.rmtree(dest)
    elif dest.exists() or dest.is_symlink():
        dest.unlink()
    shutil.copy2(src, dest, follow_symlinks=dereference)
    return 0 if dest.is_symlink() else dest.stat().st_size


__all__ = [
    "utc_now",
    "parse_duration",
    "slugify",
    "file_digest",
    "text_digest",
    "check_relative",
    "expand_paths",
    "copy_path",
]
