"""Artifact Propagator.

Hands outputs of successful stages to stages of later phases.

Visibility is batched per phase: artifacts published during phase P are
held back until P is sealed without a required failure, and are only ever
returned to phases after P.

Layout:
    <artifacts_root>/<run_id>/<stage_name>/<declared path>
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from ..types.models import Artifact
from ..utils import copy_path, expand_paths, utc_now

logger = logging.getLogger(__name__)


class ArtifactPropagator:
    """Per-run artifact storage with phase-batched visibility.

    Example:
        >>> propagator = ArtifactPropagator(root, "run-1", ["build", "publish"])
        >>> await propagator.publish(stage, workdir)
        >>> await propagator.seal_phase("build", ok=True)
        >>> artifacts = propagator.fetch("publish", name_filter=["build-linux"])
    """

    def __init__(
        self,
        root: Union[str, Path],
        run_id: str,
        phase_order: Sequence[str],
        default_expiry: Optional[timedelta] = None,
    ):
        self.run_root = Path(root) / run_id
        self.run_id = run_id
        self.phase_order = list(phase_order)
        self.default_expiry = default_expiry
        self._order = {phase: index for index, phase in enumerate(self.phase_order)}
        self._pending: dict[str, list[Artifact]] = {}
        self._visible: list[Artifact] = []

    # =========================================================================
    # Publication
    # =========================================================================

    async def publish(
        self,
        stage_name: str,
        phase: str,
        workdir: Union[str, Path],
        paths: Iterable[str],
        expiry: Optional[timedelta] = None,
    ) -> Optional[Artifact]:
        """Copy a stage's declared artifact paths into run storage.

        Declared paths missing from workdir are logged and left out.
        Symlinks are dereferenced so the stored copy is self-contained.

        Returns:
            The pending Artifact, or None when nothing was found
        """
        workdir = Path(workdir)
        declared = list(paths)
        present = expand_paths(workdir, declared)
        missing = [p for p in declared if p not in present and not any(ch in p for ch in "*?[")]
        for path in missing:
            logger.warning(f"Artifact path missing for {stage_name}: {path}")
        if not present:
            return None

        target = self.run_root / stage_name
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, partial(self._copy_in, workdir, present, target))

        artifact = Artifact(
            stage_name=stage_name,
            phase=phase,
            paths=tuple(present),
            root=target,
            expiry=expiry if expiry is not None else self.default_expiry,
        )
        self._pending.setdefault(phase, []).append(artifact)
        logger.info(f"Artifacts published by {stage_name}: {', '.join(present)}")
        return artifact

    @staticmethod
    def _copy_in(workdir: Path, present: list[str], target: Path) -> None:
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)
        for relative in present:
            copy_path(workdir, relative, target, dereference=True)

    async def seal_phase(self, phase: str, ok: bool = True) -> list[Artifact]:
        """Close a phase. Its artifacts become visible only when ok.

        Returns:
            Artifacts made visible
        """
        pending = self._pending.pop(phase, [])
        if not ok:
            await self._remove([artifact.root for artifact in pending])
            if pending:
                logger.info(f"Phase {phase} failed; dropped {len(pending)} artifact(s)")
            return []
        self._visible.extend(pending)
        return pending

    # =========================================================================
    # Consumption
    # =========================================================================

    def fetch(self, phase: str, name_filter: Optional[Iterable[str]] = None) -> set[Artifact]:
        """Sealed artifacts of phases strictly before phase.

        Args:
            phase: Consumer's phase
            name_filter: Producer stage names to keep (None = all)
        """
        limit = self._order.get(phase, len(self.phase_order))
        names = set(name_filter) if name_filter is not None else None
        now = utc_now()
        return {
            artifact
            for artifact in self._visible
            if self._order.get(artifact.phase, limit) < limit
            and (names is None or artifact.stage_name in names)
            and not artifact.is_expired(now)
        }

    async def materialize(self, artifacts: Iterable[Artifact], workdir: Union[str, Path]) -> list[str]:
        """Copy fetched artifacts into a consumer's working directory.

        Artifacts are applied in phase order, so a later producer wins on
        overlapping paths.
        """
        workdir = Path(workdir)
        ordered = sorted(artifacts, key=lambda a: (self._order.get(a.phase, 0), a.stage_name))
        loop = asyncio.get_running_loop()
        copied: list[str] = []
        for artifact in ordered:
            await loop.run_in_executor(None, partial(self._copy_out, artifact, workdir))
            copied.extend(artifact.paths)
        return list(dict.fromkeys(copied))

    @staticmethod
    def _copy_out(artifact: Artifact, workdir: Path) -> None:
        workdir.mkdir(parents=True, exist_ok=True)
        for relative in artifact.paths:
            copy_path(artifact.root, relative, workdir)

    # =========================================================================
    # Retention
    # =========================================================================

    async def expire(self, now: Optional[datetime] = None) -> list[Artifact]:
        """Discard artifacts whose retention has elapsed."""
        now = now or utc_now()
        expired = [a for a in self._visible if a.is_expired(now)]
        for phase, pending in self._pending.items():
            expired.extend(a for a in pending if a.is_expired(now))
            self._pending[phase] = [a for a in pending if not a.is_expired(now)]
        self._visible = [a for a in self._visible if not a.is_expired(now)]
        await self._remove([artifact.root for artifact in expired])
        for artifact in expired:
            logger.info(f"Artifacts of {artifact.stage_name} expired")
        return expired

    async def export(self, dest: Union[str, Path]) -> list[str]:
        """Copy terminal-phase artifacts to a stable output directory.

        Only artifacts of the last declared phase are exported, keeping
        their relative paths verbatim.

        Returns:
            Exported relative paths
        """
        if not self.phase_order:
            return []
        terminal = sorted(self.fetch_terminal(self.phase_order[-1]), key=lambda a: a.stage_name)
        loop = asyncio.get_running_loop()
        exported = await loop.run_in_executor(None, partial(self._copy_terminal, terminal, Path(dest)))
        if exported:
            logger.info(f"Exported {len(exported)} path(s) to {dest}")
        return list(dict.fromkeys(exported))

    @staticmethod
    def _copy_terminal(artifacts: list[Artifact], dest: Path) -> list[str]:
        exported: list[str] = []
        for artifact in artifacts:
            dest.mkdir(parents=True, exist_ok=True)
            for relative in artifact.paths:
                copy_path(artifact.root, relative, dest)
                exported.append(relative)
        return exported

    def fetch_terminal(self, phase: str) -> list[Artifact]:
        now = utc_now()
        return [a for a in self._visible if a.phase == phase and not a.is_expired(now)]

    async def discard(self) -> None:
        """Drop every artifact of the run."""
        self._pending.clear()
        self._visible.clear()
        await self._remove([self.run_root])

    @staticmethod
    async def _remove(roots: list[Path]) -> None:
        loop = asyncio.get_running_loop()
        for root in roots:
            await loop.run_in_executor(None, partial(shutil.rmtree, root, ignore_errors=True))

    @property
    def visible(self) -> list[Artifact]:
        return list(self._visible)


__all__ = ["ArtifactPropagator"]
