"""Cache Store.

Key-addressed storage for build outputs that survive across pipeline runs.

Contract:
    - restore(key, workdir) hydrates the entry's paths into workdir and
      returns them; a miss returns None and is never an error.
    - save(key, paths, workdir) is an upsert (latest write wins). Writes
      under one key are serialized by a keyed lock; each write is staged in
      a temporary directory and swapped in with a rename, so a reader never
      sees a partially written entry.
    - File copies, deletes and SQLite queries run on the store's worker
      threads, never on the event loop.

LocalCacheStore layout:
    <root>/index.db               SQLite index (cache_entries table)
    <root>/entries/<digest>/...   stored copies, relative layout preserved
    <root>/tmp/                   staging area for in-flight writes
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sqlite3
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TypeVar, Union

from ..types.exceptions import CacheMiss, CacheStoreError
from ..types.models import CacheEntry
from ..utils import copy_path, expand_paths, text_digest, utc_now
from .lock_manager import InMemoryLockManager, LockManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheStore(ABC):
    """Abstract cache store."""

    @abstractmethod
    async def restore(self, key: str, workdir: Union[str, Path]) -> Optional[tuple[str, ...]]:
        """Hydrate the entry for key into workdir.

        Returns:
            Restored relative paths, or None on a miss
        """

    @abstractmethod
    async def save(
        self,
        key: str,
        paths: Iterable[str],
        workdir: Union[str, Path],
        *,
        holder_id: str = "",
    ) -> Optional[CacheEntry]:
        """Upsert the entry for key from paths under workdir.

        Returns:
            The stored entry, or None when none of the paths exist
        """

    @abstractmethod
    async def lookup(self, key: str) -> Optional[CacheEntry]:
        """Index entry for key, if any."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove an entry. Returns whether one existed."""

    async def entries(self) -> list[CacheEntry]:
        """All entries (may be unsupported by remote stores)."""
        return []

    async def close(self) -> None:
        """Release resources held by the store."""


# =============================================================================
# DDL
# =============================================================================

DDL_CACHE_ENTRIES = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    digest TEXT NOT NULL,
    paths_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    last_used_at TEXT,
    size_bytes INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_used ON cache_entries(last_used_at);
"""


class LocalCacheStore(CacheStore):
    """Directory-backed cache store with a SQLite index.

    Usage:
        >>> store = LocalCacheStore(Path(".buildflow/cache"))
        >>> await store.save("nix", ["target", ".gitlab-ci.d"], workdir)
        >>> restored = await store.restore("nix", other_workdir)
    """

    def __init__(self, root: Union[str, Path], lock_manager: Optional[LockManager] = None):
        """Initialize store.

        Args:
            root: Directory holding the index and entries
            lock_manager: Keyed lock manager shared by every writer of this root
        """
        self.root = Path(root)
        self.entries_dir = self.root / "entries"
        self.tmp_dir = self.root / "tmp"
        self.db_path = self.root / "index.db"
        self.lock_manager = lock_manager or InMemoryLockManager()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="buildflow-cache")

        self.entries_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.executescript(DDL_CACHE_ENTRIES)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _entry_dir(self, key: str) -> Path:
        return self.entries_dir / text_digest(key)[:32]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            paths=tuple(json.loads(row["paths_json"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_used_at=datetime.fromisoformat(row["last_used_at"]) if row["last_used_at"] else None,
            size_bytes=row["size_bytes"],
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        return await self._offload(self._lookup_sync, key)

    async def entries(self) -> list[CacheEntry]:
        return await self._offload(self._entries_sync)

    async def restore(self, key: str, workdir: Union[str, Path]) -> Optional[tuple[str, ...]]:
        try:
            return await self._restore(key, Path(workdir))
        except CacheMiss as e:
            logger.info(f"{e}; proceeding with a cold cache")
            return None

    async def _restore(self, key: str, workdir: Path) -> tuple[str, ...]:
        async with self.lock_manager.lock([key], holder_id=f"restore:{uuid.uuid4().hex[:8]}"):
            entry = await self._offload(self._restore_sync, key, workdir)
        logger.info(f"Cache hit: {key} ({len(entry.paths)} paths)")
        return entry.paths

    async def save(
        self,
        key: str,
        paths: Iterable[str],
        workdir: Union[str, Path],
        *,
        holder_id: str = "",
    ) -> Optional[CacheEntry]:
        workdir = Path(workdir)
        present = expand_paths(workdir, paths)
        if not present:
            logger.warning(f"Cache {key}: no matching paths in {workdir}, nothing saved")
            return None

        # Stage outside the lock; only the swap is serialized
        staging = self.tmp_dir / f"{text_digest(key)[:16]}-{uuid.uuid4().hex}"
        staged = self._executor.submit(self._stage, workdir, present, staging)
        try:
            try:
                size = await asyncio.wrap_future(staged)
            except OSError as e:
                raise CacheStoreError(key, f"staging failed: {e}") from e

            entry = CacheEntry(key=key, paths=tuple(present), created_at=utc_now(), size_bytes=size)
            holder = holder_id or f"save:{uuid.uuid4().hex[:8]}"
            async with self.lock_manager.lock([key], holder_id=holder):
                await self._offload(self._commit, entry, staging)
        finally:
            if staged.done():
                await self._offload(shutil.rmtree, staging, True)
            else:
                # Cancelled mid-copy; the staging thread removes its output once it stops
                staged.add_done_callback(lambda _: shutil.rmtree(staging, ignore_errors=True))

        logger.info(f"Cache saved: {key} ({len(present)} paths, {size} bytes)")
        return entry

    async def delete(self, key: str) -> bool:
        async with self.lock_manager.lock([key], holder_id=f"delete:{uuid.uuid4().hex[:8]}"):
            existed = await self._offload(self._delete_sync, key)
        if existed:
            logger.info(f"Cache deleted: {key}")
        return existed

    async def prune(self, max_entries: int) -> list[str]:
        """Evict least recently used entries beyond max_entries.

        Returns:
            Evicted keys
        """
        if max_entries < 0:
            raise ValueError("max_entries must be >= 0")
        keys = await self._offload(self._keys_by_recency)
        evicted = keys[max_entries:]
        for key in evicted:
            await self.delete(key)
        return evicted

    async def close(self) -> None:
        """Stop the worker threads once in-flight work finishes."""
        self._executor.shutdown(wait=False)

    # =========================================================================
    # Blocking work (runs on the store's worker threads)
    # =========================================================================

    async def _offload(self, func: Callable[..., T], *args) -> T:
        return await asyncio.wrap_future(self._executor.submit(func, *args))

    def _lookup_sync(self, key: str) -> Optional[CacheEntry]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM cache_entries WHERE key = ?", (key,)).fetchone()
        return self._row_to_entry(row) if row else None

    def _entries_sync(self) -> list[CacheEntry]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM cache_entries ORDER BY key").fetchall()
        return [self._row_to_entry(row) for row in rows]

    def _keys_by_recency(self) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT key FROM cache_entries
                ORDER BY COALESCE(last_used_at, created_at) DESC
                """
            ).fetchall()
        return [row["key"] for row in rows]

    def _restore_sync(self, key: str, workdir: Path) -> CacheEntry:
        entry = self._lookup_sync(key)
        entry_dir = self._entry_dir(key)
        if entry is None or not entry_dir.is_dir():
            raise CacheMiss(key)

        workdir.mkdir(parents=True, exist_ok=True)
        for relative in entry.paths:
            if (entry_dir / relative).exists() or (entry_dir / relative).is_symlink():
                copy_path(entry_dir, relative, workdir)

        with self._connection() as conn:
            conn.execute(
                "UPDATE cache_entries SET last_used_at = ? WHERE key = ?",
                (utc_now().isoformat(), key),
            )
        return entry

    @staticmethod
    def _stage(workdir: Path, present: list[str], staging: Path) -> int:
        staging.mkdir(parents=True)
        return sum(copy_path(workdir, relative, staging) for relative in present)

    def _commit(self, entry: CacheEntry, staging: Path) -> None:
        """Swap the staged copy in and record it in the index."""
        target = self._entry_dir(entry.key)
        if target.exists():
            retired = self.tmp_dir / f"retired-{uuid.uuid4().hex}"
            os.replace(target, retired)
            os.replace(staging, target)
            shutil.rmtree(retired, ignore_errors=True)
        else:
            os.replace(staging, target)

        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                    (key, digest, paths_json, created_at, last_used_at, size_bytes)
                VALUES (?, ?, ?, ?, NULL, ?)
                """,
                (
                    entry.key,
                    target.name,
                    json.dumps(list(entry.paths)),
                    entry.created_at.isoformat(),
                    entry.size_bytes,
                ),
            )

    def _delete_sync(self, key: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            existed = cursor.rowcount > 0
        shutil.rmtree(self._entry_dir(key), ignore_errors=True)
        return existed


__all__ = [
    "CacheStore",
    "LocalCacheStore",
    "DDL_CACHE_ENTRIES",
]
