"""Keyed Lock Manager for cache writes.

Serializes writers that share a cache key while letting writers of
distinct keys proceed in parallel.

Design:
    - Locks are identified by string keys (resolved cache keys)
    - Multi-key acquisition is ordered (sorted) to prevent deadlock
    - Waiting acquisition with optional timeout
    - Pluggable backend (InMemory for a single process)
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Set


@dataclass
class LockInfo:
    """Information about a held lock.

    Attributes:
        resource_key: Key being locked
        holder_id: ID of the lock holder (run_id/stage name)
        acquired_at: Timestamp when lock was acquired
    """

    resource_key: str
    holder_id: str
    acquired_at: float = field(default_factory=time.time)


@dataclass
class LockAcquisitionResult:
    """Result of lock acquisition attempt.

    Attributes:
        success: Whether all locks were acquired
        acquired_locks: Keys acquired
        failed_locks: {key: current_holder} for keys that timed out
        wait_time_ms: Time spent waiting
    """

    success: bool
    acquired_locks: Set[str] = field(default_factory=set)
    failed_locks: Dict[str, str] = field(default_factory=dict)
    wait_time_ms: int = 0


class LockManager(ABC):
    """Abstract base class for keyed lock managers.

    Implementations must be safe for concurrent access.
    """

    @abstractmethod
    async def acquire(
        self,
        resource_keys: List[str],
        holder_id: str,
        timeout: Optional[float] = None,
    ) -> LockAcquisitionResult:
        """Acquire locks on keys, waiting up to timeout (None = wait forever).

        Keys are locked in sorted order to prevent deadlock. On failure no
        lock remains held.
        """

    @abstractmethod
    async def release(self, resource_keys: List[str], holder_id: str) -> bool:
        """Release keys held by holder_id. Returns False if any was held by someone else."""

    @abstractmethod
    async def get_lock_info(self, resource_key: str) -> Optional[LockInfo]:
        """Current holder of a key, if locked."""

    @asynccontextmanager
    async def lock(
        self,
        resource_keys: List[str],
        holder_id: str,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[LockAcquisitionResult]:
        """Acquire for the duration of the block.

        Usage:
            async with manager.lock(["cargo-x86_64"], "run-1/build") as result:
                if result.success:
                    ...
        """
        result = await self.acquire(resource_keys, holder_id, timeout)
        try:
            yield result
        finally:
            if result.acquired_locks:
                await self.release(list(result.acquired_locks), holder_id)


class InMemoryLockManager(LockManager):
    """In-memory lock manager for single-process orchestration.

    Example:
        >>> manager = InMemoryLockManager()
        >>> async with manager.lock(["nix"], "run-7/ci") as result:
        ...     assert result.success
    """

    def __init__(self):
        self._locks: Dict[str, LockInfo] = {}
        self._lock = asyncio.Lock()  # Protects _locks
        self._resource_locks: Dict[str, asyncio.Lock] = {}

    def _resource_lock(self, key: str) -> asyncio.Lock:
        if key not in self._resource_locks:
            self._resource_locks[key] = asyncio.Lock()
        return self._resource_locks[key]

    async def acquire(
        self,
        resource_keys: List[str],
        holder_id: str,
        timeout: Optional[float] = None,
    ) -> LockAcquisitionResult:
        if not resource_keys:
            return LockAcquisitionResult(success=True)

        sorted_keys = sorted(set(resource_keys))
        acquired: Set[str] = set()
        failed: Dict[str, str] = {}
        start_time = time.monotonic()

        try:
            for key in sorted_keys:
                resource_lock = self._resource_lock(key)
                if timeout is None:
                    await resource_lock.acquire()
                else:
                    remaining = timeout - (time.monotonic() - start_time)
                    try:
                        await asyncio.wait_for(resource_lock.acquire(), timeout=max(remaining, 0))
                    except asyncio.TimeoutError:
                        holder = await self.get_lock_info(key)
                        failed[key] = holder.holder_id if holder else "unknown"
                        break

                # No await between acquiring and recording the holder
                self._locks[key] = LockInfo(resource_key=key, holder_id=holder_id)
                acquired.add(key)
        except BaseException:
            # Cancellation while waiting must not leak held keys
            await self.release(list(acquired), holder_id)
            raise

        wait_time_ms = int((time.monotonic() - start_time) * 1000)
        if failed:
            await self.release(list(acquired), holder_id)
            return LockAcquisitionResult(
                success=False,
                failed_locks=failed,
                wait_time_ms=wait_time_ms,
            )

        return LockAcquisitionResult(
            success=True,
            acquired_locks=acquired,
            wait_time_ms=wait_time_ms,
        )

    async def release(self, resource_keys: List[str], holder_id: str) -> bool:
        all_released = True
        for key in resource_keys:
            async with self._lock:
                info = self._locks.get(key)
                if info is None:
                    continue
                if info.holder_id != holder_id:
                    all_released = False
                    continue
                del self._locks[key]
                resource_lock = self._resource_locks.get(key)
            if resource_lock is not None and resource_lock.locked():
                resource_lock.release()
        return all_released

    async def get_lock_info(self, resource_key: str) -> Optional[LockInfo]:
        async with self._lock:
            return self._locks.get(resource_key)


__all__ = [
    "LockInfo",
    "LockAcquisitionResult",
    "LockManager",
    "InMemoryLockManager",
]
