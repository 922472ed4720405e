"""HttpCacheStore - remote cache over HTTP.

Entries travel as gzipped tar archives:

    GET    /cache/<digest>   -> 200 archive | 404 miss
    PUT    /cache/<digest>   <- archive (X-Buildflow-Key, X-Buildflow-Paths headers)
    HEAD   /cache/<digest>   -> 200 with the same headers | 404
    DELETE /cache/<digest>   -> 2xx | 404

Design Principles:
    1. Fail-open: remote errors on restore are a miss, on save they are logged
    2. Retries on transport errors only (tenacity), never on HTTP status
    3. Same-key writes from this process are serialized by the lock manager
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import tarfile
import uuid
from functools import partial
from pathlib import Path
from typing import Iterable, Optional, Union

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..types.models import CacheEntry
from ..utils import check_relative, expand_paths, text_digest, utc_now
from .lock_manager import InMemoryLockManager, LockManager
from .store import CacheStore

logger = logging.getLogger(__name__)

KEY_HEADER = "X-Buildflow-Key"
PATHS_HEADER = "X-Buildflow-Paths"


def pack_paths(workdir: Path, paths: list[str]) -> bytes:
    """Tar+gzip the given workdir-relative paths."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for relative in paths:
            archive.add(str(workdir / relative), arcname=relative)
    return buffer.getvalue()


def unpack_paths(data: bytes, workdir: Path) -> None:
    """Extract an archive produced by pack_paths into workdir.

    Raises:
        ValueError: If a member would land outside workdir
    """
    workdir.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
        members = archive.getmembers()
        for member in members:
            check_relative(member.name)
            if member.islnk():
                check_relative(member.linkname)
        extract_kwargs = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}
        archive.extractall(str(workdir), members=members, **extract_kwargs)


class HttpCacheStore(CacheStore):
    """Remote cache store backed by an HTTP server.

    Example:
        >>> async with HttpCacheStore("http://cache.internal:8080") as store:
        ...     await store.save("nix", ["target"], workdir)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 2,
        lock_manager: Optional[LockManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize HttpCacheStore.

        Args:
            base_url: Cache server base URL
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt on transport errors
            lock_manager: Keyed lock manager for same-key writes
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url
        self.timeout = timeout
        self.lock_manager = lock_manager or InMemoryLockManager()

        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
        )

        self._retry = retry(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2.0),
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)
            ),
            reraise=True,
        )

    @staticmethod
    def _url(key: str) -> str:
        return f"/cache/{text_digest(key)[:32]}"

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """HTTP request with tenacity retry logic.

        Raises:
            httpx exceptions after retries exhausted
        """
        @self._retry
        async def _do_request():
            return await self._client.request(method, url, **kwargs)

        return await _do_request()

    # =========================================================================
    # CacheStore API
    # =========================================================================

    async def restore(self, key: str, workdir: Union[str, Path]) -> Optional[tuple[str, ...]]:
        workdir = Path(workdir)
        try:
            response = await self._request_with_retry("GET", self._url(key))
            if response.status_code == 404:
                logger.info(f"Cache miss (remote): {key}")
                return None
            response.raise_for_status()

            paths = tuple(json.loads(response.headers.get(PATHS_HEADER, "[]")))
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, partial(unpack_paths, response.content, workdir))

        except httpx.HTTPStatusError as e:
            logger.warning(f"Remote cache restore HTTP error {e.response.status_code} for {key}: {e}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Remote cache restore failed for {key}: {e}")
            return None
        except (tarfile.TarError, ValueError, OSError) as e:
            logger.warning(f"Remote cache entry {key} unusable: {e}")
            return None

        logger.info(f"Cache hit (remote): {key} ({len(paths)} paths)")
        return paths

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

        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, partial(pack_paths, workdir, present))
        except (tarfile.TarError, OSError) as e:
            logger.warning(f"Remote cache save for {key} could not pack paths: {e}")
            return None

        holder = holder_id or f"save:{uuid.uuid4().hex[:8]}"
        try:
            async with self.lock_manager.lock([key], holder_id=holder):
                response = await self._request_with_retry(
                    "PUT",
                    self._url(key),
                    content=data,
                    headers={
                        "Content-Type": "application/gzip",
                        KEY_HEADER: key,
                        PATHS_HEADER: json.dumps(present),
                    },
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Remote cache save HTTP error {e.response.status_code} for {key}: {e}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Remote cache save failed for {key} (ignored): {e}")
            return None

        logger.info(f"Cache saved (remote): {key} ({len(present)} paths, {len(data)} bytes)")
        return CacheEntry(key=key, paths=tuple(present), created_at=utc_now(), size_bytes=len(data))

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        try:
            response = await self._request_with_retry("HEAD", self._url(key))
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Remote cache lookup failed for {key}: {e}")
            return None
        return CacheEntry(
            key=response.headers.get(KEY_HEADER, key),
            paths=tuple(json.loads(response.headers.get(PATHS_HEADER, "[]"))),
            size_bytes=int(response.headers.get("Content-Length", 0) or 0),
        )

    async def delete(self, key: str) -> bool:
        try:
            response = await self._request_with_retry("DELETE", self._url(key))
            if response.status_code == 404:
                return False
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Remote cache delete failed for {key}: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


__all__ = [
    "HttpCacheStore",
    "pack_paths",
    "unpack_paths",
    "KEY_HEADER",
    "PATHS_HEADER",
]
