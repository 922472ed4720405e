"""Cache layer: key resolution, keyed locks, local and remote stores.

Key Components:
    - CacheStore: restore()/save() contract (miss is not an error)
    - LocalCacheStore: directory + SQLite index, atomic swap on write
    - HttpCacheStore: remote store over HTTP (fail-open)
    - resolve_cache_key: template/files-based key resolution
"""

from .keys import DEFAULT_KEY, expand_variables, files_digest, resolve_cache_key, sanitize_key
from .lock_manager import InMemoryLockManager, LockAcquisitionResult, LockInfo, LockManager
from .remote import HttpCacheStore
from .store import CacheStore, LocalCacheStore

__all__ = [
    "CacheStore",
    "LocalCacheStore",
    "HttpCacheStore",
    "LockManager",
    "InMemoryLockManager",
    "LockInfo",
    "LockAcquisitionResult",
    "DEFAULT_KEY",
    "expand_variables",
    "files_digest",
    "resolve_cache_key",
    "sanitize_key",
]
