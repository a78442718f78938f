"""
In-process TTL cache for access snapshots.

Keyed by "<user_id>:<scope_key>". The lock only guards the dict and is never
held across an await, so two coroutines missing the same key may both
rebuild; rebuilds are idempotent, so that is accepted.
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from tenant_authz.config.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10000

V = TypeVar("V")


def local_cache_key(user_id: str, scope_key: str) -> str:
    return f"{user_id}:{scope_key}"


class LocalSnapshotCache(Generic[V]):
    """
    Thread-safe TTL map with an injectable monotonic clock.

    Entries store their own expiry timestamp; expired entries are dropped on
    read. At capacity the entry closest to expiry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._ttl_seconds = float(
            ttl_seconds if ttl_seconds is not None else get_settings().access_snapshot_ttl_seconds
        )
        self._clock = clock
        self._max_entries = max_entries
        self._entries: Dict[str, Tuple[float, V]] = {}
        self._lock = Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, key: str) -> Optional[V]:
        """Get value if not expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        expires_at = self._clock() + self._ttl_seconds
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                soonest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[soonest]
            self._entries[key] = (expires_at, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# Module-level singleton
_cache_instance: Optional[LocalSnapshotCache] = None
_cache_lock = Lock()


def get_local_snapshot_cache() -> LocalSnapshotCache:
    """Get the process-wide snapshot cache."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = LocalSnapshotCache()
                logger.info(
                    "Local access snapshot cache created",
                    extra={"ttl_seconds": _cache_instance.ttl_seconds},
                )
    return _cache_instance


def reset_local_snapshot_cache() -> None:
    """Drop the process-wide cache (for testing)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
