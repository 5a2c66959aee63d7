"""Process-local ephemeral state for rate limiting and paywall escalation.

State lives in a bounded cachetools cache and is NOT shared between
instances; with N instances behind a load balancer the effective limits are
approximate. Swap in a shared store with the same interface when exact
cross-instance counting is needed.
"""
from threading import Lock
from typing import Any, Callable, Hashable, Iterator, Optional

from cachetools import LRUCache, TTLCache

from formtier import config


class EphemeralStore:
    """Dict-like wrapper over a cachetools cache with atomic read-modify-write.

    cachetools caches are not thread-safe, so every access takes the lock.
    """

    def __init__(self, cache=None):
        self._cache = cache if cache is not None else LRUCache(maxsize=config.EPHEMERAL_STORE_MAXSIZE)
        self._lock = Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._cache.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def update(self, key: Hashable, fn: Callable[[Optional[Any]], Any]) -> Any:
        """Apply ``fn`` to the current value (None if absent) and store the result."""
        with self._lock:
            value = fn(self._cache.get(key))
            self._cache[key] = value
            return value

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._cache.keys() if isinstance(k, str) and k.startswith(prefix)]
            for key in doomed:
                self._cache.pop(key, None)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def keys(self) -> Iterator[Hashable]:
        with self._lock:
            return iter(list(self._cache.keys()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


def ttl_store(ttl_seconds: int, maxsize: Optional[int] = None) -> EphemeralStore:
    """Store whose entries expire after ``ttl_seconds`` (rate-limit windows)."""
    return EphemeralStore(TTLCache(maxsize=maxsize or config.EPHEMERAL_STORE_MAXSIZE, ttl=ttl_seconds))


def lru_store(maxsize: Optional[int] = None) -> EphemeralStore:
    """Store that only evicts on size pressure (paywall view counts)."""
    return EphemeralStore(LRUCache(maxsize=maxsize or config.EPHEMERAL_STORE_MAXSIZE))
