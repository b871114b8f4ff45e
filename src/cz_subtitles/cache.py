from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple


class TTLCache:
    """Very small in-memory cache with TTL semantics.

    With ``sliding=True`` every successful get() pushes the expiry out again,
    which turns the TTL into an idle timeout. Expired entries stay in place
    until read or drained with ``pop_expired()``, so owners can release
    resources held by the evicted values.
    """

    def __init__(
        self,
        default_ttl: float = 600.0,
        max_size: int | None = None,
        sliding: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._sliding = sliding
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            expiry, value = item
            now = self._clock()
            if expiry < now:
                del self._store[key]
                return None
            if self._sliding:
                self._store[key] = (now + self._default_ttl, value)
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl_value = self._default_ttl if ttl is None else ttl
        with self._lock:
            self._store[key] = (self._clock() + ttl_value, value)
            if self._max_size is not None and len(self._store) > self._max_size:
                # Oldest expiry goes first
                by_expiry = sorted(self._store.items(), key=lambda kv: kv[1][0])
                for k, _ in by_expiry[: len(self._store) - self._max_size]:
                    self._store.pop(k, None)

    def pop_expired(self) -> List[Any]:
        now = self._clock()
        with self._lock:
            expired = [k for k, (exp, _v) in self._store.items() if exp < now]
            return [self._store.pop(k)[1] for k in expired]

    def values(self) -> List[Any]:
        with self._lock:
            return [value for _exp, value in self._store.values()]

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class BlobCache(Protocol):
    """Content-addressed byte store used to avoid re-scraping subtitles."""

    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, data: bytes) -> None: ...


class MemoryBlobCache:
    def __init__(self, ttl: float = 24 * 60 * 60, max_size: int | None = 512) -> None:
        self._cache = TTLCache(default_ttl=ttl, max_size=max_size)

    def get(self, key: str) -> Optional[bytes]:
        return self._cache.get(key)

    def put(self, key: str, data: bytes) -> None:
        self._cache.set(key, data)
