from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

KEY_SEPARATOR = "::"

_MISS = object()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    created_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at >= ttl_seconds


class ResultCache:
    """Process-wide response cache with a uniform TTL.

    Expired entries are dropped when a lookup touches them; there is no
    background sweep and no capacity bound. Concurrent misses on the same key
    each regenerate (no single-flight).
    """

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.is_expired(self._clock(), self.ttl_seconds):
                del self._entries[key]
                return default
            return entry.payload

    def contains(self, key: str) -> bool:
        return self.get(key, _MISS) is not _MISS

    def set(self, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(key=key, payload=payload, created_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _key_part(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_cache_key(
    *,
    topic: str,
    intent: str,
    persona: str,
    stage: object,
    required_count: int,
    shape: str,
    exclusions: Optional[Iterable[str]] = None,
) -> str:
    """Deterministic key over the fields that change the generated content.

    Exclusions are sorted and de-duplicated so the caller's ordering of
    selected/visible tags does not split the cache.
    """
    excluded = ",".join(sorted({_key_part(tag) for tag in exclusions or [] if _key_part(tag)}))
    parts = [
        shape,
        _key_part(topic),
        _key_part(intent),
        _key_part(persona),
        _key_part(stage),
        str(required_count),
        excluded,
    ]
    return KEY_SEPARATOR.join(parts)
