from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable


@dataclass(frozen=True)
class CachedValue:
    value: Any
    expires_at: float


@dataclass
class TTLCache:
    """Time-bound key/value cache with explicit invalidation."""

    ttl_seconds: float = 30
    clock: Callable[[], float] = time.monotonic
    _entries: dict[Hashable, CachedValue] = field(default_factory=dict)

    def get(self, key: Hashable) -> Any | None:
        cached = self._entries.get(key)
        if cached is None:
            return None
        if cached.expires_at <= self.clock():
            self._entries.pop(key, None)
            return None
        return cached.value

    def set(self, key: Hashable, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self.clock()
        self.purge_expired(now)
        self._entries[key] = CachedValue(value=value, expires_at=now + self.ttl_seconds)

    def purge_expired(self, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        expired = [key for key, cached in self._entries.items() if cached.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
