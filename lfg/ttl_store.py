"""
TTL store: key -> value with an absolute expiry per entry.

Expiry is a memory-pressure safety net, not the primary deletion path.
Reads never delete; `sweep(now)` does, and hands the removed entries back so
callers can cascade cleanup (drop a roster when its session is swept, ...).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class TTLEntry(Generic[V]):
    value: V
    expires_at: float


class TTLStore(Generic[K, V]):
    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.time) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._entries: Dict[K, TTLEntry[V]] = {}

    def put(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        """Overwrite `key` and restart its expiry from now."""
        ttl = self.default_ttl if ttl is None else float(ttl)
        self._entries[key] = TTLEntry(value=value, expires_at=self._clock() + ttl)

    def get(self, key: K) -> Tuple[Optional[V], bool]:
        """Return (value, live). A lapsed entry is still returned until swept."""
        entry = self._entries.get(key)
        if entry is None:
            return None, False
        return entry.value, self._clock() < entry.expires_at

    def value(self, key: K) -> Optional[V]:
        """Value regardless of expiry, or None."""
        entry = self._entries.get(key)
        return entry.value if entry else None

    def touch(self, key: K, ttl: Optional[float] = None) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        self.put(key, entry.value, ttl)
        return True

    def pop(self, key: K) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return entry.value if entry else None

    def expires_at(self, key: K) -> Optional[float]:
        entry = self._entries.get(key)
        return entry.expires_at if entry else None

    def expired(self, now: Optional[float] = None) -> List[K]:
        """Keys whose expiry has elapsed, without removing them."""
        now = self._clock() if now is None else now
        return [k for k, e in self._entries.items() if now >= e.expires_at]

    def sweep(self, now: Optional[float] = None) -> Dict[K, V]:
        """Remove every lapsed entry. Idempotent. Returns {key: value} of what was removed."""
        removed: Dict[K, V] = {}
        for key in self.expired(now):
            entry = self._entries.pop(key)
            removed[key] = entry.value
        return removed

    def items(self) -> Iterator[Tuple[K, V]]:
        # snapshot so callers may mutate while iterating
        return iter([(k, e.value) for k, e in self._entries.items()])

    def keys(self) -> List[K]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
