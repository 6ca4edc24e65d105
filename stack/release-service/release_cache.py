"""
In-process TTL caches for remote release lookups.

Entries expire a fixed time after insertion and the least-recently-used
entry is evicted when the cache is full. Concurrent misses on the same key
are not de-duplicated: both callers compute the value and the last write wins.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 1000


class TTLCache:
    """Bounded LRU cache with per-entry time-to-live."""

    def __init__(
        self,
        maxsize: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def _expired(self, inserted_at: float) -> bool:
        return self._clock() - inserted_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, inserted_at = item
        if self._expired(inserted_at):
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = (value, self._clock())
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _purge_expired(self) -> None:
        for key in [k for k, (_, inserted_at) in self._data.items() if self._expired(inserted_at)]:
            del self._data[key]

    def __len__(self) -> int:
        """Number of live entries."""
        self._purge_expired()
        return len(self._data)


@dataclass
class ReleaseCaches:
    """Process-wide caches: resolved release metadata and redirect targets."""

    releases: TTLCache = field(default_factory=TTLCache)
    redirects: TTLCache = field(default_factory=TTLCache)

    @classmethod
    def create(
        cls,
        maxsize: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ReleaseCaches":
        return cls(
            releases=TTLCache(maxsize, ttl_seconds, clock),
            redirects=TTLCache(maxsize, ttl_seconds, clock),
        )

    def clear(self) -> None:
        self.releases.clear()
        self.redirects.clear()
