"""In-memory LRU cache with per-entry TTL."""
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Size-bounded cache where entries expire ``ttl_seconds`` after being set.

    Once ``max_size`` is exceeded the least recently used entry is evicted.
    With ``refresh_on_read=False`` reads do not count as use, so eviction is
    oldest-first by insertion.
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        refresh_on_read: bool = True,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.refresh_on_read = refresh_on_read
        self._entries: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        if self.refresh_on_read:
            self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        self._entries.move_to_end(key)
        if len(self._entries) > self.max_size:
            self.cleanup_expired()
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and self._clock() < entry[0]

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }
