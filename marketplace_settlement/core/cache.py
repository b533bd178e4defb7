"""
Scoped TTL cache.

Owned by the component that uses it (never a module-level singleton), with an
injected clock so expiry is testable.
"""
import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """
    Fixed-size cache whose entries expire ``ttl_seconds`` after being set.

    Eviction policy:
    - expired entries are dropped on access and by ``evict_expired()``
    - when full, the oldest inserted entry is dropped first
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            ttl_seconds: Lifetime of an entry
            max_entries: Maximum number of live entries
            clock: Monotonic time source in seconds
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        """Return the cached value, or ``default`` when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def set(self, key: Hashable, value: V) -> None:
        """Store a value, evicting the oldest entry when the cache is full."""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self.evict_expired()
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> V:
        """Return the cached value or await ``loader()`` and cache its result."""
        value = self.get(key, _MISSING)  # type: ignore[arg-type]
        if value is not _MISSING:
            return value  # type: ignore[return-value]
        value = await loader()
        self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every entry when no key is given."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def evict_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)
