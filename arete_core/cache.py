import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    last_updated: float


class TTLCache(Generic[K, V]):
    """
    Per-key state with idle expiry and an optional size bound.

    Entries are ordered by last update so both the idle sweep and the size
    eviction touch the oldest entries first.
    """

    def __init__(self, ttl_seconds: float, max_entries: Optional[int] = None):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries if max_entries and max_entries > 0 else None
        self._entries: "OrderedDict[K, _Entry[V]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def items(self) -> Iterator[Tuple[K, V]]:
        for key, entry in list(self._entries.items()):
            yield key, entry.value

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def last_updated(self, key: K) -> Optional[float]:
        entry = self._entries.get(key)
        return entry.last_updated if entry else None

    def set(self, key: K, value: V, now: Optional[float] = None) -> V:
        now = time.time() if now is None else now
        self._entries[key] = _Entry(value=value, last_updated=now)
        self._entries.move_to_end(key)
        self._enforce_bound()
        return value

    def get_or_create(self, key: K, factory: Callable[[], V], now: Optional[float] = None) -> V:
        entry = self._entries.get(key)
        if entry is not None:
            return entry.value
        return self.set(key, factory(), now)

    def touch(self, key: K, now: Optional[float] = None) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.last_updated = time.time() if now is None else now
        self._entries.move_to_end(key)

    def pop(self, key: K) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return entry.value if entry else None

    def is_stale(self, key: K, now: Optional[float] = None) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        now = time.time() if now is None else now
        return now - entry.last_updated > self.ttl_seconds

    def sweep(self, now: Optional[float] = None) -> List[K]:
        now = time.time() if now is None else now
        evicted: List[K] = []
        for key, entry in list(self._entries.items()):
            if now - entry.last_updated > self.ttl_seconds:
                self._entries.pop(key, None)
                evicted.append(key)
        return evicted

    def clear(self) -> None:
        self._entries.clear()

    def _enforce_bound(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
