"""Bounded LRU cache and a time-to-live wrapper around it."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Protocol

_MISSING = object()


class Cacher(Protocol):
    """A basic cache: ``get`` raises ``KeyError`` for a missing key."""

    def get(self, key: Hashable) -> Any: ...

    def add(self, key: Hashable, value: Any) -> bool: ...

    def remove(self, key: Hashable) -> bool: ...


class LRUCache:
    """A thread-safe cache holding at most ``size`` items, evicting the least recently used."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("must provide a positive size")
        self.size = size
        self._items: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any:
        """Return the value for ``key`` and mark it as recently used."""
        with self._lock:
            value = self._items[key]
            self._items.move_to_end(key)
            return value

    def add(self, key: Hashable, value: Any) -> bool:
        """Store ``value`` under ``key``; return True if an older item was evicted."""
        with self._lock:
            if key in self._items:
                self._items[key] = value
                self._items.move_to_end(key)
                return False
            self._items[key] = value
            if len(self._items) > self.size:
                self._items.popitem(last=False)
                return True
            return False

    def remove(self, key: Hashable) -> bool:
        """Remove ``key``; return True if it was present."""
        with self._lock:
            return self._items.pop(key, _MISSING) is not _MISSING

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class _TimeToLiveItem:
    value: Any
    last_touch: float


class TTLLRUCache:
    """Cache whose items expire ``time_to_live`` seconds after they were last touched."""

    def __init__(
        self,
        time_to_live: float,
        cacher: Cacher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.time_to_live = time_to_live
        self._cacher = cacher
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any:
        """Return the value for ``key`` and refresh its time to live."""
        with self._lock:
            item = self._peek_item(key)
            item.last_touch = self._clock()
            return item.value

    def add(self, key: Hashable, value: Any) -> bool:
        """Store ``value``; return True if the backing cache evicted an item."""
        with self._lock:
            return self._cacher.add(key, _TimeToLiveItem(value, self._clock()))

    def remove(self, key: Hashable) -> bool:
        """Remove ``key``; return True if it was present."""
        with self._lock:
            return self._cacher.remove(key)

    def peek(self, key: Hashable) -> tuple[Any, float]:
        """Return ``(value, expiration)`` without refreshing the time to live."""
        with self._lock:
            item = self._peek_item(key)
            return item.value, item.last_touch + self.time_to_live

    def _peek_item(self, key: Hashable) -> _TimeToLiveItem:
        value = self._cacher.get(key)
        if not isinstance(value, _TimeToLiveItem):
            raise KeyError(key)
        if self._clock() - value.last_touch > self.time_to_live:
            self._cacher.remove(key)
            raise KeyError(key)
        return value


def new(size: int, time_to_live: float) -> TTLLRUCache:
    """Build a TTL cache over an LRU cache of ``size`` items."""
    try:
        backing = LRUCache(size)
    except ValueError as exc:
        raise ValueError(f"failed to build new LRU cache: {exc}") from exc
    return TTLLRUCache(time_to_live, backing)