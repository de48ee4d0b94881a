"""Short-TTL in-memory cache for resolved secrets."""

import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Tuple

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CacheEntry:
    """A cached value and the monotonic time after which it is unusable."""

    value: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ReadWriteLock:
    """Many concurrent readers, one exclusive writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class SecretCache:
    """
    TTL cache placed in front of a secret source.

    Every entry lives for the instance TTL unless ``put`` is given one.
    Expired entries are treated as absent on read and overwritten on the next
    put; nothing is evicted eagerly. ``max_entries`` optionally bounds the
    map by dropping the oldest inserted entries.

    The cache is an optimization only: callers must satisfy every miss with a
    live fetch and must never ``put`` the result of a failed fetch.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            ttl: Lifetime of every entry in seconds
            max_entries: Optional upper bound on stored entries
            clock: Monotonic time source (injectable for tests)
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._items: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._lock = ReadWriteLock()

    @staticmethod
    def make_key(scope: str, environment: str, path: str, name: str) -> Tuple[str, str, str, str]:
        """Composite key for one secret lookup, always in the same order."""
        return (scope, environment, path, name)

    def get(self, key: Hashable) -> Tuple[Optional[str], bool]:
        """
        Look up a key.

        Returns:
            (value, True) on a fresh hit, (None, False) otherwise
        """
        now = self._clock()
        with self._lock.read():
            entry = self._items.get(key)
        if entry is None or not entry.is_fresh(now):
            return None, False
        return entry.value, True

    def put(self, key: Hashable, value: str, ttl: Optional[float] = None) -> None:
        """
        Store a value.

        ``ttl`` exists for callers that pass the lifetime explicitly; it
        defaults to the cache TTL and the sequencer never overrides it.
        """
        ttl = self.ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl)
        with self._lock.write():
            self._items.pop(key, None)
            self._items[key] = entry
            if self.max_entries is not None:
                while len(self._items) > self.max_entries:
                    self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock.write():
            self._items.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._items)
