"""
Connection Pool — capped, LRU, idle-evicting

Workers share vector-store clients through this pool instead of building
one per job. The pool is owned by the process that runs jobs and handed to
each DocumentWorker; nothing reaches it through module globals. Under the
prefork pool every child process holds its own pool.

  acquire()
    1. evict entries unused for longer than `ttl` seconds
    2. reuse the least-recently-used idle entry, if any
    3. below `max_size` → open a new client under the next slot number
    4. at `max_size`   → share the least-recently-used entry

Slots are numbered from a monotonically increasing counter, so an evicted
slot is never handed out again. A process never holds more than
`max_size` connections, whatever its thread count.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Generic, Iterator, TypeVar

from knowledge_pipeline.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PooledConnection(Generic[T]):
    slot:      int
    client:    T
    last_used: float
    leases:    int = 0


class ConnectionPool(Generic[T]):

    def __init__(
        self,
        factory:  Callable[[], T],
        max_size: int | None = None,
        ttl:      float | None = None,
        clock:    Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._max_size = max_size or settings.connection_pool_max
        self._ttl = settings.connection_pool_ttl_seconds if ttl is None else ttl
        self._clock = clock
        self._slots = itertools.count(1)
        self._entries: dict[int, PooledConnection[T]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def max_size(self) -> int:
        return self._max_size

    def acquire(self) -> PooledConnection[T]:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)

            idle = [e for e in self._entries.values() if e.leases == 0]
            if idle:
                entry = min(idle, key=lambda e: e.last_used)
            elif len(self._entries) < self._max_size:
                entry = PooledConnection(slot=next(self._slots), client=self._factory(), last_used=now)
                self._entries[entry.slot] = entry
                logger.debug("Pool connection opened | slot=%d size=%d", entry.slot, len(self._entries))
            else:
                entry = min(self._entries.values(), key=lambda e: e.last_used)
                logger.debug("Pool full, sharing LRU connection | slot=%d", entry.slot)

            entry.leases += 1
            entry.last_used = now
            return entry

    def release(self, entry: PooledConnection[T]) -> None:
        with self._lock:
            entry.leases = max(0, entry.leases - 1)
            entry.last_used = self._clock()

    @contextmanager
    def lease(self) -> Iterator[T]:
        entry = self.acquire()
        try:
            yield entry.client
        finally:
            self.release(entry)

    def _evict_idle(self, now: float) -> None:
        expired = [
            slot for slot, e in self._entries.items()
            if e.leases == 0 and now - e.last_used > self._ttl
        ]
        for slot in expired:
            del self._entries[slot]
        if expired:
            logger.info("Pool evicted idle connections | count=%d size=%d", len(expired), len(self._entries))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size":     len(self._entries),
                "in_use":   sum(1 for e in self._entries.values() if e.leases),
                "max_size": self._max_size,
            }
