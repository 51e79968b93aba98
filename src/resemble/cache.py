"""Bounded, thread-safe memoization of relatedness verdicts.

Entries are keyed on (query, label, threshold) and never updated once
published. Concurrent misses on the same key are collapsed into a single
computation: the first caller computes and publishes, later callers block on
the in-flight future and observe the same value.

A hit reports no timing. Only the caller that actually performed the
computation receives its duration, so downstream telemetry counts real model
calls only.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Generic, Literal, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class CacheKey:
    """Identity of a relatedness computation."""

    query: str
    label: str
    threshold: float


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A published result and how long it took to compute the first time."""

    value: T
    first_duration: float


@dataclass(frozen=True)
class Relatedness(Generic[T]):
    """Result of get_or_compute.

    Attributes:
        value: The memoized verdict
        timings: Durations in seconds of model calls made for this request;
            empty on a cache hit, one element on a miss
    """

    value: T
    timings: list[float] = field(default_factory=list)


class RelatednessCache(Generic[T]):
    """Compute-if-absent cache with single-flight misses.

    Args:
        compute: Backing scoring call ``(query, label, threshold) -> value``
        capacity: Maximum number of published entries
        policy: "fifo" evicts by insertion order; "lru" refreshes an entry's
            position on every hit
    """

    def __init__(
        self,
        compute: Callable[[str, str, float], T],
        capacity: int = DEFAULT_CAPACITY,
        policy: Literal["fifo", "lru"] = "fifo",
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        if policy not in ("fifo", "lru"):
            raise ValueError(f"Unknown eviction policy: {policy}")
        self._compute = compute
        self._capacity = capacity
        self._policy = policy
        self._entries: OrderedDict[CacheKey, CacheEntry[T]] = OrderedDict()
        self._in_flight: dict[CacheKey, Future[T]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def get_or_compute(self, query: str, label: str, threshold: float) -> Relatedness[T]:
        """Return the memoized value for the key, computing it at most once.

        Raises:
            Exception: Whatever the backing computation raised. Failed
                computations are not cached, and every caller waiting on the
                same in-flight key receives the same exception.
        """
        key = CacheKey(query, label, threshold)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self.hits += 1
                if self._policy == "lru":
                    self._entries.move_to_end(key)
                return Relatedness(entry.value, [])

            pending = self._in_flight.get(key)
            if pending is None:
                self.misses += 1
                pending = Future()
                self._in_flight[key] = pending
                owner = True
            else:
                owner = False

        if not owner:
            # Another caller is computing this key; it reports the timing
            return Relatedness(pending.result(), [])

        start = time.perf_counter()
        try:
            value = self._compute(query, label, threshold)
        except BaseException as e:
            with self._lock:
                del self._in_flight[key]
            pending.set_exception(e)
            raise
        duration = time.perf_counter() - start

        with self._lock:
            self._entries[key] = CacheEntry(value, duration)
            del self._in_flight[key]
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug("cache.evicted", query=evicted.query, label=evicted.label)
        pending.set_result(value)

        return Relatedness(value, [duration])

    def clear(self) -> None:
        """Drop every published entry (in-flight computations are unaffected)."""
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0
