"""Per-unit model call telemetry and in-memory result tables.

Each traversed unit owns a PerformanceSample. Only first-time model calls are
recorded (cache hits report no timing), and a unit that made no model calls
emits no row.
"""

from __future__ import annotations

import bisect
import math
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger()

Row = TypeVar("Row")

# Upper bounds in milliseconds; the last bucket is open-ended
BUCKET_BOUNDS_MS: tuple[float, ...] = (
    10, 25, 50, 100, 250, 500, 1000, 2500, 5000, math.inf,
)


@dataclass
class Histogram:
    """Fixed-bucket histogram of durations."""

    bounds_ms: tuple[float, ...] = BUCKET_BOUNDS_MS
    counts: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * len(self.bounds_ms)

    def add(self, duration: float) -> None:
        """Count a duration given in seconds."""
        index = bisect.bisect_left(self.bounds_ms, duration * 1000)
        self.counts[min(index, len(self.counts) - 1)] += 1

    @property
    def buckets(self) -> dict[str, int]:
        """Counts keyed by bucket label, e.g. ``"<=100ms"``."""
        return {
            ("<=inf" if math.isinf(bound) else f"<={bound:g}ms"): count
            for bound, count in zip(self.bounds_ms, self.counts, strict=True)
        }


@dataclass
class PerformanceSample:
    """Model invocations observed while traversing one unit."""

    unit_id: str
    invocation_count: int = 0
    histogram: Histogram = field(default_factory=Histogram)
    max_duration: float = 0.0

    def record_invocation(self, duration: float) -> None:
        """Record one model call that took ``duration`` seconds."""
        self.invocation_count += 1
        self.histogram.add(duration)
        if duration > self.max_duration:
            self.max_duration = duration


@dataclass(frozen=True)
class PerformanceRow:
    source_path: str
    invocation_count: int
    histogram_buckets: dict[str, int]
    max_duration: float


@dataclass(frozen=True)
class RecommendationRow:
    method_name: str
    elapsed_seconds: float
    token_size: int
    recommendations: str


class DataTable(Generic[Row]):
    """Thread-safe, append-only table of rows."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._rows: list[Row] = []
        self._lock = threading.Lock()

    def insert_row(self, row: Row) -> None:
        with self._lock:
            self._rows.append(row)
        logger.debug("table.row_inserted", table=self.name)

    @property
    def rows(self) -> list[Row]:
        with self._lock:
            return list(self._rows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


@contextmanager
def track_performance(
    unit_id: str, table: DataTable[PerformanceRow]
) -> Iterator[PerformanceSample]:
    """Scope a PerformanceSample to one unit's traversal.

    The sample is flushed to ``table`` when the block exits, including on
    error, but only if at least one invocation was recorded.
    """
    sample = PerformanceSample(unit_id)
    try:
        yield sample
    finally:
        if sample.invocation_count > 0:
            table.insert_row(
                PerformanceRow(
                    source_path=unit_id,
                    invocation_count=sample.invocation_count,
                    histogram_buckets=sample.histogram.buckets,
                    max_duration=sample.max_duration,
                )
            )
