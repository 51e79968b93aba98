"""Top-K candidate admission.

During the scan pass every distinct method pattern is scored once against the
query by embedding distance and pushed onto a min-heap. After the scan the
builder is frozen exactly once into an immutable TopKCandidates holding the K
closest patterns; every later read returns that same object.

Ordering is by distance, then by admission order, so equal distances keep
first-seen-first semantics. Duplicate patterns are dropped without being
rescored.
"""

from __future__ import annotations

import heapq
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import structlog

from resemble.errors import ConfigurationFailure
from resemble.matching.patterns import MethodPattern

logger = structlog.get_logger()


@dataclass(frozen=True)
class CandidateObservation:
    """A distinct call target seen during the scan.

    Attributes:
        label: Rendering scored against the query (a method signature)
        pattern: Deduplication key, parseable as a MethodPattern
        query: The text being searched for
    """

    label: str
    pattern: str
    query: str


@dataclass(frozen=True)
class ScoredCandidate:
    observation: CandidateObservation
    distance: float


@dataclass(frozen=True)
class TopKCandidates:
    """Frozen result of the scan pass, closest candidate first."""

    candidates: tuple[ScoredCandidate, ...]
    patterns: tuple[MethodPattern, ...]

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self) -> Iterator[ScoredCandidate]:
        return iter(self.candidates)


class CandidateAdmission:
    """Scan-phase builder for the Top-K candidate set.

    Safe to share between scanning workers. The distance function is called
    outside the lock, at most once per distinct pattern.
    """

    def __init__(self, distance: Callable[[str, str], float]) -> None:
        """Initialize the builder.

        Args:
            distance: Embedding distance ``(query, label) -> float``
        """
        self._distance = distance
        self._heap: list[tuple[float, int, ScoredCandidate]] = []
        self._seen: dict[str, int] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._frozen: TopKCandidates | None = None

    def __len__(self) -> int:
        """Number of distinct patterns admitted so far."""
        with self._lock:
            return len(self._heap)

    @property
    def is_frozen(self) -> bool:
        return self._frozen is not None

    def snapshot(self) -> list[ScoredCandidate]:
        """Admitted candidates in priority order, without draining."""
        with self._lock:
            return [candidate for _, _, candidate in sorted(self._heap)]

    def add(self, observation: CandidateObservation) -> bool:
        """Score and admit an observation unless its pattern was seen before.

        Returns:
            True if the observation was admitted, False if it was a duplicate
            or arrived after the set was frozen

        Raises:
            TransportFailure: If the distance call fails; the pattern is
                released so a later observation may retry it
        """
        with self._lock:
            if self._frozen is not None:
                logger.warning("admission.add_after_freeze", pattern=observation.pattern)
                return False
            if observation.pattern in self._seen:
                return False
            sequence = self._sequence
            self._sequence += 1
            self._seen[observation.pattern] = sequence

        try:
            distance = float(self._distance(observation.query, observation.label))
        except BaseException:
            with self._lock:
                del self._seen[observation.pattern]
            raise

        candidate = ScoredCandidate(observation, distance)
        with self._lock:
            if self._frozen is not None:
                return False
            heapq.heappush(self._heap, (distance, sequence, candidate))
        logger.debug(
            "admission.added", pattern=observation.pattern, distance=distance
        )
        return True

    def finalize(self, k: int) -> TopKCandidates:
        """Freeze the K closest candidates.

        The first successful call drains the heap; every later call returns
        the same TopKCandidates, whatever k it is given. A call that raises
        leaves the admitted candidates in place.

        Raises:
            ConfigurationFailure: If k is negative or a selected pattern
                cannot be parsed
        """
        if k < 0:
            raise ConfigurationFailure(f"k must be non-negative, got {k}")

        with self._lock:
            if self._frozen is not None:
                return self._frozen

            selected = [candidate for _, _, candidate in heapq.nsmallest(k, self._heap)]
            try:
                patterns = tuple(
                    MethodPattern.parse(c.observation.pattern) for c in selected
                )
            except ValueError as e:
                raise ConfigurationFailure(str(e)) from e

            self._frozen = TopKCandidates(candidates=tuple(selected), patterns=patterns)
            self._heap.clear()

        logger.info(
            "admission.frozen",
            k=k,
            selected=len(selected),
            distinct_patterns=len(self._seen),
        )
        return self._frozen
