"""Relatedness decision for confirmed candidates.

A candidate is first checked by the fast embedding model through the
relatedness cache. A clear verdict is final. An inconclusive verdict falls
back to the slower generative model, whose answer is authoritative.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from resemble.cache import RelatednessCache
from resemble.clients import Verdict
from resemble.telemetry import PerformanceSample

logger = structlog.get_logger()

DEFAULT_RELATED_THRESHOLD = 0.0755
DEFAULT_GENERATIVE_THRESHOLD = 0.5932


class RelatednessDecider:
    """Combines the cached fast check with the generative fallback."""

    def __init__(
        self,
        cache: RelatednessCache[Verdict],
        fallback: Callable[[str, str, float], bool],
        related_threshold: float = DEFAULT_RELATED_THRESHOLD,
        generative_threshold: float = DEFAULT_GENERATIVE_THRESHOLD,
    ) -> None:
        """Initialize the decider.

        Args:
            cache: Cache in front of the fast embedding relatedness call
            fallback: Generative judgment ``(query, text, threshold) -> bool``
            related_threshold: Threshold for the fast check
            generative_threshold: Threshold for the generative fallback
        """
        self.cache = cache
        self.fallback = fallback
        self.related_threshold = related_threshold
        self.generative_threshold = generative_threshold

    def is_related(
        self,
        query: str,
        candidate_text: str,
        sample: PerformanceSample | None = None,
    ) -> bool:
        """Decide whether ``candidate_text`` matches ``query``.

        Timings of fresh fast-check calls are recorded into ``sample`` before
        any fallback is attempted.

        Raises:
            TransportFailure: If either model call fails
        """
        related = self.cache.get_or_compute(query, candidate_text, self.related_threshold)
        if sample is not None:
            for timing in related.timings:
                sample.record_invocation(timing)

        verdict = Verdict(related.value)
        if verdict is not Verdict.INCONCLUSIVE:
            return verdict is Verdict.RELATED

        result = self.fallback(query, candidate_text, self.generative_threshold)
        logger.debug(
            "decision.fallback",
            candidate=candidate_text,
            related=result,
        )
        return result
