"""Find call sites that resemble a query.

The search runs in two passes over the same units:

1. scan: every distinct invoked method is scored by embedding distance and
   offered to the Top-K admission set.
2. confirm: only invocations of the K closest methods are checked with the
   relatedness decider; units without such invocations are skipped.

Shared state (daemon supervisor, relatedness cache, admission set) lives in a
Services container built once per run and handed to every worker.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from resemble.cache import RelatednessCache
from resemble.clients import GenerativeClient, ScoringClient, Verdict
from resemble.config import ResembleSettings
from resemble.corpus import SourceUnit
from resemble.daemon import DaemonSupervisor, ModelDaemon
from resemble.errors import ConfigurationFailure, TransportFailure
from resemble.logging import unit_context
from resemble.matching import (
    CallSite,
    CandidateAdmission,
    CandidateObservation,
    MethodPattern,
    RelatednessDecider,
    TopKCandidates,
)
from resemble.telemetry import (
    DataTable,
    PerformanceRow,
    RecommendationRow,
    track_performance,
)

logger = structlog.get_logger()


@dataclass
class Services:
    """Container for the process-wide services of a search run.

    Built once by the caller and shared by reference with every worker.
    Call close() when done to release pooled HTTP connections.
    """

    settings: ResembleSettings
    scoring: ScoringClient
    generative: GenerativeClient
    supervisor: DaemonSupervisor
    cache: RelatednessCache[Verdict]
    performance: DataTable[PerformanceRow] = field(
        default_factory=lambda: DataTable("performance")
    )
    recommendations: DataTable[RecommendationRow] = field(
        default_factory=lambda: DataTable("recommendations")
    )

    @classmethod
    def create(cls, settings: ResembleSettings) -> Services:
        """Wire up clients, supervisor and cache from settings.

        Does not start the daemon; that happens on first ensure_daemon().
        """
        scoring = ScoringClient(
            settings.daemon_url,
            timeout=settings.request_timeout,
            health_timeout=settings.health_timeout,
        )
        generative = GenerativeClient(settings.daemon_url, timeout=settings.request_timeout)
        cache: RelatednessCache[Verdict] = RelatednessCache(
            scoring.get_relatedness,
            capacity=settings.cache_capacity,
            policy=settings.cache_policy,
        )
        return cls(
            settings=settings,
            scoring=scoring,
            generative=generative,
            supervisor=DaemonSupervisor(settings, client=scoring),
            cache=cache,
        )

    def ensure_daemon(self) -> ModelDaemon:
        return self.supervisor.get_instance()

    def close(self) -> None:
        self.scoring.close()
        self.generative.close()
        logger.debug("services.closed")


@dataclass(frozen=True)
class Match:
    path: str
    call_site: CallSite
    pattern: MethodPattern


@dataclass(frozen=True)
class UnitFailure:
    path: str
    error: str


@dataclass
class SearchResult:
    matches: list[Match] = field(default_factory=list)
    failures: list[UnitFailure] = field(default_factory=list)


class ResemblesSearch:
    """Two-pass search for invocations resembling ``query``."""

    def __init__(
        self,
        query: str,
        k: int,
        services: Services,
        max_workers: int | None = None,
    ) -> None:
        """Initialize the search.

        Args:
            query: Natural-language description or code sample to look for
            k: Number of candidate methods carried into the confirm pass
            services: Shared services for this run
            max_workers: Worker threads per pass (defaults to settings)

        Raises:
            ConfigurationFailure: If k is negative or the query is empty
        """
        if k < 0:
            raise ConfigurationFailure(f"k must be non-negative, got {k}")
        if not query.strip():
            raise ConfigurationFailure("query must not be empty")

        self.query = query
        self.k = k
        self.services = services
        self.max_workers = max_workers or services.settings.max_workers
        self.admission = CandidateAdmission(services.scoring.get_distance)
        self.decider = RelatednessDecider(
            services.cache,
            services.generative.is_related,
            related_threshold=services.settings.related_threshold,
            generative_threshold=services.settings.generative_threshold,
        )

    # =========================================================================
    # Scan pass
    # =========================================================================

    def scan_unit(self, unit: SourceUnit) -> None:
        with unit_context(unit.path):
            for method in unit.used_methods:
                self.admission.add(
                    CandidateObservation(
                        label=method.signature,
                        pattern=method.pattern,
                        query=self.query,
                    )
                )

    def scan(self, units: Iterable[SourceUnit]) -> None:
        """Offer every distinct invoked method to the admission set.

        Raises:
            BootstrapFailure: If the daemon cannot be started
            TransportFailure: If a distance call fails
        """
        self.services.ensure_daemon()
        units = list(units)
        logger.info("search.scan_started", units=len(units), query=self.query)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            # list() re-raises the first worker exception
            list(executor.map(self.scan_unit, units))
        logger.info("search.scan_completed", distinct_patterns=len(self.admission))

    @property
    def top_k(self) -> TopKCandidates:
        """The frozen candidate set; freezes admission on first access."""
        return self.admission.finalize(self.k)

    # =========================================================================
    # Confirm pass
    # =========================================================================

    def _matching_pattern(self, call_site: CallSite) -> MethodPattern | None:
        for pattern in self.top_k.patterns:
            if pattern.matches(call_site.method):
                return pattern
        return None

    def confirm_unit(self, unit: SourceUnit) -> list[Match]:
        """Evaluate the candidate invocations of one unit.

        Raises:
            TransportFailure: If a model call fails for this unit
        """
        candidates = [
            (site, pattern)
            for site in unit.call_sites
            if (pattern := self._matching_pattern(site)) is not None
        ]
        if not candidates:
            return []

        matches = []
        with (
            unit_context(unit.path),
            track_performance(unit.path, self.services.performance) as sample,
        ):
            for site, pattern in candidates:
                if self.decider.is_related(self.query, site.text, sample):
                    matches.append(Match(unit.path, site, pattern))
        return matches

    def confirm(self, units: Iterable[SourceUnit]) -> SearchResult:
        """Confirm candidates unit by unit.

        A unit whose model calls fail is reported in ``failures`` rather
        than as having no matches; the remaining units still run.
        """
        units = list(units)
        top_k = self.top_k
        logger.info("search.confirm_started", units=len(units), candidates=len(top_k))

        result = SearchResult()
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [(unit, executor.submit(self.confirm_unit, unit)) for unit in units]
            for unit, future in futures:
                try:
                    result.matches.extend(future.result())
                except TransportFailure as e:
                    logger.error("search.unit_failed", path=unit.path, error=str(e))
                    result.failures.append(UnitFailure(unit.path, str(e)))

        logger.info(
            "search.confirm_completed",
            matches=len(result.matches),
            failures=len(result.failures),
        )
        return result

    def run(self, units: Iterable[SourceUnit]) -> SearchResult:
        units = list(units)
        self.scan(units)
        return self.confirm(units)
