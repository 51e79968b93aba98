"""Modernization recommendations for a sample of method declarations.

Declarations are sampled either at random (seeded, so runs are repeatable)
or from a CSV file of ``source_path,method_name`` rows produced by an earlier
clustering step. Each sampled declaration is sent to the generative model and
one RecommendationRow is recorded per call.
"""

from __future__ import annotations

import csv
import random
import threading
import time
from collections.abc import Callable
from pathlib import Path

import structlog

from resemble.corpus import SourceUnit
from resemble.telemetry import DataTable, RecommendationRow

logger = structlog.get_logger()

# Rough characters-per-token ratio for cost estimates
CHARS_PER_TOKEN = 3.5

# Random sampling draws randrange(SAMPLE_BUCKETS) and keeps the lowest
# sample_rate * SAMPLE_BUCKETS buckets
SAMPLE_BUCKETS = 200


def load_methods_to_sample(path: Path) -> dict[str, set[str]]:
    """Read ``source_path,method_name`` rows into a path -> names mapping."""
    methods: dict[str, set[str]] = {}
    with open(path, newline="") as f:
        for row in csv.reader(f):
            if len(row) < 2 or not row[0].strip():
                continue
            methods.setdefault(row[0].strip(), set()).add(row[1].strip())
    logger.info("recommendations.sample_loaded", path=str(path), files=len(methods))
    return methods


def format_recommendations(recommendations: list[str]) -> str:
    """Render as a quoted list: ``["a", "b"]``."""
    return "[" + ", ".join(f'"{r}"' for r in recommendations) + "]"


def estimate_tokens(code: str, recommendations: list[str]) -> int:
    rendered = "[" + ", ".join(recommendations) + "]"
    return int(len(code) / CHARS_PER_TOKEN + len(rendered) / CHARS_PER_TOKEN)


class RecommendationSampler:
    """Samples method declarations and records generative recommendations."""

    def __init__(
        self,
        recommend: Callable[[str], list[str]],
        table: DataTable[RecommendationRow],
        methods_to_sample: dict[str, set[str]] | None = None,
        sample_rate: float = 2 / 200,
        seed: int = 13,
    ) -> None:
        """Initialize the sampler.

        Args:
            recommend: Generative call ``code -> recommendations``
            table: Destination for recommendation rows
            methods_to_sample: Explicit sample by source path; random
                sampling is used when None
            sample_rate: Fraction of declarations sampled at random
            seed: Seed for random sampling
        """
        self._recommend = recommend
        self.table = table
        self.methods_to_sample = methods_to_sample
        self.sample_rate = sample_rate
        self._sampled_buckets = round(sample_rate * SAMPLE_BUCKETS)
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def should_sample(self, source_path: str, method_name: str) -> bool:
        if self.methods_to_sample is not None:
            return method_name in self.methods_to_sample.get(source_path, set())
        with self._lock:
            return self._random.randrange(SAMPLE_BUCKETS) < self._sampled_buckets

    def visit(self, unit: SourceUnit) -> list[RecommendationRow]:
        """Record recommendations for the sampled declarations of a unit.

        Raises:
            TransportFailure: If the generative call fails
        """
        rows = []
        for declaration in unit.method_declarations:
            if not self.should_sample(unit.path, declaration.name):
                continue

            start = time.perf_counter()
            recommendations = self._recommend(declaration.text)
            elapsed = time.perf_counter() - start

            row = RecommendationRow(
                method_name=declaration.name,
                elapsed_seconds=elapsed,
                token_size=estimate_tokens(declaration.text, recommendations),
                recommendations=format_recommendations(recommendations),
            )
            self.table.insert_row(row)
            rows.append(row)
            logger.info(
                "recommendations.recorded",
                path=unit.path,
                method=declaration.name,
                count=len(recommendations),
            )
        return rows
