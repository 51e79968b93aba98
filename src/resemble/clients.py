"""HTTP clients for the local scoring daemon.

The daemon exposes a Gradio-style API:

- HEAD /                 health check (200 when ready)
- POST /run/predict      fast embedding relatedness, tri-state verdict
- POST /run/distance     embedding distance between two texts
- POST /run/judge        generative relatedness score
- POST /run/recommend    generative modernization recommendations

Every request carries an explicit timeout. Transport errors, timeouts and
non-2xx responses are raised as TransportFailure so that a failed call can
never be mistaken for an "unrelated" verdict.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any

import httpx
import structlog

from resemble.errors import TransportFailure

logger = structlog.get_logger()

# Status reported by check_up() when the daemon cannot be reached at all
UNREACHABLE_STATUS = 523


class Verdict(IntEnum):
    """Outcome of the fast embedding relatedness check."""

    UNRELATED = -1
    INCONCLUSIVE = 0
    RELATED = 1

    @classmethod
    def from_payload(cls, data: Any) -> Verdict:
        """Parse the daemon's ``data`` field into a verdict.

        Gradio wraps outputs inconsistently, so a one-element list, a numeric
        string and a plain number are all accepted.

        Raises:
            TransportFailure: If the payload is not a known verdict
        """
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        try:
            return cls(int(float(data)))
        except (TypeError, ValueError) as e:
            raise TransportFailure(f"Unexpected relatedness payload: {data!r}") from e


class _DaemonClient:
    """Shared plumbing for clients talking to the daemon."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Daemon URL, e.g. http://127.0.0.1:7860
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url
        self._client = httpx.Client(
            base_url=base_url, timeout=timeout, transport=transport
        )

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            response = self._client.post(path, json=body)
        except httpx.TimeoutException as e:
            raise TransportFailure(f"Timed out calling {self.base_url}{path}") from e
        except httpx.HTTPError as e:
            raise TransportFailure(f"Unable to call {self.base_url}{path}: {e}") from e

        if not response.is_success:
            raise TransportFailure(
                f"Unable to call {self.base_url}{path}. HTTP {response.status_code}"
            )
        try:
            return response.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportFailure(
                f"Malformed response from {self.base_url}{path}"
            ) from e

    def close(self) -> None:
        """Release pooled connections."""
        self._client.close()


class ScoringClient(_DaemonClient):
    """Client for the embedding model endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        health_timeout: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.health_timeout = health_timeout

    def check_up(self) -> int:
        """Issue a health request.

        Returns:
            HTTP status of ``HEAD /``, or 523 if the daemon is unreachable
        """
        try:
            response = self._client.head("/", timeout=self.health_timeout)
        except httpx.HTTPError:
            return UNREACHABLE_STATUS
        return response.status_code

    def get_relatedness(self, query: str, text: str, threshold: float) -> Verdict:
        """Ask the embedding model whether two texts are related."""
        data = self._post("/run/predict", {"data": [query, text], "threshold": threshold})
        return Verdict.from_payload(data)

    def get_distance(self, query: str, text: str) -> float:
        """Embedding distance between two texts; lower is more related."""
        data = self._post("/run/distance", {"data": [query, text]})
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        try:
            return float(data)
        except (TypeError, ValueError) as e:
            raise TransportFailure(f"Unexpected distance payload: {data!r}") from e


class GenerativeClient(_DaemonClient):
    """Client for the slower generative model endpoints."""

    def is_related(self, query: str, text: str, threshold: float) -> bool:
        """Generative relatedness judgment.

        Returns:
            True if the model's score reaches the threshold
        """
        data = self._post("/run/judge", {"data": [query, text], "threshold": threshold})
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        try:
            score = float(data)
        except (TypeError, ValueError) as e:
            raise TransportFailure(f"Unexpected judgment payload: {data!r}") from e
        logger.debug("generative.judged", score=score, threshold=threshold)
        return score >= threshold

    def get_recommendations(self, code: str) -> list[str]:
        """Modernization recommendations for a method declaration."""
        data = self._post("/run/recommend", {"data": [code]})
        if not isinstance(data, list):
            raise TransportFailure(f"Unexpected recommendations payload: {data!r}")
        return [str(item) for item in data]
