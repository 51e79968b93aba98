"""resemble configuration module.

Provides centralized configuration for the matching funnel, the model daemon
supervisor and the relatedness cache. All settings support environment
variable overrides with the RESEMBLE_ prefix.

Usage:
    from resemble.config import settings

    print(settings.daemon_url)
    print(settings.cache_capacity)
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default paths
RESEMBLE_HOME = Path.home() / ".resemble"
MODELS_DIR = RESEMBLE_HOME / "models"


class ResembleSettings(BaseSettings):
    """resemble configuration.

    All settings can be overridden via environment variables with RESEMBLE_
    prefix. For example, RESEMBLE_DAEMON_PORT=7861 sets daemon_port to 7861.
    """

    model_config = SettingsConfigDict(env_prefix="RESEMBLE_")

    # =========================================================================
    # Paths
    # =========================================================================

    home: Path = Field(
        default=RESEMBLE_HOME,
        description="Base directory for resemble data",
    )
    models_dir: Path = Field(
        default=MODELS_DIR,
        description="Directory the daemon launcher script is staged into",
    )

    # =========================================================================
    # Model daemon
    # =========================================================================

    daemon_host: str = Field(
        default="127.0.0.1",
        description="Host the local scoring daemon listens on",
    )
    daemon_port: int = Field(
        default=7860,
        description="Port the local scoring daemon listens on",
    )
    launcher_name: str = Field(
        default="get_is_related.py",
        description="File name of the launcher script in models_dir",
    )
    python_executable: str | None = Field(
        default=None,
        description=(
            "Interpreter used to run the launcher. Defaults to the active "
            "virtualenv's python."
        ),
    )
    health_poll_interval: float = Field(
        default=1.0,
        description="Seconds between readiness polls while the daemon boots",
    )
    health_poll_attempts: int = Field(
        default=60,
        description="Readiness polls before bootstrap is declared failed",
    )

    # =========================================================================
    # Timeouts
    # =========================================================================

    health_timeout: float = Field(
        default=2.0,
        description="Timeout in seconds for a single health check",
    )
    request_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a single scoring call",
    )

    # =========================================================================
    # Matching
    # =========================================================================

    related_threshold: float = Field(
        default=0.0755,
        description="Threshold passed to the fast embedding relatedness check",
    )
    generative_threshold: float = Field(
        default=0.5932,
        description="Decision threshold for the generative fallback",
    )
    top_k: int = Field(
        default=1000,
        description="Default number of candidate patterns kept after the scan",
    )
    max_workers: int = Field(
        default=4,
        description="Worker threads used to traverse units in parallel",
    )

    # =========================================================================
    # Relatedness cache
    # =========================================================================

    cache_capacity: int = Field(
        default=1000,
        description="Maximum number of memoized relatedness results",
    )
    cache_policy: Literal["fifo", "lru"] = Field(
        default="fifo",
        description=(
            'Eviction order: "fifo" evicts the oldest insertion, '
            '"lru" the least recently read entry'
        ),
    )

    # =========================================================================
    # Recommendations
    # =========================================================================

    recommendation_sample_rate: float = Field(
        default=2 / 200,
        description="Fraction of method declarations sampled at random",
    )
    recommendation_seed: int = Field(
        default=13,
        description="Seed for random recommendation sampling",
    )

    # =========================================================================
    # Logging
    # =========================================================================

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_format: str = Field(
        default="json",
        description=(
            'Logging format: "json" for structured logs, '
            '"console" for human-readable'
        ),
    )

    @property
    def daemon_url(self) -> str:
        """Base URL of the local scoring daemon."""
        return f"http://{self.daemon_host}:{self.daemon_port}"

    @property
    def launcher_path(self) -> Path:
        """Where the launcher script is staged."""
        return self.models_dir.expanduser() / self.launcher_name

    def model_post_init(self, context: Any) -> None:
        """Validate settings after initialization."""
        # Cosine distance lies in [0, 2]
        if not 0.0 <= self.related_threshold <= 2.0:
            raise ValueError(
                f"related_threshold must be between 0 and 2, "
                f"got {self.related_threshold}"
            )
        if not 0.0 <= self.generative_threshold <= 1.0:
            raise ValueError(
                f"generative_threshold must be between 0 and 1, "
                f"got {self.generative_threshold}"
            )
        if not 0.0 <= self.recommendation_sample_rate <= 1.0:
            raise ValueError(
                f"recommendation_sample_rate must be between 0 and 1, "
                f"got {self.recommendation_sample_rate}"
            )
        if self.cache_capacity < 1:
            raise ValueError(
                f"cache_capacity must be at least 1, got {self.cache_capacity}"
            )
        if self.health_poll_attempts < 1:
            raise ValueError(
                f"health_poll_attempts must be at least 1, "
                f"got {self.health_poll_attempts}"
            )
        if self.health_poll_interval <= 0:
            raise ValueError(
                f"health_poll_interval must be positive, "
                f"got {self.health_poll_interval}"
            )
        if self.max_workers < 1:
            raise ValueError(
                f"max_workers must be at least 1, got {self.max_workers}"
            )


# Module-level singleton instance
settings = ResembleSettings()
