"""Application settings. All configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError if a required API key is missing
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── API Keys ────────────────────────────────────────────────────────────
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )
    google_search_api_key: str = field(
        default_factory=lambda: os.environ.get("GOOGLE_SEARCH_API_KEY", "")
    )
    google_search_engine_id: str = field(
        default_factory=lambda: os.environ.get("GOOGLE_SEARCH_ENGINE_ID", "")
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(
        default_factory=lambda: os.environ.get("FLASK_DEBUG", "0") == "1"
    )
    port: int = field(default_factory=lambda: _env_int("PORT", 5001))

    # ── Research loop ───────────────────────────────────────────────────────
    max_iterations: int = field(
        default_factory=lambda: _env_int("RESEARCH_MAX_ITERATIONS", 2)
    )
    max_queries_per_iteration: int = field(
        default_factory=lambda: _env_int("RESEARCH_MAX_QUERIES_PER_ITERATION", 3)
    )
    #: Upper bound on queries searched + summarised at once within an iteration.
    max_concurrency: int = field(
        default_factory=lambda: _env_int("RESEARCH_MAX_CONCURRENCY", 4)
    )

    # ── Search + crawl ──────────────────────────────────────────────────────
    max_search_results: int = field(
        default_factory=lambda: _env_int("SEARCH_MAX_RESULTS", 6)
    )
    max_crawl_urls: int = field(
        default_factory=lambda: _env_int("CRAWL_MAX_URLS", 4)
    )
    crawl_timeout: float = field(
        default_factory=lambda: _env_float("CRAWL_TIMEOUT", 10.0)
    )

    # ── Background jobs ─────────────────────────────────────────────────────
    job_workers: int = field(default_factory=lambda: _env_int("JOB_WORKERS", 4))
    job_max_attempts: int = field(
        default_factory=lambda: _env_int("JOB_MAX_ATTEMPTS", 3)
    )
    job_backoff_base: float = field(
        default_factory=lambda: _env_float("JOB_BACKOFF_BASE", 2.0)
    )
    job_backoff_max: float = field(
        default_factory=lambda: _env_float("JOB_BACKOFF_MAX", 60.0)
    )
    job_attempt_timeout: float = field(
        default_factory=lambda: _env_float("JOB_ATTEMPT_TIMEOUT", 600.0)
    )
    #: Seconds a finished job stays queryable before it is pruned.
    job_retention: float = field(
        default_factory=lambda: _env_float("JOB_RETENTION", 3600.0)
    )

    # ── AI Models ───────────────────────────────────────────────────────────
    #: Model used for per-query summaries and reflection.
    research_model: str = field(
        default_factory=lambda: os.environ.get("RESEARCH_MODEL", "claude-haiku-4-5")
    )
    #: Model used for the final answer synthesis.
    synthesis_model: str = field(
        default_factory=lambda: os.environ.get("SYNTHESIS_MODEL", "claude-sonnet-4-5")
    )

    def validate(self) -> None:
        """Raise ``ValueError`` if any required setting is missing."""
        if not self.anthropic_api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable is not set. "
                "Copy .env.example to .env and add your key."
            )
        if not self.google_search_api_key or not self.google_search_engine_id:
            raise ValueError(
                "GOOGLE_SEARCH_API_KEY and GOOGLE_SEARCH_ENGINE_ID must both be set."
            )
