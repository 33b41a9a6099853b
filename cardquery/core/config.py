"""Configuration primitives for the query pipeline."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _load_env(dotenv_path: Optional[Path] = None) -> None:
    """Load the .env file once for the process."""

    if getattr(_load_env, "_loaded", False):  # type: ignore[attr-defined]
        return

    load_dotenv(dotenv_path)
    setattr(_load_env, "_loaded", True)  # type: ignore[attr-defined]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip() not in {"0", "false", "False", "no", ""}


@dataclass(frozen=True)
class PipelineOptions:
    """Plain named options consumed by the pipeline components.

    Nothing here reads the environment on its own; ``from_env`` is only a
    convenience for deployments that keep overrides in ``.env``.
    """

    # Intent confidence bands
    high_confidence: float = 0.85
    medium_confidence: float = 0.70

    # Pattern learner
    pattern_match_confidence: float = 0.8
    pattern_initial_confidence: float = 0.8
    pattern_confidence_floor: float = 0.3
    pattern_confidence_ceiling: float = 1.0
    pattern_confidence_boost: float = 0.05
    pattern_confidence_decay: float = 0.5
    problem_success_rate: float = 0.7
    problem_min_uses: int = 5

    # External services
    service_timeout_s: float = 5.0
    vector_top_k: int = 3

    # Feature flags
    enable_pattern_learning: bool = True
    enable_analytics: bool = True
    apply_feedback: bool = True

    # Entity extraction
    association_window: int = 6

    # Insight thresholds
    utilization_alert: float = 0.70
    apr_alert: float = 25.0
    due_soon_days: int = 3

    def __post_init__(self) -> None:
        if not 0.0 <= self.medium_confidence <= self.high_confidence <= 1.0:
            raise ValueError("Confidence thresholds must satisfy 0 <= medium <= high <= 1")
        if not 0.0 <= self.pattern_confidence_floor <= self.pattern_confidence_ceiling <= 1.0:
            raise ValueError("Pattern confidence floor must not exceed the ceiling")
        if not 0.0 < self.pattern_confidence_decay < 1.0:
            raise ValueError("Pattern confidence decay must be a factor between 0 and 1")
        if self.service_timeout_s <= 0:
            raise ValueError("service_timeout_s must be positive")

    @classmethod
    def from_env(cls) -> "PipelineOptions":
        """Instantiate options using environment overrides when present."""

        _load_env()
        defaults = cls()
        return cls(
            high_confidence=float(os.getenv("CARDQUERY_HIGH_CONFIDENCE", defaults.high_confidence)),
            medium_confidence=float(
                os.getenv("CARDQUERY_MEDIUM_CONFIDENCE", defaults.medium_confidence)
            ),
            pattern_match_confidence=float(
                os.getenv("CARDQUERY_PATTERN_MATCH_CONFIDENCE", defaults.pattern_match_confidence)
            ),
            pattern_confidence_floor=float(
                os.getenv("CARDQUERY_PATTERN_FLOOR", defaults.pattern_confidence_floor)
            ),
            pattern_confidence_ceiling=float(
                os.getenv("CARDQUERY_PATTERN_CEILING", defaults.pattern_confidence_ceiling)
            ),
            service_timeout_s=float(
                os.getenv("CARDQUERY_SERVICE_TIMEOUT", defaults.service_timeout_s)
            ),
            enable_pattern_learning=_env_flag(
                "CARDQUERY_PATTERN_LEARNING", defaults.enable_pattern_learning
            ),
            enable_analytics=_env_flag("CARDQUERY_ANALYTICS", defaults.enable_analytics),
            apply_feedback=_env_flag("CARDQUERY_FEEDBACK_LEARNING", defaults.apply_feedback),
        )


@dataclass(frozen=True)
class Settings:
    """Container for deployment configuration."""

    pipeline: PipelineOptions = field(default_factory=PipelineOptions)
    database_url: Optional[str] = None
    llm_provider: str = "claude-haiku-4.5"
    embedding_backend: str = "hashing"
    sqlalchemy_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration values from environment variables."""

        _load_env()
        return cls(
            pipeline=PipelineOptions.from_env(),
            database_url=os.getenv("CARDQUERY_DATABASE_URL") or None,
            llm_provider=os.getenv("CARDQUERY_LLM_PROVIDER", cls.llm_provider),
            embedding_backend=os.getenv("CARDQUERY_EMBEDDINGS", cls.embedding_backend),
            sqlalchemy_echo=_env_flag("SQLALCHEMY_ECHO", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""

    settings = Settings.from_env()

    # Import locally to avoid circular dependencies during module import time.
    from .log import get_logger

    logger = get_logger(__name__)
    logger.debug(
        "Settings initialised llm_provider=%s embeddings=%s persistence=%s",
        settings.llm_provider,
        settings.embedding_backend,
        "on" if settings.database_url else "off",
    )
    return settings
