"""Runtime settings with typed configuration and fail-fast validation.

Each section reads its own environment namespace; :class:`RuntimeSettings`
aggregates them and converts validation failures into :class:`SettingsError`.

Examples
--------
>>> from archive_common.settings import load_settings
>>> settings = load_settings()
>>> settings.search.max_limit
100
"""

from __future__ import annotations

from typing import Self

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from archive_common.errors import SettingsError
from archive_common.logging import get_logger

__all__ = [
    "ObservabilityConfig",
    "RuntimeSettings",
    "SearchConfig",
    "SemanticConfig",
    "load_settings",
]

logger = get_logger(__name__)


class SearchConfig(BaseSettings):
    """Keyword search and ranking parameters (``ARCHIVE_SEARCH_*``)."""

    model_config = SettingsConfigDict(env_prefix="ARCHIVE_SEARCH_", extra="forbid")

    default_limit: int = Field(default=20, ge=1, description="Page size when none is requested")
    max_limit: int = Field(default=100, ge=1, description="Upper bound applied to any page size")
    quick_limit: int = Field(default=10, ge=1, description="Result count for quick search")
    bm25_k1: float = Field(default=0.9, gt=0, description="BM25 k1 parameter")
    bm25_b: float = Field(default=0.4, ge=0, le=1, description="BM25 b parameter")
    rrf_k: int = Field(default=60, ge=1, description="Reciprocal Rank Fusion parameter")

    @model_validator(mode="after")
    def _default_within_max(self) -> Self:
        if self.default_limit > self.max_limit:
            msg = "default_limit must not exceed max_limit"
            raise ValueError(msg)
        return self


class SemanticConfig(BaseSettings):
    """Embedding and vector matching parameters (``ARCHIVE_SEMANTIC_*``)."""

    model_config = SettingsConfigDict(env_prefix="ARCHIVE_SEMANTIC_", extra="forbid")

    enabled: bool = Field(default=True, description="Enable semantic search")
    model_version: str = Field(
        default="all-MiniLM-L6-v2", min_length=1, description="Active embedding model version"
    )
    dimension: int = Field(default=384, ge=1, description="Embedding dimensionality")
    default_top_k: int = Field(default=10, ge=1, description="Top-K when no limit is requested")
    default_threshold: float = Field(
        default=0.3, description="Similarity threshold when none is requested"
    )
    embed_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Deadline for a single embedding call"
    )
    embed_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts for deferred embedding jobs"
    )
    deferred_workers: int = Field(
        default=2, ge=1, description="Worker threads for deferred embedding"
    )


class ObservabilityConfig(BaseSettings):
    """Logging and metrics toggles (``ARCHIVE_*`` namespace)."""

    model_config = SettingsConfigDict(env_prefix="ARCHIVE_", extra="ignore")

    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    metrics_enabled: bool = Field(default=True, description="Enable Prometheus metrics")


class RuntimeSettings(BaseSettings):
    """Aggregate runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVE_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    search: SearchConfig = Field(
        default_factory=SearchConfig, description="Keyword search configuration"
    )
    semantic: SemanticConfig = Field(
        default_factory=SemanticConfig, description="Semantic search configuration"
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig, description="Observability configuration"
    )

    def __init__(self, **overrides: object) -> None:
        """Initialise settings, raising :class:`SettingsError` on invalid values."""
        try:
            super().__init__(**overrides)  # type: ignore[arg-type]
        except ValidationError as exc:
            errors: list[dict[str, object]] = [
                {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
                for error in exc.errors()
            ]
            logger.exception(
                "Settings validation failed",
                extra={"operation": "load_settings", "error_type": type(exc).__name__},
            )
            msg = f"Configuration validation failed: {exc.error_count()} error(s)"
            raise SettingsError(msg, errors=errors, cause=exc) from exc


def load_settings(**overrides: object) -> RuntimeSettings:
    """Load :class:`RuntimeSettings` with optional overrides.

    Parameters
    ----------
    **overrides : object
        Section values (``search=SearchConfig(...)`` or plain dicts).

    Returns
    -------
    RuntimeSettings
        Validated settings.

    Raises
    ------
    SettingsError
        If any section fails validation.
    """
    return RuntimeSettings(**overrides)
