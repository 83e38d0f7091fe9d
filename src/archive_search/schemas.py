"""Caller-facing query and response models.

Out-of-range values are clamped or dropped here so a sloppy query still runs;
only structurally unusable values (a ``limit`` below one, a non-numeric
``limit``) fail validation.
"""
# [nav:section public-api]

from __future__ import annotations

import math
from datetime import UTC, date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from archive_search.models import Locale, SortMode

__all__ = [
    "EmbeddingStatus",
    "Facets",
    "HybridSearchResponse",
    "KeywordSearchResponse",
    "SearchQuery",
    "SearchResult",
    "SemanticSearchResponse",
    "SemanticStatus",
    "TimeBucket",
]

Facets = dict[str, dict[str, int]]


def _parse_bound(value: object, *, end_of_day: bool) -> datetime | None:
    """Parse a date filter bound; anything unparseable becomes ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.max if end_of_day else time.min)
    elif isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == len("YYYY-MM-DD"):
                day = date.fromisoformat(text)
                parsed = datetime.combine(day, time.max if end_of_day else time.min)
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


# [nav:anchor SearchQuery]
class SearchQuery(BaseModel):
    """Structured query accepted by keyword, semantic and hybrid search.

    Attributes
    ----------
    query : str
        Raw query text. Empty means browse.
    type, status : str | None
        Exact-match filters. Unknown values match nothing.
    visibility : str | None
        Requested visibility, intersected with what the caller may see.
    tags : list[str] | None
        Any-of tag filter. A comma separated string is split.
    date_from, date_to : datetime | None
        Inclusive bounds on ``created_at``. A bare ``date_to`` day covers the
        whole day. Unparseable values are ignored.
    page : int
        1-indexed page; values below one become one.
    limit : int | None
        Page size (keyword) or top-K (semantic). Must be at least one; the
        service caps it.
    sort : SortMode
        Keyword ordering; unknown keys fall back to relevance.
    threshold : float | None
        Minimum cosine similarity, clamped to [-1, 1].
    locale : Locale | None
        Caller locale; selects the title used by ``sort="title"``.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    query: str = ""
    type: str | None = None
    status: str | None = None
    visibility: str | None = None
    tags: list[str] | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int | None = None
    sort: SortMode = SortMode.RELEVANCE
    threshold: float | None = None
    locale: Locale | None = None

    @field_validator("query", mode="before")
    @classmethod
    def _coerce_query(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("type", "status", "visibility", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple, set, frozenset)):
            cleaned = [str(tag).strip() for tag in value if str(tag).strip()]
            return cleaned or None
        return value

    @field_validator("date_from", mode="before")
    @classmethod
    def _parse_date_from(cls, value: object) -> datetime | None:
        return _parse_bound(value, end_of_day=False)

    @field_validator("date_to", mode="before")
    @classmethod
    def _parse_date_to(cls, value: object) -> datetime | None:
        return _parse_bound(value, end_of_day=True)

    @field_validator("page", mode="before")
    @classmethod
    def _clamp_page(cls, value: object) -> int:
        try:
            page = int(value)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            return 1
        return max(page, 1)

    @field_validator("limit")
    @classmethod
    def _check_limit(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            msg = "limit must be a positive integer"
            raise ValueError(msg)
        return value

    @field_validator("sort", mode="before")
    @classmethod
    def _fallback_sort(cls, value: object) -> object:
        if value is None:
            return SortMode.RELEVANCE
        try:
            return SortMode(str(value).strip().lower())
        except ValueError:
            return SortMode.RELEVANCE

    @field_validator("threshold", mode="before")
    @classmethod
    def _clamp_threshold(cls, value: object) -> float | None:
        if value is None or value == "":
            return None
        try:
            threshold = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        if math.isnan(threshold):
            return None
        return min(1.0, max(-1.0, threshold))

    @field_validator("locale", mode="before")
    @classmethod
    def _known_locale(cls, value: object) -> object:
        if value is None:
            return None
        text = str(value).strip().lower()
        if text.startswith("zh"):
            return Locale.ZH
        if text.startswith("en"):
            return Locale.EN
        return None


# [nav:anchor SearchResult]
class SearchResult(BaseModel):
    """One ranked hit. Scores are not comparable across retrieval modes."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entity_id: str
    score: float
    matched_fields: list[str] | None = None
    """Fields holding a query token; keyword and hybrid hits only."""
    type: str | None = None
    title_en: str | None = None
    title_zh: str | None = None
    snippet: str | None = None
    """Excerpt with query hits wrapped in ``<mark>``; keyword and hybrid hits only."""


# [nav:anchor KeywordSearchResponse]
class KeywordSearchResponse(BaseModel):
    """Paginated, faceted keyword search envelope."""

    model_config = ConfigDict(extra="forbid")

    results: list[SearchResult] = Field(default_factory=list)
    total: int = 0
    """Size of the filtered set before pagination."""
    facets: Facets = Field(default_factory=dict)
    page: int = 1
    limit: int
    sort: SortMode = SortMode.RELEVANCE


# [nav:anchor SemanticSearchResponse]
class SemanticSearchResponse(BaseModel):
    """Bounded top-K semantic search envelope; ``total`` is ``len(results)``."""

    model_config = ConfigDict(extra="forbid")

    results: list[SearchResult] = Field(default_factory=list)
    total: int = 0
    enabled: bool = True
    model_version: str
    threshold: float


# [nav:anchor HybridSearchResponse]
class HybridSearchResponse(BaseModel):
    """Rank-fused keyword and semantic results."""

    model_config = ConfigDict(extra="forbid")

    results: list[SearchResult] = Field(default_factory=list)
    total: int = 0
    mode: Literal["hybrid", "keyword"] = "hybrid"


# [nav:anchor EmbeddingStatus]
class EmbeddingStatus(BaseModel):
    """Counters maintained by the embedding store."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    total_entities: int
    embedded_count: int
    stale_count: int
    model_version: str


# [nav:anchor SemanticStatus]
class SemanticStatus(BaseModel):
    """Index health safe to show unauthenticated callers.

    ``ready`` is false while no fresh embedding exists, which lets a UI say
    "semantic search not yet available" instead of "no matches".
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool
    model_version: str
    dimension: int
    total_entities: int
    embedded_count: int
    stale_count: int
    pending_jobs: int = 0
    ready: bool


# [nav:anchor TimeBucket]
class TimeBucket(BaseModel):
    """Entity count for one period of the timeline facet."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    period: str
    count: int

