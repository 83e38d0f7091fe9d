"""Entity model and enumerations for the archive search core.

An :class:`Entity` is the unit of retrieval. Titles, summaries and bodies are
carried as one field per locale (``*_en`` and ``*_zh``) so normalisation is
applied per field deterministically.
"""
# [nav:section public-api]

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

__all__ = [
    "INDEXED_FIELDS",
    "Entity",
    "EntityStatus",
    "EntityType",
    "Locale",
    "SortMode",
    "Visibility",
    "utcnow",
]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


# [nav:anchor EntityType]
class EntityType(StrEnum):
    """Kinds of archive entities."""

    PROJECT = "project"
    PUBLICATION = "publication"
    EXPERIMENT = "experiment"
    DATASET = "dataset"
    MODEL = "model"
    REPO = "repo"
    NOTE = "note"
    LIT_REVIEW = "lit_review"
    MEETING = "meeting"
    IDEA = "idea"
    SKILL = "skill"
    METHOD = "method"
    MATERIAL_SYSTEM = "material_system"
    METRIC = "metric"
    COLLABORATOR = "collaborator"
    INSTITUTION = "institution"
    MEDIA = "media"


# [nav:anchor EntityStatus]
class EntityStatus(StrEnum):
    """Lifecycle state of an entity."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


# [nav:anchor Visibility]
class Visibility(StrEnum):
    """Access-control classification of an entity."""

    PUBLIC = "public"
    PRIVATE = "private"


# [nav:anchor Locale]
class Locale(StrEnum):
    """Content locales carried by every localized field pair."""

    EN = "en"
    ZH = "zh"


# [nav:anchor SortMode]
class SortMode(StrEnum):
    """Keyword result orderings.

    ``date`` is the newest-first ordering and is kept as its own member so
    callers can send either ``date`` or ``date_desc``.
    """

    RELEVANCE = "relevance"
    DATE = "date"
    DATE_DESC = "date_desc"
    DATE_ASC = "date_asc"
    TITLE = "title"


# Field name -> (base field, locale). Order is the order matched_fields reports.
INDEXED_FIELDS: Final[tuple[tuple[str, str, Locale], ...]] = (
    ("title_en", "title", Locale.EN),
    ("title_zh", "title", Locale.ZH),
    ("summary_en", "summary", Locale.EN),
    ("summary_zh", "summary", Locale.ZH),
    ("body_en", "body", Locale.EN),
    ("body_zh", "body", Locale.ZH),
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# [nav:anchor Entity]
class Entity(BaseModel):
    """A retrievable archive entity.

    Attributes
    ----------
    id : str
        Opaque immutable identifier.
    type : EntityType
        Entity kind.
    title_en, title_zh : str | None
        Localized titles; at least one must be non-blank.
    summary_en, summary_zh : str | None
        Localized one-paragraph summaries.
    body_en, body_zh : str | None
        Localized body text.
    tags : frozenset[str]
        Free-form tags.
    status : EntityStatus
        Lifecycle state.
    visibility : Visibility
        Access classification.
    created_at, updated_at : datetime
        Aware UTC timestamps; naive inputs are read as UTC.

    Examples
    --------
    >>> entity = Entity(id="p1", type="project", title_en="Graph Neural Networks")
    >>> entity.visibility
    <Visibility.PUBLIC: 'public'>
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    type: EntityType
    title_en: str | None = None
    title_zh: str | None = None
    summary_en: str | None = None
    summary_zh: str | None = None
    body_en: str | None = None
    body_zh: str | None = None
    tags: frozenset[str] = Field(default_factory=frozenset)
    status: EntityStatus = EntityStatus.ACTIVE
    visibility: Visibility = Visibility.PUBLIC
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _strip_tags(cls, value: object) -> object:
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(tag).strip() for tag in value if str(tag).strip())
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> Self:
        if not (self.title_en or "").strip() and not (self.title_zh or "").strip():
            msg = "at least one of title_en or title_zh is required"
            raise ValueError(msg)
        if self.updated_at < self.created_at:
            msg = "updated_at must not be earlier than created_at"
            raise ValueError(msg)
        return self

    def text_fields(self) -> dict[str, str]:
        """Return the non-empty localized text fields keyed by field name."""
        fields: dict[str, str] = {}
        for name, _base, _locale in INDEXED_FIELDS:
            value = getattr(self, name)
            if value and value.strip():
                fields[name] = value
        return fields

    def embedding_text(self) -> str:
        """Return titles, summaries and bodies joined into one passage."""
        return " ".join(text.strip() for text in self.text_fields().values())

