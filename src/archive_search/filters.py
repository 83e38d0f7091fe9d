"""Structured filters shared by keyword, semantic and facet computation."""
# [nav:section public-api]

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

if TYPE_CHECKING:
    from datetime import datetime

    from archive_search.lexical_index import IndexEntry
    from archive_search.schemas import SearchQuery

__all__ = [
    "FACET_DIMENSIONS",
    "FacetDimension",
    "SearchFilters",
]

type FacetDimension = Literal["type", "status", "tags"]

# [nav:anchor FACET_DIMENSIONS]
FACET_DIMENSIONS: Final[tuple[FacetDimension, ...]] = ("type", "status", "tags")


# [nav:anchor SearchFilters]
@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Conjunction of the structured constraints on a search.

    ``visibilities`` is the permitted set from the access filter and is never
    relaxed, including when a facet dimension is excluded.

    Attributes
    ----------
    visibilities : frozenset[str]
        Visibility values the caller may see.
    type, status : str | None
        Exact-match filters.
    tags : frozenset[str]
        Any-of tag filter; empty means unconstrained.
    date_from, date_to : datetime | None
        Inclusive bounds on ``created_at``.
    """

    visibilities: frozenset[str]
    type: str | None = None
    status: str | None = None
    tags: frozenset[str] = frozenset()
    date_from: datetime | None = None
    date_to: datetime | None = None

    @classmethod
    def from_query(cls, query: SearchQuery, visibilities: frozenset[str]) -> SearchFilters:
        """Build filters from a validated query and a permitted visibility set."""
        return cls(
            visibilities=visibilities,
            type=query.type.strip().lower() if query.type else None,
            status=query.status.strip().lower() if query.status else None,
            tags=frozenset(query.tags or ()),
            date_from=query.date_from,
            date_to=query.date_to,
        )

    def permits(self, entry: IndexEntry) -> bool:
        """Return True if ``entry`` is visible to the caller."""
        return entry.visibility in self.visibilities

    def matches(self, entry: IndexEntry, *, exclude: FacetDimension | None = None) -> bool:
        """Return True if ``entry`` satisfies every filter except ``exclude``.

        Parameters
        ----------
        entry : IndexEntry
            Candidate to test.
        exclude : FacetDimension | None, optional
            Facet dimension whose own filter is ignored.

        Returns
        -------
        bool
            Whether the candidate passes.
        """
        if entry.visibility not in self.visibilities:
            return False
        if exclude != "type" and self.type is not None and entry.entity_type != self.type:
            return False
        if exclude != "status" and self.status is not None and entry.status != self.status:
            return False
        if exclude != "tags" and self.tags and self.tags.isdisjoint(entry.tags):
            return False
        if self.date_from is not None and entry.created_at < self.date_from:
            return False
        return self.date_to is None or entry.created_at <= self.date_to
