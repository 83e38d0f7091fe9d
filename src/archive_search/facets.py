"""Facet counts and timeline buckets over a filtered candidate set.

Counts are exact. Each dimension is counted over the candidates that satisfy
every filter except that dimension's own, so the ``type`` facet still lists
the other types when a type filter is active. Tags are multi-valued: one
entity contributes to every tag it carries.
"""
# [nav:section public-api]

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Literal

from archive_search.filters import FACET_DIMENSIONS
from archive_search.schemas import TimeBucket

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from archive_search.filters import FacetDimension, SearchFilters
    from archive_search.lexical_index import IndexEntry
    from archive_search.schemas import Facets

__all__ = [
    "compute_facets",
    "time_buckets",
]


def _values(entry: IndexEntry, dimension: FacetDimension) -> Iterable[str]:
    if dimension == "type":
        return (entry.entity_type,)
    if dimension == "status":
        return (entry.status,)
    return entry.tags


# [nav:anchor compute_facets]
def compute_facets(docs: Sequence[IndexEntry], filters: SearchFilters) -> Facets:
    """Count candidates per value of ``type``, ``status`` and ``tags``.

    Parameters
    ----------
    docs : Sequence[IndexEntry]
        Candidates that matched the query text and passed access control,
        before structured filters and before pagination.
    filters : SearchFilters
        Structured filters of the query.

    Returns
    -------
    Facets
        ``{dimension: {value: count}}``. Values with no candidates are omitted.
    """
    facets: Facets = {}
    for dimension in FACET_DIMENSIONS:
        counts: Counter[str] = Counter()
        for entry in docs:
            if filters.matches(entry, exclude=dimension):
                counts.update(_values(entry, dimension))
        facets[dimension] = dict(counts)
    return facets


# [nav:anchor time_buckets]
def time_buckets(
    docs: Iterable[IndexEntry], granularity: Literal["year", "month"] = "month"
) -> list[TimeBucket]:
    """Group candidates by ``created_at`` period, newest period first.

    Parameters
    ----------
    docs : Iterable[IndexEntry]
        Already filtered candidates.
    granularity : {"year", "month"}, optional
        Bucket width. Defaults to ``"month"`` (``YYYY-MM`` labels).

    Returns
    -------
    list[TimeBucket]
        One bucket per non-empty period.
    """
    fmt = "%Y" if granularity == "year" else "%Y-%m"
    counts = Counter(entry.created_at.strftime(fmt) for entry in docs)
    return [
        TimeBucket(period=period, count=counts[period])
        for period in sorted(counts, reverse=True)
    ]
