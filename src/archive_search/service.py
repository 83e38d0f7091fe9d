"""Query orchestration over the lexical and embedding indexes.

:class:`SearchService` is the single entry point callers use. Every path runs
the same pipeline: access control first, then retrieval restricted to the
permitted entities, then structured filters, facets, sorting and paging.
"""
# [nav:section public-api]

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from archive_common.errors import EmbeddingTimeoutError, SearchQueryError
from archive_common.logging import get_logger, with_fields
from archive_common.observability import MetricsProvider, observe_duration
from archive_common.settings import load_settings
from archive_search.access import permitted_visibilities
from archive_search.embedding_store import EmbeddingStore
from archive_search.embeddings import Embedder
from archive_search.facets import compute_facets, time_buckets
from archive_search.filters import SearchFilters
from archive_search.fusion import rrf_fuse
from archive_search.lexical_index import LexicalIndex, recency_key
from archive_search.models import Locale, SortMode
from archive_search.normalizer import parse_query
from archive_search.schemas import (
    HybridSearchResponse,
    KeywordSearchResponse,
    SearchQuery,
    SearchResult,
    SemanticSearchResponse,
    SemanticStatus,
)
from archive_search.sync import IndexSynchronizer

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from archive_common.settings import RuntimeSettings
    from archive_search.embeddings import EmbeddingFunction
    from archive_search.lexical_index import IndexEntry, LexicalMatch
    from archive_search.schemas import TimeBucket
    from archive_search.sync import EntityStore

__all__ = ["SearchService"]

logger = get_logger(__name__)

type QueryInput = SearchQuery | Mapping[str, object] | str | None


def _coerce_query(query: QueryInput) -> SearchQuery:
    """Validate caller input into a :class:`SearchQuery`.

    Raises
    ------
    SearchQueryError
        If a value is structurally unusable (e.g. ``limit=0``).
    """
    if isinstance(query, SearchQuery):
        return query
    payload: Mapping[str, object] = {"query": query} if isinstance(query, str) else (query or {})
    try:
        return SearchQuery.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        msg = f"Invalid search query: {first['msg']}"
        raise SearchQueryError(msg, field=field, cause=exc) from exc


def _title_key(entry: IndexEntry, locale: Locale | None) -> tuple[str, str]:
    primary, secondary = (
        (entry.title_zh, entry.title_en)
        if locale == Locale.ZH
        else (entry.title_en, entry.title_zh)
    )
    return ((primary or secondary).casefold(), entry.entity_id)


def _sort_matches(
    matches: list[LexicalMatch], sort: SortMode, locale: Locale | None
) -> list[LexicalMatch]:
    if sort in {SortMode.DATE, SortMode.DATE_DESC}:
        return sorted(matches, key=lambda m: recency_key(m.entry))
    if sort == SortMode.DATE_ASC:
        return sorted(matches, key=lambda m: (m.entry.updated_at, m.entity_id))
    if sort == SortMode.TITLE:
        return sorted(matches, key=lambda m: _title_key(m.entry, locale))
    return matches


def _to_result(
    entity_id: str,
    score: float,
    entry: IndexEntry | None,
    match: LexicalMatch | None = None,
) -> SearchResult:
    payload: dict[str, object] = {"entity_id": entity_id, "score": score}
    if entry is not None:
        payload.update(
            type=entry.entity_type,
            title_en=entry.title_en or None,
            title_zh=entry.title_zh or None,
        )
    if match is not None:
        payload.update(matched_fields=list(match.matched_fields) or None, snippet=match.snippet())
    return SearchResult.model_validate(payload)


# [nav:anchor SearchService]
class SearchService:
    """Keyword, semantic and hybrid search over an :class:`EntityStore`.

    Parameters
    ----------
    store : EntityStore
        Authoritative entity source. The service subscribes to it on
        :meth:`start`.
    settings : RuntimeSettings | None, optional
        Configuration. Defaults to :func:`load_settings`.
    embedding_function : EmbeddingFunction | None, optional
        Text embedding model. Without one semantic search reports itself
        disabled.
    metrics : MetricsProvider | None, optional
        Metrics sink. Defaults to :meth:`MetricsProvider.default`, or to a
        private registry when metrics are disabled in settings.

    Examples
    --------
    >>> service = SearchService(store)  # doctest: +SKIP
    >>> service.start()  # doctest: +SKIP
    >>> service.keyword_search({"query": "graph"}).total  # doctest: +SKIP
    1
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        settings: RuntimeSettings | None = None,
        embedding_function: EmbeddingFunction | None = None,
        metrics: MetricsProvider | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self._store = store
        if metrics is None:
            metrics = (
                MetricsProvider.default()
                if self.settings.observability.metrics_enabled
                else MetricsProvider(CollectorRegistry())
            )
        self._metrics = metrics
        search_cfg = self.settings.search
        semantic_cfg = self.settings.semantic

        self.lexical = LexicalIndex(k1=search_cfg.bm25_k1, b=search_cfg.bm25_b)
        embedder = None
        if embedding_function is not None and semantic_cfg.enabled:
            embedder = Embedder(
                embedding_function,
                model_version=semantic_cfg.model_version,
                dimension=semantic_cfg.dimension,
                timeout_seconds=semantic_cfg.embed_timeout_seconds,
            )
        self.embeddings = EmbeddingStore(
            model_version=semantic_cfg.model_version,
            dimension=semantic_cfg.dimension,
            embedder=embedder,
        )
        self.synchronizer = IndexSynchronizer(
            store,
            self.lexical,
            self.embeddings,
            retry_attempts=semantic_cfg.embed_retry_attempts,
            workers=semantic_cfg.deferred_workers,
            metrics=self._metrics,
        )

    @property
    def semantic_enabled(self) -> bool:
        """True when semantic search is configured and has a model."""
        return self.settings.semantic.enabled and self.embeddings.embedder is not None

    # --------------------------------------------------------------- lifecycle

    def start(self) -> int:
        """Subscribe to the entity store and build both indexes.

        Returns
        -------
        int
            Number of entities indexed.
        """
        self.synchronizer.attach()
        return self.synchronizer.rebuild_all()

    def rebuild_all(self) -> int:
        """Rebuild both indexes from the entity store."""
        return self.synchronizer.rebuild_all()

    def close(self) -> None:
        """Stop background embedding and release the model worker threads."""
        self.synchronizer.close(wait_for_jobs=False)
        if self.embeddings.embedder is not None:
            self.embeddings.embedder.close()

    # ------------------------------------------------------------------ keyword

    def keyword_search(
        self, query: QueryInput = None, *, is_authorized: bool = False
    ) -> KeywordSearchResponse:
        """Run a ranked, filtered, faceted and paginated keyword search.

        Parameters
        ----------
        query : SearchQuery | Mapping[str, object] | str | None, optional
            Structured query, its raw mapping form, or bare query text.
        is_authorized : bool, optional
            Whether the caller holds an authenticated session. Defaults to
            False.

        Returns
        -------
        KeywordSearchResponse
            ``total`` is the size of the filtered set before paging; facets
            are computed over the same set.

        Raises
        ------
        SearchQueryError
            If the query is structurally unusable.
        """
        q = _coerce_query(query)
        with (
            with_fields(logger, operation="keyword_search") as log,
            observe_duration(self._metrics, "keyword_search", component="search"),
        ):
            filters, candidates = self._keyword_candidates(q, is_authorized=is_authorized)
            facets = compute_facets([match.entry for match in candidates], filters)
            filtered = [match for match in candidates if filters.matches(match.entry)]
            ordered = _sort_matches(filtered, q.sort, q.locale)

            limit = self._page_size(q.limit, self.settings.search.default_limit)
            start = (q.page - 1) * limit
            page = ordered[start : start + limit]
            log.info(
                "Keyword search completed",
                extra={"total": len(filtered), "page": q.page, "limit": limit},
            )
            return KeywordSearchResponse(
                results=[
                    _to_result(match.entity_id, match.score, match.entry, match)
                    for match in page
                ],
                total=len(filtered),
                facets=facets,
                page=q.page,
                limit=limit,
                sort=q.sort,
            )

    def quick_search(self, text: str, *, is_authorized: bool = False) -> list[SearchResult]:
        """Return the top relevance hits for a command-palette style lookup."""
        query = SearchQuery(query=text, limit=self.settings.search.quick_limit)
        return self.keyword_search(query, is_authorized=is_authorized).results

    def time_facets(
        self,
        query: QueryInput = None,
        *,
        is_authorized: bool = False,
        granularity: Literal["year", "month"] = "month",
    ) -> list[TimeBucket]:
        """Bucket the filtered keyword result set by ``created_at`` period."""
        q = _coerce_query(query)
        with observe_duration(self._metrics, "time_facets", component="search"):
            filters, candidates = self._keyword_candidates(q, is_authorized=is_authorized)
            return time_buckets(
                (match.entry for match in candidates if filters.matches(match.entry)),
                granularity,
            )

    def _keyword_candidates(
        self, q: SearchQuery, *, is_authorized: bool
    ) -> tuple[SearchFilters, list[LexicalMatch]]:
        """Return filters and the permitted lexical matches before structured filters."""
        visibilities = permitted_visibilities(is_authorized, q.visibility)
        filters = SearchFilters.from_query(q, visibilities)
        if not visibilities:
            return filters, []
        matches = self.lexical.query(parse_query(q.query, q.locale), where=filters.permits)
        return filters, self._consistent(matches, visibilities)

    # ----------------------------------------------------------------- semantic

    def semantic_search(
        self, query: QueryInput = None, *, is_authorized: bool = False
    ) -> SemanticSearchResponse:
        """Return the top-K entities most similar to the query text.

        ``limit`` is the K. ``total`` is the number of results returned, not
        the size of any larger set. Entities without a fresh embedding never
        appear.

        Raises
        ------
        SearchQueryError
            If the query is structurally unusable.
        EmbeddingTimeoutError
            If the query embedding missed its deadline. Retryable.
        """
        q = _coerce_query(query)
        semantic_cfg = self.settings.semantic
        threshold = q.threshold if q.threshold is not None else semantic_cfg.default_threshold
        threshold = min(1.0, max(-1.0, threshold))
        empty = SemanticSearchResponse(
            enabled=self.semantic_enabled,
            model_version=semantic_cfg.model_version,
            threshold=threshold,
        )
        if not self.semantic_enabled or not q.query.strip():
            return empty

        with (
            with_fields(logger, operation="semantic_search") as log,
            observe_duration(self._metrics, "semantic_search", component="search"),
        ):
            if self.embeddings.status().embedded_count == 0:
                log.info("Semantic index not built; returning no results")
                return empty
            visibilities = permitted_visibilities(is_authorized, q.visibility)
            filters = SearchFilters.from_query(q, visibilities)
            candidate_ids = self._semantic_candidates(filters)
            if not candidate_ids:
                return empty

            vector = self.embeddings.embed_query(q.query)
            k = self._page_size(q.limit, semantic_cfg.default_top_k)
            matches = self.embeddings.match_top_k(vector, candidate_ids, k, threshold)
            results = [
                _to_result(m.entity_id, m.score, self.lexical.get(m.entity_id)) for m in matches
            ]
            log.info(
                "Semantic search completed",
                extra={"total": len(results), "top_k": k, "threshold": threshold},
            )
            return SemanticSearchResponse(
                results=results,
                total=len(results),
                enabled=True,
                model_version=semantic_cfg.model_version,
                threshold=threshold,
            )

    def _semantic_candidates(self, filters: SearchFilters) -> list[str]:
        if not filters.visibilities:
            return []
        entries = [entry for entry in self.lexical.entries() if filters.matches(entry)]
        allowed = {
            entry.entity_id
            for entry in entries
            if self._store.get_visibility(entry.entity_id) in filters.visibilities
        }
        dropped = len(entries) - len(allowed)
        if dropped:
            logger.warning(
                "Dropped semantic candidates inconsistent with the entity store",
                extra={"operation": "semantic_search", "dropped": dropped},
            )
        return sorted(allowed)

    def semantic_status(self) -> SemanticStatus:
        """Report semantic index health without revealing entity data."""
        status = self.embeddings.status()
        self._metrics.set_index_size("embeddings", "fresh", status.embedded_count)
        self._metrics.set_index_size("embeddings", "stale", status.stale_count)
        enabled = self.semantic_enabled
        return SemanticStatus(
            enabled=enabled,
            model_version=status.model_version,
            dimension=self.settings.semantic.dimension,
            total_entities=status.total_entities,
            embedded_count=status.embedded_count,
            stale_count=status.stale_count,
            pending_jobs=self.synchronizer.pending_jobs,
            ready=enabled and status.embedded_count > 0,
        )

    # ------------------------------------------------------------------- hybrid

    def hybrid_search(
        self, query: QueryInput = None, *, is_authorized: bool = False
    ) -> HybridSearchResponse:
        """Fuse keyword and semantic rankings with Reciprocal Rank Fusion.

        Falls back to the keyword ranking alone (``mode="keyword"``) when
        semantic search is disabled, not yet built, or times out.
        """
        q = _coerce_query(query)
        with (
            with_fields(logger, operation="hybrid_search") as log,
            observe_duration(self._metrics, "hybrid_search", component="search"),
        ):
            filters, candidates = self._keyword_candidates(q, is_authorized=is_authorized)
            keyword = [match for match in candidates if filters.matches(match.entry)]
            limit = self._page_size(q.limit, self.settings.search.default_limit)
            rankings: list[Sequence[str]] = [[match.entity_id for match in keyword]]

            mode: Literal["hybrid", "keyword"] = "keyword"
            if self.semantic_enabled and q.query.strip():
                semantic_query = q.model_copy(update={"limit": self.settings.search.max_limit})
                try:
                    semantic = self.semantic_search(semantic_query, is_authorized=is_authorized)
                except EmbeddingTimeoutError:
                    log.warning("Semantic leg timed out; using keyword ranking only")
                else:
                    if semantic.results:
                        rankings.append([result.entity_id for result in semantic.results])
                        mode = "hybrid"

            by_id = {match.entity_id: match for match in keyword}
            fused = rrf_fuse(rankings, k_rrf=self.settings.search.rrf_k)
            results = [
                _to_result(entity_id, score, self.lexical.get(entity_id), by_id.get(entity_id))
                for entity_id, score in fused[:limit]
            ]
            return HybridSearchResponse(results=results, total=len(results), mode=mode)

    # ------------------------------------------------------------------ helpers

    def _page_size(self, requested: int | None, default: int) -> int:
        return min(requested or default, self.settings.search.max_limit)

    def _consistent(
        self, matches: list[LexicalMatch], visibilities: frozenset[str]
    ) -> list[LexicalMatch]:
        """Drop matches the entity store no longer backs with a permitted visibility."""
        kept: list[LexicalMatch] = []
        for match in matches:
            stored = self._store.get_visibility(match.entity_id)
            if stored is None or stored not in visibilities:
                logger.warning(
                    "Dropped search candidate inconsistent with the entity store",
                    extra={
                        "operation": "consistency_filter",
                        "entity_id": match.entity_id,
                        "reason": "missing" if stored is None else "visibility",
                    },
                )
                continue
            kept.append(match)
        return kept
