"""Bilingual keyword and semantic search over research archive entities.

Typical use::

    from archive_search import SearchService

    service = SearchService(store, embedding_function=model)
    service.start()
    service.keyword_search({"query": "graph", "tags": "gnn"})
"""
# [nav:section public-api]

from __future__ import annotations

from archive_search.access import permitted_visibilities
from archive_search.embedding_store import EmbeddingStore
from archive_search.embeddings import Embedder, EmbeddingFunction
from archive_search.lexical_index import LexicalIndex
from archive_search.models import Entity, EntityStatus, EntityType, Locale, SortMode, Visibility
from archive_search.normalizer import normalize, parse_query
from archive_search.schemas import (
    HybridSearchResponse,
    KeywordSearchResponse,
    SearchQuery,
    SearchResult,
    SemanticSearchResponse,
    SemanticStatus,
)
from archive_search.service import SearchService
from archive_search.sync import EntityListener, EntityStore, IndexSynchronizer

__all__ = [
    "Embedder",
    "EmbeddingFunction",
    "EmbeddingStore",
    "Entity",
    "EntityListener",
    "EntityStatus",
    "EntityStore",
    "EntityType",
    "HybridSearchResponse",
    "IndexSynchronizer",
    "KeywordSearchResponse",
    "LexicalIndex",
    "Locale",
    "SearchQuery",
    "SearchResult",
    "SearchService",
    "SemanticSearchResponse",
    "SemanticStatus",
    "SortMode",
    "Visibility",
    "normalize",
    "parse_query",
    "permitted_visibilities",
]
