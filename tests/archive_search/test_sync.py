"""Tests for archive_search.sync module."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from archive_search.embedding_store import EmbeddingStore
from archive_search.embeddings import Embedder
from archive_search.lexical_index import LexicalIndex
from archive_search.sync import EntityListener, EntityStore, IndexSynchronizer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from archive_common.observability import MetricsProvider
    from archive_search.models import Entity
    from tests.conftest import FakeEmbedding, InMemoryEntityStore

MODEL = "fake-model-v1"


class BlockingEmbedding:
    """Embedding model that waits for a release signal before answering."""

    model_version = MODEL
    dimension = 4

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, text: str) -> list[float]:
        del text
        self.started.set()
        self.release.wait(timeout=5.0)
        return [1.0, 0.0, 0.0, 0.0]


class ShortVectorEmbedding:
    """Embedding model that returns fewer values than it declares."""

    model_version = MODEL
    dimension = 4

    def embed(self, text: str) -> list[float]:
        del text
        return [1.0, 0.0, 0.0]


def _build(
    store: InMemoryEntityStore,
    function: object,
    metrics: MetricsProvider,
    *,
    timeout_seconds: float = 5.0,
    retry_attempts: int = 3,
) -> tuple[IndexSynchronizer, LexicalIndex, EmbeddingStore]:
    embedder = Embedder(
        function,  # type: ignore[arg-type]
        model_version=MODEL,
        dimension=4,
        timeout_seconds=timeout_seconds,
    )
    lexical = LexicalIndex()
    embeddings = EmbeddingStore(model_version=MODEL, dimension=4, embedder=embedder)
    sync = IndexSynchronizer(
        store,
        lexical,
        embeddings,
        retry_attempts=retry_attempts,
        wait_initial=0.0,
        wait_max=0.0,
        metrics=metrics,
    )
    sync.attach()
    return sync, lexical, embeddings


class TestProtocols:
    """Structural typing of the store and listener seams."""

    def test_fixtures_satisfy_protocols(
        self, entity_store: InMemoryEntityStore, metrics: MetricsProvider
    ) -> None:
        """The in-memory store and the synchronizer satisfy the protocols."""
        sync = IndexSynchronizer(entity_store, LexicalIndex(), metrics=metrics)
        assert isinstance(entity_store, EntityStore)
        assert isinstance(sync, EntityListener)
        sync.close()


class TestDeferredEmbedding:
    """Mutations never wait on the embedding model."""

    @pytest.fixture
    def blocking(self) -> Iterator[BlockingEmbedding]:
        model = BlockingEmbedding()
        yield model
        model.release.set()

    def test_mutation_returns_before_embedding(
        self,
        entity_store: InMemoryEntityStore,
        blocking: BlockingEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """The lexical index updates at once; the vector lands later."""
        sync, lexical, embeddings = _build(entity_store, blocking, metrics)
        try:
            entity_store.put(entity_factory("p1", title_en="Graph"))
            assert "p1" in lexical
            assert blocking.started.wait(timeout=5.0)
            assert sync.pending_jobs == 1
            assert not embeddings.is_fresh("p1")

            blocking.release.set()
            assert sync.wait_idle(timeout=5.0)
            assert embeddings.is_fresh("p1")
            assert sync.pending_jobs == 0
        finally:
            sync.close()

    def test_superseded_job_does_not_write(
        self,
        entity_store: InMemoryEntityStore,
        blocking: BlockingEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """A vector computed for an entity that changed meanwhile is dropped."""
        sync, _lexical, embeddings = _build(entity_store, blocking, metrics)
        try:
            entity = entity_factory("p1", title_en="Graph")
            entity_store.put(entity)
            assert blocking.started.wait(timeout=5.0)
            newer = entity.model_copy(update={"updated_at": entity.updated_at + timedelta(hours=1)})
            entity_store.put(newer, notify=False)

            blocking.release.set()
            assert sync.wait_idle(timeout=5.0)
            assert embeddings.get("p1") is None
        finally:
            sync.close()

    def test_deleted_entity_job_does_not_write(
        self,
        entity_store: InMemoryEntityStore,
        blocking: BlockingEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """A job whose entity was deleted leaves no record behind."""
        sync, lexical, embeddings = _build(entity_store, blocking, metrics)
        try:
            entity_store.put(entity_factory("p1", title_en="Graph"))
            assert blocking.started.wait(timeout=5.0)
            entity_store.delete("p1")
            assert "p1" not in lexical

            blocking.release.set()
            assert sync.wait_idle(timeout=5.0)
            assert embeddings.get("p1") is None
            assert embeddings.status().total_entities == 0
        finally:
            sync.close()


class TestRetries:
    """Timeout retries on deferred jobs."""

    def test_timeout_is_retried(
        self,
        entity_store: InMemoryEntityStore,
        fake_embedding: FakeEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """A job that times out once succeeds on the next attempt."""
        sync, _lexical, embeddings = _build(
            entity_store, fake_embedding, metrics, timeout_seconds=0.1
        )
        try:
            fake_embedding.slow_calls = 1
            entity_store.put(entity_factory("p1", title_en="graph"))
            assert sync.wait_idle(timeout=5.0)
            assert embeddings.is_fresh("p1")
            assert len(fake_embedding.calls) == 2
        finally:
            sync.close()

    def test_gives_up_after_attempts(
        self,
        entity_store: InMemoryEntityStore,
        fake_embedding: FakeEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Repeated timeouts leave the entity pending and log the failure."""
        sync, _lexical, embeddings = _build(
            entity_store, fake_embedding, metrics, timeout_seconds=0.1, retry_attempts=2
        )
        try:
            fake_embedding.slow_calls = 5
            with caplog.at_level(logging.ERROR, logger="archive_search.sync"):
                entity_store.put(entity_factory("p1", title_en="graph"))
                assert sync.wait_idle(timeout=5.0)
            assert not embeddings.is_fresh("p1")
            assert embeddings.pending() == ["p1"]
            assert any("gave up" in record.getMessage() for record in caplog.records)
        finally:
            sync.close()


class TestJobFailures:
    """Non-retryable failures of deferred jobs."""

    def test_wrong_dimension_is_logged_as_error(
        self,
        entity_store: InMemoryEntityStore,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A contract break fails the job visibly and stores nothing."""
        sync, _lexical, embeddings = _build(entity_store, ShortVectorEmbedding(), metrics)
        try:
            entity = entity_store.put(entity_factory("p1", title_en="graph"), notify=False)
            with caplog.at_level(logging.ERROR, logger="archive_search.sync"):
                future = sync.schedule_embedding(entity)
                assert future is not None
                assert future.result(timeout=5.0) is False
            assert embeddings.get("p1") is None
            errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
            assert any("rebuild embeddings" in r.getMessage() for r in errors)
            assert errors[-1].exc_info is not None
            failed = metrics.registry.get_sample_value(  # type: ignore[union-attr]
                "archive_search_runs_total", {"component": "sync", "status": "error"}
            )
            assert failed == 1.0
        finally:
            sync.close()


class TestRebuild:
    """Full rebuilds from the entity store."""

    def test_rebuild_indexes_everything_and_prunes(
        self,
        entity_store: InMemoryEntityStore,
        fake_embedding: FakeEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """Rebuild covers every stored entity and drops vanished ones."""
        sync, lexical, embeddings = _build(entity_store, fake_embedding, metrics)
        try:
            embeddings.upsert("ghost", [1, 0, 0, 0], MODEL)
            for entity_id in ("a", "b"):
                entity_store.put(entity_factory(entity_id, title_en="graph"), notify=False)

            assert sync.rebuild_all() == 2
            assert sync.wait_idle(timeout=5.0)
            assert sorted(entry.entity_id for entry in lexical.entries()) == ["a", "b"]
            assert embeddings.get("ghost") is None
            status = embeddings.status()
            assert (status.total_entities, status.embedded_count) == (2, 2)
        finally:
            sync.close()

    def test_rebuild_skips_fresh_embeddings(
        self,
        entity_store: InMemoryEntityStore,
        fake_embedding: FakeEmbedding,
        metrics: MetricsProvider,
        entity_factory: Callable[..., Entity],
    ) -> None:
        """Entities whose vectors are still fresh are not re-embedded."""
        sync, _lexical, _embeddings = _build(entity_store, fake_embedding, metrics)
        try:
            entity_store.put(entity_factory("a", title_en="graph"))
            assert sync.wait_idle(timeout=5.0)
            calls = len(fake_embedding.calls)
            sync.rebuild_all()
            assert sync.wait_idle(timeout=5.0)
            assert len(fake_embedding.calls) == calls
        finally:
            sync.close()
