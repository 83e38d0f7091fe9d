"""Tests for archive_search.embedding_store and archive_search.embeddings."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np
import pytest

from archive_common.errors import (
    DeserializationError,
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingModelMismatchError,
    EmbeddingTimeoutError,
)
from archive_search.embedding_store import EmbeddingStore
from archive_search.embeddings import Embedder, as_vector

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from tests.conftest import FakeEmbedding

MODEL = "fake-model-v1"
T0 = datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture
def store() -> EmbeddingStore:
    """Return an empty 4-dimensional store without a query embedder."""
    return EmbeddingStore(model_version=MODEL, dimension=4)


def _unit_at(similarity: float) -> list[float]:
    """Return a unit vector whose cosine with ``[1, 0, 0, 0]`` is ``similarity``."""
    return [similarity, math.sqrt(1.0 - similarity**2), 0.0, 0.0]


class TestAsVector:
    """Tests for as_vector function."""

    def test_accepts_matching_dimension(self) -> None:
        """A list of the right length becomes a float32 array."""
        vector = as_vector([1, 2, 3, 4], dimension=4)
        assert vector.dtype == np.float32
        assert vector.shape == (4,)

    def test_rejects_wrong_dimension(self) -> None:
        """Vectors are never padded or truncated."""
        with pytest.raises(EmbeddingDimensionError) as exc_info:
            as_vector([1.0, 2.0], dimension=4)
        assert exc_info.value.expected == 4
        assert exc_info.value.actual == 2

    def test_rejects_non_finite_values(self) -> None:
        """NaN entries are a contract violation."""
        with pytest.raises(EmbeddingError):
            as_vector([1.0, float("nan"), 0.0, 0.0], dimension=4)


class TestEmbedder:
    """Tests for Embedder deadline and contract checks."""

    @pytest.fixture
    def embedder(self, fake_embedding: FakeEmbedding) -> Iterator[Embedder]:
        embedder = Embedder(
            fake_embedding, model_version=MODEL, dimension=4, timeout_seconds=0.1
        )
        yield embedder
        embedder.close()

    def test_embeds_text(self, embedder: Embedder) -> None:
        """A prompt call returns a vector of the configured size."""
        vector = embedder.embed("graph")
        assert vector.tolist() == [1.0, 0.0, 0.0, 0.0]

    def test_timeout_is_retryable_error(
        self, embedder: Embedder, fake_embedding: FakeEmbedding
    ) -> None:
        """A call past its deadline raises the retryable timeout error."""
        fake_embedding.slow_calls = 1
        with pytest.raises(EmbeddingTimeoutError) as exc_info:
            embedder.embed("graph")
        assert exc_info.value.retryable is True
        assert exc_info.value.http_status == 504

    def test_model_failure_is_wrapped(
        self, embedder: Embedder, fake_embedding: FakeEmbedding
    ) -> None:
        """Other model exceptions surface as EmbeddingError."""
        fake_embedding.fail_with = RuntimeError("model crashed")
        with pytest.raises(EmbeddingError) as exc_info:
            embedder.embed("graph")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_rejects_other_model_version(self, fake_embedding: FakeEmbedding) -> None:
        """Configuring a model version the function does not report fails fast."""
        with pytest.raises(EmbeddingModelMismatchError):
            Embedder(fake_embedding, model_version="other", dimension=4, timeout_seconds=1.0)

    def test_rejects_other_dimension(self, fake_embedding: FakeEmbedding) -> None:
        """Configuring a dimension the function does not produce fails fast."""
        with pytest.raises(EmbeddingDimensionError):
            Embedder(fake_embedding, model_version=MODEL, dimension=8, timeout_seconds=1.0)


class TestUpsertAndStatus:
    """Tests for EmbeddingStore writes and O(1) status counters."""

    def test_upsert_marks_fresh(self, store: EmbeddingStore) -> None:
        """A new record from the active model is fresh."""
        store.touch("p1", T0)
        assert store.upsert("p1", [1, 0, 0, 0], MODEL, computed_at=T0 + timedelta(seconds=1))
        status = store.status()
        assert store.is_fresh("p1")
        assert (status.total_entities, status.embedded_count, status.stale_count) == (1, 1, 0)

    def test_entity_update_makes_record_stale(self, store: EmbeddingStore) -> None:
        """Touching an entity with a later updated_at stales its record."""
        store.touch("p1", T0)
        store.upsert("p1", [1, 0, 0, 0], MODEL, computed_at=T0 + timedelta(seconds=1))
        assert store.touch("p1", T0 + timedelta(hours=1)) is False
        status = store.status()
        assert (status.embedded_count, status.stale_count) == (0, 1)
        assert store.pending() == ["p1"]

    def test_tracked_entity_without_record_is_counted(self, store: EmbeddingStore) -> None:
        """Entities awaiting their first embedding count towards the total only."""
        store.touch("p1", T0)
        store.touch("p2", T0)
        store.upsert("p1", [1, 0, 0, 0], MODEL, computed_at=T0 + timedelta(seconds=1))
        status = store.status()
        assert (status.total_entities, status.embedded_count, status.stale_count) == (2, 1, 0)

    def test_rejects_other_model_version(self, store: EmbeddingStore) -> None:
        """Vectors from another model are a hard error."""
        with pytest.raises(EmbeddingModelMismatchError):
            store.upsert("p1", [1, 0, 0, 0], "other-model")

    def test_rejects_wrong_dimension(self, store: EmbeddingStore) -> None:
        """Vectors of the wrong size are a hard error."""
        with pytest.raises(EmbeddingDimensionError):
            store.upsert("p1", [1, 0, 0], MODEL)

    def test_discards_vector_for_superseded_version(self, store: EmbeddingStore) -> None:
        """A vector computed for an older entity version is not stored."""
        store.touch("p1", T0 + timedelta(hours=1))
        assert store.upsert("p1", [1, 0, 0, 0], MODEL, source_updated_at=T0) is False
        assert store.get("p1") is None

    def test_remove_and_retain(self, store: EmbeddingStore) -> None:
        """Removed or non-retained entities leave every counter."""
        for entity_id in ("a", "b", "c"):
            store.upsert(entity_id, [1, 0, 0, 0], MODEL)
        assert store.remove("a") is True
        assert store.remove("a") is False
        assert store.retain({"b"}) == 1
        status = store.status()
        assert (status.total_entities, status.embedded_count) == (1, 1)


class TestMatchTopK:
    """Tests for EmbeddingStore.match_top_k."""

    def test_orders_by_similarity(self, store: EmbeddingStore) -> None:
        """Most similar candidates come first and respect k."""
        store.upsert("near", _unit_at(0.9), MODEL)
        store.upsert("mid", _unit_at(0.5), MODEL)
        store.upsert("far", _unit_at(0.1), MODEL)
        matches = store.match_top_k([1, 0, 0, 0], None, k=2, threshold=0.0)
        assert [m.entity_id for m in matches] == ["near", "mid"]
        assert matches[0].score == pytest.approx(0.9, abs=1e-5)

    def test_threshold_filters_low_similarity(self, store: EmbeddingStore) -> None:
        """A similarity of 0.4 does not pass a 0.9 threshold."""
        store.upsert("p1", _unit_at(0.4), MODEL)
        assert store.match_top_k([1, 0, 0, 0], ["p1"], k=10, threshold=0.9) == []

    def test_threshold_is_clamped(self, store: EmbeddingStore) -> None:
        """Thresholds outside [-1, 1] are clamped rather than rejected."""
        store.upsert("opposite", [-1, 0, 0, 0], MODEL)
        assert [m.entity_id for m in store.match_top_k([1, 0, 0, 0], None, 5, -7.0)] == [
            "opposite"
        ]
        store.upsert("same", [2, 0, 0, 0], MODEL)
        assert [m.entity_id for m in store.match_top_k([1, 0, 0, 0], None, 5, 3.0)] == ["same"]

    def test_stale_records_never_match(self, store: EmbeddingStore) -> None:
        """Only fresh records take part in matching."""
        store.touch("p1", T0)
        store.upsert("p1", [1, 0, 0, 0], MODEL, computed_at=T0 + timedelta(seconds=1))
        store.touch("p1", T0 + timedelta(days=1))
        assert store.match_top_k([1, 0, 0, 0], None, k=5, threshold=-1.0) == []

    def test_zero_norm_vectors_are_excluded(self, store: EmbeddingStore) -> None:
        """Zero vectors neither match nor make a query match."""
        store.upsert("zero", [0, 0, 0, 0], MODEL)
        store.upsert("one", [1, 0, 0, 0], MODEL)
        assert [m.entity_id for m in store.match_top_k([1, 0, 0, 0], None, 5, -1.0)] == ["one"]
        assert store.match_top_k([0, 0, 0, 0], None, 5, -1.0) == []

    def test_candidates_restrict_matches(self, store: EmbeddingStore) -> None:
        """Entities outside the candidate set are never returned."""
        store.upsert("a", [1, 0, 0, 0], MODEL)
        store.upsert("b", [1, 0, 0, 0], MODEL)
        assert [m.entity_id for m in store.match_top_k([1, 0, 0, 0], ["b"], 5, 0.0)] == ["b"]

    def test_ties_break_by_recency_then_id(self, store: EmbeddingStore) -> None:
        """Equal similarity orders by entity updated_at desc, then id."""
        store.touch("c", T0)
        store.touch("b", T0 + timedelta(days=1))
        store.touch("a", T0 + timedelta(days=1))
        later = T0 + timedelta(days=2)
        for entity_id in ("a", "b", "c"):
            store.upsert(entity_id, [1, 0, 0, 0], MODEL, computed_at=later)
        assert [m.entity_id for m in store.match_top_k([1, 0, 0, 0], None, 5, 0.0)] == [
            "a",
            "b",
            "c",
        ]

    def test_embed_query_without_embedder(self, store: EmbeddingStore) -> None:
        """Embedding a query needs a configured embedder."""
        with pytest.raises(RuntimeError):
            store.embed_query("graph")


class TestPersistence:
    """Tests for EmbeddingStore.save and load."""

    def test_round_trip_preserves_freshness(self, store: EmbeddingStore, tmp_path: Path) -> None:
        """A saved store reloads with the same records and counters."""
        store.touch("p1", T0)
        store.upsert("p1", [1, 0, 0, 0], MODEL, computed_at=T0 + timedelta(seconds=1))
        store.touch("p2", T0)
        path = store.save(tmp_path / "vectors")
        assert path.suffix == ".npz"

        restored = EmbeddingStore(model_version=MODEL, dimension=4)
        assert restored.load(path) == 1
        assert restored.status() == store.status()
        assert restored.is_fresh("p1")

    def test_other_model_loads_stale(self, store: EmbeddingStore, tmp_path: Path) -> None:
        """Records from a previous model version load but never match."""
        store.upsert("p1", [1, 0, 0, 0], MODEL)
        path = store.save(tmp_path / "vectors.npz")
        upgraded = EmbeddingStore(model_version="fake-model-v2", dimension=4)
        upgraded.load(path)
        assert upgraded.status().stale_count == 1
        assert upgraded.match_top_k([1, 0, 0, 0], None, 5, -1.0) == []

    def test_missing_file_raises(self, store: EmbeddingStore, tmp_path: Path) -> None:
        """Loading a missing archive is a deserialization error."""
        with pytest.raises(DeserializationError):
            store.load(tmp_path / "missing.npz")

    def test_dimension_change_raises(self, store: EmbeddingStore, tmp_path: Path) -> None:
        """Vectors of another dimensionality are rejected on load."""
        store.upsert("p1", [1, 0, 0, 0], MODEL)
        path = store.save(tmp_path / "vectors.npz")
        with pytest.raises(DeserializationError):
            EmbeddingStore(model_version=MODEL, dimension=8).load(path)
