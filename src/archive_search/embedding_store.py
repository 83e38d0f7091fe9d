"""Per-entity embedding records and exact cosine matching.

A record is *fresh* when it was produced by the active model and computed no
earlier than the entity's last update. Only fresh records take part in
matching; stale or missing ones mean "not yet semantically indexed", never
"similarity zero". Fresh/stale bookkeeping is maintained on every write so
:meth:`EmbeddingStore.status` is O(1).
"""
# [nav:section public-api]

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from archive_common.errors import (
    DeserializationError,
    EmbeddingModelMismatchError,
    IndexConsistencyError,
    SerializationError,
)
from archive_common.logging import get_logger
from archive_search.embeddings import as_vector
from archive_search.models import utcnow
from archive_search.schemas import EmbeddingStatus

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from numpy.typing import NDArray

    from archive_search.embeddings import Embedder

__all__ = [
    "EmbeddingRecord",
    "EmbeddingStore",
    "VectorMatch",
]

logger = get_logger(__name__)


# [nav:anchor EmbeddingRecord]
@dataclass(frozen=True, slots=True)
class EmbeddingRecord:
    """Stored vector for one entity under one model version."""

    entity_id: str
    vector: NDArray[np.float32]
    model_version: str
    computed_at: datetime
    norm: float


# [nav:anchor VectorMatch]
@dataclass(frozen=True, slots=True)
class VectorMatch:
    """A candidate whose similarity met the threshold."""

    entity_id: str
    score: float


@dataclass(frozen=True, slots=True)
class _State:
    records: Mapping[str, EmbeddingRecord] = field(default_factory=dict)
    updated_at: Mapping[str, datetime] = field(default_factory=dict)
    fresh: frozenset[str] = frozenset()


# [nav:anchor EmbeddingStore]
class EmbeddingStore:
    """Thread-safe store of entity embeddings with a brute-force matcher.

    Parameters
    ----------
    model_version : str
        Active model version; records from other versions are stale.
    dimension : int
        Required vector length.
    embedder : Embedder | None, optional
        Used by :meth:`embed_query`. Defaults to None (no query embedding).

    Notes
    -----
    Like the lexical index, state is an immutable snapshot replaced under a
    single writer lock, so matching never observes a half-applied upsert.
    """

    def __init__(
        self,
        *,
        model_version: str,
        dimension: int,
        embedder: Embedder | None = None,
    ) -> None:
        if embedder is not None and embedder.model_version != model_version:
            msg = "Embedder and store disagree on the model version"
            raise EmbeddingModelMismatchError(
                msg, expected=model_version, actual=embedder.model_version
            )
        self.model_version = model_version
        self.dimension = dimension
        self._embedder = embedder
        self._state = _State()
        self._write_lock = threading.Lock()

    @property
    def embedder(self) -> Embedder | None:
        return self._embedder

    # ------------------------------------------------------------------ writes

    def touch(self, entity_id: str, updated_at: datetime) -> bool:
        """Record the entity's latest ``updated_at`` and re-evaluate freshness.

        Returns
        -------
        bool
            True if the entity now has a fresh record.
        """
        with self._write_lock:
            state = self._state
            updated = dict(state.updated_at)
            updated[entity_id] = updated_at
            self._state = _State(state.records, updated, self._refresh(state, entity_id, updated))
            return entity_id in self._state.fresh

    def upsert(
        self,
        entity_id: str,
        vector: Sequence[float] | NDArray[np.floating],
        model_version: str,
        *,
        computed_at: datetime | None = None,
        source_updated_at: datetime | None = None,
    ) -> bool:
        """Store or replace the record for ``entity_id``, fresh as of now.

        Parameters
        ----------
        entity_id : str
            Entity the vector belongs to.
        vector : Sequence[float] | NDArray[np.floating]
            Embedding of length :attr:`dimension`.
        model_version : str
            Model that produced the vector; must be the active one.
        computed_at : datetime | None, optional
            Computation time. Defaults to now.
        source_updated_at : datetime | None, optional
            ``updated_at`` of the entity state that was embedded. When the
            entity has been updated since, the vector is discarded.

        Returns
        -------
        bool
            True if the record was stored.

        Raises
        ------
        EmbeddingModelMismatchError
            If ``model_version`` is not the active version.
        EmbeddingDimensionError
            If the vector has the wrong length.
        """
        if model_version != self.model_version:
            msg = f"Refusing vector from model {model_version!r}; active is {self.model_version!r}"
            raise EmbeddingModelMismatchError(
                msg, expected=self.model_version, actual=model_version
            )
        array = as_vector(vector, dimension=self.dimension).copy()
        array.setflags(write=False)
        record = EmbeddingRecord(
            entity_id=entity_id,
            vector=array,
            model_version=model_version,
            computed_at=computed_at or utcnow(),
            norm=float(np.linalg.norm(array)),
        )
        with self._write_lock:
            state = self._state
            known = state.updated_at.get(entity_id)
            if source_updated_at is not None and known is not None and known > source_updated_at:
                logger.info(
                    "Discarding embedding computed for a superseded entity version",
                    extra={"operation": "embedding_upsert", "entity_id": entity_id},
                )
                return False
            records = dict(state.records)
            records[entity_id] = record
            updated = state.updated_at
            if known is None:
                updated = dict(state.updated_at)
                updated[entity_id] = source_updated_at or record.computed_at
            next_state = _State(records, updated, state.fresh)
            self._state = _State(records, updated, self._refresh(next_state, entity_id, updated))
        return True

    def remove(self, entity_id: str) -> bool:
        """Forget the record and tracking for ``entity_id``.

        Returns
        -------
        bool
            True if anything was removed.
        """
        with self._write_lock:
            state = self._state
            if entity_id not in state.records and entity_id not in state.updated_at:
                return False
            records = {k: v for k, v in state.records.items() if k != entity_id}
            updated = {k: v for k, v in state.updated_at.items() if k != entity_id}
            self._state = _State(records, updated, state.fresh - {entity_id})
        return True

    def retain(self, entity_ids: Iterable[str]) -> int:
        """Forget every entity not in ``entity_ids``.

        Returns
        -------
        int
            Number of entities dropped.
        """
        keep = frozenset(entity_ids)
        with self._write_lock:
            state = self._state
            records = {k: v for k, v in state.records.items() if k in keep}
            updated = {k: v for k, v in state.updated_at.items() if k in keep}
            self._state = _State(records, updated, state.fresh & keep)
            return len(state.updated_at) - len(updated)

    def clear(self, *, keep_tracking: bool = True) -> None:
        """Drop every record; entity tracking survives unless told otherwise."""
        with self._write_lock:
            updated = self._state.updated_at if keep_tracking else {}
            self._state = _State({}, updated, frozenset())

    def _refresh(
        self, state: _State, entity_id: str, updated_at: Mapping[str, datetime]
    ) -> frozenset[str]:
        record = state.records.get(entity_id)
        entity_updated = updated_at.get(entity_id)
        is_fresh = (
            record is not None
            and record.model_version == self.model_version
            and (entity_updated is None or record.computed_at >= entity_updated)
        )
        if is_fresh:
            return state.fresh | {entity_id}
        return state.fresh - {entity_id}

    # ------------------------------------------------------------------- reads

    def get(self, entity_id: str) -> EmbeddingRecord | None:
        return self._state.records.get(entity_id)

    def is_fresh(self, entity_id: str) -> bool:
        return entity_id in self._state.fresh

    def pending(self) -> list[str]:
        """Return tracked entities that lack a fresh record, sorted by id."""
        state = self._state
        return sorted(entity_id for entity_id in state.updated_at if entity_id not in state.fresh)

    def status(self) -> EmbeddingStatus:
        """Return aggregate counters without scanning records.

        ``total_entities`` counts every tracked entity; ``stale_count`` counts
        records that exist but are not fresh.
        """
        state = self._state
        return EmbeddingStatus(
            total_entities=len(state.updated_at),
            embedded_count=len(state.fresh),
            stale_count=len(state.records) - len(state.fresh),
            model_version=self.model_version,
        )

    def embed_query(self, text: str) -> NDArray[np.float32]:
        """Embed query text through the configured :class:`Embedder`.

        Raises
        ------
        EmbeddingTimeoutError
            If the model misses its deadline.
        RuntimeError
            If the store was built without an embedder.
        """
        if self._embedder is None:
            msg = "EmbeddingStore has no embedder configured"
            raise RuntimeError(msg)
        return self._embedder.embed(text)

    def match_top_k(
        self,
        query_vector: Sequence[float] | NDArray[np.floating],
        candidate_ids: Iterable[str] | None,
        k: int,
        threshold: float,
    ) -> list[VectorMatch]:
        """Return up to ``k`` fresh candidates with cosine similarity >= ``threshold``.

        Parameters
        ----------
        query_vector : Sequence[float] | NDArray[np.floating]
            Query embedding.
        candidate_ids : Iterable[str] | None
            Ids allowed to match; ``None`` means every fresh record.
        k : int
            Maximum number of matches.
        threshold : float
            Minimum similarity, clamped to [-1, 1].

        Returns
        -------
        list[VectorMatch]
            Matches ordered by similarity descending, then the entity's
            ``updated_at`` descending, then id ascending. Empty when the query
            vector has zero norm.
        """
        if k <= 0:
            return []
        threshold = float(np.clip(threshold, -1.0, 1.0))
        query = as_vector(query_vector, dimension=self.dimension)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []

        state = self._state
        ids = state.fresh if candidate_ids is None else state.fresh.intersection(candidate_ids)
        missing = [entity_id for entity_id in ids if entity_id not in state.records]
        if missing:
            msg = "Fresh embedding set references entities without a record"
            raise IndexConsistencyError(msg, context={"entity_ids": sorted(missing)[:10]})
        records = [state.records[entity_id] for entity_id in ids]
        records = [record for record in records if record.norm > 0.0]
        if not records:
            return []

        matrix = np.stack([record.vector for record in records])
        norms = np.array([record.norm for record in records], dtype=np.float32)
        similarities = np.clip((matrix @ query) / (norms * query_norm), -1.0, 1.0)

        scored = [
            (float(score), record)
            for score, record in zip(similarities.tolist(), records, strict=True)
            if score >= threshold
        ]

        def _order(item: tuple[float, EmbeddingRecord]) -> tuple[float, float, str]:
            score, record = item
            updated = state.updated_at.get(record.entity_id, record.computed_at)
            return (-score, -updated.timestamp(), record.entity_id)

        scored.sort(key=_order)
        return [
            VectorMatch(entity_id=record.entity_id, score=score) for score, record in scored[:k]
        ]

    # ------------------------------------------------------------- persistence

    def save(self, path: str | Path) -> Path:
        """Write every record and tracked timestamp to a ``.npz`` archive.

        Returns
        -------
        Path
            Path actually written (numpy appends ``.npz`` when missing).

        Raises
        ------
        SerializationError
            If the archive cannot be written.
        """
        state = self._state
        ids = sorted(state.records)
        target = Path(path)
        if target.suffix != ".npz":
            target = target.with_suffix(".npz")
        vectors = (
            np.stack([state.records[i].vector for i in ids])
            if ids
            else np.zeros((0, self.dimension), dtype=np.float32)
        )
        tracked = sorted(state.updated_at)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            np.savez(
                target,
                ids=np.asarray(ids, dtype=np.str_),
                vectors=vectors,
                model_versions=np.asarray(
                    [state.records[i].model_version for i in ids], dtype=np.str_
                ),
                computed_at=np.asarray(
                    [state.records[i].computed_at.isoformat() for i in ids], dtype=np.str_
                ),
                tracked_ids=np.asarray(tracked, dtype=np.str_),
                tracked_updated_at=np.asarray(
                    [state.updated_at[i].isoformat() for i in tracked], dtype=np.str_
                ),
            )
        except OSError as exc:
            msg = f"Failed to write embeddings to {target}"
            raise SerializationError(msg, cause=exc, context={"path": str(target)}) from exc
        logger.info(
            "Saved embeddings",
            extra={"operation": "embedding_save", "path": str(target), "records": len(ids)},
        )
        return target

    def load(self, path: str | Path) -> int:
        """Replace the store contents with a snapshot written by :meth:`save`.

        Records from other model versions load as stale.

        Returns
        -------
        int
            Number of records loaded.

        Raises
        ------
        DeserializationError
            If the archive is missing, unreadable or malformed.
        """
        source = Path(path)
        try:
            with np.load(source, allow_pickle=False) as data:
                ids = [str(i) for i in data["ids"].tolist()]
                vectors = np.asarray(data["vectors"], dtype=np.float32)
                versions = [str(v) for v in data["model_versions"].tolist()]
                computed = [datetime.fromisoformat(str(c)) for c in data["computed_at"].tolist()]
                tracked_ids = [str(i) for i in data["tracked_ids"].tolist()]
                tracked_at = [
                    datetime.fromisoformat(str(u)) for u in data["tracked_updated_at"].tolist()
                ]
        except (OSError, KeyError, ValueError) as exc:
            msg = f"Failed to load embeddings from {source}"
            raise DeserializationError(msg, cause=exc, context={"path": str(source)}) from exc

        if vectors.shape != (len(ids), self.dimension):
            expected = (len(ids), self.dimension)
            msg = f"Stored vectors have shape {vectors.shape}, expected {expected}"
            raise DeserializationError(msg, context={"path": str(source)})

        records: dict[str, EmbeddingRecord] = {}
        rows = zip(ids, vectors, versions, computed, strict=True)
        for entity_id, row, version, computed_at in rows:
            row = row.copy()
            row.setflags(write=False)
            records[entity_id] = EmbeddingRecord(
                entity_id=entity_id,
                vector=row,
                model_version=version,
                computed_at=computed_at,
                norm=float(np.linalg.norm(row)),
            )
        updated = dict(zip(tracked_ids, tracked_at, strict=True))
        for entity_id, record in records.items():
            updated.setdefault(entity_id, record.computed_at)
        fresh = frozenset(
            entity_id
            for entity_id, record in records.items()
            if record.model_version == self.model_version
            and record.computed_at >= updated[entity_id]
        )
        with self._write_lock:
            self._state = _State(records, updated, fresh)
        return len(records)
