"""Write-through synchronisation from the entity store into the indexes.

The entity store notifies an :class:`EntityListener` on every mutation.
:class:`IndexSynchronizer` applies the lexical update inline and marks the
embedding stale, then hands the (slow) embedding work to a thread pool so the
mutating caller never waits on the model.
"""
# [nav:section public-api]

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from archive_common.errors import (
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingModelMismatchError,
    EmbeddingTimeoutError,
    RetryExhaustedError,
)
from archive_common.logging import get_logger, with_fields
from archive_common.observability import MetricsProvider, observe_duration

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from archive_search.embedding_store import EmbeddingStore
    from archive_search.lexical_index import LexicalIndex
    from archive_search.models import Entity

__all__ = [
    "EntityListener",
    "EntityStore",
    "IndexSynchronizer",
]

logger = get_logger(__name__)


# [nav:anchor EntityListener]
@runtime_checkable
class EntityListener(Protocol):
    """Receives entity mutations from an :class:`EntityStore`."""

    def on_entity_changed(self, entity: Entity) -> None:
        """Handle a created or updated entity."""
        ...

    def on_entity_deleted(self, entity_id: str) -> None:
        """Handle a deleted entity."""
        ...


# [nav:anchor EntityStore]
@runtime_checkable
class EntityStore(Protocol):
    """Authoritative source of entities, owned outside the search core."""

    def subscribe(self, listener: EntityListener) -> None:
        """Register ``listener`` for every subsequent mutation."""
        ...

    def get(self, entity_id: str) -> Entity | None:
        """Return the current entity or ``None`` when it does not exist."""
        ...

    def get_visibility(self, entity_id: str) -> str | None:
        """Return the stored visibility of ``entity_id``."""
        ...

    def get_updated_at(self, entity_id: str) -> datetime | None:
        """Return the stored ``updated_at`` of ``entity_id``."""
        ...

    def all_entities(self) -> Iterable[Entity]:
        """Iterate over every entity."""
        ...


# [nav:anchor IndexSynchronizer]
class IndexSynchronizer:
    """Keep a :class:`LexicalIndex` and an :class:`EmbeddingStore` in step with a store.

    Parameters
    ----------
    store : EntityStore
        Source of truth.
    lexical : LexicalIndex
        Keyword index updated inline.
    embeddings : EmbeddingStore | None, optional
        Embedding store updated by deferred jobs. ``None`` disables semantic
        indexing. Defaults to None.
    retry_attempts : int, optional
        Attempts per embedding job before giving up. Defaults to 3.
    workers : int, optional
        Threads running embedding jobs. Defaults to 2.
    wait_initial, wait_max : float, optional
        Exponential backoff bounds in seconds between attempts.
    metrics : MetricsProvider | None, optional
        Metrics sink. Defaults to :meth:`MetricsProvider.default`.

    Notes
    -----
    Index mutations are serialised by one writer lock so an entity is never
    half-applied across the two indexes. A job whose entity was updated or
    deleted while it ran does not write its vector.
    """

    def __init__(
        self,
        store: EntityStore,
        lexical: LexicalIndex,
        embeddings: EmbeddingStore | None = None,
        *,
        retry_attempts: int = 3,
        workers: int = 2,
        wait_initial: float = 0.1,
        wait_max: float = 2.0,
        metrics: MetricsProvider | None = None,
    ) -> None:
        self._store = store
        self._lexical = lexical
        self._embeddings = embeddings
        self._retry_attempts = retry_attempts
        self._wait_initial = wait_initial
        self._wait_max = wait_max
        self._metrics = metrics or MetricsProvider.default()
        self._write_lock = threading.Lock()
        self._jobs_lock = threading.Lock()
        self._jobs: set[Future[bool]] = set()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="archive-sync")

    def attach(self) -> None:
        """Subscribe to the entity store."""
        self._store.subscribe(self)

    @property
    def pending_jobs(self) -> int:
        """Number of embedding jobs queued or running."""
        with self._jobs_lock:
            return sum(1 for job in self._jobs if not job.done())

    # ---------------------------------------------------------------- listener

    def on_entity_changed(self, entity: Entity) -> None:
        """Reindex ``entity`` and queue its embedding."""
        with observe_duration(self._metrics, "index_entity", component="sync"):
            with self._write_lock:
                if self._embeddings is not None:
                    self._embeddings.touch(entity.id, entity.updated_at)
                self._lexical.index(entity)
        if self._embeddings is not None and not self._embeddings.is_fresh(entity.id):
            self.schedule_embedding(entity)

    def on_entity_deleted(self, entity_id: str) -> None:
        """Remove ``entity_id`` from both indexes."""
        with observe_duration(self._metrics, "remove_entity", component="sync"):
            with self._write_lock:
                self._lexical.remove(entity_id)
                if self._embeddings is not None:
                    self._embeddings.remove(entity_id)

    # ----------------------------------------------------------------- rebuild

    def rebuild_all(self) -> int:
        """Rebuild both indexes from :meth:`EntityStore.all_entities`.

        Embeddings that are still fresh are kept; everything else is queued.

        Returns
        -------
        int
            Number of entities indexed.
        """
        with (
            with_fields(logger, operation="rebuild_all") as log,
            observe_duration(self._metrics, "rebuild_all", component="sync"),
        ):
            entities = list(self._store.all_entities())
            with self._write_lock:
                count = self._lexical.rebuild(entities)
                if self._embeddings is not None:
                    self._embeddings.retain({entity.id for entity in entities})
                    for entity in entities:
                        self._embeddings.touch(entity.id, entity.updated_at)
            queued = 0
            if self._embeddings is not None:
                for entity in entities:
                    if self._embeddings.is_fresh(entity.id):
                        continue
                    if self.schedule_embedding(entity) is not None:
                        queued += 1
            log.info(
                "Rebuilt search indexes",
                extra={"entities": count, "embedding_jobs": queued},
            )
            self._metrics.set_index_size("lexical", "documents", count)
            return count

    # --------------------------------------------------------------- embedding

    def schedule_embedding(self, entity: Entity) -> Future[bool] | None:
        """Queue an embedding job for ``entity``; returns ``None`` when disabled."""
        if self._embeddings is None or self._embeddings.embedder is None:
            return None
        future = self._executor.submit(self._embed_job, entity.id, entity.updated_at)
        with self._jobs_lock:
            self._jobs.add(future)
        future.add_done_callback(self._forget_job)
        return future

    def _forget_job(self, future: Future[bool]) -> None:
        with self._jobs_lock:
            self._jobs.discard(future)

    def _embed_job(self, entity_id: str, updated_at: datetime) -> bool:
        embeddings = self._embeddings
        if embeddings is None or embeddings.embedder is None:
            return False
        embedder = embeddings.embedder
        with (
            with_fields(logger, operation="embed_entity", entity_id=entity_id) as log,
            observe_duration(self._metrics, "embed_entity", component="sync") as observation,
        ):
            entity = self._store.get(entity_id)
            if entity is None or entity.updated_at != updated_at:
                log.debug("Skipping embedding job for superseded entity")
                return False
            retrying = Retrying(
                retry=retry_if_exception_type(EmbeddingTimeoutError),
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=self._wait_initial, max=self._wait_max),
                reraise=False,
            )
            try:
                vector = retrying(embedder.embed, entity.embedding_text())
            except RetryError as exc:
                observation.mark_error()
                last = exc.last_attempt.exception()
                msg = "Embedding job gave up after repeated timeouts"
                error = RetryExhaustedError(
                    msg,
                    operation="embed_entity",
                    attempts=self._retry_attempts,
                    last_error=last if isinstance(last, Exception) else None,
                )
                log.error(str(error), extra={"attempts": self._retry_attempts})
                return False
            except (EmbeddingDimensionError, EmbeddingModelMismatchError):
                observation.mark_error()
                log.exception("Embedding model broke its contract; rebuild embeddings")
                return False
            except EmbeddingError:
                observation.mark_error()
                log.exception("Embedding job failed")
                return False
            with self._write_lock:
                if self._store.get_updated_at(entity_id) != updated_at:
                    log.debug("Entity changed while embedding; discarding vector")
                    return False
                return embeddings.upsert(
                    entity_id,
                    vector,
                    embeddings.model_version,
                    source_updated_at=updated_at,
                )

    # --------------------------------------------------------------- lifecycle

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued embedding job has finished.

        Returns
        -------
        bool
            True if no job is left pending.
        """
        with self._jobs_lock:
            jobs = list(self._jobs)
        done, not_done = wait(jobs, timeout=timeout)
        with self._jobs_lock:
            self._jobs.difference_update(done)
        return not not_done

    def close(self, *, wait_for_jobs: bool = True) -> None:
        """Stop the worker pool."""
        self._executor.shutdown(wait=wait_for_jobs, cancel_futures=not wait_for_jobs)
