"""Shared pytest fixtures for the archive search test suite.

This module provides reusable fixtures for:
- A deterministic fake embedding model with controllable vectors and delays
- An in-memory entity store that notifies subscribed listeners
- An entity factory with fixed timestamps
- Settings, metrics and a started :class:`SearchService`
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np
import pytest
from prometheus_client import CollectorRegistry

from archive_common.observability import MetricsProvider
from archive_common.settings import ObservabilityConfig, SemanticConfig, load_settings
from archive_search.models import Entity
from archive_search.service import SearchService

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from archive_common.settings import RuntimeSettings
    from archive_search.sync import EntityListener

FAKE_MODEL = "fake-model-v1"
FAKE_DIMENSION = 4
BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)

# Keyword -> axis used by FakeEmbedding when no explicit vector is registered.
_AXES = {"graph": 0, "图": 0, "vision": 1, "image": 1, "protein": 2, "fold": 2}


class FakeEmbedding:
    """Deterministic embedding model.

    Text registered via :meth:`register` maps to its exact vector. Other text
    counts vocabulary words per axis, so text without vocabulary words embeds
    to the zero vector.
    """

    def __init__(self, model_version: str = FAKE_MODEL, dimension: int = FAKE_DIMENSION) -> None:
        self.model_version = model_version
        self.dimension = dimension
        self.calls: list[str] = []
        self.delay_seconds = 0.0
        self.slow_calls = 0
        self.fail_with: Exception | None = None
        self._vectors: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def register(self, text: str, vector: list[float]) -> None:
        self._vectors[text] = vector

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.calls.append(text)
            slow = self.slow_calls > 0 or self.delay_seconds > 0
            if self.slow_calls > 0:
                self.slow_calls -= 1
        if self.fail_with is not None:
            raise self.fail_with
        if slow:
            time.sleep(self.delay_seconds or 0.5)
        if text in self._vectors:
            return list(self._vectors[text])
        vector = np.zeros(self.dimension, dtype=np.float32)
        for word in text.lower().replace(",", " ").split():
            axis = _AXES.get(word)
            if axis is not None:
                vector[axis] += 1.0
        return vector.tolist()


class InMemoryEntityStore:
    """Dictionary-backed entity store implementing the ``EntityStore`` protocol."""

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._listeners: list[EntityListener] = []

    def subscribe(self, listener: EntityListener) -> None:
        self._listeners.append(listener)

    def put(self, entity: Entity, *, notify: bool = True) -> Entity:
        self._entities[entity.id] = entity
        if notify:
            for listener in self._listeners:
                listener.on_entity_changed(entity)
        return entity

    def delete(self, entity_id: str, *, notify: bool = True) -> None:
        self._entities.pop(entity_id, None)
        if notify:
            for listener in self._listeners:
                listener.on_entity_deleted(entity_id)

    def get(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    def get_visibility(self, entity_id: str) -> str | None:
        entity = self._entities.get(entity_id)
        return entity.visibility.value if entity else None

    def get_updated_at(self, entity_id: str) -> datetime | None:
        entity = self._entities.get(entity_id)
        return entity.updated_at if entity else None

    def all_entities(self) -> list[Entity]:
        return list(self._entities.values())


def make_entity(entity_id: str, *, age_days: int = 0, **fields: object) -> Entity:
    """Build an entity; larger ``age_days`` means older ``created_at``/``updated_at``."""
    stamp = BASE_TIME - timedelta(days=age_days)
    payload: dict[str, object] = {
        "id": entity_id,
        "type": "project",
        "title_en": f"Entity {entity_id}",
        "created_at": stamp,
        "updated_at": stamp,
    }
    payload.update(fields)
    return Entity.model_validate(payload)


@pytest.fixture
def entity_factory() -> Callable[..., Entity]:
    """Return :func:`make_entity`."""
    return make_entity


@pytest.fixture
def fake_embedding() -> FakeEmbedding:
    """Return a fresh deterministic embedding model."""
    return FakeEmbedding()


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    """Return an empty in-memory entity store."""
    return InMemoryEntityStore()


@pytest.fixture
def metrics() -> MetricsProvider:
    """Return a metrics provider bound to an isolated registry."""
    return MetricsProvider(CollectorRegistry())


@pytest.fixture
def settings() -> RuntimeSettings:
    """Return settings sized for the fake embedding model."""
    return load_settings(
        semantic=SemanticConfig(
            model_version=FAKE_MODEL,
            dimension=FAKE_DIMENSION,
            embed_timeout_seconds=0.2,
            embed_retry_attempts=2,
        ),
        observability=ObservabilityConfig(metrics_enabled=False),
    )


@pytest.fixture
def service(
    entity_store: InMemoryEntityStore,
    settings: RuntimeSettings,
    fake_embedding: FakeEmbedding,
    metrics: MetricsProvider,
) -> Iterator[SearchService]:
    """Return a started service over ``entity_store``; entities may be added afterwards."""
    svc = SearchService(
        entity_store,
        settings=settings,
        embedding_function=fake_embedding,
        metrics=metrics,
    )
    svc.start()
    yield svc
    svc.close()


@pytest.fixture
def add_entities(
    service: SearchService, entity_store: InMemoryEntityStore
) -> Callable[..., None]:
    """Return a helper that stores entities and waits for their embedding jobs."""

    def _add(*entities: Entity) -> None:
        for entity in entities:
            entity_store.put(entity)
        assert service.synchronizer.wait_idle(timeout=5.0)

    return _add
