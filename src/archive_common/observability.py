"""Prometheus metrics helpers for search and indexing operations.

Examples
--------
>>> from archive_common.observability import MetricsProvider, observe_duration
>>> metrics = MetricsProvider.default()
>>> with observe_duration(metrics, "keyword_search", component="search") as obs:
...     obs.mark_success()
"""

# [nav:section public-api]

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, cast

from archive_common.logging import get_logger, with_fields
from archive_common.prometheus import (
    build_counter,
    build_gauge,
    build_histogram,
    get_default_registry,
)

if TYPE_CHECKING:
    import types

    from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

__all__ = [
    "DurationObservation",
    "MetricsProvider",
    "observe_duration",
]

LOGGER = get_logger(__name__)

StatusLiteral = Literal["success", "error"]

_SET_FROZEN_ATTR = object.__setattr__


def _thaw(target: object, **updates: object) -> None:
    """Assign ``updates`` to ``target`` bypassing frozen dataclass guards."""
    for name, value in updates.items():
        _SET_FROZEN_ATTR(target, name, value)


@dataclass(slots=True, frozen=True)
class _ObservabilityCache:
    """Process-wide provider singleton."""

    provider: MetricsProvider | None = None


_OBS_CACHE = _ObservabilityCache()


@dataclass(slots=True, frozen=True)
# [nav:anchor MetricsProvider]
class MetricsProvider:
    """Component-level counters, latencies and index gauges.

    Parameters
    ----------
    registry : CollectorRegistry | None, optional
        Prometheus registry to use. Defaults to the global registry.

    Attributes
    ----------
    runs_total : Counter
        Operations executed, labelled by ``component`` and ``status``.
    operation_duration_seconds : Histogram
        Latency per ``component``/``operation``/``status``.
    index_entries : Gauge
        Current size of a derived index, labelled by ``index`` and ``state``
        (e.g. ``lexical/documents``, ``embeddings/stale``).
    """

    runs_total: Counter
    operation_duration_seconds: Histogram
    index_entries: Gauge
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        resolved_registry = registry or get_default_registry()
        _thaw(
            self,
            _registry=resolved_registry,
            runs_total=build_counter(
                "archive_search_runs_total",
                "Total number of operations executed by a component.",
                ("component", "status"),
                registry=resolved_registry,
            ),
            operation_duration_seconds=build_histogram(
                "archive_search_operation_duration_seconds",
                "Operation duration in seconds for each component/operation pair.",
                ("component", "operation", "status"),
                registry=resolved_registry,
            ),
            index_entries=build_gauge(
                "archive_search_index_entries",
                "Number of entries held by a derived search index.",
                ("index", "state"),
                registry=resolved_registry,
            ),
        )

    @property
    def registry(self) -> CollectorRegistry | None:
        """Return the underlying Prometheus registry."""
        return self._registry

    @classmethod
    def default(cls) -> MetricsProvider:
        """Return a cached provider bound to the global registry.

        Returns
        -------
        MetricsProvider
            Process-wide provider.
        """
        if _OBS_CACHE.provider is None:
            _thaw(_OBS_CACHE, provider=cls())
        return cast("MetricsProvider", _OBS_CACHE.provider)

    def set_index_size(self, index: str, state: str, value: int) -> None:
        """Publish the current size of ``index`` in ``state``."""
        self.index_entries.labels(index=index, state=state).set(value)


@dataclass(slots=True, frozen=True)
# [nav:anchor DurationObservation]
class DurationObservation:
    """Capture metrics and structured status for an in-flight operation."""

    metrics: MetricsProvider
    operation: str
    component: str
    status: StatusLiteral = "success"
    _start: float = field(default_factory=time.monotonic)

    def mark_success(self) -> None:
        """Mark the operation as successful."""
        _thaw(self, status="success")

    def mark_error(self) -> None:
        """Mark the operation as failed."""
        _thaw(self, status="error")

    def duration_seconds(self) -> float:
        """Return the elapsed wall-clock duration in seconds."""
        return time.monotonic() - self._start


class _DurationObservationContext:
    """Context manager that finalises :class:`DurationObservation` instances."""

    def __init__(self, *, metrics: MetricsProvider, operation: str, component: str) -> None:
        self._observation = DurationObservation(
            metrics=metrics,
            operation=operation,
            component=component,
        )

    def __enter__(self) -> DurationObservation:
        return self._observation

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        _tb: types.TracebackType | None,
    ) -> bool:
        if exc_type is not None:
            self._observation.mark_error()
        _finalise_observation(self._observation)
        return False


# [nav:anchor observe_duration]
def observe_duration(
    metrics: MetricsProvider,
    operation: str,
    *,
    component: str = "unknown",
) -> _DurationObservationContext:
    """Record latency, outcome counters and a debug log for an operation.

    Parameters
    ----------
    metrics : MetricsProvider
        Metrics provider instance.
    operation : str
        Operation name.
    component : str, optional
        Component name. Defaults to "unknown".

    Returns
    -------
    _DurationObservationContext
        Context manager yielding a :class:`DurationObservation`.

    Notes
    -----
    Exceptions raised inside the block propagate after the observation is
    marked ``"error"`` and recorded.
    """
    return _DurationObservationContext(metrics=metrics, operation=operation, component=component)


def _finalise_observation(observation: DurationObservation) -> None:
    duration = observation.duration_seconds()
    observation.metrics.runs_total.labels(
        component=observation.component,
        status=observation.status,
    ).inc()
    observation.metrics.operation_duration_seconds.labels(
        component=observation.component,
        operation=observation.operation,
        status=observation.status,
    ).observe(duration)
    with with_fields(
        LOGGER,
        operation=observation.operation,
        status=observation.status,
    ) as adapter:
        adapter.debug(
            "Operation completed",
            extra={"component": observation.component, "duration_ms": duration * 1000},
        )
