"""Prometheus collector builders tolerant of repeated registration.

Test suites and reloaded modules construct the same metrics more than once;
the builders return the collector already registered under a name instead of
failing with ``Duplicated timeseries``.
"""

# [nav:section public-api]

from __future__ import annotations

from typing import TYPE_CHECKING, cast

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "CollectorRegistry",
    "build_counter",
    "build_gauge",
    "build_histogram",
    "get_default_registry",
]

_DEFAULT_BUCKETS: tuple[float, ...] = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)


# [nav:anchor get_default_registry]
def get_default_registry() -> CollectorRegistry:
    """Return the process-wide Prometheus registry."""
    return REGISTRY


def _existing_collector(name: str, registry: CollectorRegistry | None) -> object | None:
    """Return the collector already registered under ``name``, if any.

    Parameters
    ----------
    name : str
        Metric name to look up.
    registry : CollectorRegistry | None
        Registry to search. ``None`` means the default registry.

    Returns
    -------
    object | None
        Registered collector, or None.
    """
    target_registry = registry if registry is not None else REGISTRY
    names_to_collectors = cast(
        "dict[str, object] | None",
        getattr(target_registry, "_names_to_collectors", None),
    )
    if isinstance(names_to_collectors, dict):
        return names_to_collectors.get(name)
    return None


# [nav:anchor build_counter]
def build_counter(
    name: str,
    documentation: str,
    labelnames: Sequence[str] = (),
    *,
    registry: CollectorRegistry | None = None,
) -> Counter:
    """Return a counter, reusing an existing registration for ``name``.

    Parameters
    ----------
    name : str
        Metric name registered with Prometheus.
    documentation : str
        Human readable description.
    labelnames : Sequence[str], optional
        Label names applied to the metric. Defaults to no labels.
    registry : CollectorRegistry | None, optional
        Registry to register against. Defaults to the global registry.

    Returns
    -------
    Counter
        Newly registered or previously registered counter.

    Raises
    ------
    ValueError
        If registration fails and no collector is registered under ``name``.
    """
    try:
        return Counter(name, documentation, tuple(labelnames), registry=registry or REGISTRY)
    except ValueError:
        existing = _existing_collector(name, registry)
        if existing is None:
            raise
        return cast("Counter", existing)


# [nav:anchor build_gauge]
def build_gauge(
    name: str,
    documentation: str,
    labelnames: Sequence[str] = (),
    *,
    registry: CollectorRegistry | None = None,
) -> Gauge:
    """Return a gauge, reusing an existing registration for ``name``.

    Raises
    ------
    ValueError
        If registration fails and no collector is registered under ``name``.
    """
    try:
        return Gauge(name, documentation, tuple(labelnames), registry=registry or REGISTRY)
    except ValueError:
        existing = _existing_collector(name, registry)
        if existing is None:
            raise
        return cast("Gauge", existing)


# [nav:anchor build_histogram]
def build_histogram(
    name: str,
    documentation: str,
    labelnames: Sequence[str] = (),
    *,
    buckets: Sequence[float] | None = None,
    registry: CollectorRegistry | None = None,
) -> Histogram:
    """Return a histogram, reusing an existing registration for ``name``.

    Parameters
    ----------
    name : str
        Metric name registered with Prometheus.
    documentation : str
        Human readable description.
    labelnames : Sequence[str], optional
        Label names applied to the metric. Defaults to no labels.
    buckets : Sequence[float] | None, optional
        Bucket upper bounds. Defaults to sub-millisecond through 10 seconds.
    registry : CollectorRegistry | None, optional
        Registry to register against. Defaults to the global registry.

    Returns
    -------
    Histogram
        Newly registered or previously registered histogram.

    Raises
    ------
    ValueError
        If registration fails and no collector is registered under ``name``.
    """
    try:
        return Histogram(
            name,
            documentation,
            tuple(labelnames),
            registry=registry or REGISTRY,
            buckets=tuple(buckets) if buckets is not None else _DEFAULT_BUCKETS,
        )
    except ValueError:
        existing = _existing_collector(name, registry)
        if existing is None:
            raise
        return cast("Histogram", existing)
