"""Shared infrastructure for the research archive search stack.

Errors with Problem Details mapping, structured logging, Prometheus metrics
and environment-driven settings live here so ``archive_search`` can import a
single cohesive namespace.
"""
# [nav:section public-api]

from __future__ import annotations

# [nav:anchor errors]
# [nav:anchor logging]
# [nav:anchor observability]
# [nav:anchor problem_details]
# [nav:anchor settings]
# [nav:anchor types]
from archive_common import (
    errors,
    logging,
    observability,
    problem_details,
    settings,
    types,
)

__all__ = [
    "errors",
    "logging",
    "observability",
    "problem_details",
    "settings",
    "types",
]
