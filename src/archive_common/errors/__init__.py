"""Exception hierarchy and Problem Details support.

Examples
--------
>>> from archive_common.errors import ArchiveSearchError, ErrorCode
>>> try:
...     raise ArchiveSearchError("Operation failed", code=ErrorCode.RUNTIME_ERROR)
... except ArchiveSearchError as e:
...     details = e.to_problem_details(instance="urn:archive:search")
...     assert details["type"] == "https://archive.example.org/problems/runtime-error"
"""
# [nav:section public-api]

from __future__ import annotations

from archive_common.errors.codes import BASE_TYPE_URI, ErrorCode, get_type_uri
from archive_common.errors.exceptions import (
    ArchiveSearchError,
    DeserializationError,
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingModelMismatchError,
    EmbeddingTimeoutError,
    IndexConsistencyError,
    RetryExhaustedError,
    SearchQueryError,
    SerializationError,
    SettingsError,
)

__all__ = [
    "BASE_TYPE_URI",
    "ArchiveSearchError",
    "DeserializationError",
    "EmbeddingDimensionError",
    "EmbeddingError",
    "EmbeddingModelMismatchError",
    "EmbeddingTimeoutError",
    "ErrorCode",
    "IndexConsistencyError",
    "RetryExhaustedError",
    "SearchQueryError",
    "SerializationError",
    "SettingsError",
    "get_type_uri",
]
