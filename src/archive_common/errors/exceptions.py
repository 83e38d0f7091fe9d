"""Typed exception hierarchy with Problem Details support.

All archive exceptions inherit from :class:`ArchiveSearchError`, which carries
a stable :class:`ErrorCode`, an HTTP status hint, a retryable flag and a
context mapping, and converts itself to an RFC 9457 payload.

Examples
--------
>>> from archive_common.errors import EmbeddingTimeoutError, ErrorCode
>>> try:
...     raise EmbeddingTimeoutError("Embedding call exceeded 5.0s", timeout_seconds=5.0)
... except EmbeddingTimeoutError as e:
...     assert e.code == ErrorCode.EMBEDDING_TIMEOUT
...     assert e.retryable
...     details = e.to_problem_details(instance="urn:archive:search:semantic")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar, cast

from archive_common.errors.codes import ErrorCode, get_type_uri
from archive_common.problem_details import build_problem_details

if TYPE_CHECKING:
    from archive_common.problem_details import ProblemDetails
    from archive_common.types import JsonValue

__all__ = [
    "ArchiveSearchError",
    "DeserializationError",
    "EmbeddingDimensionError",
    "EmbeddingError",
    "EmbeddingModelMismatchError",
    "EmbeddingTimeoutError",
    "IndexConsistencyError",
    "RetryExhaustedError",
    "SearchQueryError",
    "SerializationError",
    "SettingsError",
]


class ArchiveSearchError(Exception):
    """Base exception for all archive search errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode, optional
        Stable error code. Defaults to ``ErrorCode.RUNTIME_ERROR``.
    http_status : int, optional
        HTTP status a transport layer should map this error to. Defaults to 500.
    log_level : int, optional
        Level at which the error should be logged. Defaults to ``logging.ERROR``.
    cause : Exception | None, optional
        Underlying exception, stored as ``__cause__``. Defaults to None.
    context : Mapping[str, object] | None, optional
        Additional structured details. Defaults to None.

    Attributes
    ----------
    retryable : bool
        Whether repeating the same request may succeed. Subclasses override it.

    Examples
    --------
    >>> error = ArchiveSearchError("Operation failed")
    >>> str(error)
    'ArchiveSearchError[runtime-error]: Operation failed'
    """

    retryable: ClassVar[bool] = False

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.RUNTIME_ERROR,
        http_status: int = 500,
        log_level: int = logging.ERROR,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.log_level = log_level
        self.context: dict[str, object] = dict(context) if context else {}
        if cause is not None:
            self.__cause__ = cause

    def to_problem_details(
        self,
        instance: str | None = None,
        title: str | None = None,
    ) -> ProblemDetails:
        """Convert to an RFC 9457 Problem Details payload.

        Parameters
        ----------
        instance : str | None, optional
            URI identifying the specific occurrence. Defaults to None.
        title : str | None, optional
            Short summary. Defaults to the exception class name.

        Returns
        -------
        ProblemDetails
            Validated payload including ``code``, ``retryable`` and the
            context as ``extensions``.
        """
        return build_problem_details(
            problem_type=get_type_uri(self.code),
            title=title or self.__class__.__name__,
            status=self.http_status,
            detail=self.message,
            instance=instance or "urn:archive:error",
            code=self.code.value,
            retryable=self.retryable,
            extensions=cast("Mapping[str, JsonValue] | None", self.context or None),
        )

    def __str__(self) -> str:
        """Return formatted error string.

        Returns
        -------
        str
            ``"ClassName[code]: message"`` plus the cause type when chained.
        """
        base = f"{self.__class__.__name__}[{self.code.value}]: {self.message}"
        if self.__cause__:
            base += f" (caused by: {type(self.__cause__).__name__})"
        return base


class SearchQueryError(ArchiveSearchError):
    """A query parameter is structurally unusable.

    Only raised for values that cannot be clamped into range, such as a
    non-positive ``limit``. Uses SEARCH_QUERY_INVALID and HTTP 400.

    Parameters
    ----------
    message : str
        Description of the offending parameter.
    field : str | None, optional
        Name of the offending field. Defaults to None.
    cause : Exception | None, optional
        Underlying validation failure. Defaults to None.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.SEARCH_QUERY_INVALID,
            http_status=400,
            log_level=logging.INFO,
            cause=cause,
            context={"field": field} if field else None,
        )
        self.field = field


class EmbeddingError(ArchiveSearchError):
    """The embedding function failed for a reason other than a timeout.

    Uses EMBEDDING_ERROR and HTTP 503.
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.EMBEDDING_ERROR,
            http_status=503,
            cause=cause,
            context=context,
        )


class EmbeddingTimeoutError(ArchiveSearchError):
    """The embedding function exceeded its deadline.

    Retryable, and distinct from an empty result so callers can offer a
    "try again" path. Uses EMBEDDING_TIMEOUT and HTTP 504.

    Parameters
    ----------
    message : str
        Human-readable error message.
    timeout_seconds : float | None, optional
        Deadline that was exceeded. Defaults to None.
    cause : Exception | None, optional
        Underlying exception. Defaults to None.
    """

    retryable: ClassVar[bool] = True

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.EMBEDDING_TIMEOUT,
            http_status=504,
            log_level=logging.WARNING,
            cause=cause,
            context={"timeout_seconds": timeout_seconds} if timeout_seconds is not None else None,
        )
        self.timeout_seconds = timeout_seconds


class EmbeddingDimensionError(ArchiveSearchError):
    """A vector does not have the configured dimensionality.

    Never padded or truncated; the embeddings must be rebuilt.
    Uses EMBEDDING_DIMENSION_MISMATCH and HTTP 500.
    """

    def __init__(self, message: str, *, expected: int, actual: int) -> None:
        super().__init__(
            message,
            code=ErrorCode.EMBEDDING_DIMENSION_MISMATCH,
            http_status=500,
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class EmbeddingModelMismatchError(ArchiveSearchError):
    """A vector was produced by a model other than the active one.

    Uses EMBEDDING_MODEL_MISMATCH and HTTP 500.
    """

    def __init__(self, message: str, *, expected: str, actual: str) -> None:
        super().__init__(
            message,
            code=ErrorCode.EMBEDDING_MODEL_MISMATCH,
            http_status=500,
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class IndexConsistencyError(ArchiveSearchError):
    """Derived index state disagrees with itself.

    Raised instead of returning corrupted entries as low-confidence results.
    Uses INDEX_CONSISTENCY_ERROR and HTTP 500 with CRITICAL log level.
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.INDEX_CONSISTENCY_ERROR,
            http_status=500,
            log_level=logging.CRITICAL,
            cause=cause,
            context=context,
        )


class RetryExhaustedError(ArchiveSearchError):
    """A retried operation ran out of attempts.

    Parameters
    ----------
    message : str
        Human-readable error message.
    operation : str | None, optional
        Name of the operation that failed. Defaults to None.
    attempts : int | None, optional
        Number of attempts made. Defaults to None.
    last_error : Exception | None, optional
        Last exception seen before giving up. Defaults to None.
    """

    retryable: ClassVar[bool] = True

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        attempts: int | None = None,
        last_error: Exception | None = None,
    ) -> None:
        context: dict[str, object] = {}
        if operation:
            context["operation"] = operation
        if attempts is not None:
            context["attempts"] = attempts
        super().__init__(
            message,
            code=ErrorCode.RETRY_EXHAUSTED,
            http_status=503,
            cause=last_error,
            context=context,
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class SettingsError(ArchiveSearchError):
    """Runtime settings failed validation.

    Parameters
    ----------
    message : str
        Human-readable error message.
    errors : list[dict[str, object]] | None, optional
        Validation error dictionaries, stored under ``validation_errors``.
        Defaults to None.
    cause : Exception | None, optional
        Underlying exception. Defaults to None.
    """

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, object]] | None = None,
        cause: Exception | None = None,
    ) -> None:
        context: dict[str, object] = {}
        if errors:
            context["validation_errors"] = [dict(error) for error in errors]
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION_ERROR,
            http_status=500,
            cause=cause,
            context=context,
        )


class SerializationError(ArchiveSearchError):
    """Persisting a derived index snapshot failed."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.SERIALIZATION_ERROR,
            http_status=500,
            cause=cause,
            context=context,
        )


class DeserializationError(ArchiveSearchError):
    """Loading a derived index snapshot failed."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.DESERIALIZATION_ERROR,
            http_status=500,
            cause=cause,
            context=context,
        )
