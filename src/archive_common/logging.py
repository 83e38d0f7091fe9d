"""Structured logging helpers with correlation IDs.

Library modules call :func:`get_logger` and receive a :class:`LoggerAdapter`
that stamps every record with ``correlation_id``, ``operation`` and ``status``.
Module loggers carry a ``NullHandler``; applications opt into JSON output with
:func:`setup_logging`.

Examples
--------
>>> from archive_common.logging import get_logger
>>> logger = get_logger(__name__)
>>> logger.info("Index rebuilt", extra={"operation": "rebuild", "documents": 12})
"""

# [nav:section public-api]

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Self

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from archive_common.types import JsonValue

__all__ = [
    "CorrelationContext",
    "JsonFormatter",
    "LoggerAdapter",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "setup_logging",
    "with_fields",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "archive_correlation_id", default=None
)

# Attributes every LogRecord carries; never copied into the JSON payload.
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


# [nav:anchor JsonFormatter]
class JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    The payload holds ``ts``, ``level``, ``name`` and ``message`` plus every
    JSON-compatible extra attribute set on the record. ``correlation_id`` is
    taken from the context when the record does not carry one.

    Examples
    --------
    >>> import logging
    >>> handler = logging.StreamHandler()
    >>> handler.setFormatter(JsonFormatter())
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters
        ----------
        record : logging.LogRecord
            Log record to format.

        Returns
        -------
        str
            JSON-encoded log entry.
        """
        data: dict[str, JsonValue] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if (
                key not in _RESERVED_ATTRS
                and key not in data
                and not key.startswith("_")
                and value is not None
                and isinstance(value, (str, int, float, bool, list, dict))
            ):
                data[key] = value

        if "correlation_id" not in data:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                data["correlation_id"] = ctx_correlation_id

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str, ensure_ascii=False)


# [nav:anchor LoggerAdapter]
class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter that injects structured context fields.

    Bound fields (from :func:`with_fields`) are merged under the per-call
    ``extra`` dict; per-call values win. ``operation`` defaults to
    ``"unknown"`` and ``status`` is inferred from the level when absent.
    """

    def log(self, level: int, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log ``msg`` at ``level`` with structured fields injected."""
        if not self.isEnabledFor(level):
            return
        extra = kwargs.get("extra")
        merged: dict[str, object] = dict(extra) if isinstance(extra, dict) else {}
        if isinstance(self.extra, dict):
            for key, value in self.extra.items():
                merged.setdefault(key, value)

        if "correlation_id" not in merged:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                merged["correlation_id"] = ctx_correlation_id

        merged.setdefault("operation", "unknown")
        if "status" not in merged:
            if level >= logging.ERROR:
                merged["status"] = "error"
            elif level >= logging.WARNING:
                merged["status"] = "warning"
            else:
                merged["status"] = "success"

        kwargs["extra"] = merged
        self.logger.log(level, msg, *args, **kwargs)


# [nav:anchor get_logger]
def get_logger(name: str) -> LoggerAdapter:
    """Get a structured logger adapter for ``name``.

    Parameters
    ----------
    name : str
        Logger name (typically ``__name__``).

    Returns
    -------
    LoggerAdapter
        Adapter over ``logging.getLogger(name)``.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return LoggerAdapter(logger, {})


# [nav:anchor setup_logging]
def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with a JSON formatter on stdout.

    Parameters
    ----------
    level : int | str, optional
        Threshold level, numeric or by name. Defaults to ``logging.INFO``.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


# [nav:anchor set_correlation_id]
def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context (``None`` clears it)."""
    _correlation_id.set(correlation_id)


# [nav:anchor get_correlation_id]
def get_correlation_id() -> str | None:
    """Return the correlation ID of the current context, if any."""
    return _correlation_id.get()


# [nav:anchor CorrelationContext]
class CorrelationContext:
    """Context manager that scopes a correlation ID.

    The previous value is restored on exit, so nested contexts and worker
    threads started with ``contextvars.copy_context`` stay isolated.

    Parameters
    ----------
    correlation_id : str | None
        Correlation ID to install for the duration of the block.

    Examples
    --------
    >>> with CorrelationContext("req-42"):
    ...     assert get_correlation_id() == "req-42"
    """

    def __init__(self, correlation_id: str | None) -> None:
        self.correlation_id = correlation_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> Self:
        """Install the correlation ID.

        Returns
        -------
        Self
            This context.
        """
        self._token = _correlation_id.set(self.correlation_id)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Restore the previous correlation ID."""
        if self._token is not None:
            _correlation_id.reset(self._token)
        del exc_type, exc_val, exc_tb


class _WithFieldsContext(AbstractContextManager[LoggerAdapter]):
    """Context manager implementation for :func:`with_fields`."""

    def __init__(
        self, logger: logging.Logger | LoggerAdapter, fields: Mapping[str, object]
    ) -> None:
        self._logger = logger
        self._fields = dict(fields)
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> LoggerAdapter:
        base_logger = (
            self._logger.logger if isinstance(self._logger, LoggerAdapter) else self._logger
        )
        inherited: dict[str, object] = {}
        if isinstance(self._logger, LoggerAdapter) and isinstance(self._logger.extra, dict):
            inherited.update(self._logger.extra)
        inherited.update(self._fields)

        correlation_id = self._fields.get("correlation_id")
        if isinstance(correlation_id, str):
            self._token = _correlation_id.set(correlation_id)
        return LoggerAdapter(base_logger, inherited)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)
        del exc_type, exc_value, exc_tb


# [nav:anchor with_fields]
def with_fields(
    logger: logging.Logger | LoggerAdapter,
    **fields: object,
) -> AbstractContextManager[LoggerAdapter]:
    """Bind structured fields to every record logged inside the block.

    A ``correlation_id`` field is also installed in the context so records
    emitted by other loggers inside the block share it.

    Parameters
    ----------
    logger : logging.Logger | LoggerAdapter
        Base logger to wrap.
    **fields : object
        Fields to inject (e.g. ``operation="keyword_search"``).

    Returns
    -------
    AbstractContextManager[LoggerAdapter]
        Context manager yielding the bound adapter.

    Examples
    --------
    >>> logger = get_logger(__name__)
    >>> with with_fields(logger, operation="rebuild", correlation_id="abc") as log:
    ...     log.info("Rebuild started")
    """
    return _WithFieldsContext(logger, fields)
