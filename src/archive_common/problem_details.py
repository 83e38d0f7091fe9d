"""RFC 9457 Problem Details helpers with schema validation.

Every payload built here is validated against the bundled JSON Schema 2020-12
document at ``archive_common/schema/problem_details.json`` before it is handed
to a transport layer.

Examples
--------
>>> from archive_common.problem_details import build_problem_details, render_problem
>>> problem = build_problem_details(
...     problem_type="https://archive.example.org/problems/embedding-timeout",
...     title="Embedding timed out",
...     status=504,
...     detail="Embedding call exceeded 5.0 seconds",
...     instance="urn:archive:search:semantic",
...     code="embedding-timeout",
...     retryable=True,
... )
>>> assert "embedding-timeout" in render_problem(problem)
"""
# [nav:section public-api]

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, TypedDict, cast

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError

from archive_common.types import JsonValue

if TYPE_CHECKING:
    from collections.abc import Mapping

__all__ = [
    "ProblemDetails",
    "ProblemDetailsParams",
    "ProblemDetailsValidationError",
    "build_problem_details",
    "render_problem",
    "validate_problem_details",
]

# JSON Schema type for cached schema objects
JsonSchema = dict[str, object]

_SCHEMA_PATH = Path(__file__).parent / "schema" / "problem_details.json"


# [nav:anchor ProblemDetails]
class ProblemDetails(TypedDict, total=False):
    """TypedDict for RFC 9457 Problem Details responses."""

    type: str
    title: str
    status: int
    detail: str
    instance: str
    code: str
    retryable: bool
    extensions: dict[str, JsonValue]


@dataclass(slots=True, frozen=True)
# [nav:anchor ProblemDetailsParams]
class ProblemDetailsParams:
    """Parameters used to construct a Problem Details payload."""

    problem_type: str
    title: str
    status: int
    detail: str
    instance: str
    code: str | None = None
    retryable: bool | None = None
    extensions: Mapping[str, JsonValue] | None = None


# [nav:anchor ProblemDetailsValidationError]
class ProblemDetailsValidationError(Exception):
    """Raised when a Problem Details payload fails schema validation.

    Parameters
    ----------
    message : str
        Human-readable error message describing the validation failure.
    validation_errors : list[str] | None, optional
        Specific validation messages from the schema validator. Defaults to None.
    """

    def __init__(self, message: str, validation_errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.validation_errors = validation_errors or []


_SCHEMA_CACHE: dict[str, Draft202012Validator] = {}


def _load_validator() -> Draft202012Validator:
    """Return the cached validator for the bundled Problem Details schema.

    Returns
    -------
    Draft202012Validator
        Validator compiled from the schema file.

    Raises
    ------
    ProblemDetailsValidationError
        If the schema file is missing, is not JSON, or is not a valid
        JSON Schema 2020-12 document.
    """
    cached = _SCHEMA_CACHE.get("problem_details")
    if cached is not None:
        return cached

    try:
        schema_obj: JsonSchema = json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Failed to load Problem Details schema: {exc}"
        raise ProblemDetailsValidationError(msg) from exc

    try:
        Draft202012Validator.check_schema(schema_obj)
    except SchemaError as exc:
        msg = f"Invalid Problem Details schema: {exc}"
        raise ProblemDetailsValidationError(msg) from exc

    validator = Draft202012Validator(schema_obj)
    _SCHEMA_CACHE["problem_details"] = validator
    return validator


# [nav:anchor validate_problem_details]
def validate_problem_details(payload: Mapping[str, object]) -> None:
    """Validate a Problem Details payload against the bundled schema.

    Parameters
    ----------
    payload : Mapping[str, object]
        Payload to validate. Must carry type, title, status, detail and instance.

    Raises
    ------
    ProblemDetailsValidationError
        If the payload violates the schema. ``validation_errors`` holds the
        message and the JSON path of the first failing constraint.
    """
    validator = _load_validator()
    try:
        validator.validate(payload)
    except ValidationError as exc:
        errors = [exc.message]
        if exc.absolute_path:
            path_str = ".".join(str(p) for p in exc.absolute_path)
            errors.append(f"at path: {path_str}")
        msg = f"Problem Details validation failed: {'; '.join(errors)}"
        raise ProblemDetailsValidationError(msg, validation_errors=errors) from exc


# [nav:anchor build_problem_details]
def build_problem_details(  # noqa: PLR0913
    problem_type: str,
    title: str,
    status: int,
    detail: str,
    instance: str,
    *,
    code: str | None = None,
    retryable: bool | None = None,
    extensions: Mapping[str, JsonValue] | None = None,
) -> ProblemDetails:
    """Build an RFC 9457 Problem Details payload.

    Parameters
    ----------
    problem_type : str
        Type URI identifying the problem class.
    title : str
        Short human-readable summary.
    status : int
        HTTP status code the transport layer should use.
    detail : str
        Explanation specific to this occurrence.
    instance : str
        URI identifying this occurrence.
    code : str | None, optional
        Stable kebab-case error code. Defaults to None.
    retryable : bool | None, optional
        Whether the caller may retry the same request. Defaults to None.
    extensions : Mapping[str, JsonValue] | None, optional
        Additional structured context. Defaults to None.

    Returns
    -------
    ProblemDetails
        Validated payload.

    Raises
    ------
    ProblemDetailsValidationError
        If the assembled payload does not satisfy the schema.
    """
    params = ProblemDetailsParams(
        problem_type=problem_type,
        title=title,
        status=status,
        detail=detail,
        instance=instance,
        code=code,
        retryable=retryable,
        extensions=extensions,
    )
    payload: dict[str, object] = {
        "type": params.problem_type,
        "title": params.title,
        "status": params.status,
        "detail": params.detail,
        "instance": params.instance,
    }
    if params.code is not None:
        payload["code"] = params.code
    if params.retryable is not None:
        payload["retryable"] = params.retryable
    if params.extensions:
        payload["extensions"] = dict(params.extensions)
    validate_problem_details(payload)
    return cast("ProblemDetails", payload)


# [nav:anchor render_problem]
def render_problem(problem: ProblemDetails | dict[str, object]) -> str:
    """Render Problem Details as a minified JSON string.

    Non-ASCII characters (Chinese titles in ``detail``) are preserved.

    Parameters
    ----------
    problem : ProblemDetails | dict[str, object]
        Payload to serialize.

    Returns
    -------
    str
        JSON-encoded payload without a trailing newline.
    """
    return json.dumps(problem, default=str, ensure_ascii=False)
