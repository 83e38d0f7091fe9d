"""Tests for archive_common.problem_details module."""

from __future__ import annotations

import json

import pytest

from archive_common.problem_details import (
    ProblemDetailsValidationError,
    build_problem_details,
    render_problem,
    validate_problem_details,
)


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "type": "https://archive.example.org/problems/runtime-error",
        "title": "RuntimeError",
        "status": 500,
        "detail": "failed",
        "instance": "urn:archive:test",
    }
    payload.update(overrides)
    return payload


class TestValidation:
    """Schema validation of payloads."""

    def test_valid_payload(self) -> None:
        """A complete payload passes."""
        validate_problem_details(_payload(code="runtime-error", retryable=False))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": 99},
            {"code": "Not_Kebab"},
            {"unexpected": True},
        ],
    )
    def test_invalid_payload(self, overrides: dict[str, object]) -> None:
        """Constraint violations raise with the validator messages."""
        with pytest.raises(ProblemDetailsValidationError) as exc_info:
            validate_problem_details(_payload(**overrides))
        assert exc_info.value.validation_errors

    def test_missing_required_field(self) -> None:
        """Required members must be present."""
        payload = _payload()
        del payload["instance"]
        with pytest.raises(ProblemDetailsValidationError, match="instance"):
            validate_problem_details(payload)


class TestBuildAndRender:
    """Payload construction and rendering."""

    def test_optional_members_omitted(self) -> None:
        """Unset optional members do not appear."""
        problem = build_problem_details(
            problem_type="https://archive.example.org/problems/embedding-timeout",
            title="Embedding timed out",
            status=504,
            detail="Query embedding exceeded 5.0s",
            instance="urn:archive:search:semantic",
        )
        assert set(problem) == {"type", "title", "status", "detail", "instance"}

    def test_render_keeps_non_ascii(self) -> None:
        """Rendered JSON keeps Chinese text readable."""
        problem = build_problem_details(
            problem_type="https://archive.example.org/problems/search-query-invalid",
            title="Invalid query",
            status=400,
            detail="无效的查询",
            instance="urn:archive:search:keyword",
            code="search-query-invalid",
            extensions={"field": "limit"},
        )
        rendered = render_problem(problem)
        assert "无效的查询" in rendered
        assert json.loads(rendered)["extensions"] == {"field": "limit"}
