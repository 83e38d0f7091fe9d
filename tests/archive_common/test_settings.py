"""Tests for archive_common.settings module."""

from __future__ import annotations

import pytest

from archive_common.errors import ErrorCode, SettingsError
from archive_common.settings import (
    ObservabilityConfig,
    RuntimeSettings,
    SearchConfig,
    SemanticConfig,
    load_settings,
)


class TestSearchConfig:
    """Tests for SearchConfig."""

    def test_defaults(self) -> None:
        """SearchConfig uses the documented defaults."""
        config = SearchConfig()
        assert config.default_limit == 20
        assert config.max_limit == 100
        assert config.bm25_k1 == 0.9
        assert config.bm25_b == 0.4
        assert config.rrf_k == 60

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """SearchConfig loads from ``ARCHIVE_SEARCH_*`` variables."""
        monkeypatch.setenv("ARCHIVE_SEARCH_MAX_LIMIT", "50")
        assert SearchConfig().max_limit == 50

    def test_extra_fields_forbidden(self) -> None:
        """SearchConfig rejects unknown fields."""
        with pytest.raises(ValueError, match="Extra inputs are not permitted"):
            SearchConfig(unknown_field="value")  # type: ignore[call-arg]


class TestSemanticConfig:
    """Tests for SemanticConfig."""

    def test_defaults(self) -> None:
        """Semantic search is enabled with a 0.3 default threshold."""
        config = SemanticConfig()
        assert config.enabled is True
        assert config.default_threshold == 0.3
        assert config.embed_timeout_seconds == 5.0

    def test_env_disable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Semantic search can be switched off from the environment."""
        monkeypatch.setenv("ARCHIVE_SEMANTIC_ENABLED", "false")
        assert SemanticConfig().enabled is False


class TestRuntimeSettings:
    """Tests for RuntimeSettings."""

    def test_defaults(self) -> None:
        """Every section is populated."""
        settings = RuntimeSettings()
        assert isinstance(settings.search, SearchConfig)
        assert isinstance(settings.semantic, SemanticConfig)
        assert isinstance(settings.observability, ObservabilityConfig)

    def test_overrides(self) -> None:
        """Sections accept instances or plain mappings."""
        settings = load_settings(search={"default_limit": 5})
        assert settings.search.default_limit == 5

    def test_invalid_values_raise_settings_error(self) -> None:
        """Validation failures surface as SettingsError with details."""
        with pytest.raises(SettingsError) as exc_info:
            load_settings(search={"default_limit": 50, "max_limit": 10})
        error = exc_info.value
        assert error.code == ErrorCode.CONFIGURATION_ERROR
        assert error.context["validation_errors"]
        assert isinstance(error.__cause__, ValueError)
