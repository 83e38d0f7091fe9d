"""Tests for archive_search.access module."""

from __future__ import annotations

import pytest

from archive_search.access import PUBLIC_ONLY, permitted_visibilities


class TestPermittedVisibilities:
    """Tests for permitted_visibilities function."""

    @pytest.mark.parametrize("requested", [None, "public", "private", "PRIVATE", "bogus"])
    def test_unauthorized_always_public(self, requested: str | None) -> None:
        """Unauthorised callers get exactly {public}, whatever they ask for."""
        assert permitted_visibilities(False, requested) == PUBLIC_ONLY == frozenset({"public"})

    def test_authorized_defaults_to_everything(self) -> None:
        """Authorised callers see both classes without a preference."""
        assert permitted_visibilities(True) == frozenset({"public", "private"})

    @pytest.mark.parametrize("requested", ["private", " Private "])
    def test_authorized_may_narrow(self, requested: str) -> None:
        """Authorised callers may ask for a single class."""
        assert permitted_visibilities(True, requested) == frozenset({"private"})

    def test_authorized_unknown_value_permits_nothing(self) -> None:
        """An unknown visibility narrows to the empty set."""
        assert permitted_visibilities(True, "secret") == frozenset()
