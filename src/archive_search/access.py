"""Visibility rules applied to every search path.

An unauthorised caller can only ever see ``public`` entities; asking for
``private`` is downgraded silently rather than rejected, so the response does
not reveal that private entities exist.
"""
# [nav:section public-api]

from __future__ import annotations

from typing import Final

from archive_search.models import Visibility

__all__ = [
    "PUBLIC_ONLY",
    "permitted_visibilities",
]

# [nav:anchor PUBLIC_ONLY]
PUBLIC_ONLY: Final[frozenset[str]] = frozenset({Visibility.PUBLIC.value})
_EVERYTHING: Final[frozenset[str]] = frozenset(v.value for v in Visibility)


# [nav:anchor permitted_visibilities]
def permitted_visibilities(is_authorized: bool, requested: str | None = None) -> frozenset[str]:
    """Return the visibility classes a search may return.

    Parameters
    ----------
    is_authorized : bool
        Whether the caller holds an authenticated session.
    requested : str | None, optional
        Visibility filter from the query. ``None`` means no preference.

    Returns
    -------
    frozenset[str]
        Allowed visibility values. Unauthorised callers always get
        ``{"public"}``. An authorised caller naming an unknown value gets the
        empty set.

    Examples
    --------
    >>> sorted(permitted_visibilities(False, "private"))
    ['public']
    >>> sorted(permitted_visibilities(True))
    ['private', 'public']
    """
    if not is_authorized:
        return PUBLIC_ONLY
    if requested is None:
        return _EVERYTHING
    return _EVERYTHING & {requested.strip().lower()}
