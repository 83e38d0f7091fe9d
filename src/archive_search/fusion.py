"""Reciprocal rank fusion of keyword and semantic rankings."""
# [nav:section public-api]

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = ["rrf_fuse"]


# [nav:anchor rrf_fuse]
def rrf_fuse(rankers: Sequence[Sequence[str]], k_rrf: int = 60) -> list[tuple[str, float]]:
    """Fuse ranked id lists using Reciprocal Rank Fusion (RRF).

    Each list contributes ``1 / (k_rrf + rank)`` to every id it holds, so ids
    ranked well by several retrievers rise to the top. Only ranks are used;
    raw scores from different retrievers are not comparable.

    Parameters
    ----------
    rankers : Sequence[Sequence[str]]
        Ranked id lists, best first.
    k_rrf : int, optional
        Constant damping the weight of lower ranks. Defaults to 60.

    Returns
    -------
    list[tuple[str, float]]
        ``(id, fused_score)`` pairs, best first. Equal scores keep the order
        in which ids were first seen across ``rankers``.

    Examples
    --------
    >>> rrf_fuse([["a", "b"], ["b", "c"]], k_rrf=1)[0][0]
    'b'
    """
    agg: dict[str, float] = {}
    for ranked in rankers:
        for r, key in enumerate(ranked, start=1):
            agg[key] = agg.get(key, 0.0) + 1.0 / (k_rrf + r)
    return sorted(agg.items(), key=lambda item: -item[1])
