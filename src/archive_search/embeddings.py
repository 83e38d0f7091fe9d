"""Boundary to the external embedding model.

The model is a black box behind :class:`EmbeddingFunction`. :class:`Embedder`
wraps it with a deadline and contract checks: a call that overruns raises the
retryable :class:`EmbeddingTimeoutError`, a vector of the wrong size raises
:class:`EmbeddingDimensionError`, and a model reporting another version raises
:class:`EmbeddingModelMismatchError`. Vectors are never padded or truncated.
"""
# [nav:section public-api]

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from archive_common.errors import (
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingModelMismatchError,
    EmbeddingTimeoutError,
)
from archive_common.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "Embedder",
    "EmbeddingFunction",
    "as_vector",
]

logger = get_logger(__name__)


# [nav:anchor EmbeddingFunction]
@runtime_checkable
class EmbeddingFunction(Protocol):
    """Protocol for text embedding models.

    Attributes
    ----------
    model_version : str
        Identifier of the model and its weights.
    dimension : int
        Length of every vector the model returns.
    """

    model_version: str
    dimension: int

    def embed(self, text: str) -> Sequence[float] | NDArray[np.float32]:
        """Return the embedding of ``text``."""
        ...


def as_vector(
    values: Sequence[float] | NDArray[np.floating], *, dimension: int
) -> NDArray[np.float32]:
    """Convert ``values`` to a 1-D float32 array of exactly ``dimension`` entries.

    Raises
    ------
    EmbeddingDimensionError
        If the vector is not one-dimensional or has the wrong length.
    EmbeddingError
        If the vector contains NaN or infinite values.
    """
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1 or vector.shape[0] != dimension:
        actual = int(vector.shape[-1]) if vector.ndim else 0
        msg = f"Embedding has shape {vector.shape}, expected ({dimension},)"
        raise EmbeddingDimensionError(msg, expected=dimension, actual=actual)
    if not np.all(np.isfinite(vector)):
        msg = "Embedding contains non-finite values"
        raise EmbeddingError(msg)
    return vector


# [nav:anchor Embedder]
class Embedder:
    """Deadline-bounded, contract-checked access to an :class:`EmbeddingFunction`.

    Parameters
    ----------
    function : EmbeddingFunction
        Underlying model.
    model_version : str
        Version the archive is configured for.
    dimension : int
        Dimensionality the archive is configured for.
    timeout_seconds : float
        Deadline for each call.
    max_workers : int, optional
        Threads used to run calls under the deadline. Defaults to 4.

    Raises
    ------
    EmbeddingModelMismatchError
        If ``function.model_version`` differs from ``model_version``.
    EmbeddingDimensionError
        If ``function.dimension`` differs from ``dimension``.

    Notes
    -----
    A call that times out keeps running on its worker thread until the model
    returns; its result is discarded.
    """

    def __init__(
        self,
        function: EmbeddingFunction,
        *,
        model_version: str,
        dimension: int,
        timeout_seconds: float,
        max_workers: int = 4,
    ) -> None:
        if function.model_version != model_version:
            msg = (
                f"Embedding model {function.model_version!r} does not match "
                f"configured model {model_version!r}; rebuild embeddings"
            )
            raise EmbeddingModelMismatchError(
                msg, expected=model_version, actual=function.model_version
            )
        if function.dimension != dimension:
            msg = f"Embedding model produces {function.dimension} dimensions, expected {dimension}"
            raise EmbeddingDimensionError(msg, expected=dimension, actual=function.dimension)
        self._function = function
        self.model_version = model_version
        self.dimension = dimension
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="archive-embed"
        )

    def embed(self, text: str) -> NDArray[np.float32]:
        """Embed ``text`` within the configured deadline.

        Parameters
        ----------
        text : str
            Text to embed.

        Returns
        -------
        NDArray[np.float32]
            Vector of length :attr:`dimension`.

        Raises
        ------
        EmbeddingTimeoutError
            If the model does not answer within :attr:`timeout_seconds`.
        EmbeddingError
            If the model raises.
        EmbeddingDimensionError
            If the model returns a vector of the wrong size.
        """
        future = self._executor.submit(self._function.embed, text)
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(
                "Embedding call timed out",
                extra={"operation": "embed", "timeout_seconds": self.timeout_seconds},
            )
            msg = f"Embedding call exceeded {self.timeout_seconds:.1f}s"
            raise EmbeddingTimeoutError(
                msg, timeout_seconds=self.timeout_seconds, cause=exc
            ) from exc
        except Exception as exc:
            msg = f"Embedding model failed: {exc}"
            raise EmbeddingError(msg, cause=exc) from exc
        return as_vector(raw, dimension=self.dimension)

    def close(self) -> None:
        """Stop accepting calls; running calls finish in the background."""
        self._executor.shutdown(wait=False, cancel_futures=True)
