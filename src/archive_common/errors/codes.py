"""Error code registry and type URIs for Problem Details.

Codes and URIs are stable identifiers: transport layers and UIs key off them
to tell "try again" apart from "no matches" and from hard failures.

Examples
--------
>>> from archive_common.errors.codes import ErrorCode, get_type_uri
>>> get_type_uri(ErrorCode.EMBEDDING_TIMEOUT)
'https://archive.example.org/problems/embedding-timeout'
"""

# [nav:section public-api]

from __future__ import annotations

from enum import StrEnum
from typing import Final

__all__ = [
    "BASE_TYPE_URI",
    "ErrorCode",
    "get_type_uri",
]


# [nav:anchor BASE_TYPE_URI]
BASE_TYPE_URI: Final[str] = "https://archive.example.org/problems"


# [nav:anchor ErrorCode]
class ErrorCode(StrEnum):
    """Stable error codes for archive search exceptions.

    Codes are grouped by concern:
    - Query input
    - Embedding & indexing
    - Configuration & runtime
    - Persistence

    Examples
    --------
    >>> ErrorCode.SEARCH_QUERY_INVALID == "search-query-invalid"
    True
    """

    # Query input
    SEARCH_QUERY_INVALID = "search-query-invalid"

    # Embedding & indexing
    EMBEDDING_ERROR = "embedding-error"
    EMBEDDING_TIMEOUT = "embedding-timeout"
    EMBEDDING_DIMENSION_MISMATCH = "embedding-dimension-mismatch"
    EMBEDDING_MODEL_MISMATCH = "embedding-model-mismatch"
    INDEX_CONSISTENCY_ERROR = "index-consistency-error"
    RETRY_EXHAUSTED = "retry-exhausted"

    # Configuration & runtime
    CONFIGURATION_ERROR = "configuration-error"
    RUNTIME_ERROR = "runtime-error"

    # Persistence
    SERIALIZATION_ERROR = "serialization-error"
    DESERIALIZATION_ERROR = "deserialization-error"

    def __str__(self) -> str:
        """Return the code value as a string.

        Returns
        -------
        str
            The error code value (e.g., "embedding-timeout").
        """
        return self.value


# [nav:anchor get_type_uri]
def get_type_uri(code: ErrorCode) -> str:
    """Get the RFC 9457 type URI for an error code.

    Parameters
    ----------
    code : ErrorCode
        Error code enum value.

    Returns
    -------
    str
        Complete type URI, ``BASE_TYPE_URI`` joined with the code value.
    """
    return f"{BASE_TYPE_URI}/{code.value}"
