"""Text normalisation shared by indexing and querying.

Text is NFKC-folded (full-width forms become ASCII) and case-folded, then
split into runs by script: CJK runs go through jieba's dictionary
segmentation, everything else splits on word boundaries. Punctuation never
survives into a token.

Examples
--------
>>> normalize("Graph Neural-Networks!")
['graph', 'neural', 'networks']
>>> parse_query('"graph neural" transform*').prefixes
('transform',)
"""
# [nav:section public-api]

from __future__ import annotations

import logging
import re
import threading
import unicodedata
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Final

import jieba

from archive_common.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from archive_search.models import Locale

__all__ = [
    "ParsedQuery",
    "highlight",
    "is_cjk",
    "normalize",
    "parse_query",
]

logger = get_logger(__name__)

_CJK_RANGES: Final[str] = "㐀-䶿一-鿿豈-﫿"
_SEGMENT_RE: Final = re.compile(rf"([{_CJK_RANGES}]+)|([^\W_{_CJK_RANGES}]+)")
_CJK_RE: Final = re.compile(rf"[{_CJK_RANGES}]")
_PHRASE_RE: Final = re.compile(r'"([^"]*)"')


class _CjkSegmenter:
    """Process-wide jieba tokenizer, loaded on first use."""

    _instance: ClassVar[_CjkSegmenter | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self) -> None:
        jieba.setLogLevel(logging.WARNING)
        self._tokenizer = jieba.Tokenizer()
        self._tokenizer.initialize()
        logger.debug("jieba dictionary loaded", extra={"operation": "normalize"})

    @classmethod
    def get_instance(cls) -> _CjkSegmenter:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def segment(self, run: str) -> list[str]:
        return [token for token in self._tokenizer.lcut(run, HMM=True) if token.strip()]


def is_cjk(text: str) -> bool:
    """Return True when ``text`` contains at least one CJK ideograph."""
    return _CJK_RE.search(text) is not None


# [nav:anchor normalize]
def normalize(text: str | None, locale: Locale | str | None = None) -> list[str]:
    """Tokenise ``text`` into canonical lower-case tokens.

    Parameters
    ----------
    text : str | None
        Raw text. ``None``, empty and whitespace-only input yield ``[]``.
    locale : Locale | str | None, optional
        Locale of the field the text came from. Segmentation is chosen per
        script run, so mixed-language text in either locale tokenises the
        same way.

    Returns
    -------
    list[str]
        Tokens in document order, duplicates preserved.
    """
    del locale
    if not text or not text.strip():
        return []
    folded = unicodedata.normalize("NFKC", text).casefold()
    tokens: list[str] = []
    for match in _SEGMENT_RE.finditer(folded):
        cjk_run, word = match.groups()
        if cjk_run:
            tokens.extend(_CjkSegmenter.get_instance().segment(cjk_run))
        elif word:
            tokens.append(word)
    return tokens


# [nav:anchor ParsedQuery]
@dataclass(frozen=True, slots=True)
class ParsedQuery:
    """Normalised query split into its three clause kinds.

    Attributes
    ----------
    terms : tuple[str, ...]
        OR-ed single tokens.
    phrases : tuple[tuple[str, ...], ...]
        Token sequences that must appear adjacently in one field.
    prefixes : tuple[str, ...]
        Tokens matched against any indexed token starting with them.
    """

    terms: tuple[str, ...] = ()
    phrases: tuple[tuple[str, ...], ...] = ()
    prefixes: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        """True when the query carries no clause at all (browse mode)."""
        return not (self.terms or self.phrases or self.prefixes)


# [nav:anchor parse_query]
def parse_query(text: str | None, locale: Locale | str | None = None) -> ParsedQuery:
    """Parse raw query text into terms, quoted phrases and ``word*`` prefixes.

    Unbalanced quotes are read as plain text. A quoted phrase that normalises
    to a single token becomes an ordinary term.

    Parameters
    ----------
    text : str | None
        Raw query string.
    locale : Locale | str | None, optional
        Caller locale, forwarded to :func:`normalize`.

    Returns
    -------
    ParsedQuery
        Deduplicated clauses in first-seen order.
    """
    if not text or not text.strip():
        return ParsedQuery()

    terms: list[str] = []
    phrases: list[tuple[str, ...]] = []
    prefixes: list[str] = []

    remainder = text
    if text.count('"') >= 2:  # noqa: PLR2004
        for phrase_text in _PHRASE_RE.findall(text):
            tokens = normalize(phrase_text, locale)
            if len(tokens) > 1:
                phrases.append(tuple(tokens))
            else:
                terms.extend(tokens)
        remainder = _PHRASE_RE.sub(" ", text)

    for chunk in remainder.split():
        if chunk.endswith("*"):
            tokens = normalize(chunk.rstrip("*"), locale)
            if tokens:
                terms.extend(tokens[:-1])
                prefixes.append(tokens[-1])
            continue
        terms.extend(normalize(chunk, locale))

    return ParsedQuery(
        terms=tuple(dict.fromkeys(terms)),
        phrases=tuple(dict.fromkeys(phrases)),
        prefixes=tuple(dict.fromkeys(prefixes)),
    )


def _token_pattern(token: str) -> str:
    if is_cjk(token):
        return re.escape(token)
    # word tokens must not sit inside a longer word
    return rf"(?<![^\W_]){re.escape(token)}(?![^\W_])"


# [nav:anchor highlight]
def highlight(
    text: str | None,
    tokens: Iterable[str],
    *,
    radius: int = 48,
    mark: tuple[str, str] = ("<mark>", "</mark>"),
    ellipsis: str = "...",
) -> str | None:
    """Cut a window of ``text`` around the first token hit and mark every hit.

    Matching runs on the NFKC form of ``text`` and ignores case, so a token
    produced by :func:`normalize` finds its source words. The text is not
    HTML-escaped.

    Parameters
    ----------
    text : str | None
        Source field text.
    tokens : Iterable[str]
        Normalised tokens to mark.
    radius : int, optional
        Characters kept on each side of the first hit. Defaults to 48.
    mark : tuple[str, str], optional
        Opening and closing markers. Defaults to ``<mark>``/``</mark>``.
    ellipsis : str, optional
        Appended where the window cuts the text. Defaults to ``"..."``.

    Returns
    -------
    str | None
        The marked window, or None when no token occurs in ``text``.

    Examples
    --------
    >>> highlight("Message passing on Graph data", ["graph"], radius=8)
    '...sing on <mark>Graph</mark> data'
    """
    wanted = sorted({token for token in tokens if token}, key=len, reverse=True)
    if not text or not wanted:
        return None
    folded = unicodedata.normalize("NFKC", text)
    pattern = re.compile("|".join(_token_pattern(token) for token in wanted), re.IGNORECASE)
    first = pattern.search(folded)
    if first is None:
        return None
    start = max(0, first.start() - radius)
    end = min(len(folded), first.end() + radius)
    opening, closing = mark
    window = pattern.sub(lambda hit: f"{opening}{hit.group(0)}{closing}", folded[start:end])
    prefix = ellipsis if start > 0 else ""
    suffix = ellipsis if end < len(folded) else ""
    return f"{prefix}{window.strip()}{suffix}"
