"""In-memory BM25 inverted index over archive entities.

The index is held as an immutable snapshot (entries, postings, length sums).
Writers build the next snapshot under a single lock and publish it with one
reference swap; readers grab the current reference once and never lock. A
query therefore sees every entity either wholly before or wholly after a
concurrent ``index()``.
"""
# [nav:section public-api]

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

from archive_common.logging import get_logger
from archive_search.models import INDEXED_FIELDS
from archive_search.normalizer import ParsedQuery, highlight, normalize, parse_query

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from datetime import datetime

    from archive_search.models import Entity

__all__ = [
    "FIELD_WEIGHTS",
    "IndexEntry",
    "LexicalIndex",
    "LexicalMatch",
    "recency_key",
]

logger = get_logger(__name__)

# [nav:anchor FIELD_WEIGHTS]
FIELD_WEIGHTS: Final[Mapping[str, float]] = MappingProxyType(
    {"title": 2.0, "tags": 1.5, "summary": 1.2, "body": 1.0}
)

_SNIPPET_ORDER: Final = ("body", "summary", "title")


# [nav:anchor IndexEntry]
@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Everything the index derives from one entity.

    Rebuilt as a whole whenever the entity is (re)indexed; never mutated.
    """

    entity_id: str
    entity_type: str
    status: str
    visibility: str
    tags: frozenset[str]
    created_at: datetime
    updated_at: datetime
    title_en: str
    title_zh: str
    positions: Mapping[str, Mapping[str, tuple[int, ...]]]
    """Field name -> token -> token positions within that field."""
    tf: Mapping[str, float]
    """Field-weighted term frequency per token."""
    dl: float
    """Document length (sum of weighted term frequencies)."""
    texts: Mapping[str, str] = field(default_factory=dict)
    """Field name -> source text, kept for snippets."""

    @classmethod
    def from_entity(cls, entity: Entity) -> IndexEntry:
        """Tokenise every indexed field of ``entity``."""
        positions: dict[str, dict[str, list[int]]] = {}
        tf: dict[str, float] = {}

        def _add(field_name: str, base: str, tokens: list[str], offset: int = 0) -> None:
            field_positions = positions.setdefault(field_name, {})
            weight = FIELD_WEIGHTS[base]
            for pos, token in enumerate(tokens, start=offset):
                field_positions.setdefault(token, []).append(pos)
                tf[token] = tf.get(token, 0.0) + weight

        for name, text in entity.text_fields().items():
            base, locale = next((b, loc) for n, b, loc in INDEXED_FIELDS if n == name)
            _add(name, base, normalize(text, locale))

        offset = 0
        for tag in sorted(entity.tags):
            tokens = normalize(tag)
            _add("tags", "tags", tokens, offset)
            # gap keeps phrases from spanning two tags
            offset += len(tokens) + 1

        return cls(
            entity_id=entity.id,
            entity_type=entity.type.value,
            status=entity.status.value,
            visibility=entity.visibility.value,
            tags=frozenset(entity.tags),
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            title_en=entity.title_en or "",
            title_zh=entity.title_zh or "",
            positions=MappingProxyType(
                {
                    name: MappingProxyType({tok: tuple(pos) for tok, pos in toks.items()})
                    for name, toks in positions.items()
                }
            ),
            tf=MappingProxyType(tf),
            dl=sum(tf.values()),
            texts=MappingProxyType(entity.text_fields()),
        )

    def fields_containing(self, tokens: Iterable[str]) -> list[str]:
        """Return the fields holding any of ``tokens``, in index field order."""
        wanted = set(tokens)
        return [name for name, toks in self.positions.items() if not wanted.isdisjoint(toks)]

    def phrase_fields(self, phrase: tuple[str, ...]) -> list[str]:
        """Return the fields where ``phrase`` occurs as adjacent tokens."""
        found: list[str] = []
        for name, toks in self.positions.items():
            first = toks.get(phrase[0])
            if not first:
                continue
            rest = [set(toks.get(token, ())) for token in phrase[1:]]
            if any(all(start + i + 1 in rest[i] for i in range(len(rest))) for start in first):
                found.append(name)
        return found


# [nav:anchor LexicalMatch]
@dataclass(frozen=True, slots=True)
class LexicalMatch:
    """A scored hit produced by :meth:`LexicalIndex.query`."""

    entry: IndexEntry
    score: float
    matched_fields: tuple[str, ...] = ()

    @property
    def entity_id(self) -> str:
        return self.entry.entity_id

    matched_tokens: frozenset[str] = frozenset()

    def snippet(self, radius: int = 48) -> str | None:
        """Return a marked excerpt of the most descriptive matched text field.

        Bodies are preferred over summaries and summaries over titles. Tag
        hits and browse results have no snippet.
        """
        by_base = {name: base for name, base, _locale in INDEXED_FIELDS}
        ranked = sorted(
            (name for name in self.matched_fields if name in self.entry.texts),
            key=lambda name: _SNIPPET_ORDER.index(by_base[name]),
        )
        for name in ranked:
            excerpt = highlight(self.entry.texts[name], self.matched_tokens, radius=radius)
            if excerpt is not None:
                return excerpt
        return None


def recency_key(entry: IndexEntry) -> tuple[float, str]:
    """Sort key for ``updated_at`` descending, then id ascending."""
    return (-entry.updated_at.timestamp(), entry.entity_id)


@dataclass(frozen=True, slots=True)
class _Snapshot:
    entries: Mapping[str, IndexEntry] = field(default_factory=dict)
    postings: Mapping[str, frozenset[str]] = field(default_factory=dict)
    dl_sum: float = 0.0

    @property
    def n_docs(self) -> int:
        return len(self.entries)

    @property
    def avgdl(self) -> float:
        return self.dl_sum / self.n_docs if self.entries else 0.0


# [nav:anchor LexicalIndex]
class LexicalIndex:
    r"""BM25 full-text index keyed by entity id.

    Parameters
    ----------
    k1 : float, optional
        Term frequency saturation. Defaults to 0.9.
    b : float, optional
        Document length normalisation. Defaults to 0.4.

    Notes
    -----
    Per query clause the score contribution is

    :math:`IDF(t) \cdot \frac{TF(t, D) (k1 + 1)}{TF(t, D) + k1 (1 - b + b |D| / avgdl)}`

    with :math:`IDF(t) = \log((N - df + 0.5) / (df + 0.5) + 1)` and field
    weighted term frequencies (title 2.0, tags 1.5, summary 1.2, body 1.0).
    A prefix clause contributes its best-scoring expansion; a phrase clause
    contributes the sum of its tokens when the phrase occurs in some field.
    Documents matching any clause are returned.
    """

    def __init__(self, k1: float = 0.9, b: float = 0.4) -> None:
        self.k1 = k1
        self.b = b
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return self._snapshot.n_docs

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._snapshot.entries

    # ------------------------------------------------------------------ writes

    def index(self, entity: Entity) -> IndexEntry:
        """Replace every entry derived from ``entity.id`` with fresh ones.

        Parameters
        ----------
        entity : Entity
            Current state of the entity.

        Returns
        -------
        IndexEntry
            The entry now visible to readers.
        """
        entry = IndexEntry.from_entity(entity)
        with self._write_lock:
            snap = self._snapshot
            entries = dict(snap.entries)
            postings = dict(snap.postings)
            dl_sum = snap.dl_sum
            previous = entries.get(entity.id)
            if previous is not None:
                dl_sum -= previous.dl
                _drop_postings(postings, previous)
            entries[entity.id] = entry
            dl_sum += entry.dl
            for token in entry.tf:
                postings[token] = postings.get(token, frozenset()) | {entity.id}
            self._snapshot = _Snapshot(entries, postings, dl_sum)
        logger.debug(
            "Indexed entity",
            extra={"operation": "lexical_index", "entity_id": entity.id, "tokens": len(entry.tf)},
        )
        return entry

    def remove(self, entity_id: str) -> bool:
        """Delete every entry for ``entity_id``.

        Returns
        -------
        bool
            True if the entity was indexed.
        """
        with self._write_lock:
            snap = self._snapshot
            previous = snap.entries.get(entity_id)
            if previous is None:
                return False
            entries = dict(snap.entries)
            postings = dict(snap.postings)
            del entries[entity_id]
            _drop_postings(postings, previous)
            self._snapshot = _Snapshot(entries, postings, max(0.0, snap.dl_sum - previous.dl))
        return True

    def rebuild(self, entities: Iterable[Entity]) -> int:
        """Replace the whole index with ``entities`` in one swap.

        Returns
        -------
        int
            Number of indexed entities.
        """
        built = [IndexEntry.from_entity(entity) for entity in entities]
        entries = {entry.entity_id: entry for entry in built}
        postings_sets: dict[str, set[str]] = {}
        for entry in entries.values():
            for token in entry.tf:
                postings_sets.setdefault(token, set()).add(entry.entity_id)
        postings = {token: frozenset(ids) for token, ids in postings_sets.items()}
        with self._write_lock:
            self._snapshot = _Snapshot(
                entries, postings, sum(entry.dl for entry in entries.values())
            )
        return len(entries)

    def clear(self) -> None:
        """Drop every entry."""
        with self._write_lock:
            self._snapshot = _Snapshot()

    # ------------------------------------------------------------------- reads

    def get(self, entity_id: str) -> IndexEntry | None:
        """Return the current entry for ``entity_id``, if indexed."""
        return self._snapshot.entries.get(entity_id)

    def entries(self) -> list[IndexEntry]:
        """Return every entry from one consistent snapshot."""
        return list(self._snapshot.entries.values())

    def query(
        self,
        query: ParsedQuery | str,
        where: Callable[[IndexEntry], bool] | None = None,
    ) -> list[LexicalMatch]:
        """Return every entry matching ``query`` and ``where``, best first.

        Parameters
        ----------
        query : ParsedQuery | str
            Parsed query, or raw text to parse.
        where : Callable[[IndexEntry], bool] | None, optional
            Candidate predicate applied before scoring (visibility, filters).

        Returns
        -------
        list[LexicalMatch]
            Hits ordered by score descending, ``updated_at`` descending, then
            id ascending. An empty query returns every candidate with score
            0.0, newest first.
        """
        parsed = parse_query(query) if isinstance(query, str) else query
        snap = self._snapshot

        if parsed.is_empty:
            browse = [entry for entry in snap.entries.values() if where is None or where(entry)]
            browse.sort(key=recency_key)
            return [LexicalMatch(entry=entry, score=0.0) for entry in browse]

        scorer = _Scorer(snap, self.k1, self.b)
        scores: dict[str, float] = {}
        fields: dict[str, set[str]] = {}
        hit_tokens: dict[str, set[str]] = {}

        def _credit(
            entity_id: str, score: float, matched: Iterable[str], tokens: Iterable[str]
        ) -> None:
            scores[entity_id] = scores.get(entity_id, 0.0) + score
            fields.setdefault(entity_id, set()).update(matched)
            hit_tokens.setdefault(entity_id, set()).update(tokens)

        def _candidate(entity_id: str) -> IndexEntry | None:
            entry = snap.entries.get(entity_id)
            if entry is None or (where is not None and not where(entry)):
                return None
            return entry

        for term in parsed.terms:
            for entity_id in snap.postings.get(term, ()):
                entry = _candidate(entity_id)
                if entry is not None:
                    score = scorer.term_score(term, entry)
                    _credit(entity_id, score, entry.fields_containing((term,)), (term,))

        for prefix in parsed.prefixes:
            expansions = [token for token in snap.postings if token.startswith(prefix)]
            best: dict[str, tuple[float, str]] = {}
            for token in expansions:
                for entity_id in snap.postings[token]:
                    entry = _candidate(entity_id)
                    if entry is None:
                        continue
                    score = scorer.term_score(token, entry)
                    if entity_id not in best or score > best[entity_id][0]:
                        best[entity_id] = (score, token)
            for entity_id, (score, _token) in best.items():
                entry = snap.entries[entity_id]
                present = [token for token in expansions if token in entry.tf]
                _credit(entity_id, score, entry.fields_containing(present), present)

        for phrase in parsed.phrases:
            holders = [snap.postings.get(token, frozenset()) for token in phrase]
            for entity_id in frozenset.intersection(*holders):
                entry = _candidate(entity_id)
                if entry is None:
                    continue
                matched = entry.phrase_fields(phrase)
                if matched:
                    score = sum(scorer.term_score(token, entry) for token in phrase)
                    _credit(entity_id, score, matched, phrase)

        names = [name for name, _base, _locale in INDEXED_FIELDS] + ["tags"]
        field_order = {name: i for i, name in enumerate(names)}
        hits = [
            LexicalMatch(
                entry=snap.entries[entity_id],
                score=score,
                matched_fields=tuple(sorted(fields[entity_id], key=field_order.__getitem__)),
                matched_tokens=frozenset(hit_tokens[entity_id]),
            )
            for entity_id, score in scores.items()
        ]
        hits.sort(key=lambda hit: (-hit.score, *recency_key(hit.entry)))
        return hits


class _Scorer:
    """BM25 arithmetic bound to one snapshot."""

    def __init__(self, snap: _Snapshot, k1: float, b: float) -> None:
        self._snap = snap
        self._k1 = k1
        self._b = b
        self._avgdl = snap.avgdl or 1.0
        self._idf_cache: dict[str, float] = {}

    def idf(self, term: str) -> float:
        cached = self._idf_cache.get(term)
        if cached is not None:
            return cached
        df = len(self._snap.postings.get(term, ()))
        n_docs = self._snap.n_docs
        value = 0.0 if n_docs == 0 or df == 0 else math.log((n_docs - df + 0.5) / (df + 0.5) + 1.0)
        self._idf_cache[term] = value
        return value

    def term_score(self, term: str, entry: IndexEntry) -> float:
        tf = entry.tf.get(term, 0.0)
        if tf <= 0.0:
            return 0.0
        denom = tf + self._k1 * (1.0 - self._b + self._b * (entry.dl / self._avgdl))
        return self.idf(term) * ((tf * (self._k1 + 1.0)) / denom)


def _drop_postings(postings: dict[str, frozenset[str]], entry: IndexEntry) -> None:
    for token in entry.tf:
        remaining = postings.get(token, frozenset()) - {entry.entity_id}
        if remaining:
            postings[token] = remaining
        else:
            postings.pop(token, None)
