"""
In-memory Search Index

Process-local implementation of SearchIndexBackend with the same observable
semantics as the Elasticsearch mapping:

  - lowercase + ASCII folding on every text field
  - fuzziness AUTO: 0 edits for terms of 1-2 chars, 1 for 3-5, 2 beyond
  - filename / original_filename also match on word prefixes of 3..15 chars
    (the edge-ngram analyser)
  - OR across query terms, weighted fields, exact keyword filters AND-ed
  - <em> highlights on filename and content (150-char fragments, max 3)

Used for local development (SEARCH_BACKEND=memory) and the test-suite.
Not shared between processes.
"""

from __future__ import annotations

import copy
import re
import unicodedata
from typing import Any, Callable

from courseindex.search.base import (
    HIGHLIGHT_FRAGMENT_SIZE,
    HIGHLIGHT_FRAGMENTS,
    KEYWORD_FIELDS,
    WEIGHTED_FIELDS,
    IndexHit,
    IndexResults,
    SearchIndexBackend,
)

_WORD_RE = re.compile(r"\w+", re.UNICODE)
_PREFIX_FIELDS = frozenset({"filename", "original_filename"})
_MIN_GRAM, _MAX_GRAM = 3, 15


def fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def tokenize(text: str | None) -> list[str]:
    return _WORD_RE.findall(fold(text or ""))


def auto_fuzziness(term: str) -> int:
    if len(term) <= 2:
        return 0
    if len(term) <= 5:
        return 1
    return 2


def within_distance(a: str, b: str, limit: int) -> bool:
    """Levenshtein distance(a, b) <= limit, with early exit."""
    if abs(len(a) - len(b)) > limit:
        return False
    if limit == 0:
        return a == b
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        if min(current) > limit:
            return False
        previous = current
    return previous[-1] <= limit


def _term_score(term: str, token: str, prefix_field: bool) -> float:
    if term == token:
        return 1.0
    if prefix_field and _MIN_GRAM <= len(term) <= _MAX_GRAM and token.startswith(term):
        return 0.8
    if within_distance(term, token, auto_fuzziness(term)):
        return 0.5
    return 0.0


def _highlight(text: str, matches: Callable[[str], bool]) -> str:
    return _WORD_RE.sub(
        lambda m: f"<em>{m.group()}</em>" if matches(fold(m.group())) else m.group(),
        text,
    )


class InMemorySearchIndex(SearchIndexBackend):
    """Dict-backed index; documents are deep-copied in and out."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._exists = False

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    async def ensure_index(self) -> None:
        self._exists = True

    async def drop_index(self) -> None:
        self._docs.clear()
        self._exists = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, doc_id: str, document: dict[str, Any]) -> None:
        self._docs[doc_id] = copy.deepcopy(document)

    async def delete(self, doc_id: str) -> bool:
        return self._docs.pop(doc_id, None) is not None

    async def rename_field_value(self, field_name: str, old_value: str, new_value: str) -> int:
        updated = 0
        for doc in self._docs.values():
            if doc.get(field_name) == old_value:
                doc[field_name] = new_value
                updated += 1
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def _matches_filters(self, doc: dict[str, Any], filters: dict[str, str]) -> bool:
        return all(
            str(doc.get(name)) == str(value)
            for name, value in filters.items()
            if value and name in KEYWORD_FIELDS
        )

    def _score(self, terms: list[str], doc: dict[str, Any]) -> float:
        fields = {name: tokenize(doc.get(name)) for name in WEIGHTED_FIELDS}
        total = 0.0
        for term in terms:
            best = 0.0
            for name, weight in WEIGHTED_FIELDS.items():
                prefix = name in _PREFIX_FIELDS
                for token in fields[name]:
                    best = max(best, weight * _term_score(term, token, prefix))
            total += best
        return total

    def _highlights(self, terms: list[str], doc: dict[str, Any]) -> dict[str, list[str]]:
        def matcher(prefix: bool) -> Callable[[str], bool]:
            return lambda token: any(_term_score(t, token, prefix) > 0 for t in terms)

        highlight: dict[str, list[str]] = {}

        filename = doc.get("filename") or ""
        if any(matcher(True)(tok) for tok in tokenize(filename)):
            highlight["filename"] = [_highlight(filename, matcher(True))]

        content = doc.get("content") or ""
        content_match = matcher(False)
        fragments: list[str] = []
        for start in range(0, len(content), HIGHLIGHT_FRAGMENT_SIZE):
            window = content[start:start + HIGHLIGHT_FRAGMENT_SIZE]
            if any(content_match(tok) for tok in tokenize(window)):
                fragments.append(_highlight(window, content_match))
                if len(fragments) == HIGHLIGHT_FRAGMENTS:
                    break
        if fragments:
            highlight["content"] = fragments
        return highlight

    async def search(
        self,
        query:   str,
        filters: dict[str, str] | None = None,
        size:    int = 20,
    ) -> IndexResults:
        terms = tokenize(query)
        scored: list[tuple[float, str, str]] = []
        for doc_id, doc in self._docs.items():
            if not self._matches_filters(doc, filters or {}):
                continue
            score = self._score(terms, doc) if terms else 1.0
            if score > 0:
                scored.append((score, str(doc.get("created_at") or ""), doc_id))

        # score desc, then created_at desc
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        hits = [
            IndexHit(
                doc_id=doc_id,
                score=score,
                source=copy.deepcopy(self._docs[doc_id]),
                highlight=self._highlights(terms, self._docs[doc_id]) if terms else {},
            )
            for score, _, doc_id in scored[:size]
        ]
        return IndexResults(total=len(scored), hits=hits)

    async def files_by_subject(self, subject_name: str, size: int = 1000) -> IndexResults:
        matching = [
            (doc_id, doc) for doc_id, doc in self._docs.items()
            if doc.get("subject_name") == subject_name
        ]
        matching.sort(key=lambda item: str(item[1].get("created_at") or ""), reverse=True)
        return IndexResults(
            total=len(matching),
            hits=[
                IndexHit(doc_id=doc_id, score=1.0, source=copy.deepcopy(doc))
                for doc_id, doc in matching[:size]
            ],
        )

    async def aggregate_by(self, field_name: str, size: int = 1000) -> list[tuple[str, int]]:
        counts: dict[str, int] = {}
        for doc in self._docs.values():
            value = doc.get(field_name)
            if value is None:
                continue
            counts[str(value)] = counts.get(str(value), 0) + 1
        return sorted(counts.items())[:size]

    async def sum_field(self, field_name: str) -> int:
        return sum(int(doc.get(field_name) or 0) for doc in self._docs.values())

    async def count(self) -> int:
        return len(self._docs)

    async def ping(self) -> bool:
        return True
