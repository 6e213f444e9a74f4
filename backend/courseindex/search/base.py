"""
Search Index — Abstract Base

Every concrete search backend (Elasticsearch, in-memory) implements this
interface. The rest of the application only speaks this protocol through the
IndexProjector, so backends are swappable without touching services or API.

Contract (enforced by ALL implementations):
  - upsert() replaces the whole document under its id (last writer wins,
    no partial-field writes are visible).
  - delete() of a missing id returns False; it is not an error.
  - Failures are raised as SearchIndexError; the projector decides whether
    they are fatal.
  - Written documents are visible to the next read (refresh on write).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

# Fields stored as exact-match keywords. Only these may be filtered,
# aggregated or bulk-renamed.
KEYWORD_FIELDS: frozenset[str] = frozenset({"subject_name", "category", "file_extension", "user_id"})

# Free-text fields and their relevance weights (filename highest, body lowest)
WEIGHTED_FIELDS: dict[str, float] = {
    "filename":          3.0,
    "original_filename": 2.0,
    "subject_name":      2.0,
    "content":           1.0,
}

HIGHLIGHT_FRAGMENT_SIZE = 150
HIGHLIGHT_FRAGMENTS     = 3

# index.max_result_window default; deeper pages are served from the system of record
MAX_RESULT_WINDOW = 10_000


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class IndexHit:
    """One ranked search result."""
    doc_id:    str
    score:     float
    source:    dict[str, Any]
    highlight: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class IndexResults:
    """A page of hits plus the total match count."""
    total: int
    hits:  list[IndexHit] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "IndexResults":
        return cls(total=0, hits=[])


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class SearchIndexBackend(ABC):
    """Single-index search backend."""

    @abstractmethod
    async def ensure_index(self) -> None:
        """Create the index (with mappings) if it does not exist yet."""

    @abstractmethod
    async def drop_index(self) -> None:
        """Delete the whole index. Used by full rebuilds and tests."""

    @abstractmethod
    async def upsert(self, doc_id: str, document: dict[str, Any]) -> None:
        """Insert or fully replace the document stored under doc_id."""

    @abstractmethod
    async def delete(self, doc_id: str) -> bool:
        """Remove a document. Returns False if it did not exist."""

    @abstractmethod
    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Return the stored source document, or None."""

    @abstractmethod
    async def search(
        self,
        query:   str,
        filters: dict[str, str] | None = None,
        size:    int = 20,
    ) -> IndexResults:
        """
        Fuzzy free-text query over WEIGHTED_FIELDS, AND-ed with exact keyword
        filters. Ordered by score desc, then created_at desc.
        """

    @abstractmethod
    async def files_by_subject(self, subject_name: str, size: int = 1000) -> IndexResults:
        """Every document of one subject, newest first."""

    @abstractmethod
    async def aggregate_by(self, field_name: str, size: int = 1000) -> list[tuple[str, int]]:
        """Distinct values of a keyword field with document counts, by value asc."""

    @abstractmethod
    async def sum_field(self, field_name: str) -> int:
        """Sum of a numeric field across all documents."""

    @abstractmethod
    async def count(self) -> int:
        """Total documents in the index."""

    @abstractmethod
    async def rename_field_value(self, field_name: str, old_value: str, new_value: str) -> int:
        """Rewrite field_name == old_value to new_value. Returns documents updated."""

    @abstractmethod
    async def ping(self) -> bool:
        """True if the backend is reachable."""

    async def close(self) -> None:
        """Release network resources. No-op by default."""
