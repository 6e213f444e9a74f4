"""
Blob Storage — Abstract Base

The physical bytes of every upload live outside the system of record.
Records only keep the locator returned by put():

    uploads/<subject-slug>/<category-slug>/<uuid>.<ext>

The locator is built server-side from validated values; nothing from the
client filename ends up in it except the (already whitelisted) extension.
"""

from __future__ import annotations

import re
import unicodedata
from abc import ABC, abstractmethod

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    """ASCII-folded, lowercase, dash-separated. Empty input gives 'untitled'."""
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = _NON_SLUG_RE.sub("-", folded.lower()).strip("-")
    return slug or "untitled"


def build_locator(subject_name: str, category: str, stored_filename: str) -> str:
    return f"uploads/{slugify(subject_name)}/{slugify(category)}/{stored_filename}"


class BlobStore(ABC):
    """
    Byte storage for uploaded files.

    Implementations raise FileNotFoundError from get() for a missing locator
    and StorageError for every other failure.
    """

    @abstractmethod
    async def put(self, locator: str, data: bytes, content_type: str | None = None) -> None:
        """Store data under locator, replacing anything already there."""

    @abstractmethod
    async def get(self, locator: str) -> bytes:
        """Return the stored bytes."""

    @abstractmethod
    async def delete(self, locator: str) -> bool:
        """Remove the object. False if it did not exist."""
