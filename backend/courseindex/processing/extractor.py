"""
Content Extraction  —  Strategy table keyed by file extension
══════════════════════════════════════════════════════════════

Design: Strategy + lookup table
───────────────────────────────
Every supported format maps to one BaseFormatStrategy:

  pdf         → PdfStrategy   (pypdf, page by page, stops at the output cap)
  docx / doc  → DocxStrategy  (python-docx, paragraphs + table cells)
  pptx / ppt  → PptxStrategy  (python-pptx, text frames + table cells)
  txt         → TextStrategy  (UTF-8, Latin-1 fallback)

Legacy binary .doc / .ppt are routed to the OOXML decoders; anything that is
not really OOXML fails to open and degrades to empty text like every other
undecodable file.

Resource governance
───────────────────
  1. Size ceiling per format, checked before any decoding
     (PDF is the most expensive format, so it gets the smallest ceiling).
  2. Output normalised (whitespace runs collapsed, control characters
     stripped, trimmed) and capped at extract_max_chars.
  3. Wall-clock budget is NOT enforced here — the worker wraps the call in
     run_with_budget(), which runs it on a single-thread executor so a
     process never holds more than one decoded file in memory.

ContentExtractor.extract() never raises. Empty text is a valid outcome.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from courseindex.core.config import settings

logger = logging.getLogger(__name__)

# Collapse every whitespace run (including newlines) to a single space
_WHITESPACE_RE = re.compile(r"\s+")
# C0 control characters except \t \n \r (already folded by _WHITESPACE_RE), plus DEL
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def normalize(text: str, max_chars: int) -> tuple[str, bool]:
    """Return (normalised text, truncated flag)."""
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if len(text) > max_chars:
        return text[:max_chars].rstrip(), True
    return text, False


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Extraction output handed to the worker.

    text           : normalised, capped plain text ("" on any failure)
    strategy_used  : "pdf" | "docx" | "pptx" | "text" | "none"
    elapsed_ms     : wall-clock time spent decoding
    truncated      : True if the output cap cut the text
    skipped_reason : why nothing was extracted, None on success
    """
    text:           str
    strategy_used:  str
    elapsed_ms:     float = 0.0
    truncated:      bool = False
    skipped_reason: str | None = None

    @property
    def total_chars(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseFormatStrategy(ABC):
    """
    One decoder per format family.

    Implementations receive raw bytes (never a path, the worker already
    pulled the blob) and may raise freely — ContentExtractor owns the
    never-raise boundary.
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Name used in log lines."""

    @abstractmethod
    def decode(self, data: bytes, max_chars: int) -> str:
        """Blocking decode. max_chars lets decoders stop early."""


class PdfStrategy(BaseFormatStrategy):

    @property
    def strategy_name(self) -> str:
        return "pdf"

    def decode(self, data: bytes, max_chars: int) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        parts: list[str] = []
        collected = 0
        for page in reader.pages:
            page_text = page.extract_text() or ""
            if not page_text:
                continue
            parts.append(page_text)
            collected += len(page_text)
            # Raw length is an upper bound on the normalised length
            if collected >= max_chars:
                break
        return "\n".join(parts)


class DocxStrategy(BaseFormatStrategy):

    @property
    def strategy_name(self) -> str:
        return "docx"

    def decode(self, data: bytes, max_chars: int) -> str:
        from docx import Document as DocxDocument

        document = DocxDocument(io.BytesIO(data))
        parts = [p.text for p in document.paragraphs if p.text]
        for table in document.tables:
            for row in table.rows:
                for cell in row.cells:
                    if cell.text:
                        parts.append(cell.text)
        return "\n".join(parts)


class PptxStrategy(BaseFormatStrategy):

    @property
    def strategy_name(self) -> str:
        return "pptx"

    def decode(self, data: bytes, max_chars: int) -> str:
        from pptx import Presentation

        presentation = Presentation(io.BytesIO(data))
        parts: list[str] = []
        for slide in presentation.slides:
            for shape in slide.shapes:
                if shape.has_text_frame:
                    text = shape.text_frame.text
                    if text:
                        parts.append(text)
                if getattr(shape, "has_table", False) and shape.has_table:
                    for row in shape.table.rows:
                        for cell in row.cells:
                            if cell.text:
                                parts.append(cell.text)
        return "\n".join(parts)


class TextStrategy(BaseFormatStrategy):

    @property
    def strategy_name(self) -> str:
        return "text"

    def decode(self, data: bytes, max_chars: int) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1")


_PDF  = PdfStrategy()
_DOCX = DocxStrategy()
_PPTX = PptxStrategy()
_TEXT = TextStrategy()

STRATEGIES: dict[str, BaseFormatStrategy] = {
    "pdf":  _PDF,
    "doc":  _DOCX,
    "docx": _DOCX,
    "ppt":  _PPTX,
    "pptx": _PPTX,
    "txt":  _TEXT,
}


def _clean_extension(ext: str | None) -> str:
    return (ext or "").strip().lstrip(".").lower()


def is_supported(ext: str | None) -> bool:
    """Pure predicate used by upload intake before anything is persisted."""
    return _clean_extension(ext) in STRATEGIES


def supported_extensions() -> list[str]:
    return sorted(STRATEGIES)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ContentExtractor:
    """
    Stateless facade over the strategy table.

    Usage:
        extractor = ContentExtractor()
        text = extractor.extract(raw_bytes, "pdf")
    """

    def __init__(
        self,
        pdf_max_bytes:   int | None = None,
        other_max_bytes: int | None = None,
        max_chars:       int | None = None,
    ) -> None:
        self.pdf_max_bytes   = pdf_max_bytes or settings.extract_pdf_max_bytes
        self.other_max_bytes = other_max_bytes or settings.extract_other_max_bytes
        self.max_chars       = max_chars or settings.extract_max_chars

    def size_ceiling(self, ext: str) -> int:
        return self.pdf_max_bytes if _clean_extension(ext) == "pdf" else self.other_max_bytes

    def extract(self, data: bytes, ext: str) -> str:
        return self.extract_detailed(data, ext).text

    def extract_detailed(self, data: bytes, ext: str) -> ExtractionResult:
        ext = _clean_extension(ext)
        strategy = STRATEGIES.get(ext)
        if strategy is None:
            logger.warning("Extraction skipped | ext=%s reason=unsupported", ext)
            return ExtractionResult(text="", strategy_used="none", skipped_reason="unsupported")

        if not data:
            return ExtractionResult(text="", strategy_used=strategy.strategy_name, skipped_reason="empty")

        ceiling = self.size_ceiling(ext)
        if len(data) > ceiling:
            logger.warning(
                "Extraction skipped | ext=%s size=%d ceiling=%d reason=too_large",
                ext, len(data), ceiling,
            )
            return ExtractionResult(
                text="", strategy_used=strategy.strategy_name, skipped_reason="too_large",
            )

        t0 = time.monotonic()
        try:
            raw = strategy.decode(data, self.max_chars)
            text, truncated = normalize(raw, self.max_chars)
        except Exception as exc:
            # Corrupt / truncated / encrypted input: degrade to empty text
            logger.warning(
                "Extraction failed | ext=%s strategy=%s error=%s",
                ext, strategy.strategy_name, exc,
            )
            return ExtractionResult(
                text="",
                strategy_used=strategy.strategy_name,
                elapsed_ms=(time.monotonic() - t0) * 1000,
                skipped_reason="decode_error",
            )

        result = ExtractionResult(
            text=text,
            strategy_used=strategy.strategy_name,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            truncated=truncated,
        )
        logger.info(
            "Extraction | strategy=%s chars=%d truncated=%s elapsed_ms=%.0f",
            result.strategy_used, result.total_chars, result.truncated, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Wall-clock budget (enforced by the caller, not the extractor)
# ---------------------------------------------------------------------------

# One decode at a time per process
_EXTRACTION_EXECUTOR = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extract")


async def run_with_budget(
    extractor: ContentExtractor,
    data:      bytes,
    ext:       str,
    timeout:   float | None = None,
) -> ExtractionResult:
    """
    Run extract_detailed() off the event loop under a wall-clock budget.

    A timeout is treated exactly like an extraction failure: empty text.
    The decode thread cannot be killed; it finishes in the background and its
    result is discarded. The budget starts when this decode starts, not when
    it is queued, so time spent waiting behind an abandoned decode is never
    charged to the next file.
    """
    budget = timeout if timeout is not None else settings.extract_timeout_seconds
    loop = asyncio.get_running_loop()
    started = asyncio.Event()

    def decode() -> ExtractionResult:
        loop.call_soon_threadsafe(started.set)
        return extractor.extract_detailed(data, ext)

    pending = loop.run_in_executor(_EXTRACTION_EXECUTOR, decode)
    if not started.is_set():
        queued_at = time.monotonic()
        await started.wait()
        waited = time.monotonic() - queued_at
        if waited > budget:
            logger.info("Extraction queued | ext=%s waited_s=%.1f", ext, waited)

    t0 = time.monotonic()
    try:
        return await asyncio.wait_for(pending, timeout=budget)
    except asyncio.TimeoutError:
        logger.warning("Extraction timed out | ext=%s budget_s=%.1f", ext, budget)
        strategy = STRATEGIES.get(_clean_extension(ext))
        return ExtractionResult(
            text="",
            strategy_used=strategy.strategy_name if strategy else "none",
            elapsed_ms=(time.monotonic() - t0) * 1000,
            skipped_reason="timeout",
        )
