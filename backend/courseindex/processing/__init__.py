"""
Document Processing Package
════════════════════════════

Text extraction for uploaded course files, run by the background worker:

  raw bytes → format strategy → normalised, capped plain text

Modules
───────
  extractor.py  Strategy table keyed by extension (pdf, doc/docx, ppt/pptx, txt),
                size ceilings, normalisation, and the wall-clock budget helper
"""

from courseindex.processing.extractor import (
    ContentExtractor,
    ExtractionResult,
    is_supported,
    run_with_budget,
    supported_extensions,
)

__all__ = [
    "ContentExtractor",
    "ExtractionResult",
    "is_supported",
    "run_with_budget",
    "supported_extensions",
]
