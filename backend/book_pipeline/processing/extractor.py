"""
Content Extractor
═════════════════

Turns downloaded PDF bytes into normalized plain text plus the metrics the
pipeline records.

  bytes ──▶ %PDF header check ──▶ pypdf page texts ──▶ normalize ──▶ ExtractionResult

Normalization (normalize_text):
  • CRLF / CR → LF
  • runs of spaces and tabs → one space
  • trailing whitespace stripped from every line
  • three or more newlines → one blank line
  • outer whitespace stripped

The fingerprint is the SHA-256 of the normalized text, so extracting the
same document twice yields the same fingerprint even when the source bytes
differ (re-saved PDF, different metadata).

pypdf is CPU-bound and synchronous; extraction runs in a worker thread so the
event loop keeps serving other jobs.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import re
import time
from dataclasses import dataclass

from pypdf import PdfReader

from book_pipeline.core.errors import ExtractError

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"
_MAGIC_SEARCH_WINDOW = 1024   # some producers emit junk before the header

_HORIZONTAL_WS = re.compile(r"[ \t\f\v\u00a0]+")
_TRAILING_WS = re.compile(r"[ \t]+\n")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionResult:
    """
    text        : normalized full text, pages separated by blank lines
    page_count  : pages in the document (including pages without text)
    word_count  : whitespace-delimited tokens in text
    byte_size   : UTF-8 size of text
    fingerprint : sha256 hex digest of text
    """
    text:        str
    page_count:  int
    word_count:  int
    byte_size:   int
    fingerprint: str


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def normalize_text(raw: str) -> str:
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _TRAILING_WS.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def compute_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def count_words(text: str) -> int:
    return len(text.split())


def build_result(text: str, page_count: int) -> ExtractionResult:
    return ExtractionResult(
        text=text,
        page_count=page_count,
        word_count=count_words(text),
        byte_size=len(text.encode("utf-8")),
        fingerprint=compute_fingerprint(text),
    )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class ContentExtractor:
    """Stateless PDF text extractor. Safe to share between concurrent jobs."""

    async def extract(self, data: bytes) -> ExtractionResult:
        return await asyncio.to_thread(self.extract_sync, data)

    def extract_sync(self, data: bytes) -> ExtractionResult:
        if _PDF_MAGIC not in data[:_MAGIC_SEARCH_WINDOW]:
            raise ExtractError("Downloaded content is not a PDF document")

        t0 = time.perf_counter()
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:
            raise ExtractError(f"PDF could not be parsed: {exc}") from exc

        text = normalize_text("\n\n".join(pages))
        if not text:
            raise ExtractError(f"PDF has no extractable text ({len(pages)} pages)")

        result = build_result(text, page_count=len(pages))
        logger.info(
            "Extracted | pages=%d words=%d bytes=%d elapsed_ms=%.1f",
            result.page_count, result.word_count, result.byte_size,
            (time.perf_counter() - t0) * 1000,
        )
        return result
