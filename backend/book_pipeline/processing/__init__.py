"""
Content Processing Package
══════════════════════════

Turns a book's source URL into normalized plain text:

  Source URL → Download (fetcher.py) → PDF text extraction (extractor.py)

Modules
───────
  fetcher.py    Share-link resolution (Google Drive, Dropbox) and HTTP download
  extractor.py  pypdf text extraction, normalization, fingerprint and counts

Design principles
─────────────────
  • Both components are stateless; the same instances serve API and worker.
  • Neither retries on its own. The job coordinator wraps them in the retry
    controller with per-stage timeouts.
  • Failures surface as FetchError / ExtractError, never as raw library errors.
"""

from book_pipeline.processing.extractor import ContentExtractor, ExtractionResult
from book_pipeline.processing.fetcher import ContentFetcher, resolve_download_url

__all__ = [
    "ContentExtractor",
    "ContentFetcher",
    "ExtractionResult",
    "resolve_download_url",
]
