"""
Unit Tests — Content Extractor
══════════════════════════════
Tests for:
  • normalize_text       — line endings, whitespace runs, blank-line collapse
  • fingerprinting       — same text → same fingerprint, different text → different
  • ContentExtractor     — real pypdf extraction from hand-built PDFs,
                           page/word/byte counts, ExtractError cases
"""

from __future__ import annotations

import hashlib

import pytest

from book_pipeline.core.errors import ExtractError
from book_pipeline.processing.extractor import (
    ContentExtractor,
    build_result,
    compute_fingerprint,
    count_words,
    normalize_text,
)


@pytest.mark.unit
class TestNormalizeText:

    def test_crlf_and_cr_become_lf(self):
        assert normalize_text("a\r\nb\rc") == "a\nb\nc"

    def test_whitespace_runs_collapse(self):
        assert normalize_text("the   quick\t\tbrown fox") == "the quick brown fox"

    def test_trailing_spaces_removed(self):
        assert normalize_text("line one   \nline two\t\n") == "line one\nline two"

    def test_excess_blank_lines_collapse_to_one(self):
        assert normalize_text("para one\n\n\n\n\npara two") == "para one\n\npara two"

    def test_outer_whitespace_stripped(self):
        assert normalize_text("\n\n  text  \n\n") == "text"


@pytest.mark.unit
class TestFingerprint:

    def test_fingerprint_is_sha256_of_text(self):
        assert compute_fingerprint("hello") == hashlib.sha256(b"hello").hexdigest()

    def test_same_text_same_fingerprint(self):
        assert build_result("A book.", 1).fingerprint == build_result("A book.", 1).fingerprint

    def test_different_text_different_fingerprint(self):
        assert build_result("A book.", 1).fingerprint != build_result("A book!", 1).fingerprint

    def test_build_result_counts(self):
        result = build_result("Héllo wide world", page_count=4)

        assert result.page_count == 4
        assert result.word_count == 3
        assert result.byte_size == len("Héllo wide world".encode("utf-8"))
        assert count_words("  spaced   out  ") == 2


@pytest.mark.unit
class TestContentExtractor:

    async def test_extracts_text_from_pdf(self, sample_pdf_bytes):
        result = await ContentExtractor().extract(sample_pdf_bytes)

        assert result.page_count == 2
        assert "Lighthouse Keeper" in result.text
        assert "storm reached the island" in result.text
        assert result.word_count == len(result.text.split())
        assert result.byte_size == len(result.text.encode("utf-8"))

    async def test_extraction_is_idempotent(self, sample_pdf_bytes):
        extractor = ContentExtractor()
        first = await extractor.extract(sample_pdf_bytes)
        second = await extractor.extract(sample_pdf_bytes)

        assert first.fingerprint == second.fingerprint
        assert first.text == second.text

    async def test_pages_without_text_still_counted(self, make_pdf):
        result = await ContentExtractor().extract(make_pdf(["Only page with words", ""]))

        assert result.page_count == 2
        assert result.text == "Only page with words"

    async def test_non_pdf_bytes_rejected(self):
        with pytest.raises(ExtractError, match="not a PDF"):
            await ContentExtractor().extract(b"<html><body>Sign in to continue</body></html>")

    async def test_corrupt_pdf_rejected(self):
        with pytest.raises(ExtractError):
            await ContentExtractor().extract(b"%PDF-1.4\n this is not really a pdf")

    async def test_pdf_without_text_rejected(self, make_pdf):
        with pytest.raises(ExtractError, match="no extractable text"):
            await ContentExtractor().extract(make_pdf(["", ""]))
