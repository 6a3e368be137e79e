"""
Enrichment Package
══════════════════

AI artifacts derived from a book's extracted text:

  summary.py     SummaryGenerator    → ~200-word overview
  questions.py   QuestionGenerator   → 20 validated Q&A pairs
  embeddings.py  EmbeddingGenerator  → chunk vectors
  prompts.py     prompt templates (wording is free to change)

Generators are pure with respect to persistence: they return results and the
job coordinator decides where they are stored.
"""

from book_pipeline.enrichment.base import BookMetadata
from book_pipeline.enrichment.embeddings import EmbeddedChunk, EmbeddingGenerator, EmbeddingSetResult
from book_pipeline.enrichment.questions import (
    QuestionAnswer,
    QuestionGenerator,
    QuestionSetResult,
    parse_question_pairs,
)
from book_pipeline.enrichment.summary import SummaryGenerator, SummaryResult

__all__ = [
    "BookMetadata",
    "EmbeddedChunk",
    "EmbeddingGenerator",
    "EmbeddingSetResult",
    "QuestionAnswer",
    "QuestionGenerator",
    "QuestionSetResult",
    "SummaryGenerator",
    "SummaryResult",
    "parse_question_pairs",
]
