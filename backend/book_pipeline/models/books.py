"""
SQLAlchemy ORM Models — Books, Extracted Content & AI Artifacts

Tables:
    books               book metadata (read) + AI overview columns (written)
    extracted_contents  Content Cache: one row per book, latest extraction wins
    book_questions      Q&A pairs; AI rows are replaced wholesale, manual rows never touched
    book_embeddings     chunk vectors; replaced wholesale on regeneration

Column types are the portable SQLAlchemy generics (Uuid, JSON) so the same
models run on PostgreSQL (asyncpg) in production and SQLite in tests.
Timestamps are set Python-side in UTC so freshly-flushed rows never need a
refresh to read them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    false,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base, shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Book: books
# ---------------------------------------------------------------------------

class Book(Base):
    """
    A library book whose PDF lives at an external URL.

    The pipeline reads title/authors/categories/file URLs and writes the
    ai_overview* and questions_* columns. direct_file_url, when present, is
    preferred over file_url for downloading (it skips share-link pages).
    """

    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint(
            "ai_overview_status IN ('pending', 'completed', 'failed')",
            name="books_ai_overview_status_check",
        ),
        CheckConstraint(
            "questions_status IN ('pending', 'completed', 'failed')",
            name="books_questions_status_check",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    title:      Mapped[str]       = mapped_column(Text, nullable=False)
    authors:    Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    file_url:        Mapped[str]           = mapped_column(Text, nullable=False)
    direct_file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # AI overview (summary stage)
    ai_overview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_overview_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", server_default="pending",
    )

    # AI questions (questions stage)
    questions_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", server_default="pending",
    )
    questions_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
        server_default=func.now(), onupdate=utcnow,
    )

    @property
    def download_url(self) -> str:
        return self.direct_file_url or self.file_url

    def __repr__(self) -> str:
        return f"<Book id={self.id} title={self.title!r}>"


# ---------------------------------------------------------------------------
# ExtractedContent: extracted_contents (the Content Cache)
# ---------------------------------------------------------------------------

class ExtractedContent(Base):
    """
    Latest extraction of a book's full text.

    content_version increases by exactly one on every write; extracted_at is
    the staleness reference. Rows are overwritten in place, never versioned.
    """

    __tablename__ = "extracted_contents"

    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        primary_key=True,
    )

    text:         Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    page_count:   Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    word_count:   Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    byte_size:    Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    extracted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    content_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1",
    )

    def __repr__(self) -> str:
        return (
            f"<ExtractedContent book={self.book_id} version={self.content_version} "
            f"words={self.word_count}>"
        )


# ---------------------------------------------------------------------------
# BookQuestion: book_questions
# ---------------------------------------------------------------------------

class BookQuestion(Base):
    """One Q&A pair. is_ai_generated separates pipeline rows from curated ones."""

    __tablename__ = "book_questions"
    __table_args__ = (
        Index("idx_book_questions_book_id", "book_id", "order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False,
    )

    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer:   Mapped[str] = mapped_column(Text, nullable=False)
    order:    Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_ai_generated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false(),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# BookEmbedding: book_embeddings
# ---------------------------------------------------------------------------

class BookEmbedding(Base):
    """One embedded text chunk of a book."""

    __tablename__ = "book_embeddings"
    __table_args__ = (
        Index("idx_book_embeddings_book_id", "book_id", "chunk_index"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False,
    )

    chunk_index: Mapped[int]         = mapped_column(Integer, nullable=False)
    chunk_text:  Mapped[str]         = mapped_column(Text, nullable=False)
    vector:      Mapped[list[float]] = mapped_column(JSON, nullable=False)
    model:       Mapped[str]         = mapped_column(String(128), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(),
    )
