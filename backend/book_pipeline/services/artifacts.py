"""
Persistence for AI artifacts attached to a book.

All writers execute on the caller's session and never commit; the caller's
transaction makes each replacement all-or-nothing:

  replace_ai_questions  delete every is_ai_generated row, insert the new set
                        ordered 1..N. Curated rows (is_ai_generated=False)
                        are never touched.
  replace_embeddings    delete every embedding of the book, insert the new set.
  save_overview         overwrite ai_overview, status → completed.
"""

from __future__ import annotations

import logging
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from book_pipeline.enrichment.embeddings import EmbeddedChunk
from book_pipeline.enrichment.questions import QuestionAnswer
from book_pipeline.models.books import Book, BookEmbedding, BookQuestion, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

async def replace_ai_questions(
    session: AsyncSession,
    book_id: UUID,
    pairs:   Sequence[QuestionAnswer],
) -> int:
    removed = await session.execute(
        delete(BookQuestion).where(
            BookQuestion.book_id == book_id,
            BookQuestion.is_ai_generated.is_(True),
        )
    )
    session.add_all(
        BookQuestion(
            book_id=book_id,
            question=pair.question,
            answer=pair.answer,
            order=index,
            is_ai_generated=True,
        )
        for index, pair in enumerate(pairs, start=1)
    )
    await session.execute(
        update(Book)
        .where(Book.id == book_id)
        .values(questions_status="completed", questions_generated_at=utcnow(), updated_at=utcnow())
    )
    await session.flush()

    logger.info(
        "AI questions replaced | book=%s removed=%d inserted=%d",
        book_id, removed.rowcount, len(pairs),
    )
    return len(pairs)


async def list_questions(session: AsyncSession, book_id: UUID) -> list[BookQuestion]:
    result = await session.execute(
        select(BookQuestion)
        .where(BookQuestion.book_id == book_id)
        .order_by(BookQuestion.is_ai_generated, BookQuestion.order)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

async def replace_embeddings(
    session: AsyncSession,
    book_id: UUID,
    chunks:  Sequence[EmbeddedChunk],
    model:   str,
) -> int:
    await session.execute(delete(BookEmbedding).where(BookEmbedding.book_id == book_id))
    session.add_all(
        BookEmbedding(
            book_id=book_id,
            chunk_index=chunk.index,
            chunk_text=chunk.text,
            vector=chunk.vector,
            model=model,
        )
        for chunk in chunks
    )
    await session.flush()
    logger.info("Embeddings replaced | book=%s count=%d model=%s", book_id, len(chunks), model)
    return len(chunks)


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------

async def save_overview(session: AsyncSession, book_id: UUID, overview: str) -> None:
    await session.execute(
        update(Book)
        .where(Book.id == book_id)
        .values(ai_overview=overview, ai_overview_status="completed", updated_at=utcnow())
    )


async def mark_artifact_failed(session: AsyncSession, book_id: UUID, column: str) -> None:
    """Set Book.<column> (ai_overview_status | questions_status) to failed."""
    await session.execute(
        update(Book).where(Book.id == book_id).values({column: "failed", "updated_at": utcnow()})
    )
