"""
Book Content API Router

  GET   /api/v1/books/{book_id}/content          cached text + hash + counts   (processor | admin)
  PATCH /api/v1/books/{book_id}/content          write extracted text          (processor | admin)
  GET   /api/v1/books/{book_id}/content/status   presence, version, staleness  (any user)
  GET   /api/v1/books/{book_id}/overview         AI overview + status          (any user)
  PUT   /api/v1/books/{book_id}/overview         write overview                (processor | admin)
  POST  /api/v1/books/{book_id}/context          excerpt for a chat turn       (any user)

The external PDF processor authenticates with the static processor API key
as its Bearer credential; everyone else presents a JWT.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter

from book_pipeline.auth.dependencies import ContentWriter, CurrentUser, Reader, Sessions
from book_pipeline.core.config import settings
from book_pipeline.core.errors import BookNotFound, ContentNotFound
from book_pipeline.models.books import Book
from book_pipeline.processing.extractor import count_words
from book_pipeline.schemas.content import (
    ContentResponse,
    ContentStatusResponse,
    ContentWriteRequest,
    ContextRequest,
    ContextResponse,
    ErrorResponse,
    OverviewResponse,
    OverviewWriteRequest,
)
from book_pipeline.services import artifacts
from book_pipeline.services.content_cache import ContentCache, fallback_fingerprint, is_stale

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/books", tags=["Book Content"])

_NOT_FOUND = {404: {"model": ErrorResponse}}
_AUTH_ERRORS = {401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}}


# ---------------------------------------------------------------------------
# Content Cache
# ---------------------------------------------------------------------------

@router.get(
    "/{book_id}/content",
    response_model=ContentResponse,
    summary="Read back the cached extraction",
    responses={**_AUTH_ERRORS, **_NOT_FOUND},
)
async def get_content(book_id: UUID, sessions: Sessions, writer: ContentWriter) -> ContentResponse:
    async with sessions() as session:
        record = await ContentCache(session).get(book_id)
    if record is None:
        raise ContentNotFound(book_id)
    return ContentResponse.from_record(record)


@router.patch(
    "/{book_id}/content",
    response_model=ContentResponse,
    summary="Write extracted content for a book",
    description=(
        "Used by the external PDF processor. content_hash is optional; "
        "byte_size is computed server-side. Each write increments content_version."
    ),
    responses={**_AUTH_ERRORS, **_NOT_FOUND, 422: {"model": ErrorResponse}},
)
async def write_content(
    book_id:  UUID,
    body:     ContentWriteRequest,
    sessions: Sessions,
    writer:   ContentWriter,
) -> ContentResponse:
    text = body.extracted_content
    async with sessions() as session, session.begin():
        if await session.get(Book, book_id) is None:
            raise BookNotFound(book_id)
        record = await ContentCache(session).put(
            book_id,
            text=text,
            fingerprint=body.content_hash or fallback_fingerprint(text),
            page_count=body.page_count,
            word_count=body.word_count if body.word_count is not None else count_words(text),
            byte_size=len(text.encode("utf-8")),
        )

    logger.info(
        "Content written | book=%s by=%s:%s version=%d",
        book_id, writer.kind, writer.subject, record.content_version,
    )
    return ContentResponse.from_record(record)


@router.get(
    "/{book_id}/content/status",
    response_model=ContentStatusResponse,
    summary="Content Cache presence and staleness",
    responses={**_AUTH_ERRORS, **_NOT_FOUND},
)
async def get_content_status(book_id: UUID, sessions: Sessions, user: CurrentUser) -> ContentStatusResponse:
    async with sessions() as session:
        if await session.get(Book, book_id) is None:
            raise BookNotFound(book_id)
        record = await ContentCache(session).get(book_id)

    if record is None:
        return ContentStatusResponse(book_id=book_id, has_content=False)
    return ContentStatusResponse(
        book_id=book_id,
        has_content=True,
        content_version=record.content_version,
        extracted_at=record.extracted_at,
        page_count=record.page_count,
        word_count=record.word_count,
        is_stale=is_stale(record, window=settings.staleness_window),
    )


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------

@router.get(
    "/{book_id}/overview",
    response_model=OverviewResponse,
    summary="AI overview of a book",
    responses={**_AUTH_ERRORS, **_NOT_FOUND},
)
async def get_overview(book_id: UUID, sessions: Sessions, user: CurrentUser) -> OverviewResponse:
    async with sessions() as session:
        book = await session.get(Book, book_id)
    if book is None:
        raise BookNotFound(book_id)
    return OverviewResponse(
        book_id=book.id,
        ai_overview=book.ai_overview,
        ai_overview_status=book.ai_overview_status,
    )


@router.put(
    "/{book_id}/overview",
    response_model=OverviewResponse,
    summary="Write the AI overview",
    responses={**_AUTH_ERRORS, **_NOT_FOUND},
)
async def put_overview(
    book_id:  UUID,
    body:     OverviewWriteRequest,
    sessions: Sessions,
    writer:   ContentWriter,
) -> OverviewResponse:
    async with sessions() as session, session.begin():
        if await session.get(Book, book_id) is None:
            raise BookNotFound(book_id)
        await artifacts.save_overview(session, book_id, body.ai_overview)

    logger.info("Overview written | book=%s by=%s:%s", book_id, writer.kind, writer.subject)
    return OverviewResponse(book_id=book_id, ai_overview=body.ai_overview, ai_overview_status="completed")


# ---------------------------------------------------------------------------
# Chat context
# ---------------------------------------------------------------------------

@router.post(
    "/{book_id}/context",
    response_model=ContextResponse,
    summary="Book text relevant to the latest chat message",
    description=(
        "Serves from the Content Cache when possible. A stale cache schedules a "
        "background refresh; a miss extracts inline. Never fails on download or "
        "extraction errors: a placeholder is returned instead."
    ),
    responses={**_AUTH_ERRORS, **_NOT_FOUND},
)
async def get_context(
    book_id:  UUID,
    body:     ContextRequest,
    sessions: Sessions,
    reader:   Reader,
    user:     CurrentUser,
) -> ContextResponse:
    async with sessions() as session:
        book = await session.get(Book, book_id)
    if book is None:
        raise BookNotFound(book_id)

    content = await reader.get_content_for_question(
        book_id,
        source_url=book.download_url,
        latest_message=body.message,
        content=body.content,
    )
    return ContextResponse(book_id=book_id, content=content)
