"""
Content refresh — fetch + extract + cache write outside any processing job.

Used by the background refresh the consumer read path schedules. No job row
is created or updated; the only effect is a new Content Cache version.
"""

from __future__ import annotations

import logging
from uuid import UUID

from book_pipeline.core.errors import BookNotFound
from book_pipeline.db.session import SessionFactory
from book_pipeline.models.books import Book, ExtractedContent
from book_pipeline.pipeline.retry import RetryPolicy, with_retry
from book_pipeline.processing.extractor import ContentExtractor
from book_pipeline.processing.fetcher import ContentFetcher
from book_pipeline.services.content_cache import ContentCache

logger = logging.getLogger(__name__)


async def refresh_book_content(
    session_factory: SessionFactory,
    fetcher:         ContentFetcher,
    extractor:       ContentExtractor,
    book_id:         UUID,
    policy:          RetryPolicy | None = None,
) -> ExtractedContent:
    policy = policy or RetryPolicy()

    async with session_factory() as session:
        book = await session.get(Book, book_id)
        if book is None:
            raise BookNotFound(book_id)
        source_url = book.download_url

    data = await with_retry(lambda: fetcher.fetch(source_url), policy, label=f"refresh-download:{book_id}")
    result = await with_retry(lambda: extractor.extract(data), policy, label=f"refresh-extract:{book_id}")

    async with session_factory() as session, session.begin():
        record = await ContentCache(session).put_result(book_id, result)

    logger.info("Content refreshed | book=%s version=%d", book_id, record.content_version)
    return record
