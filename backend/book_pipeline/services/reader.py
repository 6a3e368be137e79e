"""
Consumer Read Path — book text for a chat turn.

Resolution order for get_content_for_question():

  1. content supplied by the caller     → excerpt of it, no I/O
  2. cached extraction exists           → excerpt of cached text
        stale (older than the window)   → also schedule one background refresh
  3. cache miss                         → fetch + extract synchronously,
                                          excerpt of the fresh text,
                                          schedule a background refresh so the
                                          cache is populated for next time
  4. fetch / extract failed or too slow → CONTENT_UNAVAILABLE placeholder

Background refreshes are fire-and-forget: the chat response never waits for
them and their failures never reach the caller. A failing cache lookup is
treated as a miss.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from book_pipeline.core.errors import ExtractError, FetchError
from book_pipeline.db.session import SessionFactory
from book_pipeline.models.books import ExtractedContent, utcnow
from book_pipeline.processing.extractor import ContentExtractor, ExtractionResult
from book_pipeline.processing.fetcher import ContentFetcher
from book_pipeline.services.content_cache import DEFAULT_STALENESS_WINDOW, ContentCache, is_stale
from book_pipeline.services.dispatch import BackgroundDispatcher
from book_pipeline.services.excerpt import DEFAULT_EXCERPT_CHARS, select_relevant_excerpt

logger = logging.getLogger(__name__)

CONTENT_UNAVAILABLE = (
    "[The book's text could not be loaded right now. Answer from the title, "
    "authors and general knowledge, and tell the reader the full text was unavailable.]"
)

DEFAULT_INLINE_TIMEOUT = 120.0   # seconds for fetch + extract on a cache miss


class ContentReader:
    def __init__(
        self,
        session_factory:  SessionFactory,
        fetcher:          ContentFetcher,
        extractor:        ContentExtractor,
        dispatcher:       BackgroundDispatcher,
        staleness_window: timedelta = DEFAULT_STALENESS_WINDOW,
        excerpt_chars:    int = DEFAULT_EXCERPT_CHARS,
        inline_timeout:   float | None = DEFAULT_INLINE_TIMEOUT,
        clock:            Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._fetcher = fetcher
        self._extractor = extractor
        self._dispatcher = dispatcher
        self._staleness_window = staleness_window
        self._excerpt_chars = excerpt_chars
        self._inline_timeout = inline_timeout
        self._clock = clock

    async def get_content_for_question(
        self,
        book_id:        UUID,
        source_url:     str,
        latest_message: str,
        content:        str | None = None,
    ) -> str:
        # 1. Caller already has the text
        if content:
            return self._excerpt(content, latest_message)

        # 2. Cache
        record = await self._cached(book_id)
        if record is not None:
            if is_stale(record, now=self._clock(), window=self._staleness_window):
                logger.info(
                    "Cached content stale, refreshing in background | book=%s extracted_at=%s",
                    book_id, record.extracted_at,
                )
                self._dispatcher.dispatch_refresh(book_id)
            return self._excerpt(record.text, latest_message)

        # 3. Miss: extract inline, populate cache in the background
        try:
            result = await asyncio.wait_for(self._load(source_url), timeout=self._inline_timeout)
        except asyncio.TimeoutError:
            # 4. Degrade
            logger.warning(
                "Content unavailable for chat, inline extraction timed out | book=%s timeout=%ss",
                book_id, self._inline_timeout,
            )
            return CONTENT_UNAVAILABLE
        except (FetchError, ExtractError) as exc:
            logger.warning("Content unavailable for chat | book=%s error=%s", book_id, exc)
            return CONTENT_UNAVAILABLE

        logger.info("Cache miss served inline | book=%s words=%d", book_id, result.word_count)
        self._dispatcher.dispatch_refresh(book_id)
        return self._excerpt(result.text, latest_message)

    async def _load(self, source_url: str) -> ExtractionResult:
        data = await self._fetcher.fetch(source_url)
        return await self._extractor.extract(data)

    async def _cached(self, book_id: UUID) -> ExtractedContent | None:
        try:
            async with self._session_factory() as session:
                return await ContentCache(session).get(book_id)
        except SQLAlchemyError as exc:
            logger.warning("Content cache lookup failed, treating as miss | book=%s error=%s", book_id, exc)
            return None

    def _excerpt(self, text: str, latest_message: str) -> str:
        return select_relevant_excerpt(text, latest_message, max_chars=self._excerpt_chars)
