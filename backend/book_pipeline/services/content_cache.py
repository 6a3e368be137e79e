"""
Content Cache — persisted extraction results keyed by book.

One row per book in extracted_contents. A write replaces every field and
bumps content_version in a single UPDATE, so readers never observe a half
written record; when no row exists yet the write inserts version 1.
Concurrent writers resolve last-writer-wins.

The caller owns the transaction (ContentCache only executes statements on the
session it was given), which lets the coordinator commit the cache write and
the job's extraction metrics together.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from book_pipeline.models.books import ExtractedContent, utcnow
from book_pipeline.processing.extractor import ExtractionResult

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_WINDOW = timedelta(days=7)


# ---------------------------------------------------------------------------
# Staleness / fingerprint helpers
# ---------------------------------------------------------------------------

def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stale(
    record: ExtractedContent,
    now:    datetime | None = None,
    window: timedelta = DEFAULT_STALENESS_WINDOW,
) -> bool:
    """True when the record is older than `window` (strictly greater)."""
    now = _as_utc(now or utcnow())
    return now - _as_utc(record.extracted_at) > window


def fallback_fingerprint(text: str) -> str:
    """Hash used when a content writer does not supply one: base64(text)[:32]."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")[:32]


# ---------------------------------------------------------------------------
# ContentCache
# ---------------------------------------------------------------------------

class ContentCache:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, book_id: UUID) -> ExtractedContent | None:
        return await self._session.get(ExtractedContent, book_id, populate_existing=True)

    async def put(
        self,
        book_id:      UUID,
        text:         str,
        fingerprint:  str,
        page_count:   int,
        word_count:   int,
        byte_size:    int,
        extracted_at: datetime | None = None,
    ) -> ExtractedContent:
        extracted_at = extracted_at or utcnow()
        values = {
            "text":         text,
            "content_hash": fingerprint,
            "page_count":   page_count,
            "word_count":   word_count,
            "byte_size":    byte_size,
            "extracted_at": extracted_at,
        }

        result = await self._session.execute(
            update(ExtractedContent)
            .where(ExtractedContent.book_id == book_id)
            .values(content_version=ExtractedContent.content_version + 1, **values)
        )
        if result.rowcount == 0:
            self._session.add(ExtractedContent(book_id=book_id, content_version=1, **values))
            await self._session.flush()

        record = await self.get(book_id)
        logger.info(
            "Content cached | book=%s version=%d words=%d hash=%s",
            book_id, record.content_version, word_count, fingerprint[:12],
        )
        return record

    async def put_result(
        self,
        book_id:      UUID,
        result:       ExtractionResult,
        extracted_at: datetime | None = None,
    ) -> ExtractedContent:
        return await self.put(
            book_id,
            text=result.text,
            fingerprint=result.fingerprint,
            page_count=result.page_count,
            word_count=result.word_count,
            byte_size=result.byte_size,
            extracted_at=extracted_at,
        )
