"""
Unit Tests — Consumer Read Path
═══════════════════════════════
Tests for ContentReader.get_content_for_question:
  • caller-supplied content    → used directly, no I/O, no refresh
  • fresh cache hit            → cached text, no refresh
  • stale cache hit            → cached text immediately, exactly one refresh
  • cache miss                 → inline fetch + extract, one refresh
  • fetch / extract failure    → CONTENT_UNAVAILABLE placeholder
  • malformed URL, slow extract → CONTENT_UNAVAILABLE placeholder
And BackgroundDispatcher: publish failures are logged, never raised.
And refresh_book_content: new cache version, retries, no write on failure.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from book_pipeline.core.errors import BookNotFound, FetchError
from book_pipeline.processing.extractor import build_result
from book_pipeline.processing.fetcher import ContentFetcher
from book_pipeline.services.content_cache import ContentCache
from book_pipeline.services.dispatch import BackgroundDispatcher
from book_pipeline.services.reader import CONTENT_UNAVAILABLE, ContentReader
from book_pipeline.services.refresh import refresh_book_content

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CACHED_TEXT = "Cached copy of The Lighthouse Keeper."


@pytest.fixture
def make_reader(session_factory, fake_fetcher, fake_extractor, mock_publisher):
    def _build(now: datetime = T0, **overrides) -> ContentReader:
        kwargs = {
            "session_factory": session_factory,
            "fetcher":         fake_fetcher,
            "extractor":       fake_extractor,
            "dispatcher":      BackgroundDispatcher(mock_publisher),
            "clock":           lambda: now,
        }
        kwargs.update(overrides)
        return ContentReader(**kwargs)

    return _build


async def _cache(session_factory, book, extracted_at: datetime) -> None:
    async with session_factory() as session, session.begin():
        await ContentCache(session).put_result(book.id, build_result(CACHED_TEXT, 1), extracted_at=extracted_at)


@pytest.mark.unit
class TestContentReader:

    async def test_supplied_content_used_without_io(self, make_reader, book, fake_fetcher, mock_publisher):
        reader = make_reader()

        text = await reader.get_content_for_question(
            book.id, book.download_url, "Who is the keeper?", content="Text the client already has.",
        )

        assert text == "Text the client already has."
        assert fake_fetcher.calls == []
        mock_publisher.publish_content_refresh.assert_not_called()

    async def test_fresh_cache_hit_does_not_refresh(
        self, make_reader, session_factory, book, fake_fetcher, mock_publisher,
    ):
        await _cache(session_factory, book, extracted_at=T0)
        reader = make_reader(now=T0 + timedelta(days=1))

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")
        await reader._dispatcher.drain()

        assert text == CACHED_TEXT
        assert fake_fetcher.calls == []
        mock_publisher.publish_content_refresh.assert_not_called()

    async def test_stale_cache_hit_refreshes_once(self, make_reader, session_factory, book, mock_publisher):
        await _cache(session_factory, book, extracted_at=T0)
        reader = make_reader(now=T0 + timedelta(days=8))

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")
        await reader._dispatcher.drain()

        assert text == CACHED_TEXT
        mock_publisher.publish_content_refresh.assert_awaited_once_with(book.id)

    async def test_stale_hit_does_not_wait_for_refresh(self, make_reader, session_factory, book, mock_publisher):
        release = asyncio.Event()

        async def _slow_publish(book_id):
            await release.wait()

        mock_publisher.publish_content_refresh.side_effect = _slow_publish
        await _cache(session_factory, book, extracted_at=T0)
        reader = make_reader(now=T0 + timedelta(days=8))

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")

        assert text == CACHED_TEXT
        assert reader._dispatcher.pending == 1
        release.set()
        await reader._dispatcher.drain()
        assert reader._dispatcher.pending == 0

    async def test_cache_miss_extracts_inline_and_refreshes(
        self, make_reader, session_factory, book, fake_fetcher, book_text, mock_publisher,
    ):
        reader = make_reader()

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")
        await reader._dispatcher.drain()

        assert text == book_text
        assert fake_fetcher.calls == [book.download_url]
        mock_publisher.publish_content_refresh.assert_awaited_once_with(book.id)
        async with session_factory() as session:
            assert await ContentCache(session).get(book.id) is None

    async def test_fetch_failure_returns_placeholder(self, make_reader, book, make_fetcher, mock_publisher):
        reader = make_reader(fetcher=make_fetcher(failures=100))

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")

        assert text == CONTENT_UNAVAILABLE
        mock_publisher.publish_content_refresh.assert_not_called()

    async def test_extract_failure_returns_placeholder(self, make_reader, book, make_extractor):
        reader = make_reader(extractor=make_extractor(failures=100))

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")

        assert text == CONTENT_UNAVAILABLE

    @pytest.mark.parametrize("url", ["http://[::1", ""])
    async def test_bad_url_returns_placeholder(self, make_reader, book, url, mock_publisher):
        fetcher = ContentFetcher(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"%PDF")))
        reader = make_reader(fetcher=fetcher)

        text = await reader.get_content_for_question(book.id, url, "Who is the keeper?")

        assert text == CONTENT_UNAVAILABLE
        mock_publisher.publish_content_refresh.assert_not_called()

    async def test_slow_extraction_returns_placeholder(self, make_reader, book, mock_publisher):
        class SlowExtractor:
            async def extract(self, data: bytes):
                await asyncio.sleep(10)

        reader = make_reader(extractor=SlowExtractor(), inline_timeout=0.05)

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")

        assert text == CONTENT_UNAVAILABLE
        mock_publisher.publish_content_refresh.assert_not_called()

    async def test_long_text_is_excerpted(self, make_reader, book, make_extractor):
        long_text = "\n\n".join(f"Paragraph {i} about the sea and the cliffs." for i in range(2000))
        reader = make_reader(extractor=make_extractor(text=long_text), excerpt_chars=3000)

        text = await reader.get_content_for_question(book.id, book.download_url, "Who is the keeper?")

        assert len(text) <= 3000
        assert text.startswith("Paragraph 0")


@pytest.mark.unit
class TestBackgroundDispatcher:

    async def test_publish_failure_is_logged_not_raised(self, mock_publisher, book, caplog):
        mock_publisher.publish_content_refresh.side_effect = ConnectionError("broker down")
        dispatcher = BackgroundDispatcher(mock_publisher)

        with caplog.at_level(logging.WARNING, logger="book_pipeline.services.dispatch"):
            dispatcher.dispatch_refresh(book.id)
            await dispatcher.drain()

        assert dispatcher.pending == 0
        assert any("Background refresh failed" in r.getMessage() for r in caplog.records)

    async def test_drain_with_nothing_pending(self, mock_publisher):
        await BackgroundDispatcher(mock_publisher).drain()


@pytest.mark.unit
class TestRefreshBookContent:

    async def test_writes_new_cache_version(self, session_factory, book, fake_fetcher, fake_extractor, fast_policy):
        await _cache(session_factory, book, T0)

        record = await refresh_book_content(session_factory, fake_fetcher, fake_extractor, book.id, policy=fast_policy)

        assert record.content_version == 2
        assert record.text == fake_extractor.text
        assert fake_fetcher.calls == [book.file_url]

    async def test_prefers_direct_file_url(self, session_factory, make_book, fake_fetcher, fake_extractor, fast_policy):
        direct = await make_book(direct_file_url="https://cdn.example.org/lighthouse.pdf")

        await refresh_book_content(session_factory, fake_fetcher, fake_extractor, direct.id, policy=fast_policy)

        assert fake_fetcher.calls == ["https://cdn.example.org/lighthouse.pdf"]

    async def test_transient_fetch_failure_is_retried(
        self, session_factory, book, make_fetcher, fake_extractor, fast_policy, recorded_sleeps,
    ):
        fetcher = make_fetcher(failures=1)

        record = await refresh_book_content(session_factory, fetcher, fake_extractor, book.id, policy=fast_policy)

        assert record.content_version == 1
        assert recorded_sleeps == [2.0]

    async def test_persistent_failure_leaves_cache_untouched(
        self, session_factory, book, make_fetcher, fake_extractor, fast_policy,
    ):
        with pytest.raises(FetchError):
            await refresh_book_content(
                session_factory, make_fetcher(failures=5), fake_extractor, book.id, policy=fast_policy,
            )

        async with session_factory() as session:
            assert await ContentCache(session).get(book.id) is None

    async def test_unknown_book(self, session_factory, fake_fetcher, fake_extractor, fast_policy):
        with pytest.raises(BookNotFound):
            await refresh_book_content(session_factory, fake_fetcher, fake_extractor, uuid.uuid4(), policy=fast_policy)
