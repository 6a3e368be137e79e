"""
Wiring of pipeline services from Settings.

Both the API process and the Celery workers build their coordinator and
reader here so the two paths share one configuration. Without an LLM API
key the enrichment generators are left out and their stages are SKIPPED.
"""

from __future__ import annotations

import logging

from book_pipeline.core.config import settings
from book_pipeline.db.session import SessionFactory
from book_pipeline.enrichment import EmbeddingGenerator, QuestionGenerator, SummaryGenerator
from book_pipeline.llm import TextGenerator, generation_enabled, get_embedding_model, get_llm
from book_pipeline.pipeline.retry import RetryPolicy
from book_pipeline.processing.extractor import ContentExtractor
from book_pipeline.processing.fetcher import ContentFetcher
from book_pipeline.services.coordinator import JobCoordinator, StageTimeouts
from book_pipeline.services.dispatch import BackgroundDispatcher
from book_pipeline.services.reader import ContentReader

logger = logging.getLogger(__name__)


def build_fetcher() -> ContentFetcher:
    return ContentFetcher(timeout=settings.fetch_timeout_seconds)


def build_coordinator(session_factory: SessionFactory) -> JobCoordinator:
    summary = questions = embeddings = None
    if generation_enabled():
        summary = SummaryGenerator(
            TextGenerator(get_llm(temperature=0.5, max_tokens=1000)),
            target_words=settings.summary_target_words,
            context_chars=settings.summary_context_chars,
        )
        questions = QuestionGenerator(
            TextGenerator(get_llm(temperature=0.7, max_tokens=4000)),
            count=settings.question_count,
            context_chars=settings.question_context_chars,
        )
        embeddings = EmbeddingGenerator(get_embedding_model(), settings.embedding_model)
    else:
        logger.warning("No LLM API key configured; enrichment stages will be skipped")

    return JobCoordinator(
        session_factory=session_factory,
        fetcher=build_fetcher(),
        extractor=ContentExtractor(),
        summary_generator=summary,
        question_generator=questions,
        embedding_generator=embeddings,
        retry_policy=RetryPolicy.from_settings(),
        timeouts=StageTimeouts.from_settings(),
        retry_delay_seconds=settings.job_retry_delay_seconds,
        default_max_retries=settings.job_max_retries,
    )


def build_reader(session_factory: SessionFactory, dispatcher: BackgroundDispatcher) -> ContentReader:
    return ContentReader(
        session_factory=session_factory,
        fetcher=build_fetcher(),
        extractor=ContentExtractor(),
        dispatcher=dispatcher,
        staleness_window=settings.staleness_window,
        excerpt_chars=settings.excerpt_max_chars,
        inline_timeout=settings.extraction_timeout_seconds,
    )
