"""
Celery Tasks — Book Processing Pipeline

Task: process_job
  Runs one ProcessingJob through the JobCoordinator
  (download → extraction → summary / questions / embedding).
  Stage failures are recorded on the job row, so the task itself only
  fails on infrastructure errors (database unreachable, job missing).

Task: refresh_content
  Fetch + extract + Content Cache write for one book, no job row.
  Scheduled by the chat read path on a stale cache or a cache miss.

Task: retry_due_jobs
  Scheduler task (Celery Beat, every 60 s):
    - FAILED jobs whose next_attempt_at has passed are re-armed and re-queued
    - PENDING jobs, and RETRYING jobs whose run never started, older than
      PENDING_REQUEUE_MINUTES are re-queued (covers broker outages at publish time)
    - PROCESSING / started RETRYING jobs with no progress for STALLED_JOB_MINUTES
      are failed first (worker died mid-run), which schedules their retry

Every task builds its own NullPool engine: each task runs its coroutine on a
fresh event loop, and pooled asyncpg connections cannot cross loops.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any

from celery import Task

from book_pipeline.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(asyncio.run, coro)
        return future.result()


# ---------------------------------------------------------------------------
# Processing job
# ---------------------------------------------------------------------------

@celery_app.task(
    name="book_pipeline.workers.tasks.process_job",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_job(self: Task, *, job_id: str) -> dict[str, Any]:
    """Run the full pipeline for one job. Retries are tracked on the job row, not by Celery."""
    return run_async(_process_job_async(uuid.UUID(job_id)))


async def _process_job_async(job_id: uuid.UUID) -> dict[str, Any]:
    from book_pipeline.core.errors import JobNotFound
    from book_pipeline.db.session import worker_session_factory
    from book_pipeline.services.factory import build_coordinator

    async with worker_session_factory() as session_factory:
        coordinator = build_coordinator(session_factory)
        try:
            job = await coordinator.run(job_id)
        except JobNotFound:
            logger.error("Job not found | job=%s", job_id)
            return {"status": "not_found", "job_id": str(job_id)}

    return {
        "status":     job.status,
        "job_id":     str(job.id),
        "book_id":    str(job.book_id),
        "download":   job.download_status,
        "extraction": job.extraction_status,
        "summary":    job.summary_status,
        "questions":  job.questions_status,
        "embedding":  job.embedding_status,
    }


# ---------------------------------------------------------------------------
# Content refresh
# ---------------------------------------------------------------------------

@celery_app.task(
    name="book_pipeline.workers.tasks.refresh_content",
    bind=True,
    acks_late=True,
    soft_time_limit=270,
    time_limit=330,
)
def refresh_content(self: Task, *, book_id: str) -> dict[str, Any]:
    return run_async(_refresh_content_async(uuid.UUID(book_id)))


async def _refresh_content_async(book_id: uuid.UUID) -> dict[str, Any]:
    from book_pipeline.core.errors import BookNotFound
    from book_pipeline.db.session import worker_session_factory
    from book_pipeline.pipeline.retry import RetryPolicy
    from book_pipeline.processing.extractor import ContentExtractor
    from book_pipeline.services.factory import build_fetcher
    from book_pipeline.services.refresh import refresh_book_content

    async with worker_session_factory() as session_factory:
        try:
            record = await refresh_book_content(
                session_factory,
                build_fetcher(),
                ContentExtractor(),
                book_id,
                policy=RetryPolicy.from_settings(),
            )
        except BookNotFound:
            logger.error("Book not found for refresh | book=%s", book_id)
            return {"status": "not_found", "book_id": str(book_id)}

    return {
        "status":          "refreshed",
        "book_id":         str(book_id),
        "content_version": record.content_version,
        "word_count":      record.word_count,
    }


# ---------------------------------------------------------------------------
# Retry scanner: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="book_pipeline.workers.tasks.retry_due_jobs",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def retry_due_jobs() -> dict[str, int]:
    return run_async(_retry_due_jobs_async())


async def _retry_due_jobs_async() -> dict[str, int]:
    from book_pipeline.core.config import settings
    from book_pipeline.core.errors import InvalidJobState, RetryExhausted
    from book_pipeline.db.session import worker_session_factory
    from book_pipeline.services.factory import build_coordinator

    retried = requeued = 0
    async with worker_session_factory() as session_factory:
        coordinator = build_coordinator(session_factory)

        stalled = await coordinator.fail_stalled(
            older_than=timedelta(minutes=settings.stalled_job_minutes),
        )

        for job in await coordinator.due_for_retry():
            try:
                rearmed = await coordinator.retry(job.id)
            except (InvalidJobState, RetryExhausted) as exc:
                # Another scanner or an operator got there first
                logger.info("Scheduled retry skipped | job=%s reason=%s", job.id, exc)
                continue
            process_job.apply_async(kwargs={"job_id": str(job.id)})
            retried += 1
            logger.info("Re-queued failed job | job=%s retry=%d/%d", job.id, rearmed.retry_count, rearmed.max_retries)

        stale = await coordinator.stale_pending(
            older_than=timedelta(minutes=settings.pending_requeue_minutes),
        )
        for job in stale:
            process_job.apply_async(kwargs={"job_id": str(job.id)}, countdown=5)
            requeued += 1
            logger.info("Re-queued stale job | job=%s book=%s status=%s", job.id, job.book_id, job.status)

    return {"stalled": len(stalled), "retried": retried, "requeued": requeued}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="book_pipeline.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
