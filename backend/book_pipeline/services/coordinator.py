"""
Job Coordinator — drives one ProcessingJob through the pipeline.

run(job_id):

  ┌────────────────────────────────────────────────────────────────────┐
  │ 1. status → PROCESSING (RETRYING stays RETRYING), stages → PENDING │
  │ 2. download    ── retry controller ── fail ──▶ job FAILED, stop    │
  │ 3. extraction  ── retry controller ── fail ──▶ job FAILED, stop    │
  │       └─ cache write + page/word metrics in one transaction        │
  │ 4. enrichment  (concurrent, each isolated)                         │
  │       summary   ── fail ──▶ summary FAILED     (job continues)     │
  │       questions ── fail ──▶ questions FAILED   (job continues)     │
  │       embedding ── fail ──▶ embedding FAILED   (job continues)     │
  │ 5. status → COMPLETED, duration recorded                           │
  └────────────────────────────────────────────────────────────────────┘

Every transition is committed in its own short transaction so operators can
watch a job progress. Only PENDING and RETRYING jobs run; a duplicate task
delivery for a job that already moved on is logged and ignored.
An unexpected error after the job is armed still marks it FAILED before
propagating, and fail_stalled() fails in-flight jobs whose worker died, so a
job never stays in flight forever.

retry(job_id) re-arms a FAILED or COMPLETED job while its retry budget
lasts. The caller is responsible for dispatching run() afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from book_pipeline.core.config import settings
from book_pipeline.core.errors import BookNotFound, InvalidJobState, JobNotFound, RetryExhausted
from book_pipeline.db.session import SessionFactory
from book_pipeline.enrichment.base import BookMetadata
from book_pipeline.enrichment.embeddings import EmbeddingGenerator, EmbeddingSetResult
from book_pipeline.enrichment.questions import QuestionGenerator, QuestionSetResult
from book_pipeline.enrichment.summary import SummaryGenerator, SummaryResult
from book_pipeline.models.books import Book, utcnow
from book_pipeline.models.jobs import ProcessingJob
from book_pipeline.pipeline.retry import RetryPolicy, with_retry
from book_pipeline.processing.extractor import ContentExtractor
from book_pipeline.processing.fetcher import ContentFetcher
from book_pipeline.schemas.jobs import RETRYABLE_STATUSES, JobStatus, Stage, StageStatus
from book_pipeline.services import artifacts
from book_pipeline.services.content_cache import ContentCache

logger = logging.getLogger(__name__)

Persist = Callable[[AsyncSession, UUID, Any], Awaitable[dict[str, Any]]]

_BOOK_STATUS_COLUMN = {
    Stage.SUMMARY:   "ai_overview_status",
    Stage.QUESTIONS: "questions_status",
}


@dataclass(frozen=True)
class StageTimeouts:
    download:   float | None = 60.0
    extraction: float | None = 120.0
    generation: float | None = 120.0

    @classmethod
    def from_settings(cls) -> "StageTimeouts":
        return cls(
            download=settings.fetch_timeout_seconds,
            extraction=settings.extraction_timeout_seconds,
            generation=settings.generation_timeout_seconds,
        )


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Artifact persistence per enrichment stage → job metric columns
# ---------------------------------------------------------------------------

async def _persist_summary(session: AsyncSession, book_id: UUID, output: SummaryResult) -> dict[str, Any]:
    await artifacts.save_overview(session, book_id, output.summary)
    return {"summary_length": len(output.summary)}


async def _persist_questions(session: AsyncSession, book_id: UUID, output: QuestionSetResult) -> dict[str, Any]:
    count = await artifacts.replace_ai_questions(session, book_id, output.pairs)
    return {"questions_generated": count}


async def _persist_embeddings(session: AsyncSession, book_id: UUID, output: EmbeddingSetResult) -> dict[str, Any]:
    count = await artifacts.replace_embeddings(session, book_id, output.chunks, output.model)
    return {"embeddings_created": count}


# ---------------------------------------------------------------------------
# JobCoordinator
# ---------------------------------------------------------------------------

class JobCoordinator:
    def __init__(
        self,
        session_factory:     SessionFactory,
        fetcher:             ContentFetcher,
        extractor:           ContentExtractor,
        summary_generator:   SummaryGenerator | None = None,
        question_generator:  QuestionGenerator | None = None,
        embedding_generator: EmbeddingGenerator | None = None,
        retry_policy:        RetryPolicy | None = None,
        timeouts:            StageTimeouts | None = None,
        retry_delay_seconds: int = 60,
        default_max_retries: int = 3,
        clock:               Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._fetcher = fetcher
        self._extractor = extractor
        self._enrichers: dict[Stage, tuple[Any, Persist]] = {
            Stage.SUMMARY:   (summary_generator, _persist_summary),
            Stage.QUESTIONS: (question_generator, _persist_questions),
            Stage.EMBEDDING: (embedding_generator, _persist_embeddings),
        }
        self._policy = retry_policy or RetryPolicy()
        self._timeouts = timeouts or StageTimeouts()
        self._retry_delay_seconds = retry_delay_seconds
        self._default_max_retries = default_max_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Job records
    # ------------------------------------------------------------------

    async def create_job(self, book_id: UUID, max_retries: int | None = None) -> ProcessingJob:
        async with self._session_factory() as session, session.begin():
            if await session.get(Book, book_id) is None:
                raise BookNotFound(book_id)
            now = self._clock()
            job = ProcessingJob(
                book_id=book_id,
                status=JobStatus.PENDING.value,
                max_retries=self._default_max_retries if max_retries is None else max_retries,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.flush()

        logger.info("Job created | job=%s book=%s max_retries=%d", job.id, book_id, job.max_retries)
        return job

    async def get_job(self, job_id: UUID) -> ProcessingJob:
        async with self._session_factory() as session:
            job = await session.get(ProcessingJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(
        self,
        status:  JobStatus | None = None,
        book_id: UUID | None = None,
        page:    int = 1,
        limit:   int = 20,
    ) -> tuple[list[ProcessingJob], int]:
        filters = []
        if status is not None:
            filters.append(ProcessingJob.status == JobStatus(status).value)
        if book_id is not None:
            filters.append(ProcessingJob.book_id == book_id)

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(ProcessingJob).where(*filters)
            )
            result = await session.execute(
                select(ProcessingJob)
                .where(*filters)
                .order_by(ProcessingJob.created_at.desc(), ProcessingJob.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            jobs = list(result.scalars().all())
        return jobs, int(total or 0)

    async def due_for_retry(self, now: datetime | None = None, limit: int = 50) -> list[ProcessingJob]:
        """FAILED jobs whose scheduled retry time has passed and whose budget remains."""
        now = now or self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessingJob)
                .where(
                    ProcessingJob.status == JobStatus.FAILED.value,
                    ProcessingJob.next_attempt_at.is_not(None),
                    ProcessingJob.next_attempt_at <= now,
                    ProcessingJob.retry_count < ProcessingJob.max_retries,
                )
                .order_by(ProcessingJob.next_attempt_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def stale_pending(self, older_than: timedelta, limit: int = 50) -> list[ProcessingJob]:
        """
        Jobs nobody picked up, e.g. the broker was down when they were published:
        PENDING jobs, and RETRYING jobs whose run never started (download still PENDING).
        """
        cutoff = self._clock() - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessingJob)
                .where(
                    or_(
                        and_(
                            ProcessingJob.status == JobStatus.PENDING.value,
                            ProcessingJob.created_at < cutoff,
                        ),
                        and_(
                            ProcessingJob.status == JobStatus.RETRYING.value,
                            ProcessingJob.download_status == StageStatus.PENDING.value,
                            ProcessingJob.updated_at < cutoff,
                        ),
                    )
                )
                .order_by(ProcessingJob.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def fail_stalled(self, older_than: timedelta, limit: int = 50) -> list[ProcessingJob]:
        """
        Fail in-flight jobs that stopped making progress (worker killed, lost
        connection mid-run). PROCESSING jobs and started RETRYING jobs whose
        last update is older than the cutoff become FAILED, which puts them
        back in reach of scheduled and manual retries.
        """
        cutoff = self._clock() - older_than
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                select(ProcessingJob)
                .where(
                    ProcessingJob.updated_at < cutoff,
                    or_(
                        ProcessingJob.status == JobStatus.PROCESSING.value,
                        and_(
                            ProcessingJob.status == JobStatus.RETRYING.value,
                            ProcessingJob.download_status != StageStatus.PENDING.value,
                        ),
                    ),
                )
                .order_by(ProcessingJob.updated_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            jobs = list(result.scalars().all())
            for job in jobs:
                last_update = job.updated_at
                self._mark_failed(job, f"Job stalled: no progress since {last_update.isoformat()}")
                logger.warning(
                    "Stalled job failed | job=%s book=%s last_update=%s next_attempt_at=%s",
                    job.id, job.book_id, last_update, job.next_attempt_at,
                )
        return jobs

    # ------------------------------------------------------------------
    # Manual / scheduled retry
    # ------------------------------------------------------------------

    async def retry(self, job_id: UUID) -> ProcessingJob:
        async with self._session_factory() as session, session.begin():
            job = await session.get(ProcessingJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFound(job_id)
            if JobStatus(job.status) not in RETRYABLE_STATUSES:
                raise InvalidJobState(
                    f"Job {job_id} is {job.status}; only failed or completed jobs can be retried."
                )
            if job.retry_count >= job.max_retries:
                raise RetryExhausted(job.id, job.retry_count, job.max_retries)

            job.retry_count += 1
            job.status = JobStatus.RETRYING.value
            for stage in Stage:
                setattr(job, stage.column, StageStatus.PENDING.value)
            job.next_attempt_at = None
            job.updated_at = self._clock()

        logger.info(
            "Job re-armed for retry | job=%s attempt=%d/%d",
            job_id, job.retry_count, job.max_retries,
        )
        return job

    # ------------------------------------------------------------------
    # Pipeline run
    # ------------------------------------------------------------------

    async def run(self, job_id: UUID) -> ProcessingJob:
        started = time.perf_counter()

        async with self._session_factory() as session, session.begin():
            job = await session.get(ProcessingJob, job_id, with_for_update=True)
            if job is None:
                raise JobNotFound(job_id)
            if job.status not in (JobStatus.PENDING.value, JobStatus.RETRYING.value):
                logger.warning("Job not runnable, skipping | job=%s status=%s", job_id, job.status)
                return job

            book = await session.get(Book, job.book_id)
            if book is None:
                raise BookNotFound(job.book_id)

            now = self._clock()
            if job.status == JobStatus.PENDING.value:
                job.status = JobStatus.PROCESSING.value
            for stage in Stage:
                setattr(job, stage.column, StageStatus.PENDING.value)
            job.error_message = None
            job.last_attempt_at = now
            job.next_attempt_at = None
            job.updated_at = now

            book_id = book.id
            source_url = book.download_url
            metadata = BookMetadata.from_book(book)

        logger.info("Job started | job=%s book=%s status=%s", job_id, book_id, job.status)

        # Stage failures are handled inside _execute; anything else escaping
        # it must still leave the job FAILED so it can be retried.
        progress: dict[str, Stage | None] = {"stage": Stage.DOWNLOAD}
        try:
            return await self._execute(job_id, book_id, source_url, metadata, started, progress)
        except Exception as exc:
            logger.exception(
                "Job crashed | job=%s stage=%s error=%s",
                job_id, getattr(progress["stage"], "value", "-"), exc,
            )
            await self._fail(job_id, progress["stage"], exc, started)
            raise

    async def _execute(
        self,
        job_id:     UUID,
        book_id:    UUID,
        source_url: str,
        metadata:   BookMetadata,
        started:    float,
        progress:   dict[str, Stage | None],
    ) -> ProcessingJob:
        # --- Download -------------------------------------------------------
        await self._set_stage(job_id, Stage.DOWNLOAD, StageStatus.IN_PROGRESS)
        try:
            data = await with_retry(
                lambda: self._fetcher.fetch(source_url),
                self._policy.with_timeout(self._timeouts.download),
                label=f"download:{job_id}",
            )
        except Exception as exc:
            return await self._fail(job_id, Stage.DOWNLOAD, exc, started)
        await self._set_stage(job_id, Stage.DOWNLOAD, StageStatus.COMPLETED)

        # --- Extraction -----------------------------------------------------
        progress["stage"] = Stage.EXTRACTION
        await self._set_stage(job_id, Stage.EXTRACTION, StageStatus.IN_PROGRESS)
        try:
            result = await with_retry(
                lambda: self._extractor.extract(data),
                self._policy.with_timeout(self._timeouts.extraction),
                label=f"extraction:{job_id}",
            )
        except Exception as exc:
            return await self._fail(job_id, Stage.EXTRACTION, exc, started)

        async with self._session_factory() as session, session.begin():
            await ContentCache(session).put_result(book_id, result, extracted_at=self._clock())
            await self._update_job(
                session, job_id,
                extraction_status=StageStatus.COMPLETED.value,
                pages_extracted=result.page_count,
                words_extracted=result.word_count,
            )
        del data
        progress["stage"] = None

        # --- Enrichment (isolated, concurrent) --------------------------------
        outcomes = await asyncio.gather(
            *(
                self._run_enrichment(job_id, book_id, stage, metadata, result.text)
                for stage in self._enrichers
            ),
            return_exceptions=True,
        )
        for stage, outcome in zip(self._enrichers, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Enrichment bookkeeping failed | job=%s stage=%s error=%s",
                    job_id, stage.value, outcome,
                )

        # --- Finalize -------------------------------------------------------
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            await self._update_job(
                session, job_id,
                status=JobStatus.COMPLETED.value,
                completed_at=now,
                failed_at=None,
                processing_duration_ms=int((time.perf_counter() - started) * 1000),
            )

        job = await self.get_job(job_id)
        logger.info(
            "Job completed | job=%s book=%s summary=%s questions=%s embedding=%s duration_ms=%s",
            job_id, book_id, job.summary_status, job.questions_status,
            job.embedding_status, job.processing_duration_ms,
        )
        return job

    # ------------------------------------------------------------------
    # Enrichment stage
    # ------------------------------------------------------------------

    async def _run_enrichment(
        self,
        job_id:   UUID,
        book_id:  UUID,
        stage:    Stage,
        metadata: BookMetadata,
        text:     str,
    ) -> None:
        generator, persist = self._enrichers[stage]
        if generator is None or not text.strip():
            await self._set_stage(job_id, stage, StageStatus.SKIPPED)
            logger.info("Stage skipped | job=%s stage=%s", job_id, stage.value)
            return

        await self._set_stage(job_id, stage, StageStatus.IN_PROGRESS)
        try:
            output = await with_retry(
                lambda: generator.generate(metadata, text),
                self._policy.with_timeout(self._timeouts.generation),
                label=f"{stage.value}:{job_id}",
            )
            async with self._session_factory() as session, session.begin():
                metrics = await persist(session, book_id, output)
                await self._update_job(
                    session, job_id,
                    **{stage.column: StageStatus.COMPLETED.value},
                    **metrics,
                )
        except Exception as exc:
            await self._record_enrichment_failure(job_id, book_id, stage, exc)

    async def _record_enrichment_failure(
        self,
        job_id:  UUID,
        book_id: UUID,
        stage:   Stage,
        exc:     Exception,
    ) -> None:
        logger.error(
            "Enrichment failed (non-fatal) | job=%s stage=%s error=%s",
            job_id, stage.value, exc,
        )
        async with self._session_factory() as session, session.begin():
            await self._update_job(
                session, job_id,
                **{stage.column: StageStatus.FAILED.value},
                error_message=_error_text(exc),
            )
            column = _BOOK_STATUS_COLUMN.get(stage)
            if column:
                await artifacts.mark_artifact_failed(session, book_id, column)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fail(
        self,
        job_id:  UUID,
        stage:   Stage | None,
        exc:     Exception,
        started: float,
    ) -> ProcessingJob:
        async with self._session_factory() as session, session.begin():
            job = await session.get(ProcessingJob, job_id, populate_existing=True)
            if stage is not None:
                setattr(job, stage.column, StageStatus.FAILED.value)
            self._mark_failed(job, _error_text(exc))
            job.processing_duration_ms = int((time.perf_counter() - started) * 1000)

        logger.error(
            "Job failed | job=%s stage=%s retries=%d/%d next_attempt_at=%s error=%s",
            job_id, getattr(stage, "value", "-"), job.retry_count, job.max_retries,
            job.next_attempt_at, exc,
        )
        return job

    def _mark_failed(self, job: ProcessingJob, message: str) -> None:
        """FAILED status, any in-flight stage FAILED, next attempt scheduled while budget remains."""
        now = self._clock()
        for stage in Stage:
            if getattr(job, stage.column) == StageStatus.IN_PROGRESS.value:
                setattr(job, stage.column, StageStatus.FAILED.value)
        job.status = JobStatus.FAILED.value
        job.error_message = message
        job.failed_at = now
        job.updated_at = now
        if job.retry_count < job.max_retries:
            delay = self._retry_delay_seconds * 2 ** job.retry_count
            job.next_attempt_at = now + timedelta(seconds=delay)
        else:
            job.next_attempt_at = None

    async def _set_stage(self, job_id: UUID, stage: Stage, status: StageStatus) -> None:
        async with self._session_factory() as session, session.begin():
            await self._update_job(session, job_id, **{stage.column: status.value})

    async def _update_job(self, session: AsyncSession, job_id: UUID, **values: Any) -> None:
        await session.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id)
            .values(updated_at=self._clock(), **values)
        )
