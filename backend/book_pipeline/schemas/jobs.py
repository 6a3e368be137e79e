"""
Processing Job — Pydantic Schemas and State Enums

Job lifecycle (ProcessingJob.status):

    PENDING ──▶ PROCESSING ──▶ COMPLETED
                    │
                    └────────▶ FAILED ──▶ RETRYING ──▶ COMPLETED | FAILED

Stage lifecycle (one column per Stage):

    PENDING ──▶ IN_PROGRESS ──▶ COMPLETED | FAILED
    PENDING ──▶ SKIPPED          (prerequisite unavailable)

Only download / extraction failures can move a job to FAILED. Summary,
questions and embedding failures are recorded on their own stage column and
leave the job COMPLETED.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# State enums (values are persisted verbatim)
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING    = "pending"      # created, worker has not picked it up
    PROCESSING = "processing"   # first run in flight
    RETRYING   = "retrying"     # re-run in flight after FAILED / COMPLETED
    COMPLETED  = "completed"    # extraction succeeded (enrichment may have failed)
    FAILED     = "failed"       # download or extraction failed


class StageStatus(str, Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    FAILED      = "failed"
    SKIPPED     = "skipped"


class Stage(str, Enum):
    DOWNLOAD   = "download"
    EXTRACTION = "extraction"
    SUMMARY    = "summary"
    QUESTIONS  = "questions"
    EMBEDDING  = "embedding"

    @property
    def column(self) -> str:
        """Name of the ProcessingJob column holding this stage's status."""
        return f"{self.value}_status"


RETRYABLE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.FAILED, JobStatus.COMPLETED})


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class StageStatuses(BaseModel):
    download:   StageStatus
    extraction: StageStatus
    summary:    StageStatus
    questions:  StageStatus
    embedding:  StageStatus


class JobMetrics(BaseModel):
    pages_extracted:        int | None = None
    words_extracted:        int | None = None
    summary_length:         int | None = Field(None, description="Summary length in characters")
    questions_generated:    int | None = None
    embeddings_created:     int | None = None
    processing_duration_ms: int | None = None


class ProcessingJobResponse(BaseModel):
    """Full operator view of one job: overall state, stages, metrics."""
    model_config = ConfigDict(from_attributes=True)

    job_id:          UUID
    book_id:         UUID
    status:          JobStatus
    stages:          StageStatuses
    retry_count:     int
    max_retries:     int
    error_message:   str | None = None
    metrics:         JobMetrics
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    created_at:      datetime
    updated_at:      datetime
    completed_at:    datetime | None = None
    failed_at:       datetime | None = None

    @classmethod
    def from_job(cls, job) -> "ProcessingJobResponse":
        return cls(
            job_id=job.id,
            book_id=job.book_id,
            status=JobStatus(job.status),
            stages=StageStatuses(
                download=job.download_status,
                extraction=job.extraction_status,
                summary=job.summary_status,
                questions=job.questions_status,
                embedding=job.embedding_status,
            ),
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            error_message=job.error_message,
            metrics=JobMetrics(
                pages_extracted=job.pages_extracted,
                words_extracted=job.words_extracted,
                summary_length=job.summary_length,
                questions_generated=job.questions_generated,
                embeddings_created=job.embeddings_created,
                processing_duration_ms=job.processing_duration_ms,
            ),
            last_attempt_at=job.last_attempt_at,
            next_attempt_at=job.next_attempt_at,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
        )


class JobTriggerResponse(BaseModel):
    """Returned immediately (202) when processing is requested."""
    job_id:  UUID
    book_id: UUID
    status:  JobStatus = JobStatus.PENDING
    queued:  bool = Field(True, description="False when the broker was unreachable; the scheduler re-queues it")


class JobListResponse(BaseModel):
    page:  int
    limit: int
    total: int
    jobs:  list[ProcessingJobResponse]
