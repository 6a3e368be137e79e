"""
Processing Jobs API Router

  POST /api/v1/books/{book_id}/processing   trigger a processing job (202)
  GET  /api/v1/jobs                         list jobs (filter + paginate)
  GET  /api/v1/jobs/{job_id}                job detail: stages + metrics
  POST /api/v1/jobs/{job_id}/retry          manual retry (202)

All routes require an admin JWT.

Trigger lifecycle:
  ┌──────────────────────────────────────────────────────────┐
  │ 1. JWT verification + RBAC gate (admin or above)         │
  │ 2. Job row inserted (status=pending)                     │
  │ 3. process_job published to the broker                   │
  │      broker down → queued=false, the scheduler re-queues │
  │ 4. 202 with job_id; clients poll GET /jobs/{job_id}      │
  └──────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from book_pipeline.auth.dependencies import Coordinator, Publisher
from book_pipeline.auth.rbac import RequireAdmin
from book_pipeline.auth.token import TokenPayload
from book_pipeline.schemas.content import ErrorResponse
from book_pipeline.schemas.jobs import (
    JobListResponse,
    JobStatus,
    JobTriggerResponse,
    ProcessingJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Processing Jobs"])

MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# POST /books/{book_id}/processing
# ---------------------------------------------------------------------------

@router.post(
    "/books/{book_id}/processing",
    response_model=JobTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger background processing for a book",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Insufficient role (requires admin)"},
        404: {"model": ErrorResponse, "description": "Book not found"},
    },
)
async def trigger_processing(
    book_id:     UUID,
    coordinator: Coordinator,
    publisher:   Publisher,
    user:        TokenPayload = RequireAdmin,
) -> JSONResponse:
    job = await coordinator.create_job(book_id)

    queued = True
    try:
        await publisher.publish_processing_job(job.id)
    except Exception as exc:
        # Job row exists; retry_due_jobs re-queues stale pending jobs
        queued = False
        logger.error(
            "Task publish failed, job left pending | job=%s book=%s error=%s",
            job.id, book_id, exc,
        )

    logger.info("Processing triggered | job=%s book=%s by=%s queued=%s", job.id, book_id, user.sub, queued)
    body = JobTriggerResponse(job_id=job.id, book_id=book_id, status=JobStatus(job.status), queued=queued)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={"Location": f"/api/v1/jobs/{job.id}"},
    )


# ---------------------------------------------------------------------------
# GET /jobs
# ---------------------------------------------------------------------------

@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List processing jobs",
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
async def list_jobs(
    coordinator: Coordinator,
    status_filter: JobStatus | None = Query(None, alias="status"),
    book_id:       UUID | None      = Query(None),
    page:          int              = Query(1, ge=1),
    limit:         int              = Query(20, ge=1),
    user:          TokenPayload     = RequireAdmin,
) -> JobListResponse:
    limit = min(limit, MAX_PAGE_SIZE)
    jobs, total = await coordinator.list_jobs(status=status_filter, book_id=book_id, page=page, limit=limit)
    return JobListResponse(
        page=page,
        limit=limit,
        total=total,
        jobs=[ProcessingJobResponse.from_job(job) for job in jobs],
    )


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}
# ---------------------------------------------------------------------------

@router.get(
    "/jobs/{job_id}",
    response_model=ProcessingJobResponse,
    summary="Processing job detail",
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def get_job(
    job_id:      UUID,
    coordinator: Coordinator,
    user:        TokenPayload = RequireAdmin,
) -> ProcessingJobResponse:
    return ProcessingJobResponse.from_job(await coordinator.get_job(job_id))


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/jobs/{job_id}/retry",
    response_model=ProcessingJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Manually retry a failed or completed job",
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "RETRY_EXHAUSTED or INVALID_JOB_STATE"},
    },
)
async def retry_job(
    job_id:      UUID,
    coordinator: Coordinator,
    publisher:   Publisher,
    user:        TokenPayload = RequireAdmin,
) -> JSONResponse:
    job = await coordinator.retry(job_id)

    try:
        await publisher.publish_processing_job(job.id)
    except Exception as exc:
        # Job stays RETRYING with download pending; retry_due_jobs re-queues it
        logger.error("Retry publish failed | job=%s error=%s", job.id, exc)

    logger.info("Manual retry | job=%s by=%s retry=%d/%d", job.id, user.sub, job.retry_count, job.max_retries)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=ProcessingJobResponse.from_job(job).model_dump(mode="json"),
    )
