"""
Pipeline error taxonomy.

Every failure the pipeline reports is a PipelineError subclass carrying a
stable machine-readable code and the HTTP status the API boundary maps it to:

    FetchError        document could not be downloaded
    ExtractError      downloaded bytes are not a readable document
    GenerationError   AI output empty or structurally unusable
    RetryExhausted    manual retry refused, retry budget spent
    Unauthorized      missing or invalid credential
    JobNotFound / BookNotFound / ContentNotFound
    InvalidJobState   job is not in a state that allows the operation
"""

from __future__ import annotations

from uuid import UUID


class PipelineError(Exception):
    error_code: str = "PIPELINE_ERROR"
    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Stage failures
# ---------------------------------------------------------------------------

class FetchError(PipelineError):
    error_code = "FETCH_FAILED"
    http_status = 502


class ExtractError(PipelineError):
    error_code = "EXTRACTION_FAILED"
    http_status = 422


class GenerationError(PipelineError):
    error_code = "GENERATION_FAILED"
    http_status = 502


# ---------------------------------------------------------------------------
# Job / access failures
# ---------------------------------------------------------------------------

class RetryExhausted(PipelineError):
    error_code = "RETRY_EXHAUSTED"
    http_status = 409

    def __init__(self, job_id: UUID, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Job {job_id} has used {retry_count} of {max_retries} retries."
        )
        self.job_id = job_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class InvalidJobState(PipelineError):
    error_code = "INVALID_JOB_STATE"
    http_status = 409


class Unauthorized(PipelineError):
    error_code = "UNAUTHORIZED"
    http_status = 401


class JobNotFound(PipelineError):
    error_code = "JOB_NOT_FOUND"
    http_status = 404

    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Processing job {job_id} does not exist.")
        self.job_id = job_id


class BookNotFound(PipelineError):
    error_code = "BOOK_NOT_FOUND"
    http_status = 404

    def __init__(self, book_id: UUID) -> None:
        super().__init__(f"Book {book_id} does not exist.")
        self.book_id = book_id


class ContentNotFound(PipelineError):
    error_code = "CONTENT_NOT_FOUND"
    http_status = 404

    def __init__(self, book_id: UUID) -> None:
        super().__init__(f"No extracted content is cached for book {book_id}.")
        self.book_id = book_id
