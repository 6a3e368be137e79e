"""
Book Content & Artifacts — Pydantic Request/Response Schemas

Covers:
  - GET/PATCH /books/{id}/content          cached text read-back / external write
  - GET       /books/{id}/content/status   cache presence + staleness
  - GET/PUT   /books/{id}/overview         AI overview
  - POST      /books/{id}/context          relevant excerpt for a chat turn
  - The uniform error envelope shared by every route

Timestamps are timezone-aware UTC datetimes serialized as ISO-8601.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Content Cache
# ---------------------------------------------------------------------------

class ContentResponse(BaseModel):
    """Full cached extraction. Processor / admin only."""
    book_id:           UUID
    extracted_content: str
    content_hash:      str
    page_count:        int
    word_count:        int
    byte_size:         int
    extracted_at:      datetime
    content_version:   int

    @classmethod
    def from_record(cls, record) -> "ContentResponse":
        return cls(
            book_id=record.book_id,
            extracted_content=record.text,
            content_hash=record.content_hash,
            page_count=record.page_count,
            word_count=record.word_count,
            byte_size=record.byte_size,
            extracted_at=record.extracted_at,
            content_version=record.content_version,
        )


class ContentWriteRequest(BaseModel):
    """
    Written by the external PDF processor.
    content_hash is optional; the server falls back to a cheap fingerprint.
    byte_size is always computed server-side.
    """
    extracted_content: str        = Field(..., min_length=1)
    content_hash:      str | None = Field(None, max_length=64)
    page_count:        int        = Field(0, ge=0)
    word_count:        int | None = Field(None, ge=0, description="Counted server-side when omitted")

    @field_validator("extracted_content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("extracted_content must contain text")
        return v


class ContentStatusResponse(BaseModel):
    book_id:         UUID
    has_content:     bool
    content_version: int | None = None
    extracted_at:    datetime | None = None
    page_count:      int | None = None
    word_count:      int | None = None
    is_stale:        bool = False


# ---------------------------------------------------------------------------
# Overview
# ---------------------------------------------------------------------------

class OverviewResponse(BaseModel):
    book_id:            UUID
    ai_overview:        str | None = None
    ai_overview_status: str


class OverviewWriteRequest(BaseModel):
    ai_overview: str = Field(..., min_length=1, max_length=20_000)


# ---------------------------------------------------------------------------
# Chat context
# ---------------------------------------------------------------------------

class ContextRequest(BaseModel):
    message:    str        = Field(..., min_length=1, max_length=4_000, description="Latest chat message")
    content:    str | None = Field(None, description="Caller-supplied text; skips the cache entirely")


class ContextResponse(BaseModel):
    book_id: UUID
    content: str


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class PipelineErrors:
    """Factories for the error bodies the API renders."""

    @staticmethod
    def from_exception(exc, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def forbidden(required_role: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"Insufficient permissions. Role '{required_role}' or above is required.",
            details=[],
        )

    @staticmethod
    def validation_error(errors: list[dict]) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err.get("loc", ()) if part != "body") or None,
                    message=err.get("msg", "Invalid value"),
                    code="VALIDATION_ERROR",
                )
                for err in errors
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            details=[],
            request_id=request_id,
        )
