"""
SQLAlchemy ORM Model — Processing Jobs

One row per processing attempt chain for a book. A new trigger creates a new
row; a retry reuses the row and bumps retry_count. Rows are never deleted so
operators can read the full history of a book's processing.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from book_pipeline.models.books import Base, utcnow
from book_pipeline.schemas.jobs import JobStatus, Stage, StageStatus


def _in_check(column: str, enum_cls) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=f"processing_jobs_{column}_check")


def _stage_column() -> Mapped[str]:
    return mapped_column(
        String(16),
        nullable=False,
        default=StageStatus.PENDING.value,
        server_default=StageStatus.PENDING.value,
    )


class ProcessingJob(Base):
    """
    Tracks one document through download → extraction → enrichment.

    status is the overall job state (JobStatus); each Stage has its own
    <stage>_status column (StageStatus). Outcome metrics are filled in as
    stages complete.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        _in_check("status", JobStatus),
        *(_in_check(stage.column, StageStatus) for stage in Stage),
        Index("idx_processing_jobs_book_id", "book_id"),
        Index("idx_processing_jobs_status",  "status", "next_attempt_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id", ondelete="CASCADE"), nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=JobStatus.PENDING.value,
        server_default=JobStatus.PENDING.value,
    )

    download_status:   Mapped[str] = _stage_column()
    extraction_status: Mapped[str] = _stage_column()
    summary_status:    Mapped[str] = _stage_column()
    questions_status:  Mapped[str] = _stage_column()
    embedding_status:  Mapped[str] = _stage_column()

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Verbatim message of the most recent failure",
    )

    # Outcome metrics
    pages_extracted:        Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    words_extracted:        Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    summary_length:         Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    questions_generated:    Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    embeddings_created:     Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
        server_default=func.now(), onupdate=utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at:    Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def stage_status(self, stage: Stage) -> str:
        return getattr(self, stage.column)

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} book={self.book_id} status={self.status} "
            f"retries={self.retry_count}/{self.max_retries}>"
        )
