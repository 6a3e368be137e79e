"""
Task dispatch — getting work onto the Celery broker from async code.

TaskPublisher
    Awaitable wrappers around apply_async. Celery's client is synchronous,
    so publishing runs in the default thread executor to keep the event loop
    free. Task modules are imported lazily so the API process does not need
    a broker connection at import time.

BackgroundDispatcher
    Fire-and-forget for the consumer read path. dispatch_refresh() schedules
    the publish on the running loop and returns immediately; the caller never
    waits for the broker. Pending tasks are held in a set until they finish
    (the loop only keeps weak references), and a failed publish is logged,
    never raised.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import UUID

logger = logging.getLogger(__name__)


class TaskPublisher:
    """Sends pipeline tasks to the Celery broker."""

    async def publish_processing_job(self, job_id: UUID, countdown: int = 0) -> None:
        from book_pipeline.workers.tasks import process_job

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_job.apply_async(kwargs={"job_id": str(job_id)}, countdown=countdown),
        )
        logger.info("Processing task published | job=%s", job_id)

    async def publish_content_refresh(self, book_id: UUID) -> None:
        from book_pipeline.workers.tasks import refresh_content

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: refresh_content.apply_async(kwargs={"book_id": str(book_id)}),
        )
        logger.info("Content refresh published | book=%s", book_id)


class BackgroundDispatcher:
    def __init__(self, publisher: TaskPublisher | None = None) -> None:
        self._publisher = publisher or TaskPublisher()
        self._pending: set[asyncio.Task] = set()

    def dispatch_refresh(self, book_id: UUID) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._publisher.publish_content_refresh(book_id),
            name=f"content-refresh-{book_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Content refresh scheduled | book=%s", book_id)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for scheduled publishes to settle (shutdown hook)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background refresh failed (non-fatal) | task=%s error=%s", task.get_name(), exc)
