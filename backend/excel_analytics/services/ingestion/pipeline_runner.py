from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from excel_analytics.services.ai.insight_service import InsightService
from excel_analytics.services.ingestion.coordinator import run_pipeline

logger = logging.getLogger(__name__)


class PipelineRunner:
    """Runs accepted uploads through the ingestion pipeline in the background.

    One asyncio.Task per record; a semaphore bounds how many pipelines run
    at once. Handles are kept until each task finishes so shutdown can
    drain in-flight work instead of abandoning it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        insight_service: InsightService,
        concurrency: int = 4,
        sample_row_count: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.insight_service = insight_service
        self.sample_row_count = sample_row_count
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._tasks: dict[UUID, asyncio.Task] = {}

    @property
    def active(self) -> int:
        return len(self._tasks)

    def get(self, record_id: UUID) -> asyncio.Task | None:
        return self._tasks.get(record_id)

    def submit(self, record_id: UUID, storage_path: Path) -> asyncio.Task:
        """Schedule a record. A record already scheduled is not run twice."""
        existing = self._tasks.get(record_id)
        if existing is not None:
            logger.warning("Upload %s is already scheduled", record_id)
            return existing

        task = asyncio.create_task(
            self._run(record_id, storage_path), name=f"pipeline-{record_id}"
        )
        self._tasks[record_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record_id, None))
        return task

    async def _run(self, record_id: UUID, storage_path: Path) -> str | None:
        async with self._semaphore:
            try:
                return await run_pipeline(
                    self.session_factory,
                    self.insight_service,
                    record_id,
                    storage_path,
                    sample_row_count=self.sample_row_count,
                )
            except Exception:
                logger.exception("Pipeline task for %s crashed", record_id)
                return None

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight pipelines; cancel whatever outlives the timeout."""
        pending = list(self._tasks.values())
        if not pending:
            return
        logger.info("Draining %d pipeline task(s)", len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d pipeline task(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
