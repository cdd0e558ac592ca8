"""
Generation Worker: runs one job to a terminal state

Steps:
A. pending -> processing (compare-and-set; exit quietly if the job moved on)
B. backend.generate(input) with progress reports
C. processing -> success | failed (compare-and-set; a lost race discards the outcome)
D. write the result into the job's subject panel (best effort)

Cancellation is owned by JobManager.cancel; the worker never refunds.
"""

import asyncio
from functools import partial
from typing import Any, Optional

import structlog

from comicstudio.core.errors import (
    ErrorCode,
    GenerationError,
    NotFoundError,
    StatusConflictError,
)
from comicstudio.models.db import GenerationJob, utcnow
from comicstudio.models.dto import JobState
from comicstudio.services.generation import GenerationBackend, get_generation_backend
from comicstudio.services.job_store import JobStore, job_store
from comicstudio.services.subjects import SubjectWriter, panel_writer

logger = structlog.get_logger()


# ==================== Progress Constants ====================

PROGRESS_STARTED = 10
PROGRESS_DONE = 100


class GenerationWorker:
    def __init__(
        self,
        store: JobStore = job_store,
        backend: Optional[GenerationBackend] = None,
        subject_writer: Optional[SubjectWriter] = panel_writer,
    ):
        self.store = store
        self._backend = backend
        self.subject_writer = subject_writer

    @property
    def backend(self) -> GenerationBackend:
        if self._backend is None:
            self._backend = get_generation_backend()
        return self._backend

    async def run(self, job_id: str) -> Optional[JobState]:
        """
        Execute a job.

        Returns:
            The terminal state this worker committed, or None when another
            writer (cancellation, the job monitor) got there first.
        """
        try:
            job = await self.store.update_status(
                job_id,
                JobState.pending,
                JobState.processing,
                {"started_at": utcnow(), "progress": PROGRESS_STARTED},
            )
        except StatusConflictError as e:
            logger.info("Job no longer pending, skipping", job_id=job_id, status=e.actual)
            return None
        except NotFoundError:
            logger.warning("Job not found at start", job_id=job_id)
            return None

        logger.info(
            "Starting generation",
            job_id=job_id,
            job_type=job.job_type,
            account_id=job.account_id,
        )

        try:
            result = await self.backend.generate(
                job.input or {},
                on_progress=partial(self.store.report_progress, job_id),
            )
        except asyncio.CancelledError:
            await self._mark_failed(
                job_id,
                GenerationError("Job interrupted", code=ErrorCode.JOB_INTERRUPTED),
            )
            raise
        except GenerationError as e:
            return await self._mark_failed(job_id, e)
        except Exception as e:
            logger.error("Unexpected generation error", job_id=job_id, error=str(e))
            return await self._mark_failed(
                job_id, GenerationError(str(e) or e.__class__.__name__)
            )

        try:
            job = await self.store.update_status(
                job_id,
                JobState.processing,
                JobState.success,
                {"result": result, "progress": PROGRESS_DONE, "finished_at": utcnow()},
            )
        except StatusConflictError as e:
            logger.info(
                "Job finished after losing status race, discarding result",
                job_id=job_id,
                status=e.actual,
            )
            return None

        logger.info("Job completed", job_id=job_id)

        if job.subject_ref:
            await self._propagate_result(job, result)
        return JobState.success

    async def _mark_failed(
        self, job_id: str, error: GenerationError
    ) -> Optional[JobState]:
        """Record the failure unless another writer already finished the job"""
        try:
            await self.store.update_status(
                job_id,
                JobState.processing,
                JobState.failed,
                {"error": error.to_payload(), "finished_at": utcnow()},
            )
        except StatusConflictError as e:
            logger.info(
                "Job failed after losing status race, discarding error",
                job_id=job_id,
                status=e.actual,
            )
            return None

        logger.error("Job failed", job_id=job_id, error_code=error.code.value, message=error.message)
        return JobState.failed

    async def _propagate_result(self, job: GenerationJob, result: dict[str, Any]) -> None:
        if self.subject_writer is None:
            return
        try:
            await self.subject_writer.update_subject_image(
                job.subject_ref,
                result.get("image_url"),
                result.get("thumbnail_url"),
                result.get("prompt_used"),
            )
        except Exception as e:
            # Best effort: the job stays successful
            logger.warning(
                "Failed to update job subject",
                job_id=job.job_id,
                subject_ref=job.subject_ref,
                error=str(e),
            )
