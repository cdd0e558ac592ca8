"""
Job Store
Generation job records. Status changes only through compare-and-set.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicstudio.core.database import AsyncSessionLocal, transaction
from comicstudio.core.errors import NotFoundError, StatusConflictError
from comicstudio.models.db import GenerationJob, utcnow
from comicstudio.models.dto import JobState, TERMINAL_STATES

logger = structlog.get_logger()


ALLOWED_TRANSITIONS = {
    JobState.pending: {JobState.processing, JobState.cancelled},
    JobState.processing: {JobState.success, JobState.failed, JobState.cancelled},
}

# Columns a status update may patch
PATCHABLE_FIELDS = frozenset(
    {"result", "error", "progress", "started_at", "finished_at"}
)


class JobStore:
    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal):
        self._session_factory = session_factory

    async def insert(
        self, job: GenerationJob, session: Optional[AsyncSession] = None
    ) -> GenerationJob:
        async with transaction(self._session_factory, session) as db:
            db.add(job)
            await db.flush()
        return job

    async def get(self, job_id: str) -> GenerationJob:
        async with self._session_factory() as session:
            job = await session.get(GenerationJob, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def list_for_account(
        self, account_id: str, limit: int = 20
    ) -> list[GenerationJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(GenerationJob)
                .where(GenerationJob.account_id == account_id)
                .order_by(GenerationJob.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def update_status(
        self,
        job_id: str,
        expected: JobState,
        new: JobState,
        patch: Optional[dict[str, Any]] = None,
        session: Optional[AsyncSession] = None,
    ) -> GenerationJob:
        """
        Move ``job_id`` from ``expected`` to ``new`` and apply ``patch``.

        The write is a single ``UPDATE ... WHERE status = expected``; if the
        stored status differs nothing is applied.

        Raises:
            StatusConflictError: stored status is not ``expected``
            NotFoundError: unknown job
            ValueError: transition not allowed by the state machine
        """
        expected = JobState(expected)
        new = JobState(new)
        if new not in ALLOWED_TRANSITIONS.get(expected, ()):
            raise ValueError(f"Illegal job transition {expected.value} -> {new.value}")

        values = dict(patch or {})
        unknown = set(values) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch job fields: {sorted(unknown)}")
        values["status"] = new.value
        values["updated_at"] = utcnow()

        async with transaction(self._session_factory, session) as db:
            result = await db.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.job_id == job_id,
                    GenerationJob.status == expected.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = await db.scalar(
                    select(GenerationJob.status).where(GenerationJob.job_id == job_id)
                )
                if actual is None:
                    raise NotFoundError("Job", job_id)
                raise StatusConflictError(job_id, expected.value, actual)

            job = (
                await db.execute(
                    select(GenerationJob)
                    .where(GenerationJob.job_id == job_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()

        logger.info(
            "Job status changed",
            job_id=job_id,
            from_status=expected.value,
            to_status=new.value,
        )
        return job

    async def report_progress(self, job_id: str, progress: int) -> bool:
        """
        Raise progress of a processing job.

        Only applies while the job is processing and only upwards, so polled
        progress never goes backwards. Returns whether a row changed.
        """
        progress = max(0, min(100, int(progress)))
        async with transaction(self._session_factory) as db:
            result = await db.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.job_id == job_id,
                    GenerationJob.status == JobState.processing.value,
                    GenerationJob.progress < progress,
                )
                .values(progress=progress, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def find_stale(
        self, status: JobState, older_than: datetime
    ) -> list[GenerationJob]:
        """Jobs sitting in ``status`` whose last update is before ``older_than``"""
        async with self._session_factory() as session:
            result = await session.execute(
                select(GenerationJob).where(
                    GenerationJob.status == JobState(status).value,
                    GenerationJob.updated_at < older_than,
                )
            )
            return list(result.scalars().all())

    async def touch_if_stale(
        self, job_id: str, status: JobState, older_than: datetime
    ) -> bool:
        """
        Bump ``updated_at`` if the job is still in ``status`` and stale.

        Returns whether this caller claimed the job; a second caller in the
        same window gets False.
        """
        async with transaction(self._session_factory) as db:
            result = await db.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.job_id == job_id,
                    GenerationJob.status == JobState(status).value,
                    GenerationJob.updated_at < older_than,
                )
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def count_by_status(self) -> dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(GenerationJob.status, func.count(GenerationJob.job_id)).group_by(
                    GenerationJob.status
                )
            )
            counts = {state.value: 0 for state in JobState}
            for status, count in result.all():
                counts[status] = count
            return counts


def is_terminal(status: str) -> bool:
    return JobState(status) in TERMINAL_STATES


# Singleton instance
job_store = JobStore()
