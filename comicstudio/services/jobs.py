"""
Job Manager
Entry point for generation jobs: pricing, credit debit, job creation,
dispatch, status lookup and cancellation.

Holds no state of its own; the ledger owns balances and the job store owns
job rows.
"""

from typing import Any, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from comicstudio.core.config import settings
from comicstudio.core.database import AsyncSessionLocal, transaction
from comicstudio.core.errors import StatusConflictError
from comicstudio.models.db import GenerationJob, new_id, utcnow
from comicstudio.models.dto import JobState, JobType, Quality
from comicstudio.services.job_store import JobStore, is_terminal, job_store
from comicstudio.services.ledger import CreditLedger, REASON_JOB_CANCELLED, credit_ledger
from comicstudio.services.scheduler import JobScheduler, job_scheduler

logger = structlog.get_logger()


def estimate_credits(job_input: dict[str, Any]) -> int:
    """
    Credit cost of a job.

    ``style.quality == "high"`` costs ``high_quality_cost``; everything else
    costs ``panel_generation_cost``. The quality flag comes from the caller.
    """
    style = job_input.get("style")
    quality = style.get("quality") if isinstance(style, dict) else None
    if quality == Quality.high.value:
        return settings.high_quality_cost
    return settings.panel_generation_cost


class JobManager:
    def __init__(
        self,
        ledger: CreditLedger = credit_ledger,
        store: JobStore = job_store,
        scheduler: JobScheduler = job_scheduler,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ):
        self.ledger = ledger
        self.store = store
        self.scheduler = scheduler
        self._session_factory = session_factory

    async def create_job(
        self,
        account_id: str,
        job_type: Union[JobType, str],
        job_input: Optional[dict[str, Any]] = None,
        subject_ref: Optional[str] = None,
    ) -> GenerationJob:
        """
        Debit the job's cost, store it as pending and dispatch it.

        Debit and insert share one transaction: when the debit fails no job
        row exists. Returns the pending snapshot without waiting for the work,
        also when dispatching fails (the job monitor picks the job up later).

        Raises:
            InsufficientCreditsError: balance below the estimated cost
            NotFoundError: unknown account
        """
        job_type = JobType(job_type)
        job_input = dict(job_input or {})
        cost = estimate_credits(job_input)

        job = GenerationJob(
            job_id=new_id(),
            account_id=account_id,
            subject_ref=subject_ref,
            job_type=job_type.value,
            status=JobState.pending.value,
            input=job_input,
            estimated_credits=cost,
            estimated_duration_seconds=settings.estimated_duration_seconds,
            progress=0,
            created_at=utcnow(),
        )

        async with transaction(self._session_factory) as session:
            await self.ledger.debit(
                account_id,
                cost,
                job_type.value,
                metadata={"job_id": job.job_id},
                session=session,
            )
            await self.store.insert(job, session=session)

        logger.info(
            "Generation job created",
            job_id=job.job_id,
            account_id=account_id,
            job_type=job_type.value,
            credits=cost,
        )

        # Credits are already taken; the job monitor dispatches stale pending jobs
        try:
            self.scheduler.dispatch(job.job_id)
        except Exception as e:
            logger.error(
                "Job dispatch failed, left for monitor",
                job_id=job.job_id,
                error=str(e),
            )
        return job

    async def get_status(self, job_id: str) -> GenerationJob:
        """Read-only snapshot. Raises NotFoundError."""
        return await self.store.get(job_id)

    async def list_jobs(self, account_id: str, limit: int = 20) -> list[GenerationJob]:
        return await self.store.list_for_account(account_id, limit=limit)

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job and refund its cost.

        The status change and the refund commit together, and only when the
        compare-and-set against the currently stored status wins. Returns
        False when the job had already reached a terminal state.

        Raises:
            NotFoundError: unknown job
        """
        while True:
            job = await self.store.get(job_id)
            if is_terminal(job.status):
                logger.info("Cancel ignored, job already finished", job_id=job_id, status=job.status)
                return False

            try:
                async with transaction(self._session_factory) as session:
                    await self.store.update_status(
                        job_id,
                        JobState(job.status),
                        JobState.cancelled,
                        {"finished_at": utcnow()},
                        session=session,
                    )
                    if job.estimated_credits > 0:
                        await self.ledger.credit(
                            job.account_id,
                            job.estimated_credits,
                            REASON_JOB_CANCELLED,
                            metadata={"job_id": job_id},
                            session=session,
                        )
            except StatusConflictError as e:
                # The worker moved the job on; retry against the new status
                logger.info(
                    "Cancel lost status race",
                    job_id=job_id,
                    expected=e.expected,
                    actual=e.actual,
                )
                continue

            logger.info(
                "Job cancelled",
                job_id=job_id,
                account_id=job.account_id,
                refunded=job.estimated_credits,
            )
            return True


# Singleton instance
job_manager = JobManager()
