"""
Job Monitor Service: Stuck job detection and recovery

Background service that runs periodically to:
1. Fail jobs stuck in 'processing' past the timeout
2. Dispatch again jobs left 'pending' (e.g. lost on a restart)

Failing a job uses the same compare-and-set as the worker, so a worker that
finishes at the same moment either wins or has its outcome discarded. Timed
out jobs are not refunded, same as any other failure.
"""

import asyncio
from datetime import timedelta
from typing import Optional
import structlog

from comicstudio.core.config import settings
from comicstudio.core.errors import ErrorCode, StatusConflictError
from comicstudio.models.db import utcnow
from comicstudio.models.dto import JobState
from comicstudio.services.job_store import JobStore, job_store
from comicstudio.services.scheduler import JobScheduler, job_scheduler

logger = structlog.get_logger()


class JobMonitor:
    """Background service for job health monitoring"""

    def __init__(
        self,
        store: JobStore = job_store,
        scheduler: JobScheduler = job_scheduler,
    ):
        self.store = store
        self.scheduler = scheduler
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the monitor background task"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            "Job monitor started",
            interval_seconds=settings.job_monitor_interval_seconds,
        )

    async def stop(self):
        """Stop the monitor background task"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop"""
        while self._running:
            try:
                await self.check_and_recover_jobs()
            except Exception as e:
                logger.error("Job monitor error", error=str(e))

            await asyncio.sleep(settings.job_monitor_interval_seconds)

    async def check_and_recover_jobs(self) -> dict:
        """Check for stuck jobs and attempt recovery"""
        now = utcnow()
        stuck_threshold = now - timedelta(seconds=settings.job_stuck_timeout_seconds)
        pending_threshold = now - timedelta(seconds=settings.job_pending_timeout_seconds)

        stuck_jobs = await self.store.find_stale(JobState.processing, stuck_threshold)
        pending_jobs = await self.store.find_stale(JobState.pending, pending_threshold)

        failed = 0
        for job in stuck_jobs:
            if await self._mark_job_failed(job.job_id):
                failed += 1

        redispatched = 0
        for job in pending_jobs:
            # Claiming resets the pending timeout: one enqueue per window
            if not await self.store.touch_if_stale(
                job.job_id, JobState.pending, pending_threshold
            ):
                continue
            try:
                self.scheduler.dispatch(job.job_id)
            except Exception as e:
                logger.error("Stale pending job dispatch failed", job_id=job.job_id, error=str(e))
                continue
            redispatched += 1
            logger.info("Stale pending job dispatched again", job_id=job.job_id)

        if stuck_jobs or pending_jobs:
            logger.info(
                "Job monitor cycle complete",
                stuck_processing=len(stuck_jobs),
                failed=failed,
                redispatched=redispatched,
            )
        return {"failed": failed, "redispatched": redispatched}

    async def _mark_job_failed(self, job_id: str) -> bool:
        """Fail a stuck job unless another writer finished it first"""
        try:
            await self.store.update_status(
                job_id,
                JobState.processing,
                JobState.failed,
                {
                    "error": {
                        "code": ErrorCode.JOB_TIMEOUT.value,
                        "message": f"Job exceeded {settings.job_stuck_timeout_seconds}s",
                    },
                    "finished_at": utcnow(),
                },
            )
        except StatusConflictError as e:
            logger.info("Stuck job already finished", job_id=job_id, status=e.actual)
            return False

        logger.warning("Job marked as failed by monitor", job_id=job_id)
        return True


# Singleton instance
job_monitor = JobMonitor()


async def get_job_metrics() -> dict:
    """Get current job metrics for health check"""
    counts = await job_store.count_by_status()
    stuck_threshold = utcnow() - timedelta(seconds=settings.job_stuck_timeout_seconds)
    stuck = await job_store.find_stale(JobState.processing, stuck_threshold)

    return {
        **counts,
        "stuck": len(stuck),
        "in_flight": job_scheduler.pending,
    }
