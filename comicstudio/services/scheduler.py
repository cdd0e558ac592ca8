"""
Job Scheduler: fire-and-forget dispatch of generation jobs

Each dispatched job runs GenerationWorker.run on its own asyncio task (or a
Celery task when ``settings.use_celery`` is set). ``dispatch`` never waits on
the work itself.
"""

import asyncio
from typing import Optional

import structlog

from comicstudio.core.config import settings
from comicstudio.services.job_worker import GenerationWorker

logger = structlog.get_logger()


class JobScheduler:
    def __init__(
        self,
        worker: Optional[GenerationWorker] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.worker = worker or GenerationWorker()
        self.max_concurrent = max_concurrent or settings.max_concurrent_jobs
        self._tasks: dict[str, asyncio.Task] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def pending(self) -> int:
        """Dispatched jobs whose task has not finished"""
        return len(self._tasks)

    def dispatch(self, job_id: str) -> Optional[asyncio.Task]:
        """
        Schedule ``job_id`` and return immediately.

        A job already running in this process is not scheduled twice.
        """
        if settings.use_celery:
            from comicstudio.services.tasks import run_generation_job_task

            run_generation_job_task.delay(job_id)
            logger.info("Job enqueued", job_id=job_id, backend="celery")
            return None

        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._run(job_id), name=f"generation-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(_forget_on_done(self._tasks, job_id))
        logger.info("Job dispatched", job_id=job_id)
        return task

    async def join(self) -> None:
        """Wait until every dispatched task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight tasks (the worker records them as interrupted)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Job scheduler stopped", cancelled=len(tasks))

    async def _run(self, job_id: str) -> None:
        async with self._get_semaphore():
            await self.worker.run(job_id)

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._loop = loop
        return self._semaphore


def _forget_on_done(tasks: dict, job_id: str):
    """Done-callback: forget the task and log crashes."""

    def _done(task: asyncio.Task) -> None:
        if tasks.get(job_id) is task:
            del tasks[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Generation task crashed", job_id=job_id, error=str(exc))

    return _done


# Singleton instance
job_scheduler = JobScheduler()
