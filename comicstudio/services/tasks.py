"""
Celery tasks for generation jobs (used when settings.use_celery is on)
"""
import asyncio
from celery import shared_task
import structlog


logger = structlog.get_logger()


def run_async(coro):
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _run_job(job_id: str):
    from comicstudio.core.database import async_engine
    from comicstudio.services.job_worker import GenerationWorker

    try:
        return await GenerationWorker().run(job_id)
    finally:
        # Pooled connections belong to this task's event loop
        await async_engine.dispose()


@shared_task(bind=True, max_retries=0)
def run_generation_job_task(self, job_id: str):
    """
    Celery task running one generation job.

    The worker records failures on the job itself, so the task only fails on
    infrastructure errors.

    Args:
        job_id: Job ID
    """
    logger.info("Starting generation task", job_id=job_id)

    state = run_async(_run_job(job_id))

    logger.info("Generation task finished", job_id=job_id, status=state.value if state else None)
    return {"job_id": job_id, "status": state.value if state else None}
