"""
Generation Router
AI panel generation jobs: create, poll, cancel
"""
from fastapi import APIRouter, Depends, Query

from comicstudio.core.dependencies import get_current_account_id
from comicstudio.core.exceptions import AuthorizationError
from comicstudio.models.db import GenerationJob
from comicstudio.models.dto import (
    CancelResponse,
    GenerationRequest,
    JobListResponse,
    JobResponse,
    JobState,
)
from comicstudio.services.jobs import job_manager

router = APIRouter()


def _ensure_owner(job: GenerationJob, account_id: str) -> None:
    if job.account_id != account_id:
        raise AuthorizationError()


@router.post("/generate", response_model=JobResponse, status_code=201)
async def create_generation_job(
    request: GenerationRequest,
    account_id: str = Depends(get_current_account_id),
):
    """
    Create a generation job

    - Credits are deducted up front (high quality costs more)
    - Returns immediately with a pending job; poll GET /jobs/{job_id}
    """
    job = await job_manager.create_job(
        account_id,
        request.job_type,
        request.input,
        subject_ref=request.panel_id,
    )
    return JobResponse.from_job(job)


@router.get("/jobs", response_model=JobListResponse)
async def list_generation_jobs(
    limit: int = Query(20, ge=1, le=100),
    account_id: str = Depends(get_current_account_id),
):
    """Caller's jobs, newest first"""
    jobs = await job_manager.list_jobs(account_id, limit=limit)
    return JobListResponse(jobs=[JobResponse.from_job(job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_status(
    job_id: str,
    account_id: str = Depends(get_current_account_id),
):
    """
    Job status

    - status: pending, processing, success, failed, cancelled
    - progress: 0-100
    - result when success, error when failed
    """
    job = await job_manager.get_status(job_id)
    _ensure_owner(job, account_id)
    return JobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    account_id: str = Depends(get_current_account_id),
):
    """
    Cancel a pending or processing job

    The cost is refunded only if this request cancelled the job; a job that
    already finished is left untouched.
    """
    job = await job_manager.get_status(job_id)
    _ensure_owner(job, account_id)

    cancelled = await job_manager.cancel(job_id)
    job = await job_manager.get_status(job_id)

    return CancelResponse(
        job_id=job.job_id,
        status=JobState(job.status),
        cancelled=cancelled,
        message="Job cancelled" if cancelled else "Job already finished",
    )
