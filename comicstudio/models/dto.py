from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobState(str, Enum):
    pending = "pending"
    processing = "processing"
    success = "success"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATES = frozenset({JobState.success, JobState.failed, JobState.cancelled})


class JobType(str, Enum):
    panel_generation = "panel_generation"
    character_generation = "character_generation"
    batch_generation = "batch_generation"


class Quality(str, Enum):
    standard = "standard"
    high = "high"


# ==================== Input Models ====================

class GenerationRequest(BaseModel):
    """Body of POST /v1/ai/generate"""

    model_config = ConfigDict(extra="ignore")

    panel_id: Optional[str] = Field(default=None, max_length=36)
    job_type: JobType = JobType.panel_generation
    input: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def accept_direct_input(cls, data: Any) -> Any:
        """Without an `input` key, the remaining body fields are the input."""
        if isinstance(data, dict) and "input" not in data:
            return {
                "panel_id": data.get("panel_id"),
                "job_type": data.get("job_type", JobType.panel_generation),
                "input": {
                    key: value
                    for key, value in data.items()
                    if key not in ("panel_id", "job_type")
                },
            }
        return data


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int = Field(gt=0)


# ==================== Output Models ====================

class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    job_type: JobType
    status: JobState
    panel_id: Optional[str] = None
    estimated_credits: int
    estimated_duration_seconds: Optional[int] = None
    progress: int = Field(ge=0, le=100)
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            job_type=JobType(job.job_type),
            status=JobState(job.status),
            panel_id=job.subject_ref,
            estimated_credits=job.estimated_credits,
            estimated_duration_seconds=job.estimated_duration_seconds,
            progress=job.progress or 0,
            result=job.result,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class CancelResponse(BaseModel):
    job_id: str
    status: JobState
    cancelled: bool
    message: str


class BalanceResponse(BaseModel):
    credits_balance: int


class TransactionResponse(BaseModel):
    tx_id: str
    amount: int
    balance_after: int
    reason: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry) -> "TransactionResponse":
        return cls(
            tx_id=entry.tx_id,
            amount=entry.amount,
            balance_after=entry.balance_after,
            reason=entry.reason,
            metadata=entry.meta,
            created_at=entry.created_at,
        )


class PurchaseResponse(BaseModel):
    new_balance: int
    amount_purchased: int


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
