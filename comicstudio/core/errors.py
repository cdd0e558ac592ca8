from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Domain error codes"""

    NOT_FOUND = "NOT_FOUND"  # unknown job or account
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"  # debit would go negative
    UNAUTHENTICATED = "UNAUTHENTICATED"  # no resolved caller
    GENERATION_FAILED = "GENERATION_FAILED"  # generation backend failure
    JOB_INTERRUPTED = "JOB_INTERRUPTED"  # worker cancelled mid-flight
    JOB_TIMEOUT = "JOB_TIMEOUT"  # failed by the job monitor
    STATUS_CONFLICT = "STATUS_CONFLICT"  # lost a compare-and-set on status
    UNKNOWN = "UNKNOWN"


class ComicStudioError(Exception):
    """Base domain error"""

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        return f"[{self.code.value}] {self.message}"


class NotFoundError(ComicStudioError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} not found: {resource_id}",
            details={"resource": resource, "id": resource_id},
        )


class InsufficientCreditsError(ComicStudioError):
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            code=ErrorCode.INSUFFICIENT_CREDITS,
            message=f"Insufficient credits. Required: {required}, Available: {available}",
            details={"required": required, "available": available},
        )


class UnauthenticatedError(ComicStudioError):
    def __init__(self, message: str = "Authentication required"):
        super().__init__(code=ErrorCode.UNAUTHENTICATED, message=message)


class GenerationError(ComicStudioError):
    """Opaque failure reported by a generation backend"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.GENERATION_FAILED,
        details: Optional[dict] = None,
    ):
        super().__init__(code=code, message=message, details=details)

    def to_payload(self) -> dict:
        """Shape stored in the job's ``error`` column"""
        payload = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class StatusConflictError(ComicStudioError):
    """
    A compare-and-set on job status found a different stored status.

    Internal control flow only: the losing writer logs it and backs off.
    """

    def __init__(self, job_id: str, expected: str, actual: Optional[str] = None):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            code=ErrorCode.STATUS_CONFLICT,
            message=f"Job {job_id} is no longer {expected}",
            details={"job_id": job_id, "expected": expected, "actual": actual},
        )
