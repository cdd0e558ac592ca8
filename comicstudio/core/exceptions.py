"""
Standardized exception handling for consistent API error responses.
"""

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from typing import Optional, Any
import structlog

from comicstudio.core.errors import ComicStudioError, ErrorCode

logger = structlog.get_logger()


class APIError(HTTPException):
    """Base API error with consistent structure."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Any] = None,
        headers: Optional[dict] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


class ValidationError(APIError):
    """Input validation error."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=400,
            error_code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class AuthorizationError(APIError):
    """Authorization/permission error."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            status_code=403,
            error_code="FORBIDDEN",
            message=message,
        )


class RateLimitError(APIError):
    """Rate limit exceeded error."""

    def __init__(self, retry_after: int):
        super().__init__(
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            details={"retry_after": retry_after},
        )


# Domain error code -> HTTP status
DOMAIN_STATUS_CODES = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_CREDITS: 402,
    ErrorCode.UNAUTHENTICATED: 401,
}


def api_error_response(error: APIError) -> JSONResponse:
    """Create standardized error response."""
    content = {
        "error": {
            "code": error.error_code,
            "message": error.message,
        }
    }
    if error.details:
        content["error"]["details"] = error.details

    return JSONResponse(
        status_code=error.status_code,
        content=content,
        headers=error.headers,
    )


async def api_exception_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle APIError exceptions."""
    logger.warning(
        "API error",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
    )
    return api_error_response(exc)


async def domain_exception_handler(
    request: Request, exc: ComicStudioError
) -> JSONResponse:
    """Translate domain errors raised by the services into API errors."""
    status_code = DOMAIN_STATUS_CODES.get(exc.code, 500)
    headers = None
    if exc.code == ErrorCode.UNAUTHENTICATED:
        headers = {"WWW-Authenticate": "Bearer"}

    return await api_exception_handler(
        request,
        APIError(
            status_code=status_code,
            error_code=exc.code.value,
            message=exc.message,
            details=exc.details or None,
            headers=headers,
        ),
    )
