from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import structlog

from comicstudio.core.config import settings
from comicstudio.core.errors import ComicStudioError
from comicstudio.core.exceptions import (
    APIError,
    api_exception_handler,
    domain_exception_handler,
)
from comicstudio.core.logging import configure_logging
from comicstudio.core.rate_limit import check_rate_limit, rate_limiter
from comicstudio.routers import credits, generation
from comicstudio.services.scheduler import job_scheduler


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers (and rate limit counters when known) to responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        remaining = getattr(request.state, "rate_limit_remaining", None)
        if remaining is not None:
            response.headers["X-RateLimit-Limit"] = str(request.state.rate_limit_limit)
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        if "server" in response.headers:
            del response.headers["server"]
        return response


configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Comic Studio API", version=settings.app_version)

    from comicstudio.services.job_monitor import job_monitor

    monitor_enabled = settings.job_monitor_enabled and not settings.testing
    if monitor_enabled:
        await job_monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down Comic Studio API")

    if monitor_enabled:
        await job_monitor.stop()

    await job_scheduler.shutdown()
    await rate_limiter.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
# Comic Studio API

Backend for collaborative comic authoring.

## AI generation

* **Create a job**: `POST /v1/ai/generate` deducts credits and returns a pending job
* **Poll**: `GET /v1/ai/jobs/{job_id}` until the status is success, failed or cancelled
* **Cancel**: `POST /v1/ai/jobs/{job_id}/cancel` refunds the job's credits if it was still running

## Authentication

All `/v1` endpoints require an `Authorization: Bearer <token>` header.

## Credits

A standard panel costs 1 credit, a high quality panel 2.
Failed generations are not refunded.
    """,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "AI Generation",
            "description": "AI-powered panel generation",
        },
        {
            "name": "Credits",
            "description": "Credit management",
        },
    ],
)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# CORS - Configurable via CORS_ORIGINS env var
cors_origins = (
    ["*"]
    if settings.cors_origins == "*"
    else [origin.strip() for origin in settings.cors_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


app.add_exception_handler(APIError, api_exception_handler)
app.add_exception_handler(ComicStudioError, domain_exception_handler)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.debug else "Something went wrong",
            }
        },
    )


# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/health/detailed")
async def detailed_health_check():
    """Detailed health check with job metrics"""
    from comicstudio.services.job_monitor import get_job_metrics

    try:
        job_metrics = await get_job_metrics()
    except Exception as e:
        logger.error("Failed to get job metrics", error=str(e))
        job_metrics = {"error": str(e)}

    return {
        "status": "healthy",
        "version": settings.app_version,
        "jobs": job_metrics,
        "services": {
            "generation_provider": settings.generation_provider,
            "dispatch": "celery" if settings.use_celery else "asyncio",
        },
        "config": {
            "panel_generation_cost": settings.panel_generation_cost,
            "high_quality_cost": settings.high_quality_cost,
            "max_concurrent_jobs": settings.max_concurrent_jobs,
            "job_stuck_timeout_seconds": settings.job_stuck_timeout_seconds,
        },
    }


# Include routers with rate limiting
app.include_router(
    generation.router,
    prefix="/v1/ai",
    tags=["AI Generation"],
    dependencies=[Depends(check_rate_limit)],
)
app.include_router(
    credits.router,
    prefix="/v1/credits",
    tags=["Credits"],
    dependencies=[Depends(check_rate_limit)],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("comicstudio.main:app", host="0.0.0.0", port=8000, reload=True)
