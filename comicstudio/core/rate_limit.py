"""Rate limiting using Redis sliding window."""

from fastapi import Request
from datetime import datetime, timezone
import redis.asyncio as redis
from typing import Optional
import structlog

from comicstudio.core.config import settings
from comicstudio.core.errors import UnauthenticatedError
from comicstudio.core.exceptions import RateLimitError
from comicstudio.core.security import decode_access_token


def _window_now() -> float:
    """Epoch seconds used as sorted-set scores (not a stored timestamp)."""
    return datetime.now(timezone.utc).timestamp()


logger = structlog.get_logger()


class RateLimiter:
    """Redis-based sliding window rate limiter."""

    def __init__(self):
        self._redis: Optional[redis.Redis] = None

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url)
        return self._redis

    async def is_allowed(self, account_id: str) -> tuple[bool, int]:
        """
        Check if request is allowed for account.

        Returns:
            tuple: (is_allowed, remaining_requests)
        """
        r = await self.get_redis()
        now = _window_now()
        window_start = now - settings.rate_limit_window

        key = f"rate_limit:{account_id}"

        pipe = r.pipeline()
        # Remove old entries
        pipe.zremrangebyscore(key, 0, window_start)
        # Add current request
        pipe.zadd(key, {str(now): now})
        # Count requests in window
        pipe.zcard(key)
        # Set expiry
        pipe.expire(key, settings.rate_limit_window + 1)

        results = await pipe.execute()
        request_count = results[2]

        remaining = max(0, settings.rate_limit_requests - request_count)
        is_allowed = request_count <= settings.rate_limit_requests

        return is_allowed, remaining

    async def close(self):
        if self._redis:
            await self._redis.close()


rate_limiter = RateLimiter()


async def check_rate_limit(request: Request):
    """FastAPI dependency for rate limiting."""
    if not settings.rate_limit_enabled:
        return

    authorization = request.headers.get("Authorization", "")
    _, _, token = authorization.partition(" ")
    try:
        account_id = decode_access_token(token.strip())
    except UnauthenticatedError:
        # Let the endpoint handle missing/invalid credentials
        return

    try:
        is_allowed, remaining = await rate_limiter.is_allowed(account_id)
    except redis.RedisError as e:
        # Fail open when Redis is unavailable
        logger.warning(
            "Rate limiter Redis error - allowing request (fail-open)",
            account_id=account_id,
            error=str(e),
        )
        return

    request.state.rate_limit_remaining = remaining
    request.state.rate_limit_limit = settings.rate_limit_requests

    if not is_allowed:
        raise RateLimitError(retry_after=settings.rate_limit_window)
