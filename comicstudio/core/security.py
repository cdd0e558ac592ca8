"""Bearer token handling (HS256 JWT, subject = account id)."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog

from comicstudio.core.config import settings
from comicstudio.core.errors import UnauthenticatedError

logger = structlog.get_logger()


def create_access_token(account_id: str, expires_minutes: Optional[int] = None) -> str:
    """Issue a token for ``account_id``. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.jwt_expire_minutes)
    payload = {
        "sub": account_id,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> str:
    """
    Verify a token and return the account id it was issued for.

    Raises:
        UnauthenticatedError: expired, malformed or subject-less token
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        logger.warning("jwt_token_expired")
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("jwt_token_invalid", error=str(e))
        raise UnauthenticatedError("Invalid token")

    account_id = payload.get("sub")
    if not account_id:
        raise UnauthenticatedError("Invalid token")
    return account_id
