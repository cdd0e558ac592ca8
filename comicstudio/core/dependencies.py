"""Common FastAPI dependencies."""
from typing import Optional

from fastapi import Header

from comicstudio.core.errors import UnauthenticatedError
from comicstudio.core.security import decode_access_token


def get_current_account_id(
    authorization: Optional[str] = Header(None, description="Bearer access token"),
) -> str:
    """
    Resolve the authenticated caller from the Authorization header.

    Raises:
        UnauthenticatedError: header missing, not a bearer token, or invalid
    """
    if not authorization:
        raise UnauthenticatedError()

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthenticatedError("Invalid Authorization header")

    return decode_access_token(token.strip())
