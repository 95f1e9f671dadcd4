"""
Session auth for accessgate.

Validates session JWTs and extracts the account_id from the `sub` claim.
Falls back to the X-User-Id header outside production (tests, local tools).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from accessgate.core.config import settings
from accessgate.core.errors import AuthenticationError

logger = logging.getLogger("accessgate")


def verify_session_jwt(token: str) -> str:
    """
    Verify a session JWT and return its subject.

    Raises:
        AuthenticationError: token invalid, expired, or signed with another key
    """
    if not settings.SESSION_JWT_SECRET:
        raise AuthenticationError("Session authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid session token: {e}")
        raise AuthenticationError("Invalid session")

    account_id = payload.get("sub")
    if not account_id:
        raise AuthenticationError("Invalid session")
    return account_id


def _header_fallback_allowed() -> bool:
    return (settings.ENV or "development").lower() != "production"


async def get_current_account_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: caller account id"),
) -> str:
    """
    Resolve the calling account.

    Priority:
    1. Session JWT from the Authorization header
    2. X-User-Id header (non-production only)
    3. AuthenticationError (401)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        account_id = verify_session_jwt(auth_header[7:].strip())
        request.state.account_id = account_id
        return account_id

    if x_user_id and _header_fallback_allowed():
        request.state.account_id = x_user_id
        return x_user_id

    raise AuthenticationError("Missing Authorization (Bearer session token)")
