"""
Auth utilities for the subscriptions API.

Validates bearer JWTs and extracts the account id from the `sub` claim.
Outside production an X-Account-Id header is accepted instead (local tooling
and tests). Admin routes require X-Admin-Key.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from quikpik.core.config import settings

logger = logging.getLogger("quikpik.auth")


@dataclass(frozen=True)
class Principal:
    account_id: str
    email: Optional[str] = None


def verify_jwt(token: str) -> Principal:
    """
    Verify an HS256 JWT and extract the account.

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        raise HTTPException(status_code=401, detail="Token authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    account_id = payload.get("sub")
    if not account_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Principal(account_id=str(account_id), email=payload.get("email"))


async def get_current_account(
    request: Request,
    x_account_id: Optional[str] = Header(None, description="Account id (non-production only)"),
) -> Principal:
    """
    Resolve the calling account.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-Account-Id header, outside production
    3. 401
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:])

    if x_account_id and not settings.IS_PRODUCTION:
        return Principal(account_id=x_account_id)

    raise HTTPException(status_code=401, detail="Missing Authorization (Bearer JWT)")


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    if not settings.ADMIN_KEY:
        raise HTTPException(status_code=503, detail="Admin access is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_KEY):
        raise HTTPException(status_code=401, detail="Invalid admin key")
