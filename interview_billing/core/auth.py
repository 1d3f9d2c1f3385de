"""
Auth dependencies for the billing API.

Validates Clerk JWTs and exposes the caller's user id and claims.
X-User-Id is trusted only when ALLOW_DEV_USER_HEADER is on (dev/tests).
"""
import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Request

from interview_billing.core.clerk_auth import verify_jwt_token
from interview_billing.core.config import settings
from interview_billing.core.errors import UnauthenticatedError

logger = logging.getLogger("interview_billing")

DEV_USER_HEADER = "X-User-Id"


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_current_claims(request: Request) -> Dict[str, Any]:
    """
    Resolve verified claims for the caller.

    Priority:
    1. Clerk JWT from the Authorization header
    2. X-User-Id header, only when ALLOW_DEV_USER_HEADER is enabled
    3. UnauthenticatedError
    """
    cached = getattr(request.state, "auth_claims", None)
    if cached is not None:
        return cached

    token = _bearer_token(request)
    if token:
        try:
            claims = verify_jwt_token(token)
        except jwt.ExpiredSignatureError:
            raise UnauthenticatedError("Token expired")
        except jwt.PyJWTError as exc:
            logger.debug("[auth] invalid token", extra={"error": str(exc)})
            raise UnauthenticatedError("Invalid token")
        if not claims.get("sub"):
            raise UnauthenticatedError("Token has no subject")
        request.state.auth_claims = claims
        return claims

    dev_user = request.headers.get(DEV_USER_HEADER)
    if dev_user and settings.ALLOW_DEV_USER_HEADER:
        claims = {"sub": dev_user.strip()}
        request.state.auth_claims = claims
        return claims

    raise UnauthenticatedError("Missing Authorization (Bearer JWT)")


def authenticated_user_id(claims: Dict[str, Any] = Depends(get_current_claims)) -> str:
    """External (Clerk) user id of the verified caller."""
    return claims["sub"]
