"""
Authentication dependencies for FastAPI endpoints.

User endpoints verify a Supabase JWT via auth.get_user(); the reminder job is
protected by a shared cron secret sent as a Bearer token. Admin endpoints
additionally require the caller's email to be listed in ADMIN_EMAILS.
"""

import hmac
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from entitlements.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        structlog.contextvars.bind_contextvars(user_id=str(user.id))
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """
    Guard for cron-triggered endpoints.

    Without CRON_SECRET configured every caller is accepted (local runs);
    otherwise the header must be exactly `Bearer <CRON_SECRET>`.
    """
    cron_secret = get_settings().cron_secret
    if not cron_secret:
        logger.warning("cron_secret_not_configured")
        return

    expected = f"Bearer {cron_secret}".encode()
    if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_admin(user: CurrentUser) -> AuthenticatedUser:
    """
    Guard for admin endpoints: the caller's email must be listed in ADMIN_EMAILS.

    Raises:
        HTTPException 401: Caller is not an admin.
    """
    email = (user.email or "").strip().lower()
    if not email or email not in get_settings().admin_email_set:
        logger.warning("admin_access_denied", user_id=user.id)
        raise HTTPException(status_code=401, detail="Unauthorized: Admin access required")
    return user


AdminUser = Annotated[AuthenticatedUser, Depends(require_admin)]
