"""
API dependencies for FastAPI dependency injection.

Provides database sessions, staff authentication and the shared-secret
checks used by the cron and webhook endpoints.
"""
import hmac
from typing import Callable, Optional

import jwt
from fastapi import Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from mailroom.lib.db import get_db as get_db_session
from mailroom.lib.errors import ForbiddenException, UnauthorizedException
from mailroom.lib.jwt import StaffSession, get_staff_session
from mailroom.lib.logging import get_logger
from mailroom.lib.settings import settings
from mailroom.services.email_transport import EmailTransport, get_email_transport


logger = get_logger(__name__)

# Re-export get_db for convenience
get_db = get_db_session

# Roles allowed to change campaigns; reads are open to every staff role
CAMPAIGN_MANAGER_ROLES = ("super_admin", "admin", "marketing")

# Missing credentials are reported through UnauthorizedException, not HTTPBearer's own error
security = HTTPBearer(auto_error=False)


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def get_current_staff(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> StaffSession:
    """
    Dependency to get the authenticated staff member from the bearer JWT.

    Raises:
        UnauthorizedException: 401 if the token is missing or invalid
        ForbiddenException: 403 if the token carries no staff role
    """
    if credentials is None:
        raise UnauthorizedException("Missing bearer token")

    try:
        session = get_staff_session(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise UnauthorizedException(f"Could not validate credentials: {e}")

    if not session.roles:
        raise ForbiddenException("Staff access required")
    return session


def require_staff(*roles: str) -> Callable[..., StaffSession]:
    """
    Build a dependency that requires one of ``roles`` (any staff role when empty).

    Usage:
        @router.post("")
        def create(staff: StaffSession = Depends(require_staff("admin", "marketing"))):
            ...
    """

    async def dependency(staff: StaffSession = Depends(get_current_staff)) -> StaffSession:
        if roles and not staff.has_any_role(roles):
            logger.warning(
                "Staff role check failed",
                extra={"user_id": staff.user_id, "roles": list(staff.roles), "required": list(roles)},
            )
            raise ForbiddenException(f"Requires one of the roles: {', '.join(roles)}")
        return staff

    return dependency


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Cron calls carry ``Authorization: Bearer <CRON_SECRET>``."""
    provided = credentials.credentials if credentials else None
    if not _secret_matches(provided, settings.cron_secret):
        raise UnauthorizedException("Invalid cron secret")


async def verify_webhook_secret(
    secret: Optional[str] = Query(None, description="Shared webhook secret"),
) -> None:
    """The provider webhook URL is configured with ``?secret=<WEBHOOK_SECRET>``."""
    if not settings.webhook_secret:
        logger.error("Webhook secret is not configured, rejecting delivery event")
        raise UnauthorizedException("Webhook not configured")
    if not _secret_matches(secret, settings.webhook_secret):
        raise UnauthorizedException("Invalid webhook secret")


def get_transport() -> EmailTransport:
    """Configured email transport (overridden in tests)."""
    return get_email_transport()
