"""Staff JWT utilities.

Staff sessions are issued by the storefront's auth backend. Tokens carry the
staff user id in ``sub`` and the granted roles in ``roles``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt

from mailroom.lib.settings import settings


TOKEN_EXPIRY_HOURS = 12

STAFF_ROLES = ("super_admin", "admin", "marketing", "support")


@dataclass(frozen=True)
class StaffSession:
    """Verified staff identity."""

    user_id: str
    roles: tuple[str, ...] = field(default_factory=tuple)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return bool(set(self.roles) & set(roles))


def create_staff_token(
    user_id: str,
    roles: Iterable[str],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a staff access token.

    Args:
        user_id: Staff user id (stored in 'sub' claim)
        roles: Granted staff roles
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=TOKEN_EXPIRY_HOURS)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "roles": list(roles),
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Raises:
        jwt.InvalidTokenError: If token is invalid, expired, or signature doesn't match
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )


def get_staff_session(token: str) -> StaffSession:
    """Verify a token and build the staff session from its claims.

    Raises:
        jwt.InvalidTokenError: If the token is invalid or carries no subject
    """
    payload = verify_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("Token has no subject")
    roles = tuple(r for r in payload.get("roles", []) if r in STAFF_ROLES)
    return StaffSession(user_id=str(user_id), roles=roles)
