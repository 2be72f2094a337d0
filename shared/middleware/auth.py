"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
Admin routes are gated by the X-Admin-Key header; customers and workers
may present the JWT issued by OTP verification.
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from config.settings import settings
from shared.models.models import ProfileRole
from shared.utils.errors import ForbiddenError, ServiceError, UnauthorizedError
from shared.utils.security import constant_time_equals, verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.profile_id: UUID = UUID(payload["sub"])
        self.role: ProfileRole = ProfileRole(payload["role"])
        self.phone: str = payload["phone"]
        self.jti: str = payload["jti"]


class AdminKeyNotConfigured(ServiceError):
    status_code = 500
    code = "admin_key_not_configured"
    message = "Admin key is not configured on the server"


def is_admin_key(key: Optional[str]) -> bool:
    if not settings.ADMIN_KEY:
        raise AdminKeyNotConfigured()
    return bool(key) and constant_time_equals(key, settings.ADMIN_KEY)


async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """Gate for admin-only routes. Returns the actor label used in audit logs."""
    if not is_admin_key(x_admin_key):
        raise UnauthorizedError("Invalid or missing admin key")
    return "admin"


async def get_optional_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[TokenData]:
    """
    Returns token claims if a bearer token was sent, None otherwise.
    A token that is present but invalid is rejected rather than ignored.
    """
    if not credentials:
        return None
    try:
        return TokenData(verify_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise UnauthorizedError("Invalid or expired token")


async def get_admin_flag(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> bool:
    """True when a valid admin key accompanies an otherwise public request."""
    if not x_admin_key:
        return False
    return is_admin_key(x_admin_key)


def ensure_acting_for(token: Optional[TokenData], profile_id: UUID, is_admin: bool) -> None:
    """A bearer token may only act on its own profile unless the admin key is present."""
    if token is None or is_admin:
        return
    if token.profile_id != profile_id:
        raise ForbiddenError("Token does not belong to this customer")
