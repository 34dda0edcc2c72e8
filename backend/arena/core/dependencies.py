"""
Request dependencies supplied by the transport layer.

Session establishment happens upstream; by the time a request reaches this
service the caller's identity travels in the X-User-Id header and is passed
explicitly into every core operation.
"""

import hmac
from uuid import UUID

from fastapi import Header

from arena.core.config import settings
from arena.core.errors import ForbiddenError, UnauthorizedError


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> UUID:
    if not x_user_id:
        raise UnauthorizedError()
    try:
        return UUID(x_user_id)
    except ValueError:
        raise UnauthorizedError("Invalid user identity")


async def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Admin routes are closed unless ADMIN_API_TOKEN is configured and matches."""
    expected = settings.ADMIN_API_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise ForbiddenError("Admin access required")
