# placekeeper/api/v1/deps.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, Request, status

from placekeeper.config import settings
from placekeeper.core.errors import ApiError
from placekeeper.core.security import decode_access_token
from placekeeper.core.sessions import is_session_live
from placekeeper.models.user import User

logger = logging.getLogger(__name__)


class AuthOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"          # no token, bad signature, expired, unknown user
    SESSION_REVOKED = "session_revoked"          # token verifies but its session row is gone/expired
    ACCOUNT_DEACTIVATED = "account_deactivated"  # token and session fine, user.is_active is False


@dataclass(frozen=True)
class AuthResult:
    outcome: AuthOutcome
    user: Optional[User] = None
    token: Optional[str] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is AuthOutcome.AUTHENTICATED


def extract_token(request: Request) -> Optional[str]:
    """
    Bearer token from either:
    1. Authorization header (Bearer token) - preferred
    2. HttpOnly auth cookie - fallback for browsers

    Returns:
        The raw token, or None when the request carries neither
    """
    authorization = request.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    return request.cookies.get(settings.auth_cookie_name) or None


async def authorize(request: Request) -> AuthResult:
    """
    Decide whether a request is authenticated.

    Both checks must pass: the token signature/expiry, and a live session
    row holding this exact token. The user is then reloaded from the
    database; claims inside the token are never trusted as current.
    """
    token = extract_token(request)
    if not token:
        return AuthResult(AuthOutcome.UNAUTHENTICATED, reason="no token")

    claims = decode_access_token(token)
    if claims is None:
        return AuthResult(AuthOutcome.UNAUTHENTICATED, token=token, reason="invalid or expired token")

    if not await is_session_live(token):
        return AuthResult(AuthOutcome.SESSION_REVOKED, token=token, reason="no live session for token")

    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        return AuthResult(AuthOutcome.UNAUTHENTICATED, token=token, reason="malformed subject")

    user = await User.get_or_none(id=user_id)
    if user is None:
        return AuthResult(AuthOutcome.UNAUTHENTICATED, token=token, reason=f"user {user_id} not found")
    if not user.is_active:
        return AuthResult(AuthOutcome.ACCOUNT_DEACTIVATED, user=user, token=token,
                          reason=f"user {user_id} deactivated")

    return AuthResult(AuthOutcome.AUTHENTICATED, user=user, token=token)


async def get_current_user(request: Request) -> User:
    """
    FastAPI dependency for protected routes.

    Every rejection is the same 401 UNAUTHORIZED body, so a client cannot
    tell a bad token from a revoked session or a deactivated account; the
    specific reason is logged server-side.

    Usage:
        @router.get("/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            ...
    """
    result = await authorize(request)
    if not result.ok:
        logger.info("auth rejected on %s: %s (%s)", request.url.path, result.outcome.value, result.reason)
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Unauthorized", "UNAUTHORIZED")
    request.state.user = result.user
    request.state.token = result.token
    return result.user


async def require_admin(current: User = Depends(get_current_user)) -> User:
    """
    FastAPI dependency for admin-only routes: get_current_user plus the
    live is_admin flag.
    """
    if not current.is_admin:
        logger.info("admin access denied for user=%s", current.id)
        raise ApiError(status.HTTP_403_FORBIDDEN, "Admin access required", "FORBIDDEN")
    return current
