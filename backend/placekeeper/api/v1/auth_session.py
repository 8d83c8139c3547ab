# placekeeper/api/v1/auth_session.py
"""
Issuing and clearing the login session shared by login, register and
password reset.
"""
from typing import Optional

from fastapi import Request, Response

from placekeeper.config import settings
from placekeeper.core.audit import log_security_event
from placekeeper.core.security import create_access_token, token_expiry, token_lifetime
from placekeeper.core.sessions import rotate_session
from placekeeper.models.security_log import SecurityEventType
from placekeeper.models.user import User


def set_auth_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.auth_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


async def issue_session(
    user: User,
    response: Response,
    remember_me: bool = False,
    request: Optional[Request] = None,
) -> str:
    """
    Sign a token, make it the user's only session, and set the cookie.
    The cookie max-age matches the token lifetime (7 or 30 days).
    """
    expires_at = token_expiry(remember_me)
    token = create_access_token(user.id, expires_at)
    await rotate_session(user.id, token, expires_at)
    set_auth_cookie(response, token, int(token_lifetime(remember_me).total_seconds()))
    await log_security_event(
        SecurityEventType.SESSION_CREATED, request, user_id=user.id,
        metadata={"rememberMe": remember_me, "expiresAt": expires_at.isoformat()},
    )
    return token
