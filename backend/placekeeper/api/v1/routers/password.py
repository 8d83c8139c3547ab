# placekeeper/api/v1/routers/password.py
import datetime as dt
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from starlette.concurrency import run_in_threadpool

from placekeeper.api.v1.auth_session import clear_auth_cookie, issue_session
from placekeeper.api.v1.deps import get_current_user
from placekeeper.config import settings
from placekeeper.core.audit import count_recent_events, log_security_event
from placekeeper.core.errors import ApiError
from placekeeper.core.mailer import mailer
from placekeeper.core.rate_limit import RateLimitPresets, client_ip, rate_limit
from placekeeper.core.security import (
    as_aware,
    generate_one_time_token,
    hash_password,
    utc_now,
    verify_password,
)
from placekeeper.core.sessions import revoke_all_sessions
from placekeeper.models.security_log import SecurityEventType
from placekeeper.models.user import User
from placekeeper.schemas.auth import ChangePasswordIn, EmailIn, ResetPasswordIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["password"])

MAX_PASSWORD_CHANGES_PER_HOUR = 5
MAX_RESET_REQUESTS_PER_15_MIN = 2
MAX_RESET_REQUESTS_PER_HOUR = 3

GENERIC_RESET_MESSAGE = "If an account exists with that email, we've sent password reset instructions."


@router.post(
    "/change-password",
    dependencies=[Depends(rate_limit("change-password", RateLimitPresets.LENIENT))],
)
async def change_password(
    body: ChangePasswordIn,
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
):
    """
    Change the password of the signed-in user.

    Requires the current password. On success the lockout counters are
    cleared and every session (this one included) is revoked, so the user
    signs in again everywhere.

    Error codes:
        - INVALID_PASSWORD (401): current password wrong
        - RATE_LIMITED (429): more than 5 changes in an hour
    """
    recent = await count_recent_events(SecurityEventType.PASSWORD_CHANGE, user.email, 60, success=True)
    if recent >= MAX_PASSWORD_CHANGES_PER_HOUR:
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "rate_limited"})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "Too many password changes. Please wait 1 hour before trying again.", "RATE_LIMITED")

    if not await run_in_threadpool(verify_password, body.currentPassword, user.password_hash):
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "incorrect_current_password"})
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Current password is incorrect", "INVALID_PASSWORD")

    user.password_hash = await run_in_threadpool(hash_password, body.newPassword)
    user.failed_login_attempts = 0
    user.locked_until = None
    await user.save(update_fields=["password_hash", "failed_login_attempts", "locked_until"])

    revoked = await revoke_all_sessions(user.id)
    await log_security_event(SecurityEventType.SESSION_REVOKED, request, user_id=user.id,
                             metadata={"reason": "password_change", "count": revoked})
    clear_auth_cookie(response)

    await mailer.send_password_changed_email(user.email, user.username, client_ip(request))
    await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id,
                             metadata={"email": user.email})
    return {"success": True, "message": "Password changed successfully. Please log in again."}


@router.post(
    "/forgot-password",
    dependencies=[Depends(rate_limit("forgot-password", RateLimitPresets.STRICT))],
)
async def forgot_password(body: EmailIn, request: Request):
    """
    Mail a 15-minute reset link.

    Answers the same way whether or not the account exists. Per-email
    throttles: 2 requests per 15 minutes, 3 per hour.
    """
    email = body.email

    if await count_recent_events(SecurityEventType.PASSWORD_RESET_REQUEST, email, 15) >= MAX_RESET_REQUESTS_PER_15_MIN:
        await log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, request, success=False,
                                 metadata={"email": email, "reason": "rate_limited_15min"})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "Too many password reset requests. Please wait 15 minutes before trying again.",
                       "RATE_LIMITED")

    if await count_recent_events(SecurityEventType.PASSWORD_RESET_REQUEST, email, 60) >= MAX_RESET_REQUESTS_PER_HOUR:
        await log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, request, success=False,
                                 metadata={"email": email, "reason": "rate_limited_1hour"})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "Too many password reset requests. Please wait 1 hour before trying again.",
                       "RATE_LIMITED")

    user = await User.get_or_none(email=email)
    if user is None:
        await log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, request, success=False,
                                 metadata={"email": email, "reason": "user_not_found"})
    elif not user.is_active:
        await log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, request, user_id=user.id,
                                 success=False, metadata={"email": email, "reason": "account_inactive"})
    else:
        user.reset_token = generate_one_time_token()
        user.reset_token_expiry = utc_now() + dt.timedelta(minutes=settings.reset_token_minutes)
        await user.save(update_fields=["reset_token", "reset_token_expiry"])
        sent = await mailer.send_password_reset_email(user.email, user.username, user.reset_token)
        await log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, request, user_id=user.id,
                                 success=sent, metadata={"email": email})

    return {"success": True, "message": GENERIC_RESET_MESSAGE}


@router.post(
    "/reset-password",
    dependencies=[Depends(rate_limit("reset-password", RateLimitPresets.STRICT))],
)
async def reset_password(body: ResetPasswordIn, request: Request, response: Response):
    """
    Set a new password from a mailed reset token.

    All existing sessions are revoked and the lock is cleared. With
    autoLogin the user gets a fresh session straight away.

    Error codes (400): INVALID_TOKEN, TOKEN_EXPIRED
    """
    user = await User.get_or_none(reset_token=body.token)
    if user is None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid or expired reset token", "INVALID_TOKEN")

    expiry = as_aware(user.reset_token_expiry)
    if expiry is not None and expiry < utc_now():
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Reset token has expired", "TOKEN_EXPIRED")

    user.password_hash = await run_in_threadpool(hash_password, body.newPassword)
    user.reset_token = None
    user.reset_token_expiry = None
    user.failed_login_attempts = 0
    user.locked_until = None
    await user.save(update_fields=["password_hash", "reset_token", "reset_token_expiry",
                                   "failed_login_attempts", "locked_until"])

    revoked = await revoke_all_sessions(user.id)
    await log_security_event(SecurityEventType.SESSION_REVOKED, request, user_id=user.id,
                             metadata={"reason": "password_reset", "count": revoked})
    await log_security_event(SecurityEventType.PASSWORD_RESET_SUCCESS, request, user_id=user.id,
                             metadata={"email": user.email})
    await mailer.send_password_changed_email(user.email, user.username, client_ip(request))

    data = {}
    if body.autoLogin and user.is_active:
        data["accessToken"] = await issue_session(user, response, request=request)
    else:
        clear_auth_cookie(response)
    return {"success": True, "message": "Password reset successfully", "data": data}
