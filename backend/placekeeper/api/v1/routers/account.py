# placekeeper/api/v1/routers/account.py
import datetime as dt
import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool
from tortoise.exceptions import IntegrityError

from placekeeper.api.v1.auth_session import clear_auth_cookie
from placekeeper.api.v1.deps import get_current_user
from placekeeper.config import settings
from placekeeper.core.audit import get_user_security_logs, log_security_event, user_agent
from placekeeper.core.errors import ApiError
from placekeeper.core.mailer import mailer
from placekeeper.core.rate_limit import RateLimitPresets, client_ip, rate_limit
from placekeeper.core.security import as_aware, generate_one_time_token, utc_now, verify_password
from placekeeper.core.sessions import count_sessions, revoke_all_sessions
from placekeeper.models.email_change import EmailChangeRequest
from placekeeper.models.security_log import SecurityEventType
from placekeeper.models.user import User
from placekeeper.models.username_change import UsernameChange
from placekeeper.schemas.auth import (
    ChangeEmailCancelIn,
    ChangeEmailRequestIn,
    ChangeEmailVerifyIn,
    ChangeUsernameIn,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["account"],
    dependencies=[Depends(rate_limit("account", RateLimitPresets.LENIENT))],
)

MAX_EMAIL_CHANGES_PER_DAY = 1
MAX_EMAIL_CHANGES_PER_YEAR = 5
MAX_USERNAME_CHANGES_PER_MONTH = 1   # per 30 days
MAX_USERNAME_CHANGES_PER_YEAR = 3

RESERVED_USERNAMES = frozenset({
    "admin", "api", "app", "auth", "blog", "help", "login", "logout", "map", "profile",
    "register", "settings", "teams", "verify-email", "reset-password", "forgot-password",
    "share", "support", "contact", "about", "privacy", "terms", "legal", "security", "status",
})


# ------------------------------------------------------------------------------
# Email change: request (signed in) -> verify (link to new address)
#                                   -> cancel (link to old address)
# ------------------------------------------------------------------------------
@router.post("/change-email/request")
async def request_email_change(
    body: ChangeEmailRequestIn,
    request: Request,
    user: User = Depends(get_current_user),
):
    """
    Start an email change. Needs the current password; limited to one
    request per day and five completed changes per year. Any pending
    request is cancelled by the new one.
    """
    if body.newEmail == user.email:
        raise ApiError(status.HTTP_400_BAD_REQUEST,
                       "New email address is the same as your current email", "SAME_EMAIL")

    if await User.filter(email=body.newEmail).exists():
        raise ApiError(status.HTTP_409_CONFLICT,
                       "This email address is already registered to another account", "EMAIL_ALREADY_EXISTS")

    if not await run_in_threadpool(verify_password, body.currentPassword, user.password_hash):
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "incorrect_password_for_email_change"})
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Current password is incorrect", "INVALID_PASSWORD")

    now = utc_now()
    daily = await EmailChangeRequest.filter(user_id=user.id, created_at__gte=now - dt.timedelta(days=1)).count()
    if daily >= MAX_EMAIL_CHANGES_PER_DAY:
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "email_change_rate_limited_daily"})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "You can only change your email once per 24 hours. Please try again tomorrow.",
                       "RATE_LIMITED_DAILY")

    yearly = await EmailChangeRequest.filter(
        user_id=user.id, created_at__gte=now - dt.timedelta(days=365), completed_at__isnull=False
    ).count()
    if yearly >= MAX_EMAIL_CHANGES_PER_YEAR:
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "email_change_rate_limited_yearly", "yearlyCount": yearly})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "You have reached the maximum of 5 email changes per year. "
                       "Please contact support if you need assistance.",
                       "RATE_LIMITED_YEARLY")

    await EmailChangeRequest.filter(
        user_id=user.id, completed_at__isnull=True, cancelled_at__isnull=True
    ).update(cancelled_at=now)

    change = await EmailChangeRequest.create(
        user_id=user.id,
        old_email=user.email,
        new_email=body.newEmail,
        token=generate_one_time_token(),
        cancel_token=generate_one_time_token(),
        expires_at=now + dt.timedelta(minutes=settings.email_change_token_minutes),
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )

    await mailer.send_email_change_verification(change.new_email, user.username, change.token)
    await mailer.send_email_change_alert(user.email, user.username, change.new_email,
                                         change.cancel_token, change.ip_address)
    await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id,
                             metadata={"action": "email_change_requested", "oldEmail": user.email,
                                       "newEmail": change.new_email, "yearlyCount": yearly + 1})
    return {"success": True,
            "message": "Verification email sent. Please check your new email address to confirm the change."}


@router.post("/change-email/verify")
async def verify_email_change(body: ChangeEmailVerifyIn, request: Request, response: Response):
    """
    Complete an email change from the link sent to the new address.
    Every session of the user is revoked afterwards.
    """
    change = await EmailChangeRequest.get_or_none(token=body.token)
    if change is None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid verification token", "INVALID_TOKEN")
    if change.completed_at is not None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Email change already completed", "ALREADY_COMPLETED")
    if change.cancelled_at is not None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Email change was cancelled", "CANCELLED")
    if utc_now() > as_aware(change.expires_at):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Verification link has expired", "TOKEN_EXPIRED")
    if await User.filter(email=change.new_email).exclude(id=change.user_id).exists():
        raise ApiError(status.HTTP_409_CONFLICT,
                       "This email address is already registered to another account", "EMAIL_ALREADY_EXISTS")

    user = await User.get(id=change.user_id)
    user.email = change.new_email
    await user.save(update_fields=["email"])
    change.completed_at = utc_now()
    await change.save(update_fields=["completed_at"])

    revoked = await revoke_all_sessions(user.id)
    await log_security_event(SecurityEventType.SESSION_REVOKED, request, user_id=user.id,
                             metadata={"reason": "email_change", "count": revoked})
    clear_auth_cookie(response)

    await mailer.send_email_change_confirmation(change.new_email, user.username)
    await mailer.send_email_change_confirmation(change.old_email, user.username)
    await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id,
                             metadata={"action": "email_change_completed", "oldEmail": change.old_email,
                                       "newEmail": change.new_email})
    return {"success": True, "message": "Email changed successfully. Please log in with your new email."}


@router.post("/change-email/cancel")
async def cancel_email_change(body: ChangeEmailCancelIn, request: Request):
    """Abort a pending email change from the link sent to the old address."""
    change = await EmailChangeRequest.get_or_none(cancel_token=body.cancelToken)
    if change is None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid cancel token", "INVALID_TOKEN")
    if change.completed_at is not None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Email change already completed", "ALREADY_COMPLETED")
    if change.cancelled_at is not None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Email change already cancelled", "ALREADY_CANCELLED")

    change.cancelled_at = utc_now()
    await change.save(update_fields=["cancelled_at"])
    await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=change.user_id,
                             metadata={"action": "email_change_cancelled", "oldEmail": change.old_email,
                                       "newEmail": change.new_email})
    return {"success": True, "message": "Email change cancelled successfully."}


# ------------------------------------------------------------------------------
# Username change (signed in, takes effect immediately)
# ------------------------------------------------------------------------------
@router.post("/change-username")
async def change_username(
    body: ChangeUsernameIn,
    request: Request,
    user: User = Depends(get_current_user),
):
    """
    Rename the signed-in user.

    Args:
        body: The new username (already lower-cased) and the current password.
        request: Source of the client address and user agent for the audit row.
        user: The signed-in user.

    Returns:
        The updated public user.

    Raises:
        ApiError: 400 SAME_USERNAME, 409 USERNAME_RESERVED or USERNAME_TAKEN,
            401 INVALID_PASSWORD, or 429 when a completed rename already falls
            inside the last 30 days (RATE_LIMITED_MONTHLY) or three fall inside
            the last year (RATE_LIMITED_YEARLY).
    """
    if body.newUsername == user.username.lower():
        raise ApiError(status.HTTP_400_BAD_REQUEST,
                       "New username is the same as your current username", "SAME_USERNAME")

    if body.newUsername in RESERVED_USERNAMES:
        raise ApiError(status.HTTP_409_CONFLICT,
                       "This username is reserved and cannot be used", "USERNAME_RESERVED")

    if await User.filter(username__iexact=body.newUsername).exclude(id=user.id).exists():
        raise ApiError(status.HTTP_409_CONFLICT, "This username is already taken", "USERNAME_TAKEN")

    if not await run_in_threadpool(verify_password, body.currentPassword, user.password_hash):
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "incorrect_password_for_username_change"})
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Current password is incorrect", "INVALID_PASSWORD")

    now = utc_now()
    completed = UsernameChange.filter(user_id=user.id, completed_at__isnull=False)
    monthly = await completed.filter(created_at__gte=now - dt.timedelta(days=30)).count()
    if monthly >= MAX_USERNAME_CHANGES_PER_MONTH:
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "username_change_rate_limited_monthly"})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "You can only change your username once per 30 days. Please try again later.",
                       "RATE_LIMITED_MONTHLY")

    yearly = await completed.filter(created_at__gte=now - dt.timedelta(days=365)).count()
    if yearly >= MAX_USERNAME_CHANGES_PER_YEAR:
        await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id, success=False,
                                 metadata={"reason": "username_change_rate_limited_yearly", "yearlyCount": yearly})
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       "You have reached the maximum of 3 username changes per year. "
                       "Please contact support if you need assistance.",
                       "RATE_LIMITED_YEARLY")

    old_username = user.username
    user.username = body.newUsername
    try:
        await user.save(update_fields=["username"])
    except IntegrityError:
        # Lost a race with another account claiming the same name
        raise ApiError(status.HTTP_409_CONFLICT, "This username is already taken", "USERNAME_TAKEN")
    await UsernameChange.create(
        user_id=user.id,
        old_username=old_username,
        new_username=user.username,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
        completed_at=now,
    )

    logger.info("user=%s renamed %s -> %s", user.id, old_username, user.username)
    await log_security_event(SecurityEventType.PASSWORD_CHANGE, request, user_id=user.id,
                             metadata={"action": "username_changed", "oldUsername": old_username,
                                       "newUsername": user.username, "yearlyCount": yearly + 1})
    await mailer.send_username_changed_email(user.email, old_username, user.username)
    return {"success": True, "message": "Username changed successfully", "data": {"user": user.to_public()}}


# ------------------------------------------------------------------------------
# Audit trail and self-deletion
# ------------------------------------------------------------------------------
@router.get("/security-events")
async def security_events(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
):
    """Recent security events of the signed-in user, newest first."""
    return {"success": True, "data": {"items": await get_user_security_logs(user.id, limit)}}


@router.delete("/delete-account")
async def delete_account(request: Request, response: Response, user: User = Depends(get_current_user)):
    """
    Delete the signed-in account. Sessions and pending email changes go
    with it; audit rows stay with a null user. The goodbye email is sent
    after the delete and cannot undo it.
    """
    email, username, user_id = user.email, user.username, user.id
    sessions = await count_sessions(user_id)
    await log_security_event(SecurityEventType.ACCOUNT_DELETED, request, user_id=user_id,
                             metadata={"deletedUserId": user_id, "deletedUserEmail": email,
                                       "deletedUserUsername": username, "sessions": sessions,
                                       "initiator": "self", "deletedAt": utc_now().isoformat()})
    await user.delete()
    logger.info("user=%s deleted their own account", user_id)

    clear_auth_cookie(response)
    await mailer.send_account_deletion_email(email, username)
    return {"success": True, "message": "Account deleted successfully"}
