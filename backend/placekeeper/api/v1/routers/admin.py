# placekeeper/api/v1/routers/admin.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from starlette.concurrency import run_in_threadpool
from tortoise.expressions import Q

from placekeeper.api.v1.deps import require_admin
from placekeeper.core.audit import get_user_security_logs, log_security_event
from placekeeper.core.errors import ApiError
from placekeeper.core.lockout import clear_lock
from placekeeper.core.mailer import mailer
from placekeeper.core.rate_limit import RateLimitPresets, rate_limit
from placekeeper.core.security import hash_password, utc_now
from placekeeper.core.sessions import count_sessions, revoke_all_sessions
from placekeeper.models.security_log import SecurityEventType
from placekeeper.models.user import User
from placekeeper.schemas.admin import AdminResetPasswordIn, AdminUserUpdateIn

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(rate_limit("admin", RateLimitPresets.LENIENT))],
)


def _user_to_admin_dict(u: User) -> dict:
    """
    Serialize a user for the admin console.

    Args:
        u: User row

    Returns:
        dict: the public fields plus failedLoginAttempts and lockedUntil
    """
    data = u.to_public()
    data["failedLoginAttempts"] = u.failed_login_attempts
    data["lockedUntil"] = u.locked_until.isoformat() if u.locked_until else None
    return data


async def _count_admins() -> int:
    """Used to prevent demoting or deleting the last admin."""
    return await User.filter(is_admin=True).count()


async def _get_user_or_404(user_id: int) -> User:
    """
    Load a user for an admin action.

    Raises:
        ApiError: 404 USER_NOT_FOUND when the id matches nothing
    """
    u = await User.get_or_none(id=user_id)
    if not u:
        raise ApiError(status.HTTP_404_NOT_FOUND, "User not found", "USER_NOT_FOUND")
    return u


@router.get("/users")
async def list_users(
    q: str | None = Query(default=None, description="Fuzzy search by username/email"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(require_admin),
):
    """Paginated user list, newest first, optionally filtered by username/email."""
    qs = User.all().order_by("-created_at", "-id")
    if q:
        qs = qs.filter(Q(username__icontains=q) | Q(email__icontains=q))

    total = await qs.count()
    rows = await qs.offset(offset).limit(limit)
    return {"items": [_user_to_admin_dict(u) for u in rows], "offset": offset, "limit": limit, "total": total}


@router.get("/users/{user_id}")
async def get_user_detail(user_id: int, admin: User = Depends(require_admin)):
    u = await _get_user_or_404(user_id)
    return {
        "user": _user_to_admin_dict(u),
        "activeSessions": await count_sessions(u.id),
        "recentEvents": await get_user_security_logs(u.id, limit=20),
    }


@router.patch("/users/{user_id}")
async def update_user(
    user_id: int,
    body: AdminUserUpdateIn,
    request: Request,
    admin: User = Depends(require_admin),
):
    """
    Toggle account flags (admin only).

    Deactivating signs the user out everywhere. An admin cannot deactivate
    or demote themselves, and the last admin cannot be demoted.
    """
    u = await _get_user_or_404(user_id)
    is_self = admin.id == u.id

    if body.isActive is not None and body.isActive != u.is_active:
        if is_self and not body.isActive:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "Cannot deactivate yourself", "CANNOT_DEACTIVATE_SELF")
        u.is_active = body.isActive

    if body.isAdmin is not None and body.isAdmin != u.is_admin:
        if is_self and not body.isAdmin:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "Cannot demote yourself", "CANNOT_DEMOTE_SELF")
        if u.is_admin and not body.isAdmin and await _count_admins() <= 1:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "Cannot demote the last admin", "LAST_ADMIN_FORBIDDEN")
        u.is_admin = body.isAdmin

    if body.emailVerified is not None:
        u.email_verified = body.emailVerified

    await u.save(update_fields=["is_active", "is_admin", "email_verified"])

    if not u.is_active:
        revoked = await revoke_all_sessions(u.id)
        if revoked:
            await log_security_event(SecurityEventType.SESSION_REVOKED, request, user_id=u.id,
                                     metadata={"reason": "deactivated", "by": admin.id})
    logger.info("admin=%s updated user=%s active=%s admin=%s", admin.id, u.id, u.is_active, u.is_admin)
    return {"user": _user_to_admin_dict(u)}


@router.delete("/users/{user_id}")
async def delete_user(user_id: int, request: Request, admin: User = Depends(require_admin)):
    """Delete an account (not yourself, not the last admin)."""
    u = await _get_user_or_404(user_id)

    if admin.id == u.id:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Cannot delete yourself", "CANNOT_DELETE_SELF")
    if u.is_admin and await _count_admins() <= 1:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Cannot delete the last admin", "LAST_ADMIN_FORBIDDEN")

    email, username = u.email, u.username
    await log_security_event(SecurityEventType.ACCOUNT_DELETED, request, user_id=u.id,
                             metadata={"deletedUserId": u.id, "deletedUserEmail": email,
                                       "deletedUserUsername": username, "initiator": "admin",
                                       "by": admin.id, "deletedAt": utc_now().isoformat()})
    await u.delete()
    await mailer.send_account_deletion_email(email, username)
    return {"success": True, "data": {"ok": True}}


@router.post("/users/{user_id}/reset-password")
async def reset_user_password(
    user_id: int,
    body: AdminResetPasswordIn,
    request: Request,
    admin: User = Depends(require_admin),
):
    """Set a user's password without the old one; signs them out and clears any lock."""
    u = await _get_user_or_404(user_id)
    u.password_hash = await run_in_threadpool(hash_password, body.newPassword)
    u.failed_login_attempts = 0
    u.locked_until = None
    await u.save(update_fields=["password_hash", "failed_login_attempts", "locked_until"])

    await revoke_all_sessions(u.id)
    await log_security_event(SecurityEventType.PASSWORD_RESET_SUCCESS, request, user_id=u.id,
                             metadata={"email": u.email, "by": admin.id})
    return {"success": True, "data": {"ok": True}}


@router.post("/users/{user_id}/unlock")
async def unlock_user(user_id: int, request: Request, admin: User = Depends(require_admin)):
    """Lift a lockout before it expires."""
    u = await _get_user_or_404(user_id)
    await clear_lock(u)
    await log_security_event(SecurityEventType.ACCOUNT_LOCKED, request, user_id=u.id,
                             metadata={"action": "unlocked", "by": admin.id})
    return {"success": True, "data": {"user": _user_to_admin_dict(u)}}
