# placekeeper/core/lockout.py
"""
Per-account lockout after repeated wrong passwords.

States:
    OPEN          locked_until is null
    LOCKED        locked_until is in the future
    EXPIRED_LOCK  locked_until has passed but is not cleared yet

An expired lock is cleared by the next login attempt, so no background job
is needed. Threshold and duration come from settings (5 attempts, 30 minutes).
"""
import datetime as dt
import logging
import math
from enum import Enum

from tortoise.expressions import F

from placekeeper.config import settings
from placekeeper.core.security import utc_now, as_aware
from placekeeper.models.user import User

logger = logging.getLogger(__name__)


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"
    EXPIRED_LOCK = "expired_lock"


def lock_state(user: User, now: dt.datetime | None = None) -> LockState:
    """
    Where the user stands in the lockout state machine.

    Args:
        user: User row (its locked_until is read, not refreshed)
        now: Clock override for tests

    Returns:
        LockState: OPEN, LOCKED, or EXPIRED_LOCK when the lock has lapsed but
        has not been cleared yet
    """
    locked_until = as_aware(user.locked_until)
    if locked_until is None:
        return LockState.OPEN
    if locked_until > (now or utc_now()):
        return LockState.LOCKED
    return LockState.EXPIRED_LOCK


def minutes_remaining(user: User, now: dt.datetime | None = None) -> int:
    """Whole minutes (rounded up) until the lock ends; 0 when not locked."""
    locked_until = as_aware(user.locked_until)
    if locked_until is None:
        return 0
    seconds = (locked_until - (now or utc_now())).total_seconds()
    return max(0, math.ceil(seconds / 60))


async def clear_lock(user: User) -> None:
    """Reset counter and lock; used after a good login or a password change."""
    user.failed_login_attempts = 0
    user.locked_until = None
    await User.filter(id=user.id).update(failed_login_attempts=0, locked_until=None)


async def clear_expired_lock(user: User, now: dt.datetime | None = None) -> bool:
    """EXPIRED_LOCK -> OPEN. Returns True when a stale lock was cleared."""
    if lock_state(user, now) is not LockState.EXPIRED_LOCK:
        return False
    await clear_lock(user)
    logger.info("expired lock cleared for user=%s", user.id)
    return True


async def register_failed_attempt(user: User, now: dt.datetime | None = None) -> bool:
    """
    Count one wrong password. Returns True when this attempt locked the account.

    The increment is a single UPDATE ... SET n = n + 1 so concurrent failures
    are not lost; the fresh count decides whether to lock.
    """
    await User.filter(id=user.id).update(failed_login_attempts=F("failed_login_attempts") + 1)
    await user.refresh_from_db(fields=["failed_login_attempts", "locked_until"])
    if user.failed_login_attempts < settings.max_failed_login_attempts:
        return False
    user.locked_until = (now or utc_now()) + dt.timedelta(minutes=settings.lockout_minutes)
    await User.filter(id=user.id).update(locked_until=user.locked_until)
    logger.warning("user=%s locked until %s after %d failed attempts",
                   user.id, user.locked_until.isoformat(), user.failed_login_attempts)
    return True


async def register_successful_login(user: User, now: dt.datetime | None = None) -> None:
    """Clear the failure counter and any lock, and stamp last_login_at."""
    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = now or utc_now()
    await User.filter(id=user.id).update(
        failed_login_attempts=0, locked_until=None, last_login_at=user.last_login_at
    )
