# placekeeper/core/sessions.py
"""
Session ledger.

A request is only authorized when its bearer token both verifies and matches
a live row here, so deleting rows revokes tokens before their embedded expiry.
The sessions table is unique on user, which keeps at most one live login per
account even when two logins race.
"""
import datetime as dt
import logging

from tortoise.exceptions import IntegrityError

from placekeeper.core.security import utc_now, as_aware
from placekeeper.models.session import Session

logger = logging.getLogger(__name__)


async def rotate_session(user_id: int, token: str, expires_at: dt.datetime) -> Session:
    """
    Make `token` the user's only session.

    The row is overwritten in place when it exists and inserted otherwise.
    If a concurrent login inserts the row between those two steps, the
    unique user key rejects this insert and the row is overwritten instead,
    so the caller that writes last owns the session and no caller is left
    holding a token without a row.

    Args:
        user_id: Owner of the session
        token: Exact bearer string handed to the client
        expires_at: Same instant as the token's exp claim

    Returns:
        The user's session row, now holding `token`
    """
    replaced = await Session.filter(user_id=user_id).update(token=token, expires_at=expires_at)
    if not replaced:
        try:
            await Session.create(user_id=user_id, token=token, expires_at=expires_at)
        except IntegrityError:
            logger.info("concurrent login for user=%s, overwriting its session", user_id)
            await Session.filter(user_id=user_id).update(token=token, expires_at=expires_at)
            replaced = 1
    logger.info("session %s for user=%s", "replaced" if replaced else "created", user_id)
    return await Session.get(user_id=user_id)


async def is_session_live(token: str, now: dt.datetime | None = None) -> bool:
    """True iff a row holds exactly this token and has not expired. Never cached."""
    session = await Session.get_or_none(token=token)
    if session is None:
        return False
    return as_aware(session.expires_at) > (now or utc_now())


async def revoke_session(token: str) -> int:
    """
    End the one session holding `token` (logout).

    Returns:
        1 when a row was deleted, 0 when the token had no live row
    """
    return await Session.filter(token=token).delete()


async def revoke_all_sessions(user_id: int) -> int:
    """Log the user out everywhere. Returns the number of rows removed."""
    removed = await Session.filter(user_id=user_id).delete()
    if removed:
        logger.info("revoked %d session(s) for user=%s", removed, user_id)
    return removed


async def count_sessions(user_id: int) -> int:
    """
    Number of session rows for the user.

    Returns:
        int: 0 or 1, since the user key is unique
    """
    return await Session.filter(user_id=user_id).count()
