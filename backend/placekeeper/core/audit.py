# placekeeper/core/audit.py
"""
Security audit trail.
Writes SecurityLog rows around every security-relevant action and answers the
per-email "how many times recently" questions that the reset and
password-change throttles rely on.
"""
import datetime as dt
import logging
from typing import Any, Optional

from fastapi import Request

from placekeeper.core.rate_limit import client_ip
from placekeeper.core.security import utc_now
from placekeeper.models.security_log import SecurityLog, SecurityEventType

logger = logging.getLogger(__name__)


def user_agent(request: Request) -> str | None:
    """User-Agent header, truncated to the audit column width."""
    ua = request.headers.get("user-agent")
    return ua[:512] if ua else None


async def log_security_event(
    event_type: SecurityEventType,
    request: Optional[Request] = None,
    user_id: Optional[int] = None,
    success: bool = True,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """
    Append one audit row.

    Never raises: an audit outage is logged and swallowed so the action being
    audited still completes.
    """
    try:
        await SecurityLog.create(
            user_id=user_id,
            event_type=event_type,
            ip_address=client_ip(request) if request is not None else None,
            user_agent=user_agent(request) if request is not None else None,
            success=success,
            metadata=metadata or None,
        )
    except Exception:
        logger.exception("failed to write security event %s for user=%s", event_type.value, user_id)


async def count_recent_events(
    event_type: SecurityEventType,
    email: str,
    window_minutes: int,
    success: Optional[bool] = None,
) -> int:
    """
    Count events of one type whose metadata names `email`, within the window.

    The email lives in the JSON metadata, which is matched here rather than
    in SQL so the query stays portable across backends.
    """
    since = utc_now() - dt.timedelta(minutes=window_minutes)
    qs = SecurityLog.filter(event_type=event_type, created_at__gte=since)
    if success is not None:
        qs = qs.filter(success=success)
    rows = await qs.values_list("metadata", flat=True)
    return sum(1 for meta in rows if isinstance(meta, dict) and meta.get("email") == email)


async def get_user_security_logs(user_id: int, limit: int = 50) -> list[dict]:
    """
    Recent audit rows of one user, newest first.

    Args:
        user_id: Owner of the rows
        limit: Maximum number of rows

    Returns:
        list[dict]: camelCase rows as shown on the account security page
    """
    rows = await SecurityLog.filter(user_id=user_id).order_by("-created_at", "-id").limit(limit)
    return [
        {
            "id": r.id,
            "eventType": r.event_type.value if isinstance(r.event_type, SecurityEventType) else r.event_type,
            "ipAddress": r.ip_address,
            "userAgent": r.user_agent,
            "success": r.success,
            "metadata": r.metadata,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
