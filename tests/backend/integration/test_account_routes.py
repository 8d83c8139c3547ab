import datetime as dt

import pytest

from placekeeper.core.security import utc_now
from placekeeper.core.sessions import count_sessions
from placekeeper.models.email_change import EmailChangeRequest
from placekeeper.models.security_log import SecurityEventType, SecurityLog
from placekeeper.models.session import Session
from placekeeper.models.user import User
from placekeeper.models.username_change import UsernameChange


pytestmark = pytest.mark.asyncio


async def request_change(client, headers, new_email: str, password: str):
    return await client.post(
        "/api/v1/auth/change-email/request",
        json={"newEmail": new_email, "currentPassword": password},
        headers=headers,
    )


async def rename(client, headers, new_username: str, password: str):
    return await client.post(
        "/api/v1/auth/change-username",
        json={"newUsername": new_username, "currentPassword": password},
        headers=headers,
    )


async def test_email_change_request_and_verify(client, create_user, auth_header_factory, login, outbox):
    user, password = await create_user()
    old_email = user.email
    headers = await auth_header_factory(old_email, password)

    resp = await request_change(client, headers, "Moved@Example.com", password)
    assert resp.status_code == 200
    change = await EmailChangeRequest.get(user_id=user.id)
    assert change.new_email == "moved@example.com"
    assert change.is_pending
    recipients = [to for to, _, _ in outbox]
    assert "moved@example.com" in recipients
    assert old_email in recipients

    verify = await client.post("/api/v1/auth/change-email/verify", json={"token": change.token})
    assert verify.status_code == 200
    await user.refresh_from_db()
    assert user.email == "moved@example.com"
    assert await count_sessions(user.id) == 0

    client.cookies.clear()
    assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 401
    assert (await login(old_email, password)).status_code == 401
    assert (await login("moved@example.com", password)).status_code == 200

    again = await client.post("/api/v1/auth/change-email/verify", json={"token": change.token})
    assert again.status_code == 400
    assert again.json()["code"] == "ALREADY_COMPLETED"


async def test_email_change_request_errors(client, create_user, auth_header_factory):
    user, password = await create_user()
    other, _ = await create_user()
    headers = await auth_header_factory(user.email, password)

    same = await request_change(client, headers, user.email.upper(), password)
    assert same.status_code == 400
    assert same.json()["code"] == "SAME_EMAIL"

    taken = await request_change(client, headers, other.email, password)
    assert taken.status_code == 409
    assert taken.json()["code"] == "EMAIL_ALREADY_EXISTS"

    wrong = await request_change(client, headers, "fresh@example.com", "Wrong#Pass1")
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "INVALID_PASSWORD"

    assert await EmailChangeRequest.filter(user_id=user.id).count() == 0


async def test_email_change_once_per_day(client, create_user, auth_header_factory):
    user, password = await create_user()
    headers = await auth_header_factory(user.email, password)

    assert (await request_change(client, headers, "first@example.com", password)).status_code == 200
    second = await request_change(client, headers, "second@example.com", password)
    assert second.status_code == 429
    assert second.json()["code"] == "RATE_LIMITED_DAILY"


async def test_email_change_yearly_cap(client, create_user, auth_header_factory):
    user, password = await create_user()
    for i in range(5):
        change = await EmailChangeRequest.create(
            user_id=user.id, old_email=f"old{i}@example.com", new_email=f"new{i}@example.com",
            token=f"{i}" * 64, cancel_token=f"c{i}".ljust(64, "0"),
            expires_at=utc_now(), completed_at=utc_now(),
        )
        await EmailChangeRequest.filter(id=change.id).update(
            created_at=utc_now() - dt.timedelta(days=10 + i))

    headers = await auth_header_factory(user.email, password)
    resp = await request_change(client, headers, "sixth@example.com", password)
    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMITED_YEARLY"


async def test_email_change_cancel(client, create_user, auth_header_factory):
    user, password = await create_user()
    headers = await auth_header_factory(user.email, password)
    await request_change(client, headers, "elsewhere@example.com", password)
    change = await EmailChangeRequest.get(user_id=user.id)

    cancel = await client.post("/api/v1/auth/change-email/cancel", json={"cancelToken": change.cancel_token})
    assert cancel.status_code == 200

    twice = await client.post("/api/v1/auth/change-email/cancel", json={"cancelToken": change.cancel_token})
    assert twice.json()["code"] == "ALREADY_CANCELLED"

    verify = await client.post("/api/v1/auth/change-email/verify", json={"token": change.token})
    assert verify.status_code == 400
    assert verify.json()["code"] == "CANCELLED"

    await user.refresh_from_db()
    assert user.email != "elsewhere@example.com"


async def test_email_change_expired_link(client, create_user):
    user, _ = await create_user()
    await EmailChangeRequest.create(
        user_id=user.id, old_email=user.email, new_email="late@example.com",
        token="e" * 64, cancel_token="f" * 64,
        expires_at=utc_now() - dt.timedelta(minutes=1),
    )
    resp = await client.post("/api/v1/auth/change-email/verify", json={"token": "e" * 64})
    assert resp.status_code == 400
    assert resp.json()["code"] == "TOKEN_EXPIRED"

    unknown = await client.post("/api/v1/auth/change-email/verify", json={"token": "nope"})
    assert unknown.json()["code"] == "INVALID_TOKEN"


async def test_security_events_lists_own_events(client, create_user, auth_header_factory):
    user, password = await create_user()
    other, other_password = await create_user()
    await client.post("/api/v1/auth/login", json={"email": user.email, "password": "Wrong#Pass1"})
    await auth_header_factory(other.email, other_password)
    headers = await auth_header_factory(user.email, password)

    resp = await client.get("/api/v1/auth/security-events", headers=headers)
    assert resp.status_code == 200
    items = resp.json()["data"]["items"]
    types = {item["eventType"] for item in items}
    assert {"login", "failed_login", "session_created"} <= types
    assert all(set(item) >= {"eventType", "success", "createdAt", "ipAddress"} for item in items)
    assert await SecurityLog.filter(user_id=other.id).count() > 0
    assert len(items) == await SecurityLog.filter(user_id=user.id).count()

    limited = await client.get("/api/v1/auth/security-events", headers=headers, params={"limit": 1})
    assert len(limited.json()["data"]["items"]) == 1


async def test_delete_account(client, create_user, auth_header_factory, outbox):
    user, password = await create_user()
    headers = await auth_header_factory(user.email, password)

    resp = await client.delete("/api/v1/auth/delete-account", headers=headers)
    assert resp.status_code == 200
    assert await User.get_or_none(id=user.id) is None
    assert await Session.filter(user_id=user.id).count() == 0
    assert outbox[-1][0] == user.email

    # Audit row outlives the account
    deleted = await SecurityLog.get(event_type=SecurityEventType.ACCOUNT_DELETED)
    assert deleted.user_id is None
    assert deleted.metadata["deletedUserEmail"] == user.email

    client.cookies.clear()
    assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 401


async def test_account_routes_share_the_lenient_ip_budget(client, create_user, auth_header_factory):
    user, password = await create_user()
    headers = await auth_header_factory(user.email, password)

    first = await client.get("/api/v1/auth/security-events", headers=headers)
    assert first.headers["X-RateLimit-Limit"] == "100"
    assert first.headers["X-RateLimit-Remaining"] == "99"

    for _ in range(99):
        await client.get("/api/v1/auth/security-events", headers=headers)
    blocked = await client.get("/api/v1/auth/security-events", headers=headers)
    assert blocked.status_code == 429
    assert blocked.json()["code"] == "RATE_LIMIT_EXCEEDED"


async def _completed_renames(user, *days_ago: int) -> None:
    for i, days in enumerate(days_ago):
        change = await UsernameChange.create(
            user_id=user.id, old_username=f"old_{i}", new_username=f"new_{i}", completed_at=utc_now(),
        )
        await UsernameChange.filter(id=change.id).update(created_at=utc_now() - dt.timedelta(days=days))


async def test_username_change(client, create_user, auth_header_factory, outbox):
    user, password = await create_user()
    old_username = user.username
    headers = await auth_header_factory(user.email, password)

    resp = await rename(client, headers, "  Fresh_Name ", password)
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Username changed successfully"
    assert body["data"]["user"]["username"] == "fresh_name"

    await user.refresh_from_db()
    assert user.username == "fresh_name"
    change = await UsernameChange.get(user_id=user.id)
    assert (change.old_username, change.new_username) == (old_username, "fresh_name")
    assert change.completed_at is not None
    assert outbox[-1][0] == user.email

    logged = await SecurityLog.filter(user_id=user.id, event_type=SecurityEventType.PASSWORD_CHANGE).first()
    assert logged.metadata["action"] == "username_changed"
    assert logged.metadata["yearlyCount"] == 1

    # The session survives a rename
    assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 200


async def test_username_change_errors(client, create_user, auth_header_factory):
    user, password = await create_user()
    other, _ = await create_user(username="Taken_Name")
    headers = await auth_header_factory(user.email, password)

    same = await rename(client, headers, user.username.upper(), password)
    assert same.status_code == 400
    assert same.json()["code"] == "SAME_USERNAME"

    reserved = await rename(client, headers, "Admin", password)
    assert reserved.status_code == 409
    assert reserved.json()["code"] == "USERNAME_RESERVED"

    taken = await rename(client, headers, "taken_name", password)
    assert taken.status_code == 409
    assert taken.json()["code"] == "USERNAME_TAKEN"

    wrong = await rename(client, headers, "unused_name", "Wrong#Pass1")
    assert wrong.status_code == 401
    assert wrong.json()["code"] == "INVALID_PASSWORD"
    rejected = await SecurityLog.get(user_id=user.id, event_type=SecurityEventType.PASSWORD_CHANGE)
    assert rejected.success is False
    assert rejected.metadata["reason"] == "incorrect_password_for_username_change"

    invalid = await rename(client, headers, "no spaces!", password)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "VALIDATION_ERROR"

    assert await UsernameChange.filter(user_id=user.id).count() == 0


async def test_username_change_once_per_thirty_days(client, create_user, auth_header_factory):
    user, password = await create_user()
    headers = await auth_header_factory(user.email, password)

    assert (await rename(client, headers, "first_rename", password)).status_code == 200
    second = await rename(client, headers, "second_rename", password)
    assert second.status_code == 429
    assert second.json()["code"] == "RATE_LIMITED_MONTHLY"

    await user.refresh_from_db()
    assert user.username == "first_rename"
    rejected = await SecurityLog.filter(user_id=user.id, success=False).first()
    assert rejected.metadata["reason"] == "username_change_rate_limited_monthly"


async def test_username_change_allowed_after_thirty_days(client, create_user, auth_header_factory):
    user, password = await create_user()
    await _completed_renames(user, 31)
    headers = await auth_header_factory(user.email, password)

    resp = await rename(client, headers, "later_rename", password)
    assert resp.status_code == 200


async def test_username_change_yearly_cap(client, create_user, auth_header_factory):
    user, password = await create_user()
    await _completed_renames(user, 40, 60, 80)
    headers = await auth_header_factory(user.email, password)

    resp = await rename(client, headers, "fourth_rename", password)
    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMITED_YEARLY"
    rejected = await SecurityLog.filter(user_id=user.id, success=False).first()
    assert rejected.metadata == {"reason": "username_change_rate_limited_yearly", "yearlyCount": 3}


async def test_username_changes_older_than_a_year_do_not_count(client, create_user, auth_header_factory):
    user, password = await create_user()
    await _completed_renames(user, 40, 60, 400)
    headers = await auth_header_factory(user.email, password)

    assert (await rename(client, headers, "third_this_year", password)).status_code == 200
