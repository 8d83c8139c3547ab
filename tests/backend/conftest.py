import os
import uuid

TEST_DB_URL = "sqlite://:memory:?cache=shared"
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = TEST_DB_URL

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from tortoise import Tortoise

from placekeeper.core import db as db_module
from placekeeper.core.mailer import mailer
from placekeeper.core.rate_limit import rate_limiter
from placekeeper.core.security import hash_password
from placekeeper.main import app
from placekeeper.models.user import User


async def _init_test_db() -> None:
    """
    Initialize a clean in-memory SQLite database for every test.
    Ensures tables are recreated from scratch.
    """
    if Tortoise._inited:
        await Tortoise.close_connections()
    await Tortoise.init(config=db_module.TORTOISE_ORM)
    await Tortoise.generate_schemas()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """
    Capture outgoing mail instead of sending it.
    Each item is (to_email, subject, body).
    """
    sent: list[tuple[str, str, str]] = []

    async def _capture(to_email: str, subject: str, text_body: str) -> None:
        sent.append((to_email, subject, text_body))

    monkeypatch.setattr(mailer, "send", _capture)
    return sent


@pytest_asyncio.fixture
async def db():
    """Fresh database without the HTTP client, for unit tests of ORM-backed helpers."""
    await _init_test_db()
    yield
    await Tortoise.close_connections()


@pytest_asyncio.fixture
async def client():
    """
    Provide an HTTPX AsyncClient bound to the FastAPI app with a fresh DB
    and empty rate-limit counters.
    """
    await _init_test_db()
    await rate_limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client
    await rate_limiter.reset()
    await Tortoise.close_connections()


@pytest_asyncio.fixture
async def create_user():
    """
    Factory fixture to create users directly via ORM.
    Users are verified and active unless told otherwise.
    """

    async def _create_user(password: str = "UserPass!23", **overrides) -> tuple[User, str]:
        suffix = uuid.uuid4().hex[:6]
        fields = {
            "username": f"user_{suffix}",
            "email": f"{suffix}@example.com",
            "password_hash": hash_password(password),
            "email_verified": True,
            "is_active": True,
            "is_admin": False,
        }
        fields.update(overrides)
        user = await User.create(**fields)
        return user, password

    return _create_user


@pytest_asyncio.fixture
async def create_admin(create_user):
    """Factory fixture for admin users."""

    async def _create_admin(password: str = "AdminPass!23") -> tuple[User, str]:
        suffix = uuid.uuid4().hex[:6]
        return await create_user(password, username=f"admin_{suffix}", is_admin=True)

    return _create_admin


@pytest_asyncio.fixture
async def login(client):
    """Helper fixture that posts to the login endpoint."""

    async def _login(email: str, password: str, remember_me: bool = False, **headers):
        return await client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password, "rememberMe": remember_me},
            headers=headers or None,
        )

    return _login


@pytest_asyncio.fixture
async def auth_header_factory(login):
    """
    Helper fixture to obtain Authorization headers via the login endpoint.
    """

    async def _get_headers(email: str, password: str) -> dict[str, str]:
        resp = await login(email, password)
        assert resp.status_code == 200, resp.text
        token = resp.json()["data"]["accessToken"]
        return {"Authorization": f"Bearer {token}"}

    return _get_headers
