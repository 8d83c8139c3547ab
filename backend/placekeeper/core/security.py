# placekeeper/core/security.py
"""
Security module for authentication.
Handles password hashing, bearer token signing/verification, and the random
one-time tokens used in verification, reset and email-change links.
"""
import logging
import secrets
import datetime as dt

import jwt  # PyJWT
from passlib.context import CryptContext

from placekeeper.config import settings

logger = logging.getLogger(__name__)

# Password hashing context
# Argon2 is a salted, adaptive, memory-hard hash; a fresh salt is drawn per call
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",   # Re-hash on login if parameters are ever raised
)

JWT_ALG = "HS256"  # JWT signing algorithm (HMAC SHA-256)


def utc_now() -> dt.datetime:
    """Current UTC time, timezone-aware."""
    return dt.datetime.now(dt.timezone.utc)


def as_aware(value: dt.datetime | None) -> dt.datetime | None:
    """Treat naive datetimes read back from the database as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def hash_password(plain: str) -> str:
    """
    Hash a plain text password using Argon2.

    Args:
        plain: Plain text password to hash

    Returns:
        Hashed password string (safe to store in database)
    """
    return pwd_context.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """
    Verify a plain text password against a stored hash.

    Returns False for a wrong password. A malformed stored hash or a backend
    failure raises, so callers can tell it apart from a wrong password.
    """
    return pwd_context.verify(plain, hashed)


def token_lifetime(remember_me: bool = False) -> dt.timedelta:
    """
    How long a freshly issued token stays valid.

    Args:
        remember_me: Use the long "remember me" lifetime instead of the default

    Returns:
        timedelta: 30 days with remember_me, otherwise 7 (both configurable)
    """
    days = settings.remember_me_lifetime_days if remember_me else settings.token_lifetime_days
    return dt.timedelta(days=days)


def token_expiry(remember_me: bool = False, now: dt.datetime | None = None) -> dt.datetime:
    """Instant at which a token issued now (and its session) stops being valid."""
    return (now or utc_now()) + token_lifetime(remember_me)


def create_access_token(user_id: int, expires_at: dt.datetime) -> str:
    """
    Sign a bearer token for a user.

    The payload only points at the user; profile fields (admin flag, email,
    avatar) are reloaded from the database on every request instead.

    Token payload:
        - sub: user id (string, per RFC 7519)
        - iat: issued at
        - exp: expiry, matching the session row's expires_at
        - jti: random nonce, so two logins never produce the same token
    """
    payload = {
        "sub": str(user_id),
        "iat": utc_now(),
        "exp": expires_at,
        "jti": secrets.token_hex(8),
    }
    return jwt.encode(payload, settings.signing_secret, algorithm=JWT_ALG)


def decode_access_token(token: str) -> dict | None:
    """
    Verify a bearer token and return its claims.

    Fails closed: a bad signature, malformed token, missing claim or expired
    token all return None instead of raising.
    """
    try:
        return jwt.decode(
            token,
            settings.signing_secret,
            algorithms=[JWT_ALG],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("token rejected: expired")
    except jwt.InvalidTokenError as exc:
        logger.info("token rejected: %s", exc)
    return None


def generate_one_time_token() -> str:
    """64 hex chars for email verification, password reset and email change links."""
    return secrets.token_hex(32)
