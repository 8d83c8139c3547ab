"""
Unit tests for core.security module.
Tests password hashing, bearer token signing/verification and token lifetimes.
"""
import datetime as dt

import jwt
import pytest

from placekeeper.config import settings
from placekeeper.core.security import (
    JWT_ALG,
    as_aware,
    create_access_token,
    decode_access_token,
    generate_one_time_token,
    hash_password,
    token_expiry,
    token_lifetime,
    utc_now,
    verify_password,
)


class TestPasswordHashing:
    """Tests for password hashing and verification."""

    def test_hash_password_returns_different_hash_each_time(self):
        """Password hashing should produce different hashes (salt included)."""
        password = "TestPassword123"
        assert hash_password(password) != hash_password(password)

    def test_hash_password_never_contains_plain_text(self):
        password = "TestPassword123"
        hashed = hash_password(password)
        assert isinstance(hashed, str)
        assert password not in hashed

    def test_verify_password_correct_password(self):
        hashed = hash_password("TestPassword123")
        assert verify_password("TestPassword123", hashed) is True

    def test_verify_password_incorrect_password(self):
        hashed = hash_password("TestPassword123")
        assert verify_password("WrongPassword456", hashed) is False

    def test_verify_password_is_case_sensitive(self):
        hashed = hash_password("TestPassword123")
        assert verify_password("testpassword123", hashed) is False


class TestAccessTokens:
    """Tests for bearer token creation and validation."""

    def test_token_payload_is_minimal(self):
        """Only sub/iat/exp/jti are signed; no profile fields."""
        token = create_access_token(42, token_expiry())
        payload = decode_access_token(token)
        assert payload["sub"] == "42"
        assert set(payload) == {"sub", "iat", "exp", "jti"}

    def test_two_tokens_for_same_user_differ(self):
        expires_at = token_expiry()
        first = create_access_token(7, expires_at)
        second = create_access_token(7, expires_at)
        assert first != second
        assert decode_access_token(first)["jti"] != decode_access_token(second)["jti"]

    def test_expiry_matches_requested_instant(self):
        expires_at = utc_now() + dt.timedelta(days=3)
        payload = decode_access_token(create_access_token(1, expires_at))
        assert abs(payload["exp"] - int(expires_at.timestamp())) <= 1

    def test_decode_garbage_returns_none(self):
        assert decode_access_token("invalid.token.here") is None
        assert decode_access_token("") is None

    def test_decode_wrong_signature_returns_none(self):
        forged = jwt.encode(
            {"sub": "1", "exp": utc_now() + dt.timedelta(days=1)},
            "some-other-secret-that-is-long-enough-123",
            algorithm=JWT_ALG,
        )
        assert decode_access_token(forged) is None

    def test_decode_expired_token_returns_none(self):
        token = create_access_token(1, utc_now() - dt.timedelta(seconds=5))
        assert decode_access_token(token) is None

    def test_decode_token_without_subject_returns_none(self):
        token = jwt.encode(
            {"exp": utc_now() + dt.timedelta(days=1)},
            settings.signing_secret,
            algorithm=JWT_ALG,
        )
        assert decode_access_token(token) is None

    def test_decode_token_without_expiry_returns_none(self):
        token = jwt.encode({"sub": "1"}, settings.signing_secret, algorithm=JWT_ALG)
        assert decode_access_token(token) is None

    def test_unsigned_token_is_rejected(self):
        token = jwt.encode(
            {"sub": "1", "exp": utc_now() + dt.timedelta(days=1)}, "", algorithm="none"
        )
        assert decode_access_token(token) is None


class TestLifetimes:
    def test_default_lifetime_is_seven_days(self):
        assert token_lifetime(False) == dt.timedelta(days=7)

    def test_remember_me_lifetime_is_thirty_days(self):
        assert token_lifetime(True) == dt.timedelta(days=30)

    def test_token_expiry_offsets_from_now(self):
        now = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
        assert token_expiry(False, now) == now + dt.timedelta(days=7)
        assert token_expiry(True, now) == now + dt.timedelta(days=30)


class TestHelpers:
    def test_one_time_tokens_are_64_hex_chars_and_unique(self):
        tokens = {generate_one_time_token() for _ in range(20)}
        assert len(tokens) == 20
        for token in tokens:
            assert len(token) == 64
            int(token, 16)

    def test_as_aware_treats_naive_as_utc(self):
        naive = dt.datetime(2024, 5, 1, 12, 0)
        assert as_aware(naive).tzinfo == dt.timezone.utc
        assert as_aware(None) is None

    @pytest.mark.parametrize("value", [
        dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc),
        dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone(dt.timedelta(hours=2))),
    ])
    def test_as_aware_keeps_aware_values(self, value):
        assert as_aware(value) is value
