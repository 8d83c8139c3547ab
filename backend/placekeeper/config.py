# placekeeper/config.py
import os
import logging
from pydantic import BaseModel, Field
from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file

logger = logging.getLogger("uvicorn.error")

TEST_JWT_SECRET = "placekeeper-test-suite-secret-not-for-deployments"
MIN_JWT_SECRET_LENGTH = 32


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or unsafe."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings(BaseModel):
    # General app settings
    APP_NAME: str = "Placekeeper Auth API"
    # Read per instance, not at import
    env: str = Field(default_factory=lambda: os.getenv("ENV", "dev"))
    app_base_url: str = os.getenv("APP_BASE_URL", "http://localhost:3000")

    # Host & Port settings
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))

    # CORS origins for frontend
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Token signing
    jwt_secret: str | None = Field(default_factory=lambda: os.getenv("JWT_SECRET"))
    token_lifetime_days: int = int(os.getenv("TOKEN_LIFETIME_DAYS", "7"))
    remember_me_lifetime_days: int = int(os.getenv("REMEMBER_ME_LIFETIME_DAYS", "30"))
    auth_cookie_name: str = "auth_token"

    # Account lockout
    max_failed_login_attempts: int = int(os.getenv("MAX_FAILED_LOGIN_ATTEMPTS", "5"))
    lockout_minutes: int = int(os.getenv("LOCKOUT_MINUTES", "30"))

    # One-time token lifetimes
    verification_token_minutes: int = 30
    reset_token_minutes: int = 15
    email_change_token_minutes: int = 30

    # Outbound email (SMTP); when smtp_host is unset mail is only logged
    smtp_host: str | None = os.getenv("SMTP_HOST")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_user: str | None = os.getenv("SMTP_USER")
    smtp_password: str | None = os.getenv("SMTP_PASSWORD")
    smtp_use_tls: bool = _env_bool("SMTP_USE_TLS", "true")
    mail_from: str | None = os.getenv("MAIL_FROM")

    # Rate limiter housekeeping
    rate_limit_sweep_seconds: int = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", "300"))

    # Create missing tables at startup instead of running `aerich upgrade`
    db_generate_schemas: bool = Field(default_factory=lambda: _env_bool("DB_GENERATE_SCHEMAS", "false"))

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("prod", "production")

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    @property
    def is_test(self) -> bool:
        return self.env.lower() == "test"

    @property
    def signing_secret(self) -> str:
        """
        Key for signing bearer tokens.

        Only ENV=test may fall back to the built-in test key; every other
        environment must provide JWT_SECRET.

        Raises:
            ConfigurationError: JWT_SECRET is unset outside ENV=test
        """
        if self.jwt_secret:
            return self.jwt_secret
        if self.is_test:
            return TEST_JWT_SECRET
        raise ConfigurationError("JWT_SECRET is not set")


settings = Settings()  # Instantiate configuration


def validate_settings(s: Settings = settings) -> None:
    """
    Fail fast on configuration that would make tokens forgeable.

    JWT_SECRET must be at least 32 characters in every environment, dev
    included. The only exception is an explicit ENV=test, which signs with
    the built-in test key and logs a warning. ENV defaults to "dev" when
    unset, so a deployment that forgets both variables refuses to start.

    Raises:
        ConfigurationError: secret missing or too short outside ENV=test
    """
    secret = s.jwt_secret
    if secret and len(secret) >= MIN_JWT_SECRET_LENGTH:
        return
    if s.is_test:
        logger.warning("[config] JWT_SECRET missing or shorter than %d chars, using the test key",
                       MIN_JWT_SECRET_LENGTH)
        return
    raise ConfigurationError(
        f"JWT_SECRET must be set and at least {MIN_JWT_SECRET_LENGTH} characters long"
    )
