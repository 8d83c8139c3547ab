# placekeeper/api/v1/routers/auth.py
import datetime as dt
import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool
from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q

from placekeeper.api.v1.auth_session import clear_auth_cookie, issue_session
from placekeeper.api.v1.deps import extract_token, get_current_user
from placekeeper.config import settings
from placekeeper.core.audit import log_security_event
from placekeeper.core.errors import ApiError
from placekeeper.core.lockout import (
    LockState,
    clear_expired_lock,
    clear_lock,
    lock_state,
    minutes_remaining,
    register_failed_attempt,
    register_successful_login,
)
from placekeeper.core.mailer import mailer
from placekeeper.core.rate_limit import RateLimitPresets, rate_limit, rate_limiter
from placekeeper.core.security import (
    as_aware,
    decode_access_token,
    generate_one_time_token,
    hash_password,
    utc_now,
    verify_password,
)
from placekeeper.core.sessions import revoke_session
from placekeeper.models.security_log import SecurityEventType
from placekeeper.models.user import User
from placekeeper.schemas.auth import EmailIn, LoginIn, RegisterIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

RESEND_VERIFICATION_MAX = 3
RESEND_VERIFICATION_WINDOW_SECONDS = 60 * 60


def _locked_error(minutes: int) -> ApiError:
    return ApiError(
        status.HTTP_429_TOO_MANY_REQUESTS,
        "Account is temporarily locked due to too many failed login attempts. "
        f"Try again in {minutes} minutes.",
        "ACCOUNT_LOCKED",
        headers={"Retry-After": str(max(1, minutes) * 60)},
    )


def _invalid_credentials() -> ApiError:
    # Same message for unknown email and wrong password
    return ApiError(status.HTTP_401_UNAUTHORIZED, "Invalid email or password", "INVALID_CREDENTIALS")


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("register", RateLimitPresets.MODERATE))],
)
async def register(body: RegisterIn, request: Request, response: Response):
    """
    Register a new account and sign it in.

    The account starts unverified; a verification link is mailed, and a
    mail failure does not fail registration.

    Error codes:
        - VALIDATION_ERROR: malformed email/username/password
        - EMAIL_EXISTS / USERNAME_EXISTS (409)
    """
    existing = await User.filter(Q(email=body.email) | Q(username=body.username)).first()
    if existing:
        if existing.email == body.email:
            raise ApiError(status.HTTP_409_CONFLICT, "Email already registered", "EMAIL_EXISTS")
        raise ApiError(status.HTTP_409_CONFLICT, "Username already taken", "USERNAME_EXISTS")

    password_hash = await run_in_threadpool(hash_password, body.password)
    verification_token = generate_one_time_token()
    try:
        user = await User.create(
            email=body.email,
            username=body.username,
            password_hash=password_hash,
            verification_token=verification_token,
            verification_token_expiry=utc_now() + dt.timedelta(minutes=settings.verification_token_minutes),
        )
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email/username
        raise ApiError(status.HTTP_409_CONFLICT, "Email or username already registered", "CONFLICT")

    await mailer.send_verification_email(user.email, user.username, verification_token)

    token = await issue_session(user, response, remember_me=False, request=request)
    logger.info("registered user=%s", user.id)
    return {"success": True,
            "data": {"user": user.to_public(), "accessToken": token, "requiresVerification": True}}


@router.post("/login", dependencies=[Depends(rate_limit("login", RateLimitPresets.MODERATE))])
async def login(body: LoginIn, request: Request, response: Response):
    """
    Authenticate with email + password and start the single session.

    Order matters: an active lock is reported before any password check,
    so the hash is never compared while locked.

    Error codes:
        - INVALID_CREDENTIALS (401): unknown email or wrong password
        - ACCOUNT_LOCKED (429): 5 consecutive failures, 30 minute lock
        - EMAIL_NOT_VERIFIED / ACCOUNT_DEACTIVATED (403)
    """
    user = await User.get_or_none(email=body.email)
    if user is None:
        await log_security_event(SecurityEventType.FAILED_LOGIN, request, success=False,
                                 metadata={"email": body.email, "reason": "unknown_email"})
        raise _invalid_credentials()

    now = utc_now()
    await clear_expired_lock(user, now)
    if lock_state(user, now) is LockState.LOCKED:
        minutes = minutes_remaining(user, now)
        await log_security_event(SecurityEventType.FAILED_LOGIN, request, user_id=user.id, success=False,
                                 metadata={"email": user.email, "reason": "account_locked"})
        raise _locked_error(minutes)

    if not await run_in_threadpool(verify_password, body.password, user.password_hash):
        locked_now = await register_failed_attempt(user, now)
        await log_security_event(SecurityEventType.FAILED_LOGIN, request, user_id=user.id, success=False,
                                 metadata={"email": user.email, "reason": "wrong_password",
                                           "attempts": user.failed_login_attempts})
        if locked_now:
            await log_security_event(SecurityEventType.ACCOUNT_LOCKED, request, user_id=user.id, success=True,
                                     metadata={"email": user.email,
                                               "lockedUntil": as_aware(user.locked_until).isoformat()})
            await mailer.send_account_locked_email(user.email, user.username, settings.lockout_minutes)
            raise _locked_error(settings.lockout_minutes)
        raise _invalid_credentials()

    if user.failed_login_attempts:
        await clear_lock(user)

    if not user.email_verified:
        await log_security_event(SecurityEventType.FAILED_LOGIN, request, user_id=user.id, success=False,
                                 metadata={"email": user.email, "reason": "email_not_verified"})
        raise ApiError(
            status.HTTP_403_FORBIDDEN,
            "Please verify your email before logging in. Check your inbox for the verification link.",
            "EMAIL_NOT_VERIFIED",
        )
    if not user.is_active:
        await log_security_event(SecurityEventType.FAILED_LOGIN, request, user_id=user.id, success=False,
                                 metadata={"email": user.email, "reason": "account_deactivated"})
        raise ApiError(status.HTTP_403_FORBIDDEN, "Account is deactivated", "ACCOUNT_DEACTIVATED")

    await register_successful_login(user, now)
    token = await issue_session(user, response, remember_me=body.rememberMe, request=request)
    await log_security_event(SecurityEventType.LOGIN, request, user_id=user.id,
                             metadata={"email": user.email, "rememberMe": body.rememberMe})
    return {"success": True, "data": {"user": user.to_public(), "accessToken": token}}


@router.post("/logout")
async def logout(request: Request, response: Response):
    """
    End the presented session server-side and clear the cookie.
    Always succeeds, even without a token.
    """
    token = extract_token(request)
    if token:
        removed = await revoke_session(token)
        claims = decode_access_token(token)
        user_id = None
        if claims is not None and str(claims.get("sub", "")).isdigit():
            user_id = int(claims["sub"])
        await log_security_event(SecurityEventType.LOGOUT, request, user_id=user_id)
        if removed:
            await log_security_event(SecurityEventType.SESSION_REVOKED, request, user_id=user_id,
                                     metadata={"reason": "logout"})
    clear_auth_cookie(response)
    return {"success": True}


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    """Profile of the authenticated user, freshly loaded from the database."""
    return {"success": True, "data": user.to_public()}


@router.get("/verify-email")
async def verify_email(request: Request, token: str | None = Query(default=None)):
    """
    Complete email verification from the mailed link.

    Error codes (400): MISSING_TOKEN, INVALID_TOKEN, TOKEN_EXPIRED
    """
    if not token:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Verification token is required", "MISSING_TOKEN")

    user = await User.get_or_none(verification_token=token, email_verified=False)
    if user is None:
        raise ApiError(status.HTTP_400_BAD_REQUEST, "Invalid or expired verification token", "INVALID_TOKEN")

    expiry = as_aware(user.verification_token_expiry)
    if expiry is not None and expiry < utc_now():
        raise ApiError(status.HTTP_400_BAD_REQUEST,
                       "Verification token has expired. Please request a new one.", "TOKEN_EXPIRED")

    user.email_verified = True
    user.verification_token = None
    user.verification_token_expiry = None
    await user.save(update_fields=["email_verified", "verification_token", "verification_token_expiry"])

    await log_security_event(SecurityEventType.EMAIL_VERIFICATION, request, user_id=user.id,
                             metadata={"email": user.email})
    await mailer.send_welcome_email(user.email, user.username)
    return {"success": True, "message": "Email verified successfully! You can now login."}


@router.post(
    "/resend-verification",
    dependencies=[Depends(rate_limit("resend-verification", RateLimitPresets.STRICT))],
)
async def resend_verification(body: EmailIn):
    """
    Mail a fresh verification link (max 3 per email per hour).
    Unknown addresses get the same answer as known ones.
    """
    user = await User.get_or_none(email=body.email)
    if user is None:
        return {"success": True, "message": "If that email exists, a verification link has been sent."}
    if user.email_verified:
        return {"success": True, "message": "Email is already verified."}

    quota = await rate_limiter.check(f"resend-verification-email:{user.email}",
                                     RESEND_VERIFICATION_MAX, RESEND_VERIFICATION_WINDOW_SECONDS)
    if not quota.allowed:
        minutes = max(1, int(quota.retry_after // 60) + 1)
        raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS,
                       f"Too many verification emails sent. Please try again in {minutes} minutes.",
                       "RATE_LIMIT_EXCEEDED", headers=quota.headers())

    user.verification_token = generate_one_time_token()
    user.verification_token_expiry = utc_now() + dt.timedelta(minutes=settings.verification_token_minutes)
    await user.save(update_fields=["verification_token", "verification_token_expiry"])

    await mailer.send_verification_email(user.email, user.username, user.verification_token)
    return {"success": True, "message": "Verification email sent successfully. Please check your inbox."}
