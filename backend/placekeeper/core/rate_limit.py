# placekeeper/core/rate_limit.py
"""
Per-IP request throttling, applied before any database work.

This is not the account lockout: it limits how fast one network origin can
hit an endpoint regardless of which accounts it targets. Counters live in a
pluggable store; the in-memory store only covers a single process, a shared
deployment needs a store backed by a central counter service.
"""
import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request, Response

from placekeeper.core.errors import ApiError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: float


class RateLimitPresets:
    """Shared limits; pick by endpoint sensitivity."""
    STRICT = RateLimitConfig(limit=5, window_seconds=15 * 60)      # password reset, resend
    MODERATE = RateLimitConfig(limit=10, window_seconds=15 * 60)   # login, register
    LENIENT = RateLimitConfig(limit=100, window_seconds=15 * 60)   # signed-in account and admin routes


@dataclass
class RateLimitRecord:
    count: int
    reset_at: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: float  # seconds; 0 when allowed

    def headers(self) -> Dict[str, str]:
        h = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            h["Retry-After"] = str(max(1, int(self.retry_after + 0.999)))
        return h


class RateLimitStore(abc.ABC):
    """Backend for window counters. Implementations must make `hit` atomic per key."""

    @abc.abstractmethod
    async def hit(self, key: str, window_seconds: float, now: float) -> RateLimitRecord:
        """Count one request for key, opening a fresh window if the old one elapsed."""

    @abc.abstractmethod
    async def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when key is None."""

    @abc.abstractmethod
    async def purge_expired(self, now: float) -> int:
        """Drop windows that ended before now; returns how many were dropped."""


class MemoryRateLimitStore(RateLimitStore):
    """Process-local dict. No await between read and write, so no lock is needed."""

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    async def hit(self, key: str, window_seconds: float, now: float) -> RateLimitRecord:
        record = self._records.get(key)
        if record is None or record.reset_at <= now:
            record = RateLimitRecord(count=1, reset_at=now + window_seconds)
            self._records[key] = record
        else:
            record.count += 1
        return RateLimitRecord(count=record.count, reset_at=record.reset_at)

    async def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._records.clear()
        else:
            self._records.pop(key, None)

    async def purge_expired(self, now: float) -> int:
        stale = [k for k, r in self._records.items() if r.reset_at <= now]
        for k in stale:
            del self._records[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


class RateLimiter:
    """
    Fixed-window counter per key. A key's window starts on its first hit
    and is replaced lazily on the first hit after it ends.
    """

    def __init__(self, store: RateLimitStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    async def check(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """
        Count one hit against a key.

        Args:
            key: "<prefix>:<client ip>"
            limit: Hits allowed per window
            window_seconds: Window length; it starts at the first hit

        Returns:
            RateLimitResult: allowed is False once the count passes limit.
            Blocked hits still count but never extend the window.
        """
        now = self._clock()
        record = await self.store.hit(key, window_seconds, now)
        if record.count > limit:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=limit,
                reset_at=record.reset_at,
                retry_after=record.reset_at - now,
            )
        return RateLimitResult(
            allowed=True,
            remaining=limit - record.count,
            limit=limit,
            reset_at=record.reset_at,
            retry_after=0,
        )

    async def reset(self, key: Optional[str] = None) -> None:
        await self.store.reset(key)

    async def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        return await self.store.purge_expired(self._clock())

    # -------- lifecycle --------
    def start(self, interval_seconds: float) -> None:
        """Start the best-effort stale-key sweep. Call from app startup."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await self.sweep()
                if removed:
                    logger.debug("rate limiter swept %d stale key(s)", removed)
            except Exception:
                logger.exception("rate limiter sweep failed")


def client_ip(request: Request) -> str:
    """
    Best guess at the caller's address: first X-Forwarded-For entry,
    then X-Real-IP, then CF-Connecting-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# Global limiter instance, started/stopped by the app lifecycle
rate_limiter = RateLimiter(MemoryRateLimitStore())


def rate_limit(key_prefix: str, config: RateLimitConfig):
    """
    Build a FastAPI dependency that throttles a route by client IP.

    Usage:
        @router.post("/login", dependencies=[Depends(rate_limit("login", RateLimitPresets.MODERATE))])
    """
    async def _dependency(request: Request, response: Response) -> RateLimitResult:
        ip = client_ip(request)
        result = await rate_limiter.check(f"{key_prefix}:{ip}", config.limit, config.window_seconds)
        if not result.allowed:
            logger.warning("rate limit exceeded prefix=%s ip=%s", key_prefix, ip)
            seconds = max(1, int(result.retry_after + 0.999))
            raise ApiError(
                429,
                f"Too many attempts. Try again in {seconds} seconds",
                "RATE_LIMIT_EXCEEDED",
                headers=result.headers(),
            )
        for name, value in result.headers().items():
            response.headers[name] = value
        return result

    return _dependency
