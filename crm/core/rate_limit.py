"""Sliding-window rate limiting for the sensitive auth endpoints.

The limiter itself holds no counters. Counting is delegated to a
``RateLimitStore`` that performs an atomic increment-and-check per key. When no
store is configured, or the store fails or times out, the limiter fails open.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, Protocol

from fastapi import Request
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm.core.logging_config import anonymize
from crm.core.result import Err, ErrorKind
from crm.domain.security.models import RateLimitHit

logger = logging.getLogger(__name__)

# Synthetic quota reported when the counting store is unavailable.
FAIL_OPEN_LIMIT = 100
FAIL_OPEN_WINDOW_SECONDS = 60 * 60


class Bucket(str, Enum):
    SIGNUP = "signup"
    SIGNIN = "signin"
    FORGOT_PASSWORD = "forgot-password"
    RESET_PASSWORD = "reset-password"
    VERIFY_EMAIL = "verify-email"
    RESEND_VERIFICATION = "resend-verification"
    ENABLE_2FA = "enable-2fa"
    VERIFY_2FA = "verify-2fa"


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    limit: int
    window_seconds: int


BUCKET_RULES: dict[Bucket, RateLimitRule] = {
    Bucket.SIGNUP: RateLimitRule(3, 60 * 60),  # per IP
    Bucket.SIGNIN: RateLimitRule(10, 60 * 60),  # per IP
    Bucket.FORGOT_PASSWORD: RateLimitRule(3, 60 * 60),  # per IP
    Bucket.RESET_PASSWORD: RateLimitRule(5, 60 * 60),  # per token
    Bucket.VERIFY_EMAIL: RateLimitRule(10, 60 * 60),  # per token
    Bucket.RESEND_VERIFICATION: RateLimitRule(3, 60),  # per email
    Bucket.ENABLE_2FA: RateLimitRule(3, 60 * 60),  # per account
    Bucket.VERIFY_2FA: RateLimitRule(10, 60 * 60),  # per account
}


@dataclass(frozen=True, slots=True)
class WindowState:
    """What a store reports for one increment-and-check."""

    allowed: bool
    count: int
    oldest: float


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at - time.time() + 0.999))

    def headers(self) -> dict[str, str]:
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc)
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": reset.isoformat().replace("+00:00", "Z"),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(Protocol):
    async def hit(self, key: str, limit: int, window_seconds: int, now: float) -> WindowState:
        """Count one request for ``key`` unless ``limit`` is already reached."""
        ...


class InMemoryRateLimitStore:
    """Provide in-memory rate limiting with asyncio locking.

    Only suitable for a single process (development and tests). Keys whose
    newest hit has left its window are swept at most once per
    ``sweep_interval`` seconds.
    """

    def __init__(self, sweep_interval: float = 60.0) -> None:
        self._attempts: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._attempts)

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        for key, bucket in list(self._attempts.items()):
            if not bucket or bucket[-1] <= now - self._windows[key]:
                del self._attempts[key]
                del self._windows[key]

    async def hit(self, key: str, limit: int, window_seconds: int, now: float) -> WindowState:
        async with self._lock:
            self._sweep(now)
            window_start = now - window_seconds
            bucket = self._attempts.setdefault(key, deque())
            self._windows[key] = window_seconds

            while bucket and bucket[0] <= window_start:
                bucket.popleft()

            if len(bucket) >= limit:
                return WindowState(allowed=False, count=len(bucket), oldest=bucket[0])

            bucket.append(now)
            return WindowState(allowed=True, count=len(bucket), oldest=bucket[0])


class DatabaseRateLimitStore:
    """Count requests as rows in ``rate_limit_hits``.

    Each check runs in its own session so a failure here never poisons the
    request's unit of work. Checks on the same key are serialized: PostgreSQL
    takes a transaction-scoped advisory lock on the key, and SQLite takes its
    database write lock on the leading DELETE.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def hit(self, key: str, limit: int, window_seconds: int, now: float) -> WindowState:
        now_dt = _to_naive_utc(now)
        window_start = now_dt - timedelta(seconds=window_seconds)

        async with self._session_factory() as session:
            async with session.begin():
                await _lock_key(session, key)
                await session.execute(
                    delete(RateLimitHit).where(
                        RateLimitHit.key == key,
                        RateLimitHit.hit_at <= window_start,
                    )
                )
                row = (
                    await session.execute(
                        select(func.count(RateLimitHit.id), func.min(RateLimitHit.hit_at)).where(
                            RateLimitHit.key == key,
                            RateLimitHit.hit_at > window_start,
                        )
                    )
                ).one()
                count, oldest = row[0] or 0, row[1]

                if count >= limit:
                    return WindowState(allowed=False, count=count, oldest=_to_epoch(oldest))

                session.add(RateLimitHit(key=key, hit_at=now_dt))
                oldest_epoch = _to_epoch(oldest) if oldest is not None else now
                return WindowState(allowed=True, count=count + 1, oldest=oldest_epoch)


async def _lock_key(session: AsyncSession, key: str) -> None:
    if session.get_bind().dialect.name == "postgresql":
        await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))


def _to_naive_utc(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).replace(tzinfo=None)


def _to_epoch(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


class RateLimiter:
    """Apply per-bucket sliding-window quotas on top of a counting store."""

    def __init__(
        self,
        store: RateLimitStore | None,
        rules: dict[Bucket, RateLimitRule] | None = None,
        timeout_seconds: float = 2.0,
    ) -> None:
        self._store = store
        self._rules = rules or BUCKET_RULES
        self._timeout = timeout_seconds

    @property
    def configured(self) -> bool:
        return self._store is not None

    def rule_for(self, bucket: Bucket) -> RateLimitRule:
        return self._rules[bucket]

    async def check(self, bucket: Bucket, identifier: str) -> RateLimitResult:
        """Count this request against ``bucket`` and report whether it may proceed."""
        now = time.time()
        if self._store is None:
            return _fail_open(now)

        rule = self._rules[bucket]
        key = f"{bucket.value}:{identifier}"
        try:
            state = await asyncio.wait_for(
                self._store.hit(key, rule.limit, rule.window_seconds, now),
                timeout=self._timeout,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Rate limit store unavailable for bucket %s; allowing request", bucket.value
            )
            return _fail_open(now)

        if not state.allowed:
            logger.warning(
                "Rate limit exceeded for bucket %s [identifier=%s]",
                bucket.value,
                anonymize(identifier),
            )

        return RateLimitResult(
            allowed=state.allowed,
            limit=rule.limit,
            remaining=max(0, rule.limit - state.count),
            reset_at=state.oldest + rule.window_seconds,
        )


def rate_limited(
    result: RateLimitResult,
    message: str = "Too many requests. Please try again later.",
) -> Err:
    """Build the error returned when a bucket is exhausted."""
    return Err(
        ErrorKind.RATE_LIMITED,
        message,
        extra={"retryAfter": result.retry_after},
        headers=result.headers(),
    )


def _fail_open(now: float) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        limit=FAIL_OPEN_LIMIT,
        remaining=FAIL_OPEN_LIMIT,
        reset_at=now + FAIL_OPEN_WINDOW_SECONDS,
    )


def build_rate_limiter(
    backend: str,
    session_factory: async_sessionmaker[AsyncSession],
    timeout_seconds: float = 2.0,
) -> RateLimiter:
    """Build the limiter for the configured backend (``database``, ``memory`` or ``none``)."""
    store: RateLimitStore | None
    if backend == "database":
        store = DatabaseRateLimitStore(session_factory)
    elif backend == "memory":
        store = InMemoryRateLimitStore()
    else:
        logger.warning("Rate limiting store not configured; rate limiting is disabled")
        store = None
    return RateLimiter(store, timeout_seconds=timeout_seconds)


def get_rate_limiter(request: Request) -> RateLimiter:
    """Dependency returning the limiter built at start-up; unconfigured means fail open."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter(None)
        request.app.state.rate_limiter = limiter
    return limiter


__all__ = [
    "BUCKET_RULES",
    "Bucket",
    "DatabaseRateLimitStore",
    "InMemoryRateLimitStore",
    "RateLimitResult",
    "RateLimitRule",
    "RateLimitStore",
    "RateLimiter",
    "WindowState",
    "build_rate_limiter",
    "get_rate_limiter",
    "rate_limited",
]
