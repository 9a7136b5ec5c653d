"""Sign-in history and suspicious activity detection."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database import utcnow
from crm.domain.accounts.models import Account
from crm.domain.security.models import SignInHistory

logger = logging.getLogger(__name__)

HISTORY_WINDOW = timedelta(hours=24)
HISTORY_SAMPLE_SIZE = 50
RAPID_WINDOW = timedelta(minutes=10)

FAILED_ATTEMPTS_THRESHOLD = 5
DISTINCT_IPS_THRESHOLD = 3
RAPID_DISTINCT_IPS_THRESHOLD = 3

REASON_FAILED_ATTEMPTS = "Multiple failed sign-in attempts from same IP address"
REASON_NEW_IP = "Sign-in from new IP address after multiple different IPs used"
REASON_RAPID_IPS = "Multiple sign-in attempts from different IPs in short time"


@dataclass(frozen=True, slots=True)
class SuspicionReport:
    suspicious: bool
    reason: str | None = None


async def record_sign_in_attempt(
    db: AsyncSession,
    *,
    account_id: str,
    ip_address: str,
    user_agent: str | None,
    success: bool,
    failure_reason: str | None = None,
    account: Account | None = None,
) -> SignInHistory:
    """Append a history row; on success also stamp the account's last sign-in.

    The caller commits.
    """
    now = utcnow()
    entry = SignInHistory(
        account_id=account_id,
        ip_address=ip_address,
        user_agent=user_agent[:512] if user_agent else None,
        success=success,
        failure_reason=failure_reason,
        created_at=now,
    )
    db.add(entry)

    if success and account is not None:
        account.last_sign_in_ip = ip_address
        account.last_sign_in_at = now

    await db.flush()
    return entry


def evaluate_attempts(
    attempts: list[SignInHistory],
    ip_address: str,
    now: datetime,
) -> SuspicionReport:
    """Apply the anomaly rules to history rows ordered newest first.

    Rules are checked in order and the first match wins.
    """
    failed_from_ip = [a for a in attempts if a.ip_address == ip_address and not a.success]
    if len(failed_from_ip) >= FAILED_ATTEMPTS_THRESHOLD:
        return SuspicionReport(True, REASON_FAILED_ATTEMPTS)

    last_success = next((a for a in attempts if a.success), None)
    if last_success is not None and last_success.ip_address != ip_address:
        distinct_ips = {a.ip_address for a in attempts}
        if len(distinct_ips) > DISTINCT_IPS_THRESHOLD:
            return SuspicionReport(True, REASON_NEW_IP)

    rapid_cutoff = now - RAPID_WINDOW
    rapid_ips = {a.ip_address for a in attempts if a.created_at >= rapid_cutoff}
    if len(rapid_ips) >= RAPID_DISTINCT_IPS_THRESHOLD:
        return SuspicionReport(True, REASON_RAPID_IPS)

    return SuspicionReport(False)


async def detect_suspicious_activity(
    db: AsyncSession,
    account_id: str,
    ip_address: str,
    now: datetime | None = None,
) -> SuspicionReport:
    """Inspect the last 24 hours (at most 50 attempts) of the account's history."""
    now = now or utcnow()
    result = await db.execute(
        select(SignInHistory)
        .where(
            SignInHistory.account_id == account_id,
            SignInHistory.created_at >= now - HISTORY_WINDOW,
        )
        .order_by(desc(SignInHistory.created_at), desc(SignInHistory.id))
        .limit(HISTORY_SAMPLE_SIZE)
    )
    attempts = list(result.scalars().all())
    return evaluate_attempts(attempts, ip_address, now)


async def get_sign_in_history(
    db: AsyncSession,
    account_id: str,
    limit: int = 20,
) -> list[SignInHistory]:
    result = await db.execute(
        select(SignInHistory)
        .where(SignInHistory.account_id == account_id)
        .order_by(desc(SignInHistory.created_at), desc(SignInHistory.id))
        .limit(limit)
    )
    return list(result.scalars().all())


async def summarize_sign_in_activity(
    db: AsyncSession,
    now: datetime | None = None,
    recent_limit: int = 50,
) -> dict:
    """Counts for the last 24 hours plus the most recent attempts of every account."""
    now = now or utcnow()
    since = now - HISTORY_WINDOW
    counts = await db.execute(
        select(SignInHistory.success, func.count(SignInHistory.id))
        .where(SignInHistory.created_at >= since)
        .group_by(SignInHistory.success)
    )
    totals = {bool(success): count for success, count in counts.all()}
    recent = await db.execute(
        select(SignInHistory)
        .order_by(desc(SignInHistory.created_at), desc(SignInHistory.id))
        .limit(recent_limit)
    )
    return {
        "successful_last_24h": totals.get(True, 0),
        "failed_last_24h": totals.get(False, 0),
        "recent": list(recent.scalars().all()),
    }


__all__ = [
    "SuspicionReport",
    "detect_suspicious_activity",
    "evaluate_attempts",
    "get_sign_in_history",
    "summarize_sign_in_activity",
    "record_sign_in_attempt",
]
