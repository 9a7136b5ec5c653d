"""Two-factor enrollment, challenge and recovery codes.

Per account the flow is ``disabled -> enrolling -> enabled``. Enrollment hands
the secret and backup codes to the client; the account only switches to
enabled once a code generated from that secret is confirmed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database import utcnow
from crm.core.logging_config import get_security_logger
from crm.core.rate_limit import Bucket, RateLimiter, rate_limited
from crm.core.result import Err, ErrorKind, Ok, Result
from crm.core.totp import (
    TOTP_DIGITS,
    build_enrollment_uri,
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    is_valid_secret,
    normalize_backup_code,
    verify_code,
)
from crm.domain.accounts.models import Account, BackupCode

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

INVALID_CODE = "Invalid verification code"
NOT_ENABLED = "Two-factor authentication is not enabled"
ALREADY_ENABLED = "Two-factor authentication is already enabled"
MAX_CODE_LENGTH = 16


@dataclass(frozen=True, slots=True)
class EnrollmentPayload:
    secret: str
    qr_code_url: str
    backup_codes: list[str]


@dataclass(frozen=True, slots=True)
class ChallengeOutcome:
    method: str  # "totp" or "backup"


async def _replace_backup_codes(db: AsyncSession, account_id: str) -> list[str]:
    await db.execute(delete(BackupCode).where(BackupCode.account_id == account_id))
    codes = generate_backup_codes()
    db.add_all(
        BackupCode(account_id=account_id, code_hash=hash_backup_code(code), used=False)
        for code in codes
    )
    await db.flush()
    return codes


async def begin_enrollment(
    db: AsyncSession,
    account: Account,
    limiter: RateLimiter,
) -> Result[EnrollmentPayload]:
    """Create a secret and a fresh batch of backup codes; 2FA stays disabled."""
    limit = await limiter.check(Bucket.ENABLE_2FA, account.id)
    if not limit.allowed:
        return rate_limited(limit)

    if account.two_factor_enabled:
        return Err(ErrorKind.VALIDATION, ALREADY_ENABLED)

    secret = generate_secret()
    codes = await _replace_backup_codes(db, account.id)
    await db.commit()

    security_logger.info("Two-factor enrollment started [account_id=%s]", account.id)
    return Ok(
        EnrollmentPayload(
            secret=secret,
            qr_code_url=build_enrollment_uri(account.email, secret),
            backup_codes=codes,
        )
    )


async def confirm_enrollment(
    db: AsyncSession,
    account: Account,
    secret: str | None,
    code: str | None,
    limiter: RateLimiter,
) -> Result[None]:
    """Enable 2FA once ``code`` matches ``secret``; state is unchanged on mismatch."""
    secret = (secret or "").strip().replace(" ", "").upper()
    code = (code or "").strip()
    if not secret or not code:
        return Err(ErrorKind.VALIDATION, "Secret and code are required")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return Err(ErrorKind.VALIDATION, f"Code must be {TOTP_DIGITS} digits")
    if not is_valid_secret(secret):
        return Err(ErrorKind.VALIDATION, "Invalid secret")

    limit = await limiter.check(Bucket.ENABLE_2FA, account.id)
    if not limit.allowed:
        return rate_limited(limit)

    if account.two_factor_enabled:
        return Err(ErrorKind.VALIDATION, ALREADY_ENABLED)

    if not verify_code(secret, code):
        return Err(ErrorKind.VALIDATION, INVALID_CODE)

    account.two_factor_secret = secret
    account.two_factor_enabled = True
    await db.commit()

    security_logger.info("Two-factor authentication enabled [account_id=%s]", account.id)
    return Ok(None)


async def _consume_backup_code(db: AsyncSession, account_id: str, code: str) -> bool:
    """Mark one unused matching code as used; a single UPDATE keeps it single-use."""
    result = await db.execute(
        update(BackupCode)
        .where(
            BackupCode.account_id == account_id,
            BackupCode.code_hash == hash_backup_code(code),
            BackupCode.used.is_(False),
        )
        .values(used=True, used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return (result.rowcount or 0) > 0


async def challenge(
    db: AsyncSession,
    account: Account,
    code: str | None,
    limiter: RateLimiter,
) -> Result[ChallengeOutcome]:
    """Second sign-in step: a current TOTP code, or an unused backup code."""
    code = (code or "").strip()
    if not code:
        return Err(ErrorKind.VALIDATION, "Code is required")
    if len(code) > MAX_CODE_LENGTH:
        return Err(ErrorKind.VALIDATION, INVALID_CODE)

    limit = await limiter.check(Bucket.VERIFY_2FA, account.id)
    if not limit.allowed:
        return rate_limited(limit)

    if not account.two_factor_enabled or not account.two_factor_secret:
        return Err(ErrorKind.VALIDATION, NOT_ENABLED)

    if verify_code(account.two_factor_secret, code):
        security_logger.info("Two-factor challenge passed [account_id=%s, method=totp]", account.id)
        return Ok(ChallengeOutcome(method="totp"))

    if normalize_backup_code(code) and await _consume_backup_code(db, account.id, code):
        security_logger.info("Two-factor challenge passed [account_id=%s, method=backup]", account.id)
        return Ok(ChallengeOutcome(method="backup"))

    security_logger.warning("Two-factor challenge failed [account_id=%s]", account.id)
    return Err(ErrorKind.VALIDATION, INVALID_CODE)


async def disable(db: AsyncSession, account: Account) -> Result[None]:
    """Turn 2FA off, clearing the secret and every backup code in one commit."""
    if not account.two_factor_enabled:
        return Err(ErrorKind.VALIDATION, NOT_ENABLED)

    account.two_factor_enabled = False
    account.two_factor_secret = None
    await db.execute(delete(BackupCode).where(BackupCode.account_id == account.id))
    await db.commit()

    security_logger.info("Two-factor authentication disabled [account_id=%s]", account.id)
    return Ok(None)


async def regenerate_backup_codes(
    db: AsyncSession,
    account: Account,
    limiter: RateLimiter,
) -> Result[list[str]]:
    """Replace all backup codes; the new codes are returned exactly once."""
    if not account.two_factor_enabled:
        return Err(ErrorKind.VALIDATION, NOT_ENABLED)

    limit = await limiter.check(Bucket.ENABLE_2FA, account.id)
    if not limit.allowed:
        return rate_limited(limit)

    codes = await _replace_backup_codes(db, account.id)
    await db.commit()

    security_logger.info("Backup codes regenerated [account_id=%s]", account.id)
    return Ok(codes)


__all__ = [
    "ChallengeOutcome",
    "EnrollmentPayload",
    "begin_enrollment",
    "challenge",
    "confirm_enrollment",
    "disable",
    "regenerate_backup_codes",
]
