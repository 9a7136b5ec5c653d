"""Sign-up, e-mail verification, sign-in and password reset flows."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.database import utcnow
from crm.core.logging_config import anonymize, get_security_logger
from crm.core.permissions import Role
from crm.core.rate_limit import Bucket, RateLimiter, rate_limited
from crm.core.result import Err, ErrorKind, Ok, Result
from crm.core.security import check_password_async, hash_password_async
from crm.domain.accounts.models import Account
from crm.domain.security.models import UNKNOWN_ACCOUNT_ID, TokenPurpose
from crm.domain.security.services import (
    SuspicionReport,
    detect_suspicious_activity,
    record_sign_in_attempt,
)
from crm.domain.security.tokens import delete_token, find_valid_token, issue_token
from crm.services.mailer import EmailDeliveryError, Mailer

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

EMAIL_FORMAT_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 100
MAX_NAME_LENGTH = 100

GENERIC_CREDENTIALS_ERROR = "Invalid email or password"
INACTIVE_ACCOUNT_ERROR = "Account is inactive. Please contact your administrator."
UNVERIFIED_EMAIL_ERROR = (
    "Please verify your email address before signing in. "
    "Check your inbox for verification link."
)
EMAIL_VERIFIED_MESSAGE = "Email verified successfully. You can now sign in."
RESEND_VERIFICATION_MESSAGE = (
    "If an account exists with this email, a verification link has been sent."
)
FORGOT_PASSWORD_MESSAGE = "If an account exists, you will receive a password reset email"


class FailureReason(str, Enum):
    USER_NOT_FOUND = "User not found"
    ACCOUNT_INACTIVE = "Account inactive"
    EMAIL_NOT_VERIFIED = "Email not verified"
    INVALID_PASSWORD = "Invalid password"


@dataclass(frozen=True, slots=True)
class AccountSummary:
    id: str
    email: str
    name: str
    role: str
    two_factor_enabled: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            two_factor_enabled=bool(account.two_factor_enabled),
        )


@dataclass(frozen=True, slots=True)
class SignInOutcome:
    account: AccountSummary
    two_factor_required: bool
    suspicion: SuspicionReport


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_email_format(email: str) -> str | None:
    if not email:
        return "Email is required"
    if not EMAIL_FORMAT_RE.match(email):
        return "Invalid email format"
    return None


def validate_password(password: str | None) -> str | None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password must be less than {MAX_PASSWORD_LENGTH} characters"
    return None


def _validation_error(message: str) -> Err:
    return Err(ErrorKind.VALIDATION, message)


async def get_account_by_email(db: AsyncSession, email: str) -> Account | None:
    result = await db.execute(select(Account).where(Account.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def _deliver(action: str, coro) -> bool:
    """Await an e-mail send; failures are logged, never raised."""
    try:
        await coro
    except EmailDeliveryError:
        logger.warning("E-mail delivery failed during %s; continuing", action)
        return False
    return True


async def _check_credentials(
    db: AsyncSession,
    email: str,
    password: str,
) -> tuple[Account | None, FailureReason | None]:
    account = await get_account_by_email(db, email)
    if account is None:
        return None, FailureReason.USER_NOT_FOUND
    if not account.is_active:
        return account, FailureReason.ACCOUNT_INACTIVE
    if account.email_verified is None:
        return account, FailureReason.EMAIL_NOT_VERIFIED
    if not await check_password_async(password, account.password_hash):
        return account, FailureReason.INVALID_PASSWORD
    return account, None


def _credential_error(reason: FailureReason) -> Err:
    if reason is FailureReason.ACCOUNT_INACTIVE:
        return Err(ErrorKind.AUTHENTICATION, INACTIVE_ACCOUNT_ERROR, reason=reason.value)
    if reason is FailureReason.EMAIL_NOT_VERIFIED:
        return Err(
            ErrorKind.UNVERIFIED,
            UNVERIFIED_EMAIL_ERROR,
            extra={"requiresEmailVerification": True},
            reason=reason.value,
        )
    return Err(ErrorKind.AUTHENTICATION, GENERIC_CREDENTIALS_ERROR, reason=reason.value)


async def verify_credentials(db: AsyncSession, email: str, password: str) -> Result[AccountSummary]:
    """Check an email/password pair against the stored hash and account state.

    Unknown accounts and wrong passwords share one generic message; inactive
    and unverified accounts get their own, since those states are not secret.
    The specific cause is always available as ``Err.reason``.
    """
    account, reason = await _check_credentials(db, email, password)
    if reason is not None:
        return _credential_error(reason)
    return Ok(AccountSummary.from_account(account))


async def sign_in(
    db: AsyncSession,
    *,
    email: str | None,
    password: str | None,
    ip_address: str,
    user_agent: str | None,
    limiter: RateLimiter,
    mailer: Mailer,
) -> Result[SignInOutcome]:
    """Password step of sign-in: rate limit, credentials, anomaly check, history."""
    email = normalize_email(email)
    if not email or not password:
        return _validation_error("Email and password are required")

    limit = await limiter.check(Bucket.SIGNIN, ip_address)
    if not limit.allowed:
        return rate_limited(limit, "Too many sign-in attempts. Please try again later.")

    account, reason = await _check_credentials(db, email, password)

    if reason is not None:
        await record_sign_in_attempt(
            db,
            account_id=account.id if account is not None else UNKNOWN_ACCOUNT_ID,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            failure_reason=reason.value,
        )
        await db.commit()
        security_logger.warning(
            "Sign-in failed [reason=%s, email_hash=%s, ip=%s]",
            reason.value,
            anonymize(email),
            ip_address,
        )
        return _credential_error(reason)

    suspicion = await detect_suspicious_activity(db, account.id, ip_address)
    if suspicion.suspicious:
        security_logger.warning(
            "Suspicious sign-in activity [account_id=%s, ip=%s, reason=%s]",
            account.id,
            ip_address,
            suspicion.reason,
        )
        details = f"IP Address: {ip_address}\nTime: {utcnow().isoformat()}Z"
        await _deliver(
            "security alert",
            mailer.send_security_alert_email(
                account.email,
                account.name,
                suspicion.reason or "Suspicious sign-in activity detected",
                details,
            ),
        )

    await record_sign_in_attempt(
        db,
        account_id=account.id,
        ip_address=ip_address,
        user_agent=user_agent,
        success=True,
        account=account,
    )
    await db.commit()

    security_logger.info(
        "Password verified [account_id=%s, ip=%s, two_factor=%s]",
        account.id,
        ip_address,
        bool(account.two_factor_enabled),
    )
    return Ok(
        SignInOutcome(
            account=AccountSummary.from_account(account),
            two_factor_required=bool(account.two_factor_enabled),
            suspicion=suspicion,
        )
    )


async def sign_up(
    db: AsyncSession,
    *,
    name: str | None,
    email: str | None,
    password: str | None,
    ip_address: str,
    limiter: RateLimiter,
    mailer: Mailer,
) -> Result[dict]:
    """Create an unverified ``rep`` account and send its verification link."""
    name = (name or "").strip()
    email = normalize_email(email)
    if not name or not email or not password:
        return _validation_error("Name, email, and password are required")
    for problem in (validate_email_format(email), validate_password(password)):
        if problem:
            return _validation_error(problem)
    if len(name) > MAX_NAME_LENGTH:
        return _validation_error(f"Name must be less than {MAX_NAME_LENGTH} characters")

    limit = await limiter.check(Bucket.SIGNUP, ip_address)
    if not limit.allowed:
        return rate_limited(limit)

    if await get_account_by_email(db, email) is not None:
        return Err(ErrorKind.CONFLICT, "Email already registered")

    account = Account(
        name=name,
        email=email,
        password_hash=await hash_password_async(password),
        role=Role.REP.value,
        is_active=True,
        email_verified=None,
    )
    db.add(account)
    try:
        await db.flush()
        token = await issue_token(
            db,
            account.email,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=settings.EMAIL_VERIFICATION_TTL_HOURS),
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("IntegrityError while creating account", exc_info=True)
        return Err(ErrorKind.CONFLICT, "Email already registered")

    security_logger.info("Account created [account_id=%s, email_hash=%s]", account.id, anonymize(email))
    await _deliver("sign-up", mailer.send_verification_email(account.email, account.name, token.token))

    return Ok(
        {
            "message": "Account created successfully. Please check your email to verify your account.",
            "email": account.email,
        }
    )


async def verify_email(
    db: AsyncSession,
    *,
    token: str | None,
    limiter: RateLimiter,
) -> Result[dict]:
    """Consume a verification token and mark the account verified.

    A token that cannot be found answers with the success message, so double
    submissions of the same link do not show an error.
    """
    token = (token or "").strip()
    if not token:
        return _validation_error("Invalid verification link")

    limit = await limiter.check(Bucket.VERIFY_EMAIL, token)
    if not limit.allowed:
        return rate_limited(limit)

    found = await find_valid_token(db, token, TokenPurpose.EMAIL_VERIFICATION)
    if isinstance(found, Err):
        if found.reason == "expired":
            return _validation_error("Verification link has expired")
        # TODO: distinguish "already consumed" from "never issued" once tokens are kept as tombstones.
        logger.info("Verification token not found [token=%s]", anonymize(token))
        return Ok({"message": EMAIL_VERIFIED_MESSAGE})

    record = found.value
    account = await get_account_by_email(db, record.identifier)
    if account is None:
        logger.warning("Verification token for missing account [identifier=%s]", anonymize(record.identifier))
        return Err(ErrorKind.NOT_FOUND, "User not found")

    if account.email_verified is None:
        account.email_verified = utcnow()
    await delete_token(db, token)
    await db.commit()

    security_logger.info("Email verified [account_id=%s]", account.id)
    return Ok({"message": EMAIL_VERIFIED_MESSAGE})


async def resend_verification(
    db: AsyncSession,
    *,
    email: str | None,
    limiter: RateLimiter,
    mailer: Mailer,
) -> Result[dict]:
    """Issue a fresh verification link; the answer never reveals whether the account exists."""
    email = normalize_email(email)
    if not email:
        return _validation_error("Email is required")

    limit = await limiter.check(Bucket.RESEND_VERIFICATION, email)
    if not limit.allowed:
        return rate_limited(limit)

    account = await get_account_by_email(db, email)
    if account is None or account.email_verified is not None:
        return Ok({"message": RESEND_VERIFICATION_MESSAGE})

    token = await issue_token(
        db,
        account.email,
        TokenPurpose.EMAIL_VERIFICATION,
        timedelta(hours=settings.EMAIL_VERIFICATION_TTL_HOURS),
    )
    await db.commit()

    await _deliver("resend verification", mailer.send_verification_email(account.email, account.name, token.token))
    return Ok({"message": RESEND_VERIFICATION_MESSAGE})


async def forgot_password(
    db: AsyncSession,
    *,
    email: str | None,
    ip_address: str,
    limiter: RateLimiter,
    mailer: Mailer,
) -> Result[dict]:
    """Send a password reset link; the answer never reveals whether the account exists."""
    email = normalize_email(email)
    problem = validate_email_format(email)
    if problem:
        return _validation_error(problem)

    limit = await limiter.check(Bucket.FORGOT_PASSWORD, ip_address)
    if not limit.allowed:
        return rate_limited(limit)

    account = await get_account_by_email(db, email)
    if account is None:
        logger.info("Password reset requested for unknown account [email_hash=%s]", anonymize(email))
        return Ok({"message": FORGOT_PASSWORD_MESSAGE})

    token = await issue_token(
        db,
        account.email,
        TokenPurpose.PASSWORD_RESET,
        timedelta(minutes=settings.PASSWORD_RESET_TTL_MINUTES),
    )
    await db.commit()

    await _deliver("forgot password", mailer.send_password_reset_email(account.email, account.name, token.token))
    return Ok({"message": FORGOT_PASSWORD_MESSAGE})


async def reset_password(
    db: AsyncSession,
    *,
    token: str | None,
    password: str | None,
    limiter: RateLimiter,
) -> Result[dict]:
    token = (token or "").strip()
    if not token or not password:
        return _validation_error("Token and password are required")
    problem = validate_password(password)
    if problem:
        return _validation_error(problem)

    limit = await limiter.check(Bucket.RESET_PASSWORD, token)
    if not limit.allowed:
        return rate_limited(limit)

    found = await find_valid_token(db, token, TokenPurpose.PASSWORD_RESET)
    if isinstance(found, Err):
        if found.reason == "expired":
            return _validation_error("Reset link has expired")
        return _validation_error("Invalid or expired reset link")

    account = await get_account_by_email(db, found.value.identifier)
    if account is None:
        return Err(ErrorKind.NOT_FOUND, "User not found")

    account.password_hash = await hash_password_async(password)
    await delete_token(db, token)
    await db.commit()

    security_logger.info("Password reset completed [account_id=%s]", account.id)
    return Ok({"message": "Password reset successful"})


__all__ = [
    "AccountSummary",
    "FailureReason",
    "GENERIC_CREDENTIALS_ERROR",
    "SignInOutcome",
    "forgot_password",
    "get_account_by_email",
    "normalize_email",
    "resend_verification",
    "reset_password",
    "sign_in",
    "sign_up",
    "validate_email_format",
    "validate_password",
    "verify_credentials",
    "verify_email",
]
