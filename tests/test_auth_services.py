from datetime import timedelta

import pytest
from sqlalchemy import select

from crm.core.database import utcnow
from crm.core.result import Err, ErrorKind, Ok
from crm.core.security import check_password
from crm.domain.accounts.models import Account
from crm.domain.auth import services
from crm.domain.security.models import SignInHistory, TokenPurpose, VerificationToken

from tests.conftest import DEFAULT_PASSWORD

IP = "203.0.113.7"
UA = "pytest-agent"


async def history(db, account_id=None):
    stmt = select(SignInHistory).order_by(SignInHistory.id)
    if account_id is not None:
        stmt = stmt.where(SignInHistory.account_id == account_id)
    return list((await db.execute(stmt)).scalars().all())


async def token_for(db, email, purpose):
    result = await db.execute(
        select(VerificationToken).where(
            VerificationToken.identifier == email,
            VerificationToken.purpose == purpose.value,
        )
    )
    return result.scalar_one_or_none()


async def sign_in(db, limiter, mailer, email, password=DEFAULT_PASSWORD, ip=IP):
    return await services.sign_in(
        db,
        email=email,
        password=password,
        ip_address=ip,
        user_agent=UA,
        limiter=limiter,
        mailer=mailer,
    )


# -- sign up ---------------------------------------------------------------


async def test_sign_up_creates_unverified_rep_and_sends_link(db_session, limiter, mailer):
    result = await services.sign_up(
        db_session,
        name="Jane Doe",
        email="  Jane@Example.com ",
        password=DEFAULT_PASSWORD,
        ip_address=IP,
        limiter=limiter,
        mailer=mailer,
    )

    assert isinstance(result, Ok)
    assert result.value["email"] == "jane@example.com"

    account = await services.get_account_by_email(db_session, "jane@example.com")
    assert account.role == "rep"
    assert account.email_verified is None
    assert check_password(DEFAULT_PASSWORD, account.password_hash)

    token = await token_for(db_session, "jane@example.com", TokenPurpose.EMAIL_VERIFICATION)
    assert token is not None
    assert timedelta(hours=23) < token.expires - utcnow() <= timedelta(hours=24)
    assert mailer.kinds() == ["verification"]
    assert token.token in mailer.sent[0]["html"]


@pytest.mark.parametrize(
    "name, email, password, message",
    [
        ("", "a@example.com", "password123", "Name, email, and password are required"),
        ("Jane", "not-an-email", "password123", "Invalid email format"),
        ("Jane", "a@example.com", "short", "Password must be at least 8 characters"),
        ("x" * 101, "a@example.com", "password123", "Name must be less than 100 characters"),
    ],
)
async def test_sign_up_validation(db_session, limiter, mailer, name, email, password, message):
    result = await services.sign_up(
        db_session,
        name=name,
        email=email,
        password=password,
        ip_address=IP,
        limiter=limiter,
        mailer=mailer,
    )
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.VALIDATION
    assert result.message == message
    assert mailer.sent == []


async def test_sign_up_rejects_duplicate_email(db_session, make_account, limiter, mailer):
    await make_account("taken@example.com")
    result = await services.sign_up(
        db_session,
        name="Other",
        email="TAKEN@example.com",
        password=DEFAULT_PASSWORD,
        ip_address=IP,
        limiter=limiter,
        mailer=mailer,
    )
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.CONFLICT


async def test_sign_up_survives_email_failure(db_session, limiter, mailer):
    mailer.fail = True
    result = await services.sign_up(
        db_session,
        name="Jane",
        email="jane@example.com",
        password=DEFAULT_PASSWORD,
        ip_address=IP,
        limiter=limiter,
        mailer=mailer,
    )
    assert isinstance(result, Ok)
    assert await token_for(db_session, "jane@example.com", TokenPurpose.EMAIL_VERIFICATION)


async def test_sign_up_is_rate_limited_per_ip(db_session, limiter, mailer):
    for i in range(3):
        await services.sign_up(
            db_session,
            name="User",
            email=f"user{i}@example.com",
            password=DEFAULT_PASSWORD,
            ip_address=IP,
            limiter=limiter,
            mailer=mailer,
        )
    result = await services.sign_up(
        db_session,
        name="User",
        email="user9@example.com",
        password=DEFAULT_PASSWORD,
        ip_address=IP,
        limiter=limiter,
        mailer=mailer,
    )
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.RATE_LIMITED


# -- credentials and sign in -------------------------------------------------


async def test_verify_credentials_branches(db_session, make_account):
    await make_account("ok@example.com")
    await make_account("off@example.com", active=False)
    await make_account("new@example.com", verified=False)

    ok = await services.verify_credentials(db_session, "ok@example.com", DEFAULT_PASSWORD)
    assert isinstance(ok, Ok)
    assert ok.value.email == "ok@example.com"

    missing = await services.verify_credentials(db_session, "ghost@example.com", DEFAULT_PASSWORD)
    wrong = await services.verify_credentials(db_session, "ok@example.com", "bad-password")
    assert missing.message == wrong.message == services.GENERIC_CREDENTIALS_ERROR
    assert missing.reason == "User not found"
    assert wrong.reason == "Invalid password"

    inactive = await services.verify_credentials(db_session, "off@example.com", DEFAULT_PASSWORD)
    assert inactive.message.startswith("Account is inactive")

    unverified = await services.verify_credentials(db_session, "new@example.com", DEFAULT_PASSWORD)
    assert unverified.kind is ErrorKind.UNVERIFIED
    assert unverified.extra == {"requiresEmailVerification": True}


async def test_sign_in_happy_path_records_history(db_session, make_account, limiter, mailer):
    account = await make_account("ok@example.com")

    result = await sign_in(db_session, limiter, mailer, "ok@example.com")

    assert isinstance(result, Ok)
    assert result.value.two_factor_required is False
    assert result.value.account.id == account.id

    rows = await history(db_session, account.id)
    assert len(rows) == 1
    assert rows[0].success is True
    assert rows[0].ip_address == IP
    assert rows[0].user_agent == UA

    await db_session.refresh(account)
    assert account.last_sign_in_ip == IP
    assert account.last_sign_in_at is not None


async def test_sign_in_reports_two_factor_requirement(db_session, make_account, limiter, mailer):
    account = await make_account("mfa@example.com")
    account.two_factor_enabled = True
    account.two_factor_secret = "JBSWY3DPEHPK3PXP"
    await db_session.commit()

    result = await sign_in(db_session, limiter, mailer, "mfa@example.com")
    assert result.value.two_factor_required is True


async def test_unverified_sign_in_is_recorded(db_session, make_account, limiter, mailer):
    account = await make_account("new@example.com", verified=False)

    result = await sign_in(db_session, limiter, mailer, "new@example.com")

    assert isinstance(result, Err)
    assert result.extra["requiresEmailVerification"] is True
    rows = await history(db_session, account.id)
    assert [(r.success, r.failure_reason) for r in rows] == [(False, "Email not verified")]


async def test_unknown_email_is_recorded_as_unknown(db_session, limiter, mailer):
    result = await sign_in(db_session, limiter, mailer, "ghost@example.com")

    assert result.message == services.GENERIC_CREDENTIALS_ERROR
    rows = await history(db_session, "unknown")
    assert rows[0].failure_reason == "User not found"


async def test_sign_in_requires_both_fields(db_session, limiter, mailer):
    result = await sign_in(db_session, limiter, mailer, "", password="")
    assert result.kind is ErrorKind.VALIDATION
    assert await history(db_session) == []


async def test_suspicious_sign_in_sends_alert_but_succeeds(db_session, make_account, limiter, mailer):
    account = await make_account("ok@example.com")
    now = utcnow()
    for ip in ("198.51.100.1", "198.51.100.2", "198.51.100.3"):
        db_session.add(
            SignInHistory(account_id=account.id, ip_address=ip, success=True, created_at=now)
        )
    await db_session.commit()
    mailer.fail = True

    result = await sign_in(db_session, limiter, mailer, "ok@example.com")

    assert isinstance(result, Ok)
    assert result.value.suspicion.suspicious


async def test_sign_in_rate_limit(db_session, make_account, limiter, mailer):
    await make_account("ok@example.com")
    for _ in range(10):
        await sign_in(db_session, limiter, mailer, "ok@example.com", password="wrong-password")

    result = await sign_in(db_session, limiter, mailer, "ok@example.com")
    assert result.kind is ErrorKind.RATE_LIMITED
    assert result.message == "Too many sign-in attempts. Please try again later."


# -- e-mail verification -----------------------------------------------------


async def test_verify_email_consumes_token(db_session, make_account, limiter):
    account = await make_account("new@example.com", verified=False)
    from crm.domain.security.tokens import issue_token

    token = await issue_token(
        db_session, account.email, TokenPurpose.EMAIL_VERIFICATION, timedelta(hours=24)
    )
    await db_session.commit()

    result = await services.verify_email(db_session, token=token.token, limiter=limiter)

    assert isinstance(result, Ok)
    await db_session.refresh(account)
    assert account.email_verified is not None
    assert await token_for(db_session, account.email, TokenPurpose.EMAIL_VERIFICATION) is None

    again = await services.verify_email(db_session, token=token.token, limiter=limiter)
    assert isinstance(again, Ok)
    assert again.value["message"] == services.EMAIL_VERIFIED_MESSAGE


async def test_expired_verification_token_fails_and_is_deleted(db_session, make_account, limiter):
    account = await make_account("new@example.com", verified=False)
    db_session.add(
        VerificationToken(
            token="expired-token",
            identifier=account.email,
            purpose=TokenPurpose.EMAIL_VERIFICATION.value,
            expires=utcnow() - timedelta(minutes=1),
        )
    )
    await db_session.commit()

    result = await services.verify_email(db_session, token="expired-token", limiter=limiter)

    assert isinstance(result, Err)
    assert result.message == "Verification link has expired"
    assert await db_session.get(VerificationToken, "expired-token") is None
    await db_session.refresh(account)
    assert account.email_verified is None


async def test_reset_token_cannot_verify_email(db_session, make_account, limiter):
    account = await make_account("new@example.com", verified=False)
    from crm.domain.security.tokens import issue_token

    token = await issue_token(db_session, account.email, TokenPurpose.PASSWORD_RESET, timedelta(hours=1))
    await db_session.commit()

    await services.verify_email(db_session, token=token.token, limiter=limiter)

    await db_session.refresh(account)
    assert account.email_verified is None


async def test_verify_email_requires_token(db_session, limiter):
    result = await services.verify_email(db_session, token="", limiter=limiter)
    assert result.kind is ErrorKind.VALIDATION


async def test_resend_verification_is_non_revealing(db_session, make_account, limiter, mailer):
    await make_account("new@example.com", verified=False)
    await make_account("done@example.com")

    results = [
        await services.resend_verification(db_session, email=email, limiter=limiter, mailer=mailer)
        for email in ("new@example.com", "done@example.com", "ghost@example.com")
    ]

    assert {r.value["message"] for r in results} == {services.RESEND_VERIFICATION_MESSAGE}
    assert [m["to"] for m in mailer.sent] == ["new@example.com"]


async def test_resend_verification_replaces_previous_token(db_session, make_account, limiter, mailer):
    await make_account("new@example.com", verified=False)
    await services.resend_verification(db_session, email="new@example.com", limiter=limiter, mailer=mailer)
    await services.resend_verification(db_session, email="new@example.com", limiter=limiter, mailer=mailer)

    tokens = (
        await db_session.execute(
            select(VerificationToken).where(VerificationToken.identifier == "new@example.com")
        )
    ).scalars().all()
    assert len(tokens) == 1


# -- password reset ------------------------------------------------------------


async def test_forgot_password_is_non_revealing(db_session, make_account, limiter, mailer):
    await make_account("ok@example.com")

    known = await services.forgot_password(
        db_session, email="ok@example.com", ip_address=IP, limiter=limiter, mailer=mailer
    )
    unknown = await services.forgot_password(
        db_session, email="ghost@example.com", ip_address=IP, limiter=limiter, mailer=mailer
    )

    assert known.value == unknown.value
    assert mailer.kinds() == ["password reset"]
    token = await token_for(db_session, "ok@example.com", TokenPurpose.PASSWORD_RESET)
    assert timedelta(minutes=59) < token.expires - utcnow() <= timedelta(hours=1)


async def test_reset_password_changes_hash_and_consumes_token(db_session, make_account, limiter, mailer):
    account = await make_account("ok@example.com")
    await services.forgot_password(
        db_session, email="ok@example.com", ip_address=IP, limiter=limiter, mailer=mailer
    )
    token = await token_for(db_session, "ok@example.com", TokenPurpose.PASSWORD_RESET)

    result = await services.reset_password(
        db_session, token=token.token, password="brand-new-password", limiter=limiter
    )

    assert isinstance(result, Ok)
    refreshed = await db_session.get(Account, account.id)
    await db_session.refresh(refreshed)
    assert check_password("brand-new-password", refreshed.password_hash)

    reused = await services.reset_password(
        db_session, token=token.token, password="another-password", limiter=limiter
    )
    assert reused.message == "Invalid or expired reset link"


async def test_reset_password_expired(db_session, make_account, limiter):
    await make_account("ok@example.com")
    db_session.add(
        VerificationToken(
            token="old-reset",
            identifier="ok@example.com",
            purpose=TokenPurpose.PASSWORD_RESET.value,
            expires=utcnow() - timedelta(seconds=1),
        )
    )
    await db_session.commit()

    result = await services.reset_password(
        db_session, token="old-reset", password="brand-new-password", limiter=limiter
    )
    assert result.message == "Reset link has expired"
    assert await db_session.get(VerificationToken, "old-reset") is None


async def test_reset_password_validates_before_lookup(db_session, limiter):
    result = await services.reset_password(db_session, token="whatever", password="short", limiter=limiter)
    assert result.kind is ErrorKind.VALIDATION
    assert result.message == "Password must be at least 8 characters"
