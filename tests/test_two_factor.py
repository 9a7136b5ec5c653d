import pytest
from sqlalchemy import func, select

from crm.core import totp
from crm.core.result import Err, ErrorKind, Ok
from crm.domain.accounts.models import BackupCode
from crm.domain.two_factor import services

FROZEN_TIME = 1_700_000_015.0


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    monkeypatch.setattr(totp, "_timestamp", lambda: FROZEN_TIME)


async def enroll(db, account, limiter):
    payload = (await services.begin_enrollment(db, account, limiter)).value
    code = totp.current_code(payload.secret)
    confirmed = await services.confirm_enrollment(db, account, payload.secret, code, limiter)
    assert isinstance(confirmed, Ok)
    return payload


async def backup_code_count(db, account_id, used=None):
    stmt = select(func.count(BackupCode.id)).where(BackupCode.account_id == account_id)
    if used is not None:
        stmt = stmt.where(BackupCode.used.is_(used))
    return (await db.execute(stmt)).scalar_one()


async def test_begin_enrollment_does_not_enable(db_session, make_account, limiter):
    account = await make_account()

    result = await services.begin_enrollment(db_session, account, limiter)

    assert isinstance(result, Ok)
    payload = result.value
    assert len(payload.backup_codes) == 10
    assert payload.qr_code_url.startswith("otpauth://totp/")
    assert payload.secret in payload.qr_code_url
    assert account.two_factor_enabled is False
    assert account.two_factor_secret is None
    assert await backup_code_count(db_session, account.id, used=False) == 10


async def test_backup_codes_are_stored_hashed(db_session, make_account, limiter):
    account = await make_account()
    payload = (await services.begin_enrollment(db_session, account, limiter)).value

    stored = (
        await db_session.execute(select(BackupCode.code_hash).where(BackupCode.account_id == account.id))
    ).scalars().all()
    assert set(stored) == {totp.hash_backup_code(code) for code in payload.backup_codes}
    assert not set(stored) & set(payload.backup_codes)


async def test_confirm_enrollment_with_wrong_code_keeps_state(db_session, make_account, limiter):
    account = await make_account()
    payload = (await services.begin_enrollment(db_session, account, limiter)).value
    wrong = str((int(totp.current_code(payload.secret)) + 1) % 1_000_000).zfill(6)

    result = await services.confirm_enrollment(db_session, account, payload.secret, wrong, limiter)

    assert isinstance(result, Err)
    assert result.message == "Invalid verification code"
    assert account.two_factor_enabled is False


@pytest.mark.parametrize(
    "secret, code, message",
    [
        ("", "123456", "Secret and code are required"),
        ("JBSWY3DPEHPK3PXP", "", "Secret and code are required"),
        ("JBSWY3DPEHPK3PXP", "12345", "Code must be 6 digits"),
    ],
)
async def test_confirm_enrollment_validation(db_session, make_account, limiter, secret, code, message):
    account = await make_account()
    result = await services.confirm_enrollment(db_session, account, secret, code, limiter)
    assert result.kind is ErrorKind.VALIDATION
    assert result.message == message


async def test_enabled_account_has_secret(db_session, make_account, limiter):
    account = await make_account()
    payload = await enroll(db_session, account, limiter)

    assert account.two_factor_enabled is True
    assert account.two_factor_secret == payload.secret

    again = await services.begin_enrollment(db_session, account, limiter)
    assert again.message == "Two-factor authentication is already enabled"


async def test_challenge_accepts_totp(db_session, make_account, limiter):
    account = await make_account()
    payload = await enroll(db_session, account, limiter)

    result = await services.challenge(db_session, account, totp.current_code(payload.secret), limiter)

    assert result.value.method == "totp"


async def test_backup_code_is_single_use(db_session, make_account, limiter):
    account = await make_account()
    payload = await enroll(db_session, account, limiter)
    code = payload.backup_codes[0]

    first = await services.challenge(db_session, account, code.lower(), limiter)
    second = await services.challenge(db_session, account, code, limiter)

    assert first.value.method == "backup"
    assert isinstance(second, Err)
    assert second.message == "Invalid verification code"
    assert second.http_status == 400
    assert await backup_code_count(db_session, account.id, used=True) == 1


async def test_challenge_requires_enabled_and_code(db_session, make_account, limiter):
    account = await make_account()

    missing = await services.challenge(db_session, account, "", limiter)
    assert missing.message == "Code is required"

    disabled = await services.challenge(db_session, account, "123456", limiter)
    assert disabled.message == "Two-factor authentication is not enabled"


async def test_challenge_rate_limit(db_session, make_account, limiter):
    account = await make_account()
    await enroll(db_session, account, limiter)
    for _ in range(10):
        await services.challenge(db_session, account, "000000", limiter)

    result = await services.challenge(db_session, account, "000000", limiter)
    assert result.kind is ErrorKind.RATE_LIMITED


async def test_disable_clears_everything(db_session, make_account, limiter):
    account = await make_account()
    await enroll(db_session, account, limiter)

    result = await services.disable(db_session, account)

    assert isinstance(result, Ok)
    assert account.two_factor_enabled is False
    assert account.two_factor_secret is None
    assert await backup_code_count(db_session, account.id) == 0

    again = await services.disable(db_session, account)
    assert again.message == "Two-factor authentication is not enabled"


async def test_regenerate_replaces_all_codes(db_session, make_account, limiter):
    account = await make_account()
    payload = await enroll(db_session, account, limiter)

    result = await services.regenerate_backup_codes(db_session, account, limiter)

    assert isinstance(result, Ok)
    assert len(result.value) == 10
    assert not set(result.value) & set(payload.backup_codes)
    assert await backup_code_count(db_session, account.id) == 10

    old = await services.challenge(db_session, account, payload.backup_codes[0], limiter)
    assert isinstance(old, Err)


async def test_regenerate_requires_enabled(db_session, make_account, limiter):
    account = await make_account()
    result = await services.regenerate_backup_codes(db_session, account, limiter)
    assert result.message == "Two-factor authentication is not enabled"


async def test_enable_bucket_is_shared_by_enrollment_steps(db_session, make_account, limiter):
    account = await make_account()
    for _ in range(3):
        await services.begin_enrollment(db_session, account, limiter)

    result = await services.begin_enrollment(db_session, account, limiter)
    assert result.kind is ErrorKind.RATE_LIMITED


async def test_malformed_challenges_do_not_spend_quota(db_session, make_account, limiter):
    account = await make_account()
    payload = await enroll(db_session, account, limiter)
    for _ in range(10):
        assert (await services.challenge(db_session, account, "", limiter)).message == "Code is required"
        too_long = await services.challenge(db_session, account, "9" * 17, limiter)
        assert too_long.kind is ErrorKind.VALIDATION

    result = await services.challenge(db_session, account, totp.current_code(payload.secret), limiter)
    assert result.value.method == "totp"


async def test_malformed_setup_does_not_spend_quota(db_session, make_account, limiter):
    account = await make_account()
    payload = (await services.begin_enrollment(db_session, account, limiter)).value
    for code in ("", "12345", "abcdef"):
        rejected = await services.confirm_enrollment(db_session, account, payload.secret, code, limiter)
        assert rejected.kind is ErrorKind.VALIDATION
    bad_secret = await services.confirm_enrollment(db_session, account, "ABC1", "123456", limiter)
    assert bad_secret.message == "Invalid secret"

    code = totp.current_code(payload.secret)
    confirmed = await services.confirm_enrollment(db_session, account, payload.secret, code, limiter)
    assert isinstance(confirmed, Ok)
