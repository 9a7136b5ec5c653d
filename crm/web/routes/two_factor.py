import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.cookies import clear_two_factor_cookie, set_session_cookie
from crm.core.database import get_db
from crm.core.rate_limit import RateLimiter, get_rate_limiter
from crm.core.result import unwrap
from crm.core.security import session_tokens
from crm.core.session import get_current_account, get_password_verified_account
from crm.domain.accounts.models import Account
from crm.domain.auth.schemas import (
    BackupCodesOut,
    ChallengeOut,
    CodeRequest,
    EnrollmentOut,
    MessageOut,
    VerifySetupRequest,
)
from crm.domain.two_factor import services

router = APIRouter(prefix="/auth/2fa")
logger = logging.getLogger(__name__)


@router.post("/enable", response_model=EnrollmentOut)
async def enable(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Start enrollment; the secret and backup codes are shown once."""
    payload = unwrap(await services.begin_enrollment(db, account, limiter))
    return EnrollmentOut(
        secret=payload.secret,
        qr_code_url=payload.qr_code_url,
        backup_codes=payload.backup_codes,
    )


@router.post("/verify-setup", response_model=MessageOut)
async def verify_setup(
    payload: VerifySetupRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    unwrap(await services.confirm_enrollment(db, account, payload.secret, payload.code, limiter))
    return MessageOut(message="Two-factor authentication enabled successfully")


@router.post("/verify", response_model=ChallengeOut)
async def verify(
    payload: CodeRequest,
    account: Account = Depends(get_password_verified_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Second sign-in step; on success the full session cookie is issued."""
    outcome = unwrap(await services.challenge(db, account, payload.code, limiter))

    body = ChallengeOut(method=outcome.method)
    response = JSONResponse(content=body.model_dump(by_alias=True))
    token = session_tokens.issue(account.id, account.email, account.name, account.role)
    set_session_cookie(response, token)
    clear_two_factor_cookie(response)
    return response


@router.post("/disable", response_model=MessageOut)
async def disable(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    unwrap(await services.disable(db, account))
    return MessageOut(message="Two-factor authentication disabled successfully")


@router.post("/regenerate-codes", response_model=BackupCodesOut)
async def regenerate_codes(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    codes = unwrap(await services.regenerate_backup_codes(db, account, limiter))
    return BackupCodesOut(backup_codes=codes)
