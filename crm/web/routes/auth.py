import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.cookies import (
    clear_session_cookie,
    clear_two_factor_cookie,
    set_session_cookie,
    set_two_factor_cookie,
)
from crm.core.database import get_db
from crm.core.rate_limit import RateLimiter, get_rate_limiter
from crm.core.result import unwrap
from crm.core.security import session_tokens, two_factor_tickets
from crm.core.session import get_client_ip, get_user_agent
from crm.domain.auth import services
from crm.domain.auth.schemas import (
    EmailRequest,
    MessageOut,
    ResetPasswordRequest,
    SignInOut,
    SignInRequest,
    SignUpOut,
    SignUpRequest,
)
from crm.services.mailer import Mailer, get_mailer

router = APIRouter(prefix="/auth")
logger = logging.getLogger(__name__)


@router.post("/signup", response_model=SignUpOut, status_code=201)
async def signup(
    payload: SignUpRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    """Register an unverified account and send the verification link."""
    result = await services.sign_up(
        db,
        name=payload.name,
        email=payload.email,
        password=payload.password,
        ip_address=get_client_ip(request),
        limiter=limiter,
        mailer=mailer,
    )
    return unwrap(result)


@router.get("/verify-email", response_model=MessageOut)
async def verify_email(
    token: str | None = None,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    return unwrap(await services.verify_email(db, token=token, limiter=limiter))


@router.post("/resend-verification", response_model=MessageOut)
async def resend_verification(
    payload: EmailRequest,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    result = await services.resend_verification(
        db, email=payload.email, limiter=limiter, mailer=mailer
    )
    return unwrap(result)


@router.post("/signin")
async def signin(
    payload: SignInRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    """Password step of sign-in.

    Without two-factor the session cookie is set right away; otherwise a
    short-lived pending cookie is set and the client must call
    ``/auth/2fa/verify``.
    """
    result = await services.sign_in(
        db,
        email=payload.email,
        password=payload.password,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        limiter=limiter,
        mailer=mailer,
    )
    outcome = unwrap(result)
    account = outcome.account

    body = SignInOut(
        requires_two_factor=outcome.two_factor_required,
        user={"id": account.id, "email": account.email, "name": account.name, "role": account.role},
    )
    response = JSONResponse(content=body.model_dump(by_alias=True))
    if outcome.two_factor_required:
        clear_session_cookie(response)
        set_two_factor_cookie(response, two_factor_tickets.issue(account.id))
    else:
        clear_two_factor_cookie(response)
        token = session_tokens.issue(account.id, account.email, account.name, account.role)
        set_session_cookie(response, token)
    return response


@router.post("/signout", response_model=MessageOut)
async def signout():
    response = JSONResponse(content={"message": "Signed out"})
    clear_session_cookie(response)
    clear_two_factor_cookie(response)
    return response


@router.post("/forgot-password", response_model=MessageOut)
async def forgot_password(
    payload: EmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    mailer: Mailer = Depends(get_mailer),
):
    result = await services.forgot_password(
        db,
        email=payload.email,
        ip_address=get_client_ip(request),
        limiter=limiter,
        mailer=mailer,
    )
    return unwrap(result)


@router.post("/reset-password", response_model=MessageOut)
async def reset_password(
    payload: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    result = await services.reset_password(
        db, token=payload.token, password=payload.password, limiter=limiter
    )
    return unwrap(result)
