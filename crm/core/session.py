"""Session helpers and dependencies."""
from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.cookies import SESSION_COOKIE_NAME, TWO_FACTOR_COOKIE_NAME
from crm.core.database import get_db
from crm.core.security import session_tokens, two_factor_tickets
from crm.domain.accounts.models import Account

FALLBACK_CLIENT_IP = "127.0.0.1"


def get_client_ip(request: Request) -> str:
    """Best-effort client address, honouring the usual proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value

    if request.client and request.client.host:
        return request.client.host
    return FALLBACK_CLIENT_IP


def get_user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent") or None


def get_session_token(
    request: Request,
    session_value: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> str | None:
    """Return the session token from the cookie or an ``Authorization: Bearer`` header."""
    if session_value:
        return session_value
    authorization = request.headers.get("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def _load_active_account(db: AsyncSession, account_id: str) -> Account | None:
    account = await db.get(Account, account_id)
    if account is None or not account.is_active:
        return None
    return account


async def get_current_account(
    token: str | None = Depends(get_session_token),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Load the signed-in account from the session token."""
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    claims = session_tokens.decode(token)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")

    account = await _load_active_account(db, claims.account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return account


async def get_password_verified_account(
    token: str | None = Depends(get_session_token),
    pending_ticket: Optional[str] = Cookie(None, alias=TWO_FACTOR_COOKIE_NAME),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Account that passed the password step: a pending 2FA ticket or a full session."""
    account_id = two_factor_tickets.verify(pending_ticket) if pending_ticket else None
    if account_id is None and token:
        claims = session_tokens.decode(token)
        account_id = claims.account_id if claims else None

    if account_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    account = await _load_active_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return account


__all__ = [
    "get_client_ip",
    "get_current_account",
    "get_password_verified_account",
    "get_session_token",
    "get_user_agent",
]
