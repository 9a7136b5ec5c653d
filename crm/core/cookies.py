"""Utilities for working with HTTP cookies."""
from __future__ import annotations

from fastapi import Response

from crm.core.config import settings
from crm.core.security import session_tokens, two_factor_tickets

SESSION_COOKIE_NAME = "crm_session"
TWO_FACTOR_COOKIE_NAME = "crm_2fa_pending"


def _secure() -> bool:
    return settings.ENV.lower() == "production"


def set_session_cookie(response: Response, token: str) -> None:
    """Set the session cookie with secure defaults."""
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=session_tokens.max_age_seconds,
        httponly=True,
        samesite="lax",
        secure=_secure(),
    )


def clear_session_cookie(response: Response) -> None:
    """Remove the session cookie using the same security options."""
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        httponly=True,
        samesite="lax",
        secure=_secure(),
    )


def set_two_factor_cookie(response: Response, ticket: str) -> None:
    response.set_cookie(
        key=TWO_FACTOR_COOKIE_NAME,
        value=ticket,
        max_age=two_factor_tickets.max_age_seconds,
        httponly=True,
        samesite="strict",
        secure=_secure(),
    )


def clear_two_factor_cookie(response: Response) -> None:
    response.delete_cookie(
        key=TWO_FACTOR_COOKIE_NAME,
        httponly=True,
        samesite="strict",
        secure=_secure(),
    )


__all__ = [
    "SESSION_COOKIE_NAME",
    "TWO_FACTOR_COOKIE_NAME",
    "clear_session_cookie",
    "clear_two_factor_cookie",
    "set_session_cookie",
    "set_two_factor_cookie",
]
