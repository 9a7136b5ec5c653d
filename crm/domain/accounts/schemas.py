"""Pydantic schemas for account payloads."""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from crm.core.permissions import role_display_name


class AccountOut(BaseModel):
    """Account as returned by the API; never includes secrets."""

    id: str
    name: str
    email: str
    role: str
    is_active: bool
    email_verified: Optional[datetime]
    two_factor_enabled: bool
    last_sign_in_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class CurrentAccountOut(AccountOut):
    role_name: str

    @classmethod
    def from_account(cls, account) -> "CurrentAccountOut":
        base = AccountOut.model_validate(account)
        return cls(**base.model_dump(), role_name=role_display_name(account.role))


class AccountBase(BaseModel):
    name: str | None = None
    role: Literal["admin", "manager", "rep"] | None = None
    password: Optional[str] = None

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class AccountCreate(AccountBase):
    email: str | None = None
    verified: bool = False


class AccountUpdate(AccountBase):
    is_active: bool | None = None


class SignInHistoryOut(BaseModel):
    id: int
    ip_address: str
    user_agent: Optional[str]
    success: bool
    failure_reason: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class SignInActivityEntryOut(SignInHistoryOut):
    account_id: str


class SignInActivityOut(BaseModel):
    successful_last_24h: int
    failed_last_24h: int
    recent: list[SignInActivityEntryOut]

    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


__all__ = [
    "AccountCreate",
    "AccountOut",
    "AccountUpdate",
    "CurrentAccountOut",
    "SignInActivityEntryOut",
    "SignInActivityOut",
    "SignInHistoryOut",
]
