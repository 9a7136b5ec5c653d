"""Pydantic schemas for the auth and two-factor endpoints.

Request fields are optional so that missing values reach the services and get
their specific messages. JSON uses camelCase; snake_case is accepted too.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class SignUpRequest(RequestModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class SignInRequest(RequestModel):
    email: Optional[str] = None
    password: Optional[str] = None


class EmailRequest(RequestModel):
    """Body of resend-verification and forgot-password."""

    email: Optional[str] = None


class ResetPasswordRequest(RequestModel):
    token: Optional[str] = None
    password: Optional[str] = None


class VerifySetupRequest(RequestModel):
    secret: Optional[str] = None
    code: Optional[str] = None


class CodeRequest(RequestModel):
    code: Optional[str] = None


class MessageOut(CamelModel):
    message: str


class SignUpOut(MessageOut):
    email: str


class SignInOut(CamelModel):
    success: bool = True
    requires_two_factor: bool
    user: Optional[dict] = None


class EnrollmentOut(CamelModel):
    secret: str
    qr_code_url: str
    backup_codes: list[str]


class ChallengeOut(CamelModel):
    success: bool = True
    method: str


class BackupCodesOut(CamelModel):
    backup_codes: list[str]


__all__ = [
    "BackupCodesOut",
    "ChallengeOut",
    "CodeRequest",
    "EmailRequest",
    "EnrollmentOut",
    "MessageOut",
    "ResetPasswordRequest",
    "SignInOut",
    "SignInRequest",
    "SignUpOut",
    "SignUpRequest",
    "VerifySetupRequest",
]
