from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from crm.core.database import Base, utcnow

UNKNOWN_ACCOUNT_ID = "unknown"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class VerificationToken(Base):
    """Single-use token bound to an e-mail address for one purpose."""

    __tablename__ = "verification_tokens"
    __table_args__ = (
        Index("ix_verification_tokens_identifier_purpose", "identifier", "purpose"),
    )

    token = Column(String(128), primary_key=True)
    identifier = Column(String(255), nullable=False)
    purpose = Column(String(32), nullable=False)
    expires = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class SignInHistory(Base):
    """Append-only record of one sign-in attempt."""

    __tablename__ = "sign_in_history"
    __table_args__ = (
        Index("ix_sign_in_history_account_recent", "account_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Not a foreign key: failed attempts for unknown e-mails are stored as "unknown".
    account_id = Column(String(36), nullable=False, index=True)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(String(512), nullable=True)
    success = Column(Boolean, nullable=False)
    failure_reason = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class RateLimitHit(Base):
    """One counted request in a rate limit window."""

    __tablename__ = "rate_limit_hits"
    __table_args__ = (
        Index("ix_rate_limit_hits_key_recent", "key", "hit_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(255), nullable=False)
    hit_at = Column(DateTime, nullable=False)


__all__ = [
    "RateLimitHit",
    "SignInHistory",
    "TokenPurpose",
    "UNKNOWN_ACCOUNT_ID",
    "VerificationToken",
]
