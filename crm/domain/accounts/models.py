import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from crm.core.database import Base, utcnow


def _new_account_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """A person who can sign in to the CRM."""

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_account_id)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="rep")  # admin, manager, rep
    is_active = Column(Boolean, nullable=False, default=True)
    email_verified = Column(DateTime, nullable=True)

    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_secret = Column(String(64), nullable=True)

    last_sign_in_ip = Column(String(64), nullable=True)
    last_sign_in_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    backup_codes = relationship(
        "BackupCode",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BackupCode(Base):
    """One single-use two-factor recovery code (stored as a SHA-256 digest)."""

    __tablename__ = "two_factor_backup_codes"
    __table_args__ = (
        Index("ix_backup_codes_account_code", "account_id", "code_hash"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(
        String(36),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code_hash = Column(String(64), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    account = relationship("Account", back_populates="backup_codes")


__all__ = ["Account", "BackupCode"]
