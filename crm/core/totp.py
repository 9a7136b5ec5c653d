"""Time-based one-time passwords (RFC 6238) and backup codes.

Nothing here touches the database. The clock is read only through
``_timestamp`` so that callers and tests can pin the time step.
"""
from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime, timezone

import pyotp

from crm.core.config import settings

TOTP_DIGITS = 6
TOTP_PERIOD_SECONDS = 30
SECRET_LENGTH = 32
BACKUP_CODE_COUNT = 10
BACKUP_CODE_BYTES = 4


def _timestamp() -> float:
    return time.time()


def _moment(at: float | None) -> datetime:
    if at is None:
        at = _timestamp()
    return datetime.fromtimestamp(int(at), tz=timezone.utc)


def _totp(secret: str, issuer: str | None = None) -> pyotp.TOTP:
    normalized = (secret or "").replace(" ", "").upper()
    return pyotp.TOTP(
        normalized,
        digits=TOTP_DIGITS,
        interval=TOTP_PERIOD_SECONDS,
        issuer=issuer or settings.TOTP_ISSUER,
    )


def generate_secret() -> str:
    """Return a random 160-bit secret as 32 unpadded base32 characters."""
    return pyotp.random_base32(length=SECRET_LENGTH)


def is_valid_secret(secret: str | None) -> bool:
    """True when ``secret`` decodes as base32 (case and spaces are ignored)."""
    if not secret or not secret.strip():
        return False
    try:
        _totp(secret).byte_secret()
    except ValueError:
        return False
    return True


def current_code(secret: str, at: float | None = None) -> str:
    """Return the 6-digit code for the 30-second step containing ``at`` (default: now)."""
    return _totp(secret).at(_moment(at))


def verify_code(
    secret: str,
    candidate: str | None,
    at: float | None = None,
    window: int | None = None,
) -> bool:
    """Check ``candidate`` against the current step.

    ``window`` widens the check to that many steps on either side; it defaults
    to ``settings.TOTP_VALID_WINDOW`` which is 0 (current step only).
    """
    if window is None:
        window = settings.TOTP_VALID_WINDOW
    candidate = (candidate or "").strip()
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    if not is_valid_secret(secret):
        return False
    return _totp(secret).verify(candidate, for_time=_moment(at), valid_window=window)


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    """Return ``count`` independent 8-character uppercase hex recovery codes."""
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    """Digest stored in place of the code; lookups hash the candidate the same way."""
    return hashlib.sha256(normalize_backup_code(code).encode("ascii", "ignore")).hexdigest()


def build_enrollment_uri(email: str, secret: str, issuer: str | None = None) -> str:
    """Return the ``otpauth://totp/...`` URI rendered as a QR code by the client."""
    issuer = issuer or settings.TOTP_ISSUER
    return _totp(secret, issuer).provisioning_uri(name=email, issuer_name=issuer)


__all__ = [
    "BACKUP_CODE_COUNT",
    "build_enrollment_uri",
    "current_code",
    "generate_backup_codes",
    "generate_secret",
    "hash_backup_code",
    "is_valid_secret",
    "normalize_backup_code",
    "verify_code",
]
