"""Password hashing, opaque tokens, session JWTs and pending two-factor tickets."""
from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from crm.core.config import settings

SESSION_ISSUER = "crm-auth"
VERIFICATION_TOKEN_BYTES = 32
# bcrypt only reads the first 72 bytes.
BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def check_password(password: str, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash.
        return False


async def hash_password_async(password: str) -> str:
    return await asyncio.to_thread(hash_password, password)


async def check_password_async(password: str, password_hash: str | None) -> bool:
    return await asyncio.to_thread(check_password, password, password_hash)


def generate_verification_token() -> str:
    """Opaque random token for e-mail verification and password reset links."""
    return secrets.token_hex(VERIFICATION_TOKEN_BYTES)


@dataclass(frozen=True, slots=True)
class SessionClaims:
    account_id: str
    email: str
    name: str
    role: str
    expires_at: datetime


class SessionTokenManager:
    """Issue and decode the signed session token (JWT)."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", max_age_days: int = 30) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._max_age = timedelta(days=max_age_days)

    @property
    def max_age_seconds(self) -> int:
        return int(self._max_age.total_seconds())

    def issue(self, account_id: str, email: str, name: str, role: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": account_id,
            "email": email,
            "name": name,
            "role": role,
            "iat": now,
            "exp": now + self._max_age,
            "iss": SESSION_ISSUER,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def decode(self, token: str) -> SessionClaims | None:
        """Return the claims of a valid token, or None when invalid or expired."""
        try:
            data = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=SESSION_ISSUER,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.PyJWTError:
            return None

        return SessionClaims(
            account_id=str(data["sub"]),
            email=data.get("email", ""),
            name=data.get("name", ""),
            role=data.get("role", ""),
            expires_at=datetime.fromtimestamp(data["exp"], tz=timezone.utc),
        )


class TwoFactorTicketManager:
    """Short-lived proof that the password step succeeded for an account."""

    def __init__(self, secret_key: str, max_age_minutes: int = 5) -> None:
        self._serializer = URLSafeTimedSerializer(secret_key, salt="two-factor-pending")
        self._max_age = max_age_minutes * 60

    @property
    def max_age_seconds(self) -> int:
        return self._max_age

    def issue(self, account_id: str) -> str:
        return self._serializer.dumps({"account_id": account_id, "nonce": secrets.token_urlsafe(8)})

    def verify(self, ticket: str) -> str | None:
        """Return the account id for a valid ticket, None when tampered or stale."""
        try:
            data = self._serializer.loads(ticket, max_age=self._max_age)
        except (BadSignature, SignatureExpired):
            return None
        account_id = data.get("account_id") if isinstance(data, dict) else None
        return account_id or None


session_tokens = SessionTokenManager(
    settings.SECRET_KEY,
    algorithm=settings.JWT_ALGORITHM,
    max_age_days=settings.SESSION_MAX_AGE_DAYS,
)
two_factor_tickets = TwoFactorTicketManager(
    settings.SECRET_KEY,
    max_age_minutes=settings.TWO_FACTOR_PENDING_MINUTES,
)


__all__ = [
    "SessionClaims",
    "SessionTokenManager",
    "TwoFactorTicketManager",
    "check_password",
    "check_password_async",
    "generate_verification_token",
    "hash_password",
    "hash_password_async",
    "session_tokens",
    "two_factor_tickets",
]
