from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]
DEFAULT_SECRET_KEY = "change-this-secret-key-in-production"
RATE_LIMIT_BACKENDS = {"database", "memory", "none"}


def _normalize_allowed_hosts(value: Any) -> list[str]:
    """Accept comma-separated string or list-like and normalize hosts."""
    if value is None or value == "":
        return []

    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple, set)):
        parts = [str(part).strip() for part in value]
    else:
        return []

    return [part for part in parts if part]


class Settings(BaseSettings):
    """Application settings."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./crm.db"
    ALLOWED_HOSTS: list[str] = Field(default_factory=lambda: DEFAULT_ALLOWED_HOSTS.copy())

    # Application
    ENV: str = "development"
    SECRET_KEY: str = DEFAULT_SECRET_KEY
    APP_NAME: str = "CRM Contact Manager"
    APP_URL: str = "http://localhost:8000"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Resend API
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@crm.com"

    # Sessions
    JWT_ALGORITHM: str = "HS256"
    SESSION_MAX_AGE_DAYS: int = 30
    TWO_FACTOR_PENDING_MINUTES: int = 5
    BCRYPT_ROUNDS: int = 10

    # Two-factor authentication
    TOTP_ISSUER: str = "CRM Contact Manager"
    # Number of 30-second steps accepted on either side of the current one.
    TOTP_VALID_WINDOW: int = 0

    # Verification tokens
    EMAIL_VERIFICATION_TTL_HOURS: int = 24
    PASSWORD_RESET_TTL_MINUTES: int = 60

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "database"
    RATE_LIMIT_TIMEOUT_SECONDS: float = 2.0

    # Pydantic v2 compatible settings: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("ALLOWED_HOSTS", mode="before")
    @classmethod
    def parse_allowed_hosts(cls, value: Any) -> list[str] | Any:
        """Support comma-separated ALLOWED_HOSTS from environment."""
        return _normalize_allowed_hosts(value)

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def check_rate_limit_backend(cls, value: str) -> str:
        backend = value.strip().lower()
        if backend not in RATE_LIMIT_BACKENDS:
            raise ValueError(f"RATE_LIMIT_BACKEND must be one of {sorted(RATE_LIMIT_BACKENDS)}")
        return backend

    @field_validator("TOTP_VALID_WINDOW")
    @classmethod
    def check_totp_window(cls, value: int) -> int:
        if value < 0:
            raise ValueError("TOTP_VALID_WINDOW cannot be negative")
        return value


def _validate_security() -> None:
    """Fail fast when running production with insecure defaults."""
    env = settings.ENV.lower()
    if env != "production":
        return

    secret = settings.SECRET_KEY
    if not secret or secret == DEFAULT_SECRET_KEY or len(secret) < 32:
        raise ValueError("SECRET_KEY must be set to a strong value in production.")

    if not settings.ALLOWED_HOSTS or settings.ALLOWED_HOSTS == DEFAULT_ALLOWED_HOSTS:
        raise ValueError("ALLOWED_HOSTS must be configured explicitly in production.")

    if settings.DATABASE_URL.startswith("sqlite"):
        raise ValueError("Use PostgreSQL in production; sqlite is only for local/dev.")


settings = Settings()


_validate_security()
