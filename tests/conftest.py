import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest_crm.db"
os.environ["ENV"] = "test"
os.environ["DEBUG"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RESEND_API_KEY"] = ""

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from crm.core import database  # noqa: E402
from crm.core.config import settings  # noqa: E402
from crm.core.database import Base, utcnow  # noqa: E402
from crm.core.rate_limit import InMemoryRateLimitStore, RateLimiter  # noqa: E402
from crm.core.security import hash_password  # noqa: E402
from crm.domain.accounts.models import Account  # noqa: E402
from crm.domain.security import models as security_models  # noqa: E402,F401
from crm.services.mailer import EmailDeliveryError, Mailer, get_mailer  # noqa: E402

DEFAULT_PASSWORD = "correct-horse-battery"


class RecordingMailer(Mailer):
    """Mailer that keeps messages in memory instead of calling Resend."""

    def __init__(self) -> None:
        super().__init__(settings)
        self.sent: list[dict] = []
        self.fail = False

    async def _send(self, to: str, subject: str, body_html: str, kind: str) -> None:
        if self.fail:
            raise EmailDeliveryError(f"Failed to send {kind} e-mail")
        self.sent.append({"to": to, "subject": subject, "html": body_html, "kind": kind})

    def kinds(self) -> list[str]:
        return [message["kind"] for message in self.sent]


def build_account(
    email: str = "rep@example.com",
    *,
    name: str = "Test User",
    password: str = DEFAULT_PASSWORD,
    role: str = "rep",
    verified: bool = True,
    active: bool = True,
) -> Account:
    return Account(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=active,
        email_verified=utcnow() if verified else None,
    )


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(InMemoryRateLimitStore())


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def make_account(db_session):
    async def factory(email: str = "rep@example.com", **kwargs) -> Account:
        account = build_account(email, **kwargs)
        db_session.add(account)
        await db_session.commit()
        return account

    return factory


async def _reset_database() -> None:
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def client(mailer):
    from main import app

    app.dependency_overrides[get_mailer] = lambda: mailer
    with TestClient(app) as test_client:
        test_client.portal.call(_reset_database)
        app.state.rate_limiter = RateLimiter(InMemoryRateLimitStore())
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seed_account(client):
    """Insert an account through the application's own engine."""

    def factory(email: str = "rep@example.com", **kwargs) -> dict:
        async def insert() -> dict:
            async with database.AsyncSessionLocal() as session:
                account = build_account(email, **kwargs)
                session.add(account)
                await session.commit()
                return {"id": account.id, "email": account.email}

        return client.portal.call(insert)

    return factory


@pytest.fixture
def run_db(client):
    """Run ``fn(session)`` against the application's database and return its result."""

    def runner(fn):
        async def call():
            async with database.AsyncSessionLocal() as session:
                return await fn(session)

        return client.portal.call(call)

    return runner
