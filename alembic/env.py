import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine.url import make_url

load_dotenv()

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from crm.core.database import Base  # noqa: E402
from crm.domain.accounts.models import Account, BackupCode  # noqa: E402,F401
from crm.domain.security.models import RateLimitHit, SignInHistory, VerificationToken  # noqa: E402,F401

target_metadata = Base.metadata

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./crm.db"


def _sync_url_from_env() -> str:
    """Swap the async driver of DATABASE_URL for its sync counterpart."""
    url = make_url(os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)

    if url.drivername == "sqlite+aiosqlite":
        url = url.set(drivername="sqlite+pysqlite")
    elif url.drivername == "postgresql+asyncpg":
        url = url.set(drivername="postgresql+psycopg2")

    return url.render_as_string(hide_password=False)


def _configure_sqlalchemy_url():
    config.set_main_option("sqlalchemy.url", _sync_url_from_env())


def run_migrations_offline() -> None:
    _configure_sqlalchemy_url()
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    _configure_sqlalchemy_url()
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        future=True,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
