"""Create a verified admin account, or reset an existing one to admin."""

import argparse
import asyncio
import getpass
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from crm.core.database import AsyncSessionLocal, init_db, utcnow  # noqa: E402
from crm.core.permissions import Role  # noqa: E402
from crm.core.security import hash_password_async  # noqa: E402
from crm.domain.accounts.models import Account  # noqa: E402
from crm.domain.auth.services import (  # noqa: E402
    get_account_by_email,
    normalize_email,
    validate_email_format,
    validate_password,
)
from crm.domain.security import models as security_models  # noqa: F401,E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or reset a verified admin account")
    parser.add_argument("--email", required=True, help="Admin e-mail address")
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument(
        "--password",
        help="Password (prompted when omitted)",
    )
    return parser.parse_args()


async def seed_admin(email: str, name: str, password: str) -> str:
    email = normalize_email(email)
    for problem in (validate_email_format(email), validate_password(password)):
        if problem:
            raise SystemExit(problem)

    await init_db()
    async with AsyncSessionLocal() as session:
        account = await get_account_by_email(session, email)
        if account is None:
            account = Account(name=name, email=email)
            session.add(account)

        account.password_hash = await hash_password_async(password)
        account.role = Role.ADMIN.value
        account.is_active = True
        if account.email_verified is None:
            account.email_verified = utcnow()

        await session.commit()
        return account.id


if __name__ == "__main__":
    args = parse_args()
    password = args.password or getpass.getpass("Password: ")
    account_id = asyncio.run(seed_admin(args.email, args.name, password))
    print(f"Admin account ready: {account_id}")
