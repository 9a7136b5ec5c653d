"""Administrative account management."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.authorization import Authorizer
from crm.core.database import utcnow
from crm.core.logging_config import anonymize, get_security_logger
from crm.core.permissions import Action, Resource, Role, parse_role
from crm.core.result import Err, ErrorKind, Ok, Result
from crm.core.security import hash_password_async
from crm.domain.accounts.models import Account
from crm.domain.auth.services import (
    MAX_NAME_LENGTH,
    get_account_by_email,
    normalize_email,
    validate_email_format,
    validate_password,
)
from crm.domain.security.tokens import delete_tokens_for
from crm.services.mailer import EmailDeliveryError, Mailer

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

LAST_ADMIN_DELETE = "Cannot delete the last admin user"
LAST_ADMIN_DEMOTE = "Cannot remove the last admin user"
USER_NOT_FOUND = "User not found"


@dataclass(slots=True)
class AccountChanges:
    name: str | None = None
    role: str | None = None
    is_active: bool | None = None
    password: str | None = None


async def count_active_admins(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(Account.id)).where(
            Account.role == Role.ADMIN.value,
            Account.is_active.is_(True),
        )
    )
    return int(result.scalar_one())


async def list_accounts(db: AsyncSession, actor: Authorizer) -> Result[list[Account]]:
    permitted = actor.require_permission(Resource.USER, Action.READ)
    if isinstance(permitted, Err):
        return permitted
    result = await db.execute(select(Account).order_by(Account.created_at.desc(), Account.email))
    return Ok(list(result.scalars().all()))


async def get_account(db: AsyncSession, actor: Authorizer, account_id: str) -> Result[Account]:
    permitted = actor.require_permission(Resource.USER, Action.READ)
    if isinstance(permitted, Err):
        return permitted
    account = await db.get(Account, account_id)
    if account is None:
        return Err(ErrorKind.NOT_FOUND, USER_NOT_FOUND)
    return Ok(account)


async def create_account(
    db: AsyncSession,
    actor: Authorizer,
    *,
    name: str | None,
    email: str | None,
    password: str | None,
    role: str | None = None,
    verified: bool = False,
) -> Result[Account]:
    """Create an account on behalf of an admin or manager.

    Managers may only create ``rep`` accounts.
    """
    permitted = actor.require_permission(Resource.USER, Action.CREATE)
    if isinstance(permitted, Err):
        return permitted

    name = (name or "").strip()
    email = normalize_email(email)
    if not name or not email or not password:
        return Err(ErrorKind.VALIDATION, "Name, email, and password are required")
    for problem in (validate_email_format(email), validate_password(password)):
        if problem:
            return Err(ErrorKind.VALIDATION, problem)
    if len(name) > MAX_NAME_LENGTH:
        return Err(ErrorKind.VALIDATION, f"Name must be less than {MAX_NAME_LENGTH} characters")

    new_role = parse_role(role or Role.REP.value)
    if new_role is None:
        return Err(ErrorKind.VALIDATION, "Invalid role")
    if actor.role is Role.MANAGER and new_role is not Role.REP:
        return Err(ErrorKind.FORBIDDEN, "Managers can only create sales representative accounts")

    if await get_account_by_email(db, email) is not None:
        return Err(ErrorKind.CONFLICT, "Email already registered")

    account = Account(
        name=name,
        email=email,
        password_hash=await hash_password_async(password),
        role=new_role.value,
        is_active=True,
        email_verified=utcnow() if verified else None,
    )
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return Err(ErrorKind.CONFLICT, "Email already registered")

    security_logger.info(
        "Account created by %s [account_id=%s, role=%s, email_hash=%s]",
        actor.account_id,
        account.id,
        account.role,
        anonymize(email),
    )
    return Ok(account)


def _removes_admin(account: Account, changes: AccountChanges) -> bool:
    if account.role != Role.ADMIN.value or not account.is_active:
        return False
    demoted = changes.role is not None and changes.role != Role.ADMIN.value
    deactivated = changes.is_active is False
    return demoted or deactivated


async def update_account(
    db: AsyncSession,
    actor: Authorizer,
    account_id: str,
    changes: AccountChanges,
) -> Result[Account]:
    permitted = actor.require_permission(Resource.USER, Action.UPDATE)
    if isinstance(permitted, Err):
        return permitted

    account = await db.get(Account, account_id)
    if account is None:
        return Err(ErrorKind.NOT_FOUND, USER_NOT_FOUND)

    if changes.role is not None and parse_role(changes.role) is None:
        return Err(ErrorKind.VALIDATION, "Invalid role")
    if changes.name is not None:
        name = changes.name.strip()
        if not name:
            return Err(ErrorKind.VALIDATION, "Name is required")
        if len(name) > MAX_NAME_LENGTH:
            return Err(ErrorKind.VALIDATION, f"Name must be less than {MAX_NAME_LENGTH} characters")
    if changes.password is not None:
        problem = validate_password(changes.password)
        if problem:
            return Err(ErrorKind.VALIDATION, problem)

    if _removes_admin(account, changes) and await count_active_admins(db) <= 1:
        security_logger.warning(
            "Refused to remove last admin [actor=%s, account_id=%s]", actor.account_id, account.id
        )
        return Err(ErrorKind.VALIDATION, LAST_ADMIN_DEMOTE)

    if changes.name is not None:
        account.name = changes.name.strip()
    if changes.role is not None:
        account.role = changes.role
    if changes.is_active is not None:
        account.is_active = changes.is_active
    if changes.password is not None:
        account.password_hash = await hash_password_async(changes.password)
    await db.commit()

    security_logger.info(
        "Account updated by %s [account_id=%s, role=%s, active=%s]",
        actor.account_id,
        account.id,
        account.role,
        account.is_active,
    )
    return Ok(account)


async def delete_account(db: AsyncSession, actor: Authorizer, account_id: str) -> Result[None]:
    permitted = actor.require_permission(Resource.USER, Action.DELETE)
    if isinstance(permitted, Err):
        return permitted

    account = await db.get(Account, account_id)
    if account is None:
        return Err(ErrorKind.NOT_FOUND, USER_NOT_FOUND)

    if account.role == Role.ADMIN.value and account.is_active and await count_active_admins(db) <= 1:
        security_logger.warning(
            "Refused to delete last admin [actor=%s, account_id=%s]", actor.account_id, account.id
        )
        return Err(ErrorKind.VALIDATION, LAST_ADMIN_DELETE)

    await delete_tokens_for(db, account.email)
    await db.delete(account)
    await db.commit()

    security_logger.info(
        "Account deleted by %s [account_id=%s, email_hash=%s]",
        actor.account_id,
        account_id,
        anonymize(account.email),
    )
    return Ok(None)


async def admin_verify_email(
    db: AsyncSession,
    actor: Authorizer,
    account_id: str,
    mailer: Mailer,
) -> Result[Account]:
    """Mark an account verified without a link and tell its owner."""
    if not actor.can_manage_users:
        return Err(ErrorKind.FORBIDDEN, "You don't have permission to manage users")

    account = await db.get(Account, account_id)
    if account is None:
        return Err(ErrorKind.NOT_FOUND, USER_NOT_FOUND)

    if account.email_verified is None:
        account.email_verified = utcnow()
    await delete_tokens_for(db, account.email)
    await db.commit()

    security_logger.info("Email verified by %s [account_id=%s]", actor.account_id, account.id)
    try:
        await mailer.send_account_activated_email(account.email, account.name)
    except EmailDeliveryError:
        logger.warning("Account activated e-mail not delivered [account_id=%s]", account.id)
    return Ok(account)


__all__ = [
    "AccountChanges",
    "admin_verify_email",
    "count_active_admins",
    "create_account",
    "delete_account",
    "get_account",
    "list_accounts",
    "update_account",
]
