"""Role permission checks and record-ownership enforcement.

Two layers guard every record-level operation:

1. :meth:`Authorizer.require_permission` checks the static role table.
2. :meth:`Authorizer.can_access_record` checks ownership of the record. Admins
   always pass, managers pass for reads, everyone else must own the record.

:meth:`Authorizer.get_user_filter` gives list endpoints the matching query
scope before anything reaches the database.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fastapi import Depends, HTTPException, status
from sqlalchemy.sql import Select

from crm.core.permissions import (
    Action,
    Resource,
    Role,
    can_access_analytics,
    can_manage_users,
    has_permission,
    parse_role,
)
from crm.core.result import Err, ErrorKind, Ok, Result, unwrap
from crm.core.session import get_current_account
from crm.domain.accounts.models import Account

security_logger = logging.getLogger("crm.security")

OWNERSHIP_DENIED = "You can only access your own records"


def _value(member: Enum | str) -> str:
    return member.value if isinstance(member, Enum) else str(member)


@dataclass(frozen=True, slots=True)
class Authorizer:
    """Authorization decisions for one signed-in account."""

    account_id: str
    role: Role

    @classmethod
    def for_account(cls, account: Account) -> "Authorizer":
        role = parse_role(account.role)
        if role is None:
            # Unknown roles get the narrowest rights.
            security_logger.warning("Account %s has unknown role %r", account.id, account.role)
            role = Role.REP
        return cls(account_id=account.id, role=role)

    def require_permission(self, resource: Resource | str, action: Action | str) -> Result[None]:
        resource_name = _value(resource)
        action_name = _value(action)
        if not has_permission(self.role, resource, action):
            security_logger.info(
                "Permission denied [account_id=%s, role=%s, resource=%s, action=%s]",
                self.account_id,
                self.role.value,
                resource_name,
                action_name,
            )
            return Err(
                ErrorKind.FORBIDDEN,
                f"You don't have permission to {action_name} {resource_name}s",
            )
        return Ok(None)

    def can_access_record(self, action: Action | str, record_owner_id: str | None) -> Result[None]:
        if self.sees_all_records(action):
            return Ok(None)
        if not record_owner_id or record_owner_id != self.account_id:
            return Err(ErrorKind.FORBIDDEN, OWNERSHIP_DENIED)
        return Ok(None)

    def sees_all_records(self, action: Action | str) -> bool:
        if self.role is Role.ADMIN:
            return True
        return self.role is Role.MANAGER and _value(action) == Action.READ.value

    def get_user_filter(self, action: Action | str) -> dict[str, str]:
        """Ownership filter for list queries; empty means no restriction."""
        if self.sees_all_records(action):
            return {}
        return {"user_id": self.account_id}

    def scope_query(self, stmt: Select, owner_column: Any, action: Action | str) -> Select:
        """Apply :meth:`get_user_filter` to a SQLAlchemy select on ``owner_column``."""
        if self.sees_all_records(action):
            return stmt
        return stmt.where(owner_column == self.account_id)

    @property
    def can_manage_users(self) -> bool:
        return can_manage_users(self.role)

    @property
    def can_access_analytics(self) -> bool:
        return can_access_analytics(self.role)


def get_authorizer(account: Account = Depends(get_current_account)) -> Authorizer:
    return Authorizer.for_account(account)


def require_permission(resource: Resource, action: Action):
    """Dependency factory that rejects the request unless the role allows it."""

    def dependency(authorizer: Authorizer = Depends(get_authorizer)) -> Authorizer:
        unwrap(authorizer.require_permission(resource, action))
        return authorizer

    return dependency


def require_user_management(authorizer: Authorizer = Depends(get_authorizer)) -> Authorizer:
    if not authorizer.can_manage_users:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have permission to manage users",
        )
    return authorizer


def require_analytics_access(authorizer: Authorizer = Depends(get_authorizer)) -> Authorizer:
    if not authorizer.can_access_analytics:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have permission to view system analytics",
        )
    return authorizer


__all__ = [
    "Authorizer",
    "OWNERSHIP_DENIED",
    "get_authorizer",
    "require_analytics_access",
    "require_permission",
    "require_user_management",
]
