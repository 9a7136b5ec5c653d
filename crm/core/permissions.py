"""Static role -> (resource, action) permission table."""
from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    REP = "rep"


class Resource(str, Enum):
    CONTACT = "contact"
    ACTIVITY = "activity"
    TASK = "task"
    DEAL = "deal"
    USER = "user"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


_CRUD = frozenset(Action)
_BUSINESS_RESOURCES = (Resource.CONTACT, Resource.ACTIVITY, Resource.TASK, Resource.DEAL)

ROLE_PERMISSIONS: dict[Role, frozenset[tuple[Resource, Action]]] = {
    Role.ADMIN: frozenset((resource, action) for resource in Resource for action in _CRUD),
    Role.MANAGER: frozenset(
        [(resource, action) for resource in _BUSINESS_RESOURCES for action in _CRUD]
        # Managers may add reps and list users, but not edit or remove them.
        + [(Resource.USER, Action.CREATE), (Resource.USER, Action.READ)]
    ),
    Role.REP: frozenset((resource, action) for resource in _BUSINESS_RESOURCES for action in _CRUD),
}

ROLE_NAMES: dict[Role, str] = {
    Role.ADMIN: "Administrator",
    Role.MANAGER: "Manager",
    Role.REP: "Sales Representative",
}


def parse_role(value: str | Role | None) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


def has_permission(role: str | Role, resource: str | Resource, action: str | Action) -> bool:
    """Return True when ``role`` may perform ``action`` on ``resource``."""
    parsed = parse_role(role)
    if parsed is None:
        return False
    try:
        key = (Resource(resource), Action(action))
    except ValueError:
        return False
    return key in ROLE_PERMISSIONS[parsed]


def can_read_all_records(role: str | Role) -> bool:
    return parse_role(role) in (Role.ADMIN, Role.MANAGER)


def can_manage_users(role: str | Role) -> bool:
    return parse_role(role) is Role.ADMIN


def can_access_analytics(role: str | Role) -> bool:
    return parse_role(role) in (Role.ADMIN, Role.MANAGER)


def role_display_name(role: str | Role) -> str:
    parsed = parse_role(role)
    if parsed is None:
        return str(role)
    return ROLE_NAMES[parsed]


__all__ = [
    "Action",
    "ROLE_NAMES",
    "ROLE_PERMISSIONS",
    "Resource",
    "Role",
    "can_access_analytics",
    "can_manage_users",
    "can_read_all_records",
    "has_permission",
    "parse_role",
    "role_display_name",
]
