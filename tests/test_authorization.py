from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from sqlalchemy import Column, Integer, MetaData, String, Table, select

from crm.core.authorization import (
    OWNERSHIP_DENIED,
    Authorizer,
    require_analytics_access,
    require_permission,
    require_user_management,
)
from crm.core.permissions import Action, Resource, Role
from crm.core.result import Err, ErrorKind, Ok, ServiceError

deals = Table(
    "deals",
    MetaData(),
    Column("id", Integer, primary_key=True),
    Column("user_id", String(36)),
)


def make(role: Role, account_id: str = "me") -> Authorizer:
    return Authorizer(account_id=account_id, role=role)


def test_require_permission_denial_message():
    result = make(Role.REP).require_permission(Resource.USER, Action.READ)
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.FORBIDDEN
    assert result.message == "You don't have permission to read users"


def test_require_permission_allows_table_entries():
    assert isinstance(make(Role.MANAGER).require_permission("user", "create"), Ok)


@pytest.mark.parametrize("action", list(Action))
def test_admin_accesses_any_record(action):
    assert isinstance(make(Role.ADMIN).can_access_record(action, "someone-else"), Ok)


def test_manager_reads_but_cannot_edit_others_records():
    manager = make(Role.MANAGER)
    assert isinstance(manager.can_access_record(Action.READ, "other"), Ok)

    denied = manager.can_access_record(Action.UPDATE, "other")
    assert isinstance(denied, Err)
    assert denied.message == OWNERSHIP_DENIED
    assert isinstance(manager.can_access_record(Action.UPDATE, "me"), Ok)


def test_rep_only_touches_own_records():
    rep = make(Role.REP)
    assert isinstance(rep.can_access_record(Action.READ, "me"), Ok)
    assert isinstance(rep.can_access_record(Action.READ, "other"), Err)
    assert isinstance(rep.can_access_record(Action.DELETE, None), Err)


def test_user_filter():
    assert make(Role.ADMIN).get_user_filter(Action.DELETE) == {}
    assert make(Role.MANAGER).get_user_filter(Action.READ) == {}
    assert make(Role.MANAGER).get_user_filter(Action.UPDATE) == {"user_id": "me"}
    assert make(Role.REP).get_user_filter(Action.READ) == {"user_id": "me"}


def test_scope_query_adds_owner_condition_only_when_restricted():
    stmt = select(deals)

    unrestricted = make(Role.ADMIN).scope_query(stmt, deals.c.user_id, Action.READ)
    assert unrestricted.whereclause is None

    restricted = make(Role.REP).scope_query(stmt, deals.c.user_id, Action.READ)
    assert "deals.user_id" in str(restricted.whereclause)


def test_unknown_role_falls_back_to_rep():
    account = SimpleNamespace(id="acc", role="superuser")
    authorizer = Authorizer.for_account(account)
    assert authorizer.role is Role.REP
    assert not authorizer.can_manage_users


def test_permission_dependency_raises_forbidden():
    dependency = require_permission(Resource.USER, Action.UPDATE)

    with pytest.raises(ServiceError) as excinfo:
        dependency(make(Role.MANAGER))
    assert excinfo.value.status_code == 403

    admin = make(Role.ADMIN)
    assert dependency(admin) is admin


def test_management_guards():
    with pytest.raises(HTTPException):
        require_user_management(make(Role.MANAGER))
    with pytest.raises(HTTPException):
        require_analytics_access(make(Role.REP))
    assert require_analytics_access(make(Role.MANAGER)).role is Role.MANAGER


@pytest.mark.parametrize("resource, action", [("company", "read"), ("contact", "archive")])
def test_unknown_resource_or_action_is_denied(resource, action):
    result = make(Role.ADMIN).require_permission(resource, action)
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.FORBIDDEN
    assert result.message == f"You don't have permission to {action} {resource}s"


def test_unknown_action_is_scoped_to_own_records():
    manager = make(Role.MANAGER)
    assert manager.get_user_filter("archive") == {"user_id": "me"}
    assert isinstance(manager.can_access_record("archive", "other"), Err)
