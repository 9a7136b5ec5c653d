import pytest

from crm.core.permissions import (
    Action,
    Resource,
    Role,
    can_access_analytics,
    can_manage_users,
    can_read_all_records,
    has_permission,
    role_display_name,
)

BUSINESS = [Resource.CONTACT, Resource.ACTIVITY, Resource.TASK, Resource.DEAL]


def expected(role: Role, resource: Resource, action: Action) -> bool:
    if role is Role.ADMIN:
        return True
    if resource in BUSINESS:
        return True
    if role is Role.MANAGER:
        return action in (Action.CREATE, Action.READ)
    return False


@pytest.mark.parametrize("role", list(Role))
@pytest.mark.parametrize("resource", list(Resource))
@pytest.mark.parametrize("action", list(Action))
def test_permission_matrix(role, resource, action):
    assert has_permission(role, resource, action) is expected(role, resource, action)


def test_string_arguments():
    assert has_permission("rep", "user", "read") is False
    assert has_permission("manager", "user", "update") is False
    assert has_permission("admin", "deal", "delete") is True


def test_unknown_values_are_denied():
    assert has_permission("owner", "deal", "read") is False
    assert has_permission("admin", "invoice", "read") is False
    assert has_permission("admin", "deal", "archive") is False


def test_role_guards():
    assert can_manage_users("admin")
    assert not can_manage_users("manager")
    assert not can_manage_users("rep")

    assert can_access_analytics("admin")
    assert can_access_analytics("manager")
    assert not can_access_analytics("rep")

    assert can_read_all_records("manager")
    assert not can_read_all_records("rep")


def test_role_display_names():
    assert role_display_name("admin") == "Administrator"
    assert role_display_name(Role.MANAGER) == "Manager"
    assert role_display_name("rep") == "Sales Representative"
