import logging
from types import SimpleNamespace

import pytest

import permissions
from permissions import (ADMIN, MANAGER, TECHNICIAN, EMPLOYEE, ROLES, ACTIONS, PERMISSIONS, Scope,
                         PolicyMisconfiguredError, is_allowed, has_permission, capabilities,
                         resolve_visibility, can_access_request, validate_wiring)

EXPECTED_MATRIX = {
    'view_all_requests': {ADMIN, MANAGER},
    'view_own_requests': {ADMIN, MANAGER, TECHNICIAN, EMPLOYEE},
    'create_request': {ADMIN, MANAGER, EMPLOYEE},
    'update_request_stage': {ADMIN, MANAGER, TECHNICIAN},
    'delete_request': {ADMIN, MANAGER},
    'add_notes': {ADMIN, MANAGER, EMPLOYEE},
    'add_instructions': {ADMIN, MANAGER},
    'add_worksheet': {ADMIN},
    'manage_equipment': {ADMIN, MANAGER},
    'manage_workcenters': {ADMIN, MANAGER},
    'manage_teams': {ADMIN, MANAGER},
    'change_user_roles': {ADMIN},
}


def actor(role, id=1):
    return SimpleNamespace(id=id, role=role)


def test_matrix_matches_published_table():
    assert {action: set(roles) for action, roles in PERMISSIONS.items()} == EXPECTED_MATRIX


def test_result_equals_table_membership_for_every_role_and_action():
    for action in ACTIONS:
        for role in ROLES:
            assert is_allowed(role, action) == (role in PERMISSIONS[action]), (role, action)


def test_admin_passes_every_check_including_unknown_actions():
    for action in ACTIONS + ('launch_rockets', '', None):
        assert is_allowed(ADMIN, action) is True


def test_admin_bypass_does_not_depend_on_matrix_rows(monkeypatch):
    monkeypatch.setitem(permissions.PERMISSIONS, 'add_worksheet', frozenset())
    assert is_allowed(ADMIN, 'add_worksheet') is True
    assert is_allowed(MANAGER, 'add_worksheet') is False


@pytest.mark.parametrize('role', [MANAGER, TECHNICIAN, EMPLOYEE])
def test_unknown_action_fails_closed_and_is_logged(role, caplog):
    with caplog.at_level(logging.ERROR, logger='permissions'):
        assert is_allowed(role, 'launch_rockets') is False
    assert 'launch_rockets' in caplog.text


@pytest.mark.parametrize('role', [None, '', 'admin', 'CONTRACTOR'])
def test_missing_or_unknown_role_is_denied_everywhere(role):
    for action in ACTIONS:
        assert is_allowed(role, action) is False


def test_missing_actor_is_denied():
    assert has_permission(None, 'view_own_requests') is False
    assert has_permission(SimpleNamespace(id=1), 'view_own_requests') is False


def test_employee_cannot_add_worksheet():
    assert is_allowed(EMPLOYEE, 'add_worksheet') is False


def test_manager_can_delete_request():
    assert is_allowed(MANAGER, 'delete_request') is True


def test_capabilities_is_a_full_action_map():
    caps = capabilities(actor(TECHNICIAN))
    assert set(caps) == set(ACTIONS)
    assert caps['update_request_stage'] is True
    assert caps['create_request'] is False
    assert all(v is False for v in capabilities(None).values())


# --- Visibility ---

@pytest.mark.parametrize('role', [ADMIN, MANAGER])
def test_view_all_roles_see_every_record(role):
    visibility = resolve_visibility(actor(role, id=7))
    assert visibility.scope == Scope.ALL
    assert visibility.matches({'created_by_user_id': 1, 'technician_id': 2})
    assert visibility.matches({'created_by_user_id': None, 'technician_id': None})


def test_technician_sees_only_assigned_records():
    visibility = resolve_visibility(actor(TECHNICIAN, id=7))
    assert visibility.scope == Scope.OWN
    assert visibility.field == 'technician_id'
    assert visibility.matches({'technician_id': 7, 'created_by_user_id': 1})
    assert not visibility.matches({'technician_id': 8, 'created_by_user_id': 7})
    assert not visibility.matches({'technician_id': None, 'created_by_user_id': 7})


def test_employee_sees_only_created_records():
    visibility = resolve_visibility(actor(EMPLOYEE, id=7))
    assert visibility.scope == Scope.OWN
    assert visibility.field == 'created_by_user_id'
    assert visibility.matches(SimpleNamespace(created_by_user_id=7, technician_id=3))
    assert not visibility.matches(SimpleNamespace(created_by_user_id=3, technician_id=7))


@pytest.mark.parametrize('subject', [None, actor(None), actor('CONTRACTOR')])
def test_actor_without_visibility_actions_is_denied(subject):
    visibility = resolve_visibility(subject)
    assert visibility.denied
    assert not visibility.matches({'created_by_user_id': 1, 'technician_id': 1})


def test_own_scope_role_without_ownership_field_is_denied(monkeypatch):
    # A manager stripped of view_all falls to the OWN branch, which has no predicate for managers
    monkeypatch.setitem(permissions.PERMISSIONS, 'view_all_requests', frozenset({ADMIN}))
    visibility = resolve_visibility(actor(MANAGER))
    assert visibility.denied


def test_technician_cannot_touch_someone_elses_request():
    technician = actor(TECHNICIAN, id=5)
    record = {'technician_id': 6, 'created_by_user_id': 1}
    assert is_allowed(technician.role, 'update_request_stage') is True
    assert can_access_request(technician, record) is False


# --- Wiring ---

def test_default_wiring_is_valid():
    validate_wiring()


def test_wiring_with_undefined_action_raises():
    with pytest.raises(PolicyMisconfiguredError, match='approve_budget'):
        validate_wiring({'approve': 'approve_budget'})
    with pytest.raises(PolicyMisconfiguredError, match='list_things:view_things'):
        validate_wiring({'list_things': ('view_all_requests', 'view_things')})
