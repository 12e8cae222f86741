# A centralized file for the role/permission matrix and request visibility rules.
# The server evaluates these rules authoritatively; the capability map handed to
# the frontend is only a display hint.

import logging
from collections import namedtuple

logger = logging.getLogger(__name__)


class PolicyMisconfiguredError(RuntimeError):
    """Raised when an endpoint is wired to an action the matrix does not define."""


# --- 1. ROLES ---
ADMIN = 'ADMIN'
MANAGER = 'MANAGER'
TECHNICIAN = 'TECHNICIAN'
EMPLOYEE = 'EMPLOYEE'

ROLES = (ADMIN, MANAGER, TECHNICIAN, EMPLOYEE)


# --- 2. ACTIONS ---
VIEW_ALL_REQUESTS = 'view_all_requests'
VIEW_OWN_REQUESTS = 'view_own_requests'
CREATE_REQUEST = 'create_request'
UPDATE_REQUEST_STAGE = 'update_request_stage'
DELETE_REQUEST = 'delete_request'
ADD_NOTES = 'add_notes'
ADD_INSTRUCTIONS = 'add_instructions'
ADD_WORKSHEET = 'add_worksheet'
MANAGE_EQUIPMENT = 'manage_equipment'
MANAGE_WORKCENTERS = 'manage_workcenters'
MANAGE_TEAMS = 'manage_teams'
CHANGE_USER_ROLES = 'change_user_roles'


# --- 3. ROLE-PERMISSION MATRIX ---
# ADMIN is listed for readability only; the bypass in is_allowed() never reads it.
PERMISSIONS = {
    VIEW_ALL_REQUESTS:    frozenset({ADMIN, MANAGER}),
    VIEW_OWN_REQUESTS:    frozenset({ADMIN, MANAGER, TECHNICIAN, EMPLOYEE}),
    CREATE_REQUEST:       frozenset({ADMIN, MANAGER, EMPLOYEE}),
    UPDATE_REQUEST_STAGE: frozenset({ADMIN, MANAGER, TECHNICIAN}),
    DELETE_REQUEST:       frozenset({ADMIN, MANAGER}),
    ADD_NOTES:            frozenset({ADMIN, MANAGER, EMPLOYEE}),
    ADD_INSTRUCTIONS:     frozenset({ADMIN, MANAGER}),
    ADD_WORKSHEET:        frozenset({ADMIN}),
    MANAGE_EQUIPMENT:     frozenset({ADMIN, MANAGER}),
    MANAGE_WORKCENTERS:   frozenset({ADMIN, MANAGER}),
    MANAGE_TEAMS:         frozenset({ADMIN, MANAGER}),
    CHANGE_USER_ROLES:    frozenset({ADMIN}),
}

ACTIONS = tuple(PERMISSIONS)


def is_allowed(role, action):
    """Return True if `role` may perform `action`.

    ADMIN passes every check, including actions missing from the matrix.
    Any other role is denied for unknown actions, and a missing or unknown
    role is denied for everything.
    """
    if role == ADMIN:
        return True
    if role not in ROLES:
        return False

    allowed_roles = PERMISSIONS.get(action)
    if allowed_roles is None:
        logger.error("Permission check for undefined action %r denied (role=%s)", action, role)
        return False
    return role in allowed_roles


def has_permission(actor, action):
    """Actor-level wrapper around is_allowed(); a missing actor is denied."""
    if actor is None:
        return False
    return is_allowed(getattr(actor, 'role', None), action)


def capabilities(actor):
    """Maps every action to whether the actor may perform it (UI hint only)."""
    return {action: has_permission(actor, action) for action in ACTIONS}


# --- 4. REQUEST VISIBILITY ---

class Scope:
    ALL = 'ALL'
    OWN = 'OWN'
    DENIED = 'DENIED'


# Ownership column consulted for OWN-scope reads and per-record writes.
OWNERSHIP_FIELDS = {
    TECHNICIAN: 'technician_id',
    EMPLOYEE: 'created_by_user_id',
}


class Visibility(namedtuple('Visibility', 'scope field actor_id')):
    """Outcome of resolve_visibility(): which requests an actor may see."""

    __slots__ = ()

    @property
    def denied(self):
        return self.scope == Scope.DENIED

    def matches(self, record):
        """Evaluates the ownership predicate against a model instance or a dict."""
        if self.scope == Scope.ALL:
            return True
        if self.scope != Scope.OWN:
            return False
        if isinstance(record, dict):
            value = record.get(self.field)
        else:
            value = getattr(record, self.field, None)
        return value is not None and value == self.actor_id


DENIED = Visibility(Scope.DENIED, None, None)


def resolve_visibility(actor):
    """Decide whether `actor` sees all maintenance requests or only their own.

    A DENIED result means the caller must reject the operation outright; it
    is not the same thing as an OWN scope that happens to match no rows.
    """
    if actor is None:
        return DENIED
    if has_permission(actor, VIEW_ALL_REQUESTS):
        return Visibility(Scope.ALL, None, None)
    if has_permission(actor, VIEW_OWN_REQUESTS):
        field = OWNERSHIP_FIELDS.get(actor.role)
        if field is None:
            logger.error("Role %s may view own requests but has no ownership field", actor.role)
            return DENIED
        return Visibility(Scope.OWN, field, actor.id)
    return DENIED


def can_access_request(actor, record):
    """Per-record ownership check, layered on top of the action-level check."""
    return resolve_visibility(actor).matches(record)


# --- 5. ENDPOINT WIRING ---
# Flask endpoint name -> action(s) it requires. A tuple means "either action",
# resolved through resolve_visibility().
OPERATION_ACTIONS = {
    'list_requests': (VIEW_ALL_REQUESTS, VIEW_OWN_REQUESTS),
    'request_details': (VIEW_ALL_REQUESTS, VIEW_OWN_REQUESTS),
    'create_request': CREATE_REQUEST,
    'update_request_stage': UPDATE_REQUEST_STAGE,
    'delete_request': DELETE_REQUEST,
    'add_request_note': ADD_NOTES,
    'add_request_instruction': ADD_INSTRUCTIONS,
    'add_worksheet_comment': ADD_WORKSHEET,
    'manage_equipment': MANAGE_EQUIPMENT,
    'add_equipment': MANAGE_EQUIPMENT,
    'edit_equipment': MANAGE_EQUIPMENT,
    'delete_equipment': MANAGE_EQUIPMENT,
    'manage_workcenters': MANAGE_WORKCENTERS,
    'add_workcenter': MANAGE_WORKCENTERS,
    'manage_teams': MANAGE_TEAMS,
    'add_team': MANAGE_TEAMS,
    'manage_users': CHANGE_USER_ROLES,
    'change_user_role': CHANGE_USER_ROLES,
}


def validate_wiring(table=None):
    """Fails fast if any wired action is missing from the matrix."""
    table = OPERATION_ACTIONS if table is None else table
    missing = []
    for endpoint, required in table.items():
        actions = required if isinstance(required, tuple) else (required,)
        missing.extend(f'{endpoint}:{action}' for action in actions if action not in PERMISSIONS)
    if missing:
        raise PolicyMisconfiguredError(f"Undefined actions in endpoint wiring: {', '.join(missing)}")
