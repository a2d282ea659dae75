"""
Role gating at the HTTP boundary.

The identity provider in front of the service authenticates the session and
forwards the user id and role as trusted headers. Which roles may perform
which action is declared once in ``PERMISSIONS``; routes ask for an action,
never for a role string.
"""
from typing import Dict, FrozenSet, NamedTuple, Optional

from fastapi import Depends, Header

import errors
from schemas import Role

ADMIN, DESIGNER, CUSTOMER, STAFF, INVENTORY = (
    Role.ADMIN, Role.DESIGNER, Role.CUSTOMER, Role.STAFF, Role.INVENTORY_MANAGER
)

PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    "products:read": frozenset(Role),
    "inventory:manage": frozenset({ADMIN, INVENTORY}),
    "orders:create": frozenset({CUSTOMER}),
    "orders:read": frozenset({ADMIN, STAFF, CUSTOMER}),
    "orders:analytics": frozenset({ADMIN, STAFF}),
    "orders:update_status": frozenset({ADMIN, STAFF}),
    "orders:pay": frozenset({ADMIN, STAFF, CUSTOMER}),
    "fulfilment:claim": frozenset({ADMIN, STAFF}),
    "returns:create": frozenset({CUSTOMER}),
    "returns:read_own": frozenset({CUSTOMER}),
    "returns:process": frozenset({ADMIN, STAFF}),
    "payments:list": frozenset({ADMIN}),
    "payments:read": frozenset({ADMIN, STAFF}),
    "payments:refund": frozenset({ADMIN, STAFF}),
    "notifications:read": frozenset(Role),
}


class CurrentUser(NamedTuple):
    id: str
    role: Role


def current_user(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None)) -> CurrentUser:
    if not x_user_id or not x_user_role:
        raise errors.AuthorizationError("No session provided")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise errors.AuthorizationError("Unknown role")
    return CurrentUser(x_user_id, role)


def allowed(action: str, role: Role) -> bool:
    return role in PERMISSIONS.get(action, frozenset())


def permit(action: str):
    """Dependency factory: resolves the caller and checks ``action`` against the table."""
    if action not in PERMISSIONS:
        raise KeyError(f"Unknown action {action}")

    def dependency(user: CurrentUser = Depends(current_user)) -> CurrentUser:
        if not allowed(action, user.role):
            raise errors.AuthorizationError("Access denied")
        return user

    return dependency
