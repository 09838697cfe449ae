"""
Role-Based Access Control (RBAC) dependencies and the static permission table.
"""
from enum import Enum
from typing import Dict, FrozenSet
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPAuthorizationCredentials

from stockroom.core.security import decode_token, security


class Role(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    REQUESTER = "requester"


class Permission(str, Enum):
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_PRODUCTS = "view_products"
    MANAGE_PRODUCTS = "manage_products"
    DELETE_PRODUCTS = "delete_products"
    VIEW_MOVEMENTS = "view_movements"
    VIEW_REQUESTS = "view_requests"
    ADD_REQUESTS = "add_requests"
    APPROVE_REQUESTS = "approve_requests"
    RECONCILE_WITHDRAWALS = "reconcile_withdrawals"
    VIEW_EXPIRATION = "view_expiration"
    VIEW_CHANGELOG = "view_changelog"
    MANAGE_SUPPLIERS = "manage_suppliers"
    MANAGE_QUOTATIONS = "manage_quotations"
    CONFIGURE_REQUEST_PERIODS = "configure_request_periods"
    MANAGE_PAYMENTS = "manage_payments"
    VIEW_AUDIT = "view_audit"


_OPERATOR_PERMISSIONS = frozenset({
    Permission.VIEW_PRODUCTS,
    Permission.MANAGE_PRODUCTS,
    Permission.DELETE_PRODUCTS,
    Permission.VIEW_MOVEMENTS,
    Permission.VIEW_REQUESTS,
    Permission.ADD_REQUESTS,
    Permission.APPROVE_REQUESTS,
    Permission.RECONCILE_WITHDRAWALS,
    Permission.VIEW_EXPIRATION,
    Permission.VIEW_CHANGELOG,
    Permission.MANAGE_SUPPLIERS,
    Permission.MANAGE_QUOTATIONS,
    Permission.CONFIGURE_REQUEST_PERIODS,
    Permission.MANAGE_PAYMENTS,
})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.OPERATOR: _OPERATOR_PERMISSIONS,
    Role.REQUESTER: frozenset({Permission.VIEW_REQUESTS, Permission.ADD_REQUESTS}),
}


def has_permission(role, permission) -> bool:
    """Check whether a role grants a named permission. Unknown names are denied."""
    try:
        role = Role(role)
        permission = Permission(permission)
    except ValueError:
        return False
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def _context_from_payload(payload: dict) -> dict:
    user_id = payload.get("sub") or payload.get("user_id")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier (sub)",
        )
    try:
        role = Role(payload.get("role", Role.REQUESTER.value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {payload.get('role')}",
        )

    return {
        "sub": str(user_id),
        "name": payload.get("name") or payload.get("email") or str(user_id),
        "email": payload.get("email"),
        "role": role,
        "department": payload.get("department"),
    }


async def get_current_user_context(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """Get the acting user's identity from the bearer token."""
    return _context_from_payload(decode_token(credentials.credentials))


class PermissionChecker:
    """Dependency for checking a named permission against the caller's role."""

    def __init__(self, permission: Permission):
        self.permission = permission

    async def __call__(
        self,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> dict:
        user_context = _context_from_payload(decode_token(credentials.credentials))

        if not has_permission(user_context["role"], self.permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {self.permission.value}",
            )

        return user_context


def require(permission: Permission) -> PermissionChecker:
    return PermissionChecker(permission)
