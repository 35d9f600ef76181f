"""Tenant roles and the permission guard used by the billing routers.

A tenant has ``member`` and ``admin`` users.  Both may read the tenant's
billing state; only admins may open a checkout session or the customer
portal, which mirrors the route gate sending only admins to the
subscription page.

Usage::

    @router.post("/checkout")
    async def create_checkout(
        ...,
        _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from fastapi import Depends, HTTPException, Request
from scopostay_core.billing.route_gate import GateRole

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    READ_BILLING = "read:billing"
    MANAGE_BILLING = "manage:billing"


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"

    @property
    def permissions(self) -> frozenset[Permission]:
        if self is Role.ADMIN:
            return frozenset(Permission)
        return frozenset({Permission.READ_BILLING})

    def as_gate_role(self) -> GateRole:
        return GateRole(self.value)


def parse_role(raw: str) -> Role:
    """Map the ``app_metadata.role`` claim onto a :class:`Role`.

    Raises
    ------
    ValueError
        If *raw* names no known role.
    """
    try:
        return Role(raw.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {[r.value for r in Role]}") from None


def role_has_permission(role: Role, permission: Permission) -> bool:
    return permission in role.permissions


def get_user_role(request: Request) -> Role:
    """Role of the authenticated caller; 401 without identity, 403 for an unknown claim."""
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(raw_role)
    except ValueError as exc:
        logger.warning("Denying request with unrecognised role claim %r", raw_role)
        raise HTTPException(status_code=403, detail=str(exc)) from exc


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Build a dependency that admits only roles granting *permission*."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role_has_permission(role, permission):
            return role
        logger.info("Role %s lacks %s", role.value, permission.value)
        raise HTTPException(
            status_code=403,
            detail=f"Role '{role.value}' may not perform '{permission.value}'",
        )

    return _guard
