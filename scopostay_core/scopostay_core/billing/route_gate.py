"""Route gate: turns an access decision into a navigation outcome.

The gate is a pure function of the requested path, the caller's identity
and the current :class:`~scopostay_core.billing.access.AccessDecision`.
Evaluating it on a location it would itself redirect to always yields
that same location, so repeated evaluation is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from scopostay_core.billing.access import AccessDecision

LOGIN_PATH = "/login"
PAYMENT_SETUP_PATH = "/start-trial"
SUBSCRIPTION_REQUIRED_PATH = "/subscription-required"
ACCESS_RESTRICTED_PATH = "/access-restricted"

# Reachable without a session.
PUBLIC_PATHS = frozenset(
    {
        "/",
        LOGIN_PATH,
        "/register",
        "/forgot-password",
        "/reset-password",
        "/auth/confirm-email",
        "/auth/callback",
    }
)

ADMIN_PATH_PREFIX = "/dashboard/admin"


class GateRole(str, Enum):
    """Role of the navigating user as far as the gate is concerned."""

    ADMIN = "admin"
    MEMBER = "member"


class GateReason(str, Enum):
    ALLOWED = "allowed"
    PUBLIC = "public"
    UNAUTHENTICATED = "unauthenticated"
    PAYMENT_SETUP = "payment_setup"
    PAYMENT_REQUIRED = "payment_required"
    ADMIN_ONLY = "admin_only"


@dataclass(frozen=True, slots=True)
class GateResult:
    """Where the user ends up and why."""

    destination: str
    reason: GateReason
    redirected: bool


def normalize_path(path: str) -> str:
    """Strip query, fragment and trailing slash so comparisons are stable."""
    path = path.split("#", 1)[0].split("?", 1)[0] or "/"
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def _result(requested: str, destination: str, reason: GateReason) -> GateResult:
    return GateResult(destination=destination, reason=reason, redirected=destination != requested)


def gate_route(
    path: str,
    *,
    authenticated: bool,
    role: GateRole | None = None,
    decision: AccessDecision | None = None,
) -> GateResult:
    """Decide where a navigation to *path* should land.

    Parameters
    ----------
    path:
        Requested location.
    authenticated:
        Whether the caller holds a valid session.  A failed billing-state
        fetch must be reported as unauthenticated.
    role:
        The caller's role; required when *authenticated* is true.
    decision:
        Access decision computed from freshly fetched billing state;
        required when *authenticated* is true.
    """
    requested = normalize_path(path)

    if requested in PUBLIC_PATHS:
        return _result(requested, requested, GateReason.PUBLIC)

    if not authenticated or decision is None or role is None:
        return _result(requested, LOGIN_PATH, GateReason.UNAUTHENTICATED)

    if decision.needs_payment_setup:
        return _result(requested, PAYMENT_SETUP_PATH, GateReason.PAYMENT_SETUP)

    if decision.requires_payment:
        # Only admins may resolve billing; members wait on the restricted page.
        target = SUBSCRIPTION_REQUIRED_PATH if role is GateRole.ADMIN else ACCESS_RESTRICTED_PATH
        return _result(requested, target, GateReason.PAYMENT_REQUIRED)

    if role is not GateRole.ADMIN and requested.startswith(ADMIN_PATH_PREFIX):
        return _result(requested, ACCESS_RESTRICTED_PATH, GateReason.ADMIN_ONLY)

    return _result(requested, requested, GateReason.ALLOWED)
