"""Async HTTP client for the billing API.

Used by frontends and scripts to read the tenant's billing state and to
start checkout or portal sessions.  :meth:`ScopostayClient.fetch_billing_view`
has the shape :class:`~scopostay_core.billing.navigation.BillingStateCache`
expects from its fetcher::

    client = ScopostayClient("https://api.scopostay.com", access_token=token)
    controller = NavigationController(BillingStateCache(client.fetch_billing_view))
    result = await controller.navigate("/dashboard")
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from jose import JWTError, jwt
from scopostay_core.billing.errors import (
    AttributionError,
    AuthError,
    BillingError,
    ConfigError,
    EventDecodeError,
    InvalidSignatureError,
    ProcessorUnavailableError,
    StaleCustomerError,
)
from scopostay_core.billing.models import TenantBillingSnapshot
from scopostay_core.billing.navigation import BillingView
from scopostay_core.billing.route_gate import GateRole

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[BillingError]] = {
    cls.error_code: cls
    for cls in (
        AuthError,
        InvalidSignatureError,
        EventDecodeError,
        AttributionError,
        ConfigError,
        StaleCustomerError,
        ProcessorUnavailableError,
    )
}


def _role_from_token(token: str) -> GateRole:
    """Read ``app_metadata.role`` from the session token without verifying it.

    The server verifies the token on every request; the client only needs
    the role to decide where to route.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise AuthError(f"Session token is malformed: {exc}") from exc
    role = str((claims.get("app_metadata") or {}).get("role") or "member").lower()
    return GateRole.ADMIN if role == GateRole.ADMIN.value else GateRole.MEMBER


class ScopostayClient:
    """Thin async wrapper around the billing REST API.

    Parameters
    ----------
    base_url:
        Root URL of the API (e.g. ``http://localhost:8000``).
    access_token:
        The identity provider session token of the signed-in user.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, e.g. :class:`httpx.ASGITransport` in tests.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ScopostayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Billing -------------------------------------------------------------

    async def get_billing_state(self) -> TenantBillingSnapshot:
        """Fetch the tenant's billing record from ``GET /api/v1/billing/state``."""
        data = await self._request("GET", "/api/v1/billing/state")
        return TenantBillingSnapshot.from_dict(data)

    async def fetch_billing_view(self) -> BillingView:
        """Fetch fresh billing state paired with the caller's role."""
        role = _role_from_token(self._access_token)
        snapshot = await self.get_billing_state()
        return BillingView(role=role, snapshot=snapshot)

    async def start_checkout(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        mode: str = "subscription",
        skip_trial: bool = False,
    ) -> str:
        """Open a checkout session and return the URL to redirect to."""
        data = await self._request(
            "POST",
            "/api/v1/billing/checkout",
            json={
                "price_id": price_id,
                "mode": mode,
                "skip_trial": skip_trial,
                "success_url": success_url,
                "cancel_url": cancel_url,
            },
        )
        return data["session_url"]

    async def open_portal(self, return_url: str) -> str:
        """Open a customer portal session and return its URL."""
        data = await self._request("POST", "/api/v1/billing/portal", json={"return_url": return_url})
        return data["url"]

    async def list_plans(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/api/v1/billing/plans")
        return data["plans"]

    # -- Internal ------------------------------------------------------------

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and decode the JSON body.

        Raises
        ------
        AuthError
            On HTTP 401; the session is no longer valid.
        BillingError
            The matching subclass when the API reports a billing error code.
        httpx.HTTPError
            On transport failures and other non-2xx responses.
        """
        response = await self._client.request(method, path, json=json)
        if response.status_code == 401:
            raise AuthError(self._detail(response) or "Session is no longer valid")
        if response.is_error:
            body = self._body(response)
            error_cls = _ERRORS_BY_CODE.get(str(body.get("error", "")))
            if error_cls is not None:
                raise error_cls(str(body.get("detail", "")))
            logger.warning("%s %s failed with HTTP %d", method, path, response.status_code)
            response.raise_for_status()
        return response.json()

    @staticmethod
    def _body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _detail(self, response: httpx.Response) -> str | None:
        detail = self._body(response).get("detail")
        return str(detail) if detail else None
