"""Billing error taxonomy.

Every error carries the HTTP-equivalent status it should surface as and
whether the caller (or the processor's redelivery policy) may usefully
retry.  The API layer maps these onto JSON responses in one exception
handler; nothing below the API layer knows about HTTP.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing reconciliation failures."""

    status_code: int = 400
    error_code: str = "billing_error"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(BillingError):
    """The caller's session or token is invalid; the client should sign out."""

    status_code = 401
    error_code = "auth_error"


class InvalidSignatureError(BillingError):
    """Webhook signature did not verify against the shared secret."""

    status_code = 400
    error_code = "invalid_signature"


class EventDecodeError(BillingError):
    """A verified webhook payload does not satisfy its event kind's contract."""

    status_code = 400
    error_code = "event_decode_error"


class AttributionError(BillingError):
    """A webhook references a customer the local store cannot map to a tenant.

    Rejected with a non-2xx response so the processor redelivers once the
    local mirror row exists.
    """

    status_code = 400
    error_code = "attribution_error"
    retryable = True


class ConfigError(BillingError):
    """Unknown price / tier combination or missing billing configuration."""

    status_code = 400
    error_code = "config_error"


class StaleCustomerError(BillingError):
    """The locally recorded processor customer no longer exists upstream.

    Requires manual intervention; never auto-healed so billing history is
    not silently orphaned.
    """

    status_code = 409
    error_code = "stale_customer"


class ProcessorUnavailableError(BillingError):
    """The payment processor could not be reached or returned a server error."""

    status_code = 502
    error_code = "processor_unavailable"
    retryable = True
