"""Typed decoding of payment-processor webhook events.

Webhook envelopes (``{id, type, created, data: {object}}``) are decoded into
a tagged union keyed on ``type``.  Each variant declares the fields its
handler requires; a verified payload that does not satisfy its variant is
rejected with :class:`~scopostay_core.billing.errors.EventDecodeError`
before any handler runs.

Event types with no variant decode to :class:`UnhandledEvent` so callers
can acknowledge them without touching state.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from scopostay_core.billing.errors import EventDecodeError


class EventKind(str, Enum):
    """Processor event types with a dedicated handler."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class _ProcessorObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _expandable_id(value: str | dict[str, Any] | None) -> str | None:
    """Return the id of a processor reference that may or may not be expanded."""
    if isinstance(value, dict):
        return value.get("id")
    return value


# ---------------------------------------------------------------------------
# Payload objects
# ---------------------------------------------------------------------------


class CheckoutSession(_ProcessorObject):
    """``data.object`` of a completed checkout session."""

    id: str
    customer: str
    mode: str = "subscription"
    subscription: str | None = None
    payment_intent: str | None = None
    payment_status: str = "unpaid"
    amount_subtotal: int = 0
    amount_total: int = 0
    currency: str = "usd"
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def skip_trial(self) -> bool:
        return self.metadata.get("skip_trial", "").lower() == "true"

    @property
    def tenant_id(self) -> str | None:
        return self.metadata.get("tenant_id") or None

    @property
    def tier_hint(self) -> str | None:
        return self.metadata.get("tier") or None


class _Price(_ProcessorObject):
    id: str


class _SubscriptionItem(_ProcessorObject):
    price: _Price


class _SubscriptionItems(_ProcessorObject):
    data: list[_SubscriptionItem] = Field(default_factory=list)


class Subscription(_ProcessorObject):
    """``data.object`` of every ``customer.subscription.*`` event."""

    id: str
    customer: str
    status: str
    items: _SubscriptionItems = Field(default_factory=_SubscriptionItems)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    default_payment_method: str | dict[str, Any] | None = None

    @property
    def price_id(self) -> str | None:
        if not self.items.data:
            return None
        return self.items.data[0].price.id

    @property
    def default_payment_method_id(self) -> str | None:
        return _expandable_id(self.default_payment_method)


class _InvoiceLine(_ProcessorObject):
    price: _Price | None = None


class _InvoiceLines(_ProcessorObject):
    data: list[_InvoiceLine] = Field(default_factory=list)


class Invoice(_ProcessorObject):
    """``data.object`` of ``invoice.*`` events."""

    id: str
    customer: str
    subscription: str | dict[str, Any] | None = None
    payment_intent: str | dict[str, Any] | None = None
    billing_reason: str | None = None
    lines: _InvoiceLines = Field(default_factory=_InvoiceLines)
    parent: dict[str, Any] | None = None

    @property
    def subscription_id(self) -> str | None:
        """Subscription this invoice bills, if any.

        Newer processor API versions move the reference under
        ``parent.subscription_details``; both locations are honoured.
        """
        direct = _expandable_id(self.subscription)
        if direct:
            return direct
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def payment_intent_id(self) -> str | None:
        return _expandable_id(self.payment_intent)

    @property
    def price_id(self) -> str | None:
        for line in self.lines.data:
            if line.price is not None:
                return line.price.id
        return None


# ---------------------------------------------------------------------------
# Envelope variants
# ---------------------------------------------------------------------------


class _CheckoutData(_ProcessorObject):
    object_: CheckoutSession = Field(alias="object")


class _SubscriptionData(_ProcessorObject):
    object_: Subscription = Field(alias="object")


class _InvoiceData(_ProcessorObject):
    object_: Invoice = Field(alias="object")


class _Envelope(_ProcessorObject):
    id: str
    created: datetime

    @property
    def object(self) -> Any:
        return self.data.object_  # type: ignore[attr-defined]


class CheckoutCompletedEvent(_Envelope):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData


class SubscriptionEvent(_Envelope):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.trial_will_end",
    ]
    data: _SubscriptionData


class InvoiceEvent(_Envelope):
    type: Literal["invoice.payment_succeeded", "invoice.payment_failed"]
    data: _InvoiceData


class UnhandledEvent(_ProcessorObject):
    """Any event type without a dedicated handler; acknowledged as a no-op."""

    id: str
    type: str
    created: datetime | None = None


BillingEvent = Annotated[
    Union[CheckoutCompletedEvent, SubscriptionEvent, InvoiceEvent],
    Field(discriminator="type"),
]

_billing_event_adapter: TypeAdapter[Any] = TypeAdapter(BillingEvent)
_HANDLED_TYPES = frozenset(kind.value for kind in EventKind)


def decode_event(
    payload: bytes | str | dict[str, Any],
) -> CheckoutCompletedEvent | SubscriptionEvent | InvoiceEvent | UnhandledEvent:
    """Decode a verified webhook payload into its typed variant.

    Parameters
    ----------
    payload:
        Raw request body, or an already-parsed JSON object.

    Returns
    -------
    The typed event.  Unrecognised ``type`` values yield
    :class:`UnhandledEvent`.

    Raises
    ------
    EventDecodeError
        If the payload is not JSON, lacks the envelope fields, or its
        ``data.object`` is missing a field the variant requires.
    """
    if isinstance(payload, (bytes, str)):
        try:
            raw = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise EventDecodeError(f"Webhook body is not valid JSON: {exc}") from exc
    else:
        raw = payload

    if not isinstance(raw, dict):
        raise EventDecodeError("Webhook body must be a JSON object")

    event_type = raw.get("type")
    try:
        if event_type in _HANDLED_TYPES:
            return _billing_event_adapter.validate_python(raw)
        return UnhandledEvent.model_validate(raw)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise EventDecodeError(
            f"Event {raw.get('id', '<unknown>')} of type {event_type!r} is malformed: {fields}"
        ) from exc
