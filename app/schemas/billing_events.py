"""Typed billing provider events.

Handled event types are a closed union discriminated on ``type``; any
other type parses to :class:`UnhandledEvent`. Object models accept both
the older payload layout (``invoice.subscription``, period fields on the
subscription) and the newer one (``invoice.parent.subscription_details``,
period fields on subscription items).
"""
from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)


class EventPayloadError(ValueError):
    """Raised when a handled event type carries a malformed payload."""


def _object_id(value: Any) -> Any:
    # Expanded provider references arrive as objects, plain ones as ids.
    if isinstance(value, dict):
        return value.get("id")
    return value


ProviderRef = Annotated[str | None, BeforeValidator(_object_id)]


# ── Provider objects ─────────────────────────────────────


class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    subscription: ProviderRef = None
    customer: ProviderRef = None
    mode: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or self.metadata.get("user_id")

    @property
    def price_id(self) -> str | None:
        return self.metadata.get("priceId") or self.metadata.get("price_id")


class InvoiceObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    subscription: ProviderRef = None
    customer: ProviderRef = None
    payment_intent: ProviderRef = None
    amount_paid: int = Field(default=0, ge=0)
    amount_due: int = Field(default=0, ge=0)
    currency: str = "usd"
    billing_reason: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    attempt_count: int = 0
    failure_code: str | None = None
    failure_message: str | None = None
    proration_credit: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _subscription_from_parent(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("subscription"):
            return data
        parent = data.get("parent") or {}
        details = parent.get("subscription_details") or {}
        if details.get("subscription"):
            data = {**data, "subscription": details["subscription"]}
        return data

    @model_validator(mode="before")
    @classmethod
    def _failure_and_proration(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("failure_code") is None and data.get("failure_message") is None:
            code, message = _invoice_failure(data)
            data["failure_code"] = code
            data["failure_message"] = message
        if "proration_credit" not in data:
            data["proration_credit"] = _proration_credit(data)
        return data

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def payment_key(self) -> str:
        """Stable per-payment key: the intent id, or one derived from the invoice."""
        return self.payment_intent or f"inv_{self.id}"

    @property
    def is_trial_start(self) -> bool:
        """The zero-amount invoice the provider issues when a trial begins."""
        return self.billing_reason == "subscription_create" and self.amount_paid == 0


def _invoice_failure(data: dict[str, Any]) -> tuple[str | None, str | None]:
    # Most specific first: the charge decline, then the intent, then finalization.
    intent = data.get("payment_intent")
    intent_error = intent.get("last_payment_error") if isinstance(intent, dict) else None
    charge = data.get("charge")
    if isinstance(charge, dict) and (charge.get("failure_code") or charge.get("failure_message")):
        return charge.get("failure_code"), charge.get("failure_message")
    for error in (intent_error, data.get("last_finalization_error")):
        if error:
            return error.get("decline_code") or error.get("code"), error.get("message")
    return None, None


def _is_proration_line(line: dict[str, Any]) -> bool:
    if line.get("proration"):
        return True
    parent = line.get("parent") or {}
    for key in ("subscription_item_details", "invoice_item_details"):
        if (parent.get(key) or {}).get("proration"):
            return True
    return False


def _proration_credit(data: dict[str, Any]) -> int:
    """Unused time credited back on a plan change, in minor units."""
    lines = (data.get("lines") or {}).get("data") or []
    return sum(
        -line["amount"]
        for line in lines
        if _is_proration_line(line) and (line.get("amount") or 0) < 0
    )


class SubscriptionObject(BaseModel):
    """Provider subscription, as delivered in events or fetched from the API."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: ProviderRef = None
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None
    price_id: str | None = None
    payment_method: dict[str, Any] | None = None
    cancel_reason: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _flatten_items(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        items = (data.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        data = dict(data)
        for key in ("current_period_start", "current_period_end"):
            if data.get(key) is None and first.get(key) is not None:
                data[key] = first[key]
        if data.get("price_id") is None:
            price = first.get("price") or first.get("plan") or {}
            data["price_id"] = price.get("id")
        if data.get("payment_method") is None:
            data["payment_method"] = _card_snapshot(data.get("default_payment_method"))
        if data.get("cancel_reason") is None:
            data["cancel_reason"] = _cancel_reason(data.get("cancellation_details"))
        if data.get("metadata") is None:
            data["metadata"] = {}
        return data


_CANCEL_FEEDBACK = {
    "too_expensive": "too_expensive",
    "unused": "not_using",
    "missing_features": "missing_features",
}


def _card_snapshot(method: Any) -> dict[str, Any] | None:
    # Only an expanded payment method carries card details.
    if not isinstance(method, dict):
        return None
    card = method.get("card") or {}
    if not card:
        return None
    return {
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }


def _cancel_reason(details: Any) -> str | None:
    if not isinstance(details, dict):
        return None
    feedback = details.get("feedback")
    if feedback:
        return _CANCEL_FEEDBACK.get(feedback, "other")
    if details.get("reason"):
        return "other"
    return None


# ── Events ───────────────────────────────────────────────


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    created: int | None = None
    livemode: bool = False


class _CheckoutData(BaseModel):
    object: CheckoutSessionObject


class _InvoiceData(BaseModel):
    object: InvoiceObject


class _SubscriptionData(BaseModel):
    object: SubscriptionObject
    previous_attributes: dict[str, Any] | None = None


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: _CheckoutData

    @property
    def session(self) -> CheckoutSessionObject:
        return self.data.object


class InvoicePaymentSucceeded(_EventBase):
    type: Literal["invoice.payment_succeeded", "invoice.paid"]
    data: _InvoiceData

    @property
    def invoice(self) -> InvoiceObject:
        return self.data.object


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: _InvoiceData

    @property
    def invoice(self) -> InvoiceObject:
        return self.data.object


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: _SubscriptionData

    @property
    def subscription(self) -> SubscriptionObject:
        return self.data.object


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData

    @property
    def subscription(self) -> SubscriptionObject:
        return self.data.object


class UnhandledEvent(_EventBase):
    type: str


BillingEvent = Annotated[
    CheckoutSessionCompleted
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
    | SubscriptionUpdated
    | SubscriptionDeleted,
    Field(discriminator="type"),
]

HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "invoice.payment_succeeded",
        "invoice.paid",
        "invoice.payment_failed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)

_billing_event_adapter: TypeAdapter = TypeAdapter(BillingEvent)


def parse_event(raw: dict[str, Any]) -> BillingEvent | UnhandledEvent:
    """Parse a verified event body into its typed variant."""
    if not isinstance(raw, dict):
        raise EventPayloadError("Event body must be a JSON object")
    event_type = raw.get("type")
    if event_type not in HANDLED_EVENT_TYPES:
        try:
            return UnhandledEvent.model_validate(raw)
        except ValidationError as exc:
            raise EventPayloadError(str(exc)) from exc
    try:
        return _billing_event_adapter.validate_python(raw)
    except ValidationError as exc:
        raise EventPayloadError(str(exc)) from exc
