"""Stripe API access used while processing billing events."""

import logging
from typing import Any

import stripe
from pydantic import ValidationError

from app.config import settings
from app.schemas.billing_events import SubscriptionObject
from app.services.billing.errors import BillingProviderError

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> dict[str, Any]:
    # Stripe objects may need converting to dicts
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeBillingProvider:
    """Thin wrapper around the Stripe subscriptions API."""

    def __init__(self, api_key: str | None = None, client: Any = None) -> None:
        self._api_key = settings.stripe_secret_key if api_key is None else api_key
        self._client = client

    def _stripe(self) -> stripe.StripeClient:
        if self._client is None:
            if not self._api_key:
                raise BillingProviderError("STRIPE_SECRET_KEY is not configured")
            self._client = stripe.StripeClient(self._api_key, max_network_retries=2)
        return self._client

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        """Fetch the provider's current view of a subscription."""
        try:
            raw = self._stripe().subscriptions.retrieve(
                subscription_id, params={"expand": ["default_payment_method"]}
            )
        except stripe.StripeError as exc:
            logger.error(
                "Stripe subscription lookup failed for %s: %s", subscription_id, exc
            )
            raise BillingProviderError(str(exc)) from exc
        try:
            return SubscriptionObject.model_validate(_as_dict(raw))
        except ValidationError as exc:
            raise BillingProviderError(
                f"Unexpected subscription payload for {subscription_id}"
            ) from exc
