"""Tests for the Stripe wrapper, signature check and plan catalog."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest
import stripe

from app.services.billing.errors import BillingProviderError
from app.services.billing.plans import DEFAULT_PLANS, plans, seed_plans
from app.services.billing.provider import StripeBillingProvider
from app.services.billing.signature import verify_signature

SECRET = "whsec_signature_test"


def _header(body: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestVerifySignature:
    def test_valid_signature_returns_event(self) -> None:
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"})
        check = verify_signature(body.encode(), _header(body), SECRET)
        assert check.ok is True
        assert check.event["id"] == "evt_1"

    @pytest.mark.parametrize(
        "header, reason",
        [(None, "missing_signature"), ("", "missing_signature"), ("t=1,v1=abc", "invalid_signature")],
    )
    def test_rejections(self, header, reason) -> None:
        check = verify_signature(b"{}", header, SECRET)
        assert check.ok is False
        assert check.reason == reason

    def test_stale_timestamp_rejected(self) -> None:
        body = "{}"
        old = int(time.time()) - 3600
        check = verify_signature(body.encode(), _header(body, timestamp=old), SECRET, 300)
        assert check.reason == "invalid_signature"

    def test_signed_non_object_rejected(self) -> None:
        body = "[1, 2]"
        check = verify_signature(body.encode(), _header(body), SECRET)
        assert check.reason == "invalid_json"

    def test_invalid_utf8_rejected(self) -> None:
        check = verify_signature(b"\xff\xfe", "t=1,v1=abc", SECRET)
        assert check.reason == "invalid_encoding"


class TestStripeBillingProvider:
    def test_retrieve_subscription_parses_snapshot(self) -> None:
        client = MagicMock()
        client.subscriptions.retrieve.return_value = {
            "id": "sub_1",
            "status": "trialing",
            "customer": {"id": "cus_1"},
            "items": {
                "data": [
                    {
                        "current_period_start": 10,
                        "current_period_end": 20,
                        "price": {"id": "price_pro_monthly"},
                    }
                ]
            },
        }

        snapshot = StripeBillingProvider(client=client).retrieve_subscription("sub_1")

        client.subscriptions.retrieve.assert_called_once_with(
            "sub_1", params={"expand": ["default_payment_method"]}
        )
        assert snapshot.customer == "cus_1"
        assert snapshot.current_period_end == 20
        assert snapshot.price_id == "price_pro_monthly"

    def test_stripe_error_becomes_provider_error(self) -> None:
        client = MagicMock()
        client.subscriptions.retrieve.side_effect = stripe.APIConnectionError("down")

        with pytest.raises(BillingProviderError):
            StripeBillingProvider(client=client).retrieve_subscription("sub_1")

    def test_unexpected_payload_becomes_provider_error(self) -> None:
        client = MagicMock()
        client.subscriptions.retrieve.return_value = {"id": "sub_1"}

        with pytest.raises(BillingProviderError, match="Unexpected subscription payload"):
            StripeBillingProvider(client=client).retrieve_subscription("sub_1")

    def test_unconfigured_provider(self) -> None:
        provider = StripeBillingProvider(api_key="")
        with pytest.raises(BillingProviderError, match="not configured"):
            provider.retrieve_subscription("sub_1")


class TestPlanCatalog:
    def test_seed_is_idempotent(self, db_session, plan) -> None:
        created = seed_plans(db_session)
        assert sorted(p.slug for p in created) == ["enterprise", "starter"]
        assert seed_plans(db_session) == []

    def test_price_lookup_ignores_inactive_plans(self, db_session, plan) -> None:
        assert plans.get_by_price_id(db_session, "price_pro_monthly").id == plan.id
        plan.is_active = False
        db_session.commit()
        assert plans.get_by_price_id(db_session, "price_pro_monthly") is None
        assert plans.get_by_price_id(db_session, None) is None

    def test_catalog_tiers_are_ordered(self) -> None:
        tiers = [entry["tier_level"] for entry in DEFAULT_PLANS]
        assert tiers == sorted(tiers)
