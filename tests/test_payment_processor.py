"""
Payment Processor Tests
=======================

Stripe SDK calls are patched; no network access.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from billing_guard.config import settings
from billing_guard.core.errors import BillingGuardError
from billing_guard.schemas.billing import SubscriptionTier
from billing_guard.services.payment_processor import PaymentDeclined, PaymentProcessor, to_cents


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_123")
    monkeypatch.setattr(settings, "stripe_price_id_pro", "price_pro")
    monkeypatch.setattr(settings, "stripe_price_id_builder_plus", "price_builder")
    monkeypatch.setattr(settings, "stripe_price_id_architect", "price_arch")
    monkeypatch.setattr(settings, "stripe_price_id_empire", "price_empire")
    return PaymentProcessor()


class TestConfiguration:

    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_secret_key", None)
        processor = PaymentProcessor()
        assert processor.is_configured is False
        with pytest.raises(BillingGuardError) as exc_info:
            processor.create_customer("p")
        assert exc_info.value.code == "BG-PAY-002"

    def test_tier_price_mapping(self, configured):
        assert configured.tier_from_price_id("price_arch") == SubscriptionTier.ARCHITECT
        assert configured.tier_from_price_id("price_unknown") is None
        assert configured.tier_from_price_id(None) is None
        assert configured.price_id_for(SubscriptionTier.FREE_TRIAL) is None

    def test_to_cents_rounds_half_up(self):
        assert to_cents(Decimal("12.345")) == 1235
        assert to_cents(Decimal("0.01")) == 1


class TestSubscriptions:

    def test_create_customer(self, configured):
        with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_1")) as create:
            assert configured.create_customer("p", email="a@b.c") == "cus_1"
        assert create.call_args.kwargs["metadata"] == {"project_id": "p"}
        assert create.call_args.kwargs["email"] == "a@b.c"

    def test_create_subscription_uses_tier_price(self, configured):
        sub = SimpleNamespace(id="sub_1", status="incomplete")
        with patch("stripe.Subscription.create", return_value=sub) as create:
            info = configured.create_subscription("cus_1", SubscriptionTier.BUILDER_PLUS)
        assert info.subscription_ref == "sub_1"
        assert create.call_args.kwargs["items"] == [{"price": "price_builder"}]

    def test_missing_price_id(self, configured, monkeypatch):
        monkeypatch.setattr(settings, "stripe_price_id_empire", None)
        with pytest.raises(BillingGuardError) as exc_info:
            configured.create_subscription("cus_1", SubscriptionTier.EMPIRE)
        assert exc_info.value.code == "BG-PAY-002"

    def test_stripe_failure_is_processor_error(self, configured):
        with patch("stripe.Customer.create", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(BillingGuardError) as exc_info:
                configured.create_customer("p")
        assert exc_info.value.code == "BG-PAY-001"


class TestHolds:

    def test_create_hold_is_manual_capture(self, configured):
        intent = SimpleNamespace(id="pi_1", status="requires_payment_method", client_secret="pi_1_secret")
        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            hold = configured.create_hold("cus_1", Decimal("25.00"))
        kwargs = create.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["amount"] == 2500
        assert kwargs["currency"] == "usd"
        assert "confirm" not in kwargs
        assert hold.hold_ref == "pi_1"
        assert hold.client_secret == "pi_1_secret"

    def test_declined_card(self, configured):
        declined = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch("stripe.PaymentIntent.create", side_effect=declined):
            with pytest.raises(PaymentDeclined) as exc_info:
                configured.create_hold("cus_1", Decimal("25.00"), payment_method_id="pm_1")
        assert exc_info.value.decline_code == "card_declined"

    def test_capture_partial_amount(self, configured):
        intent = SimpleNamespace(id="pi_1", status="succeeded", amount_received=1200, amount=2500)
        with patch("stripe.PaymentIntent.capture", return_value=intent) as capture:
            hold = configured.capture_hold("pi_1", Decimal("12.00"))
        capture.assert_called_once_with("pi_1", amount_to_capture=1200)
        assert hold.amount_cents == 1200

    def test_cancel_hold(self, configured):
        intent = SimpleNamespace(id="pi_1", status="canceled", amount=2500)
        with patch("stripe.PaymentIntent.cancel", return_value=intent):
            assert configured.cancel_hold("pi_1").status == "canceled"


class TestWebhooks:

    def _event(self, event_type, obj):
        return {"type": event_type, "data": {"object": obj}}

    def test_bad_signature(self, configured):
        error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(BillingGuardError) as exc_info:
                configured.parse_webhook(b"{}", "t=1,v1=abc")
        assert exc_info.value.code == "BG-SEC-001"

    def test_subscription_updated_maps_tier(self, configured):
        event = self._event("customer.subscription.updated", {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "items": {"data": [{"price": {"id": "price_pro"}}]},
        })
        with patch("stripe.Webhook.construct_event", return_value=event):
            parsed = configured.parse_webhook(b"{}", "sig")
        assert parsed.tier == SubscriptionTier.PRO
        assert parsed.customer_ref == "cus_1"

    def test_subscription_deleted(self, configured):
        event = self._event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
        with patch("stripe.Webhook.construct_event", return_value=event):
            parsed = configured.parse_webhook(b"{}", "sig")
        assert parsed.status == "canceled"

    def test_invoice_failure(self, configured):
        event = self._event("invoice.payment_failed", {"customer": "cus_1", "subscription": "sub_1"})
        with patch("stripe.Webhook.construct_event", return_value=event):
            parsed = configured.parse_webhook(b"{}", "sig")
        assert parsed.subscription_ref == "sub_1"
        assert parsed.tier is None
