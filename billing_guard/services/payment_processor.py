"""
Payment Processor — Stripe gateway
==================================

PURPOSE:
    Thin wrapper over the Stripe SDK for the outer billing layer:
    1. **create_customer()** / **create_subscription()** / **cancel_subscription()**
    2. **create_hold()** / **capture_hold()** / **cancel_hold()** — manual-capture
       PaymentIntents used to preauthorize bulk jobs.
    3. **create_setup_intent()** / **create_portal_session()**
    4. **parse_webhook()** — signature-verified subscription events.

    The billing guard itself never creates or releases holds; callers do,
    after preflight returns requires_preauthorization.

ERRORS:
    not configured            → BillingGuardError("BG-PAY-002")
    StripeError               → BillingGuardError("BG-PAY-001")
    CardError on a hold       → PaymentDeclined (a policy denial: PREAUTH_FAILED)
    bad webhook signature     → BillingGuardError("BG-SEC-001")

CONFIGURATION (env vars with BILLING_GUARD_ prefix):
    STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET,
    STRIPE_PRICE_ID_PRO / _BUILDER_PLUS / _ARCHITECT / _EMPIRE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import stripe

from billing_guard.config import settings
from billing_guard.core.errors import BillingGuardError
from billing_guard.schemas.billing import SubscriptionTier

logger = logging.getLogger(__name__)

__all__ = [
    "PaymentProcessor",
    "PaymentDeclined",
    "SubscriptionInfo",
    "HoldInfo",
    "WebhookEvent",
    "payment_processor",
    "get_payment_processor",
    "to_cents",
]

HANDLED_WEBHOOK_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_failed",
    "invoice.payment_succeeded",
})


class PaymentDeclined(Exception):
    """The processor refused to place a hold on the customer's card."""

    def __init__(self, message: str, decline_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.decline_code = decline_code


@dataclass(frozen=True)
class SubscriptionInfo:
    customer_ref: str
    subscription_ref: str
    status: str
    tier: SubscriptionTier


@dataclass(frozen=True)
class HoldInfo:
    hold_ref: str
    status: str
    amount_cents: int
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    status: Optional[str] = None
    tier: Optional[SubscriptionTier] = None


def to_cents(amount_usd: Decimal) -> int:
    return int((Decimal(amount_usd) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessor:
    """Stripe-backed payment operations."""

    @property
    def is_configured(self) -> bool:
        return bool(settings.stripe_secret_key)

    def _client(self):
        if not self.is_configured:
            raise BillingGuardError(
                "BG-PAY-002", detail="BILLING_GUARD_STRIPE_SECRET_KEY is not set"
            )
        stripe.api_key = settings.stripe_secret_key
        return stripe

    def _price_ids(self) -> Dict[SubscriptionTier, Optional[str]]:
        return {
            SubscriptionTier.PRO: settings.stripe_price_id_pro,
            SubscriptionTier.BUILDER_PLUS: settings.stripe_price_id_builder_plus,
            SubscriptionTier.ARCHITECT: settings.stripe_price_id_architect,
            SubscriptionTier.EMPIRE: settings.stripe_price_id_empire,
        }

    def price_id_for(self, tier: SubscriptionTier) -> Optional[str]:
        return self._price_ids().get(SubscriptionTier(tier)) or None

    def tier_from_price_id(self, price_id: Optional[str]) -> Optional[SubscriptionTier]:
        if not price_id:
            return None
        for tier, configured in self._price_ids().items():
            if configured and configured == price_id:
                return tier
        return None

    def _processor_error(self, action: str, exc: Exception, **context: Any) -> BillingGuardError:
        logger.error("Stripe %s failed: %s", action, exc)
        return BillingGuardError("BG-PAY-001", detail=str(exc), context={"action": action, **context})

    # ------------------------------------------------------------------
    # Customers & subscriptions
    # ------------------------------------------------------------------

    def create_customer(
        self,
        project_id: str,
        email: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> str:
        client = self._client()
        params: Dict[str, Any] = {"metadata": {"project_id": project_id}}
        if email:
            params["email"] = email
        if payment_method_id:
            params["payment_method"] = payment_method_id
            params["invoice_settings"] = {"default_payment_method": payment_method_id}

        try:
            customer = client.Customer.create(**params)
        except stripe.StripeError as exc:
            raise self._processor_error("create_customer", exc, project_id=project_id) from exc

        logger.info("Created Stripe customer %s for project %s", customer.id, project_id)
        return customer.id

    def create_subscription(self, customer_ref: str, tier: SubscriptionTier) -> SubscriptionInfo:
        tier = SubscriptionTier(tier)
        price_id = self.price_id_for(tier)
        if not price_id:
            raise BillingGuardError(
                "BG-PAY-002", detail=f"no Stripe price id configured for tier {tier.value}"
            )
        client = self._client()

        try:
            subscription = client.Subscription.create(
                customer=customer_ref,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                metadata={"tier": tier.value},
            )
        except stripe.StripeError as exc:
            raise self._processor_error("create_subscription", exc, customer=customer_ref) from exc

        logger.info("Created %s subscription %s for customer %s", tier.value, subscription.id, customer_ref)
        return SubscriptionInfo(
            customer_ref=customer_ref,
            subscription_ref=subscription.id,
            status=subscription.status,
            tier=tier,
        )

    def cancel_subscription(self, subscription_ref: str) -> str:
        client = self._client()
        try:
            subscription = client.Subscription.cancel(subscription_ref)
        except stripe.StripeError as exc:
            raise self._processor_error("cancel_subscription", exc, subscription=subscription_ref) from exc
        logger.info("Canceled subscription %s", subscription_ref)
        return subscription.status

    # ------------------------------------------------------------------
    # Preauthorization holds
    # ------------------------------------------------------------------

    def create_hold(
        self,
        customer_ref: str,
        amount_usd: Decimal,
        payment_method_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> HoldInfo:
        """Place a manual-capture hold on the customer's card.

        With a payment_method_id the hold is confirmed immediately and a
        card decline raises PaymentDeclined.
        """
        client = self._client()
        amount_cents = to_cents(amount_usd)
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": "usd",
            "customer": customer_ref,
            "capture_method": "manual",
            "metadata": {"type": "preauth", **(metadata or {})},
        }
        if payment_method_id:
            params.update(payment_method=payment_method_id, confirm=True, off_session=True)

        try:
            intent = client.PaymentIntent.create(**params)
        except stripe.CardError as exc:
            logger.info("Hold declined for customer %s: %s", customer_ref, exc.code)
            raise PaymentDeclined(exc.user_message or str(exc), decline_code=exc.code) from exc
        except stripe.StripeError as exc:
            raise self._processor_error("create_hold", exc, customer=customer_ref) from exc

        logger.info("Created hold %s for %d cents (customer %s)", intent.id, amount_cents, customer_ref)
        return HoldInfo(
            hold_ref=intent.id,
            status=intent.status,
            amount_cents=amount_cents,
            client_secret=intent.client_secret,
        )

    def capture_hold(self, hold_ref: str, amount_usd: Optional[Decimal] = None) -> HoldInfo:
        client = self._client()
        params: Dict[str, Any] = {}
        if amount_usd is not None:
            params["amount_to_capture"] = to_cents(amount_usd)
        try:
            intent = client.PaymentIntent.capture(hold_ref, **params)
        except stripe.StripeError as exc:
            raise self._processor_error("capture_hold", exc, hold=hold_ref) from exc
        logger.info("Captured hold %s", hold_ref)
        return HoldInfo(
            hold_ref=intent.id,
            status=intent.status,
            amount_cents=intent.amount_received or intent.amount,
        )

    def cancel_hold(self, hold_ref: str) -> HoldInfo:
        client = self._client()
        try:
            intent = client.PaymentIntent.cancel(hold_ref)
        except stripe.StripeError as exc:
            raise self._processor_error("cancel_hold", exc, hold=hold_ref) from exc
        logger.info("Released hold %s", hold_ref)
        return HoldInfo(hold_ref=intent.id, status=intent.status, amount_cents=intent.amount)

    # ------------------------------------------------------------------
    # Payment methods & portal
    # ------------------------------------------------------------------

    def create_setup_intent(self, customer_ref: str) -> str:
        client = self._client()
        try:
            intent = client.SetupIntent.create(customer=customer_ref, payment_method_types=["card"])
        except stripe.StripeError as exc:
            raise self._processor_error("create_setup_intent", exc, customer=customer_ref) from exc
        return intent.client_secret

    def create_portal_session(self, customer_ref: str, return_url: Optional[str] = None) -> str:
        client = self._client()
        try:
            session = client.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url or f"{settings.public_app_url}/dashboard/billing",
            )
        except stripe.StripeError as exc:
            raise self._processor_error("create_portal_session", exc, customer=customer_ref) from exc
        return session.url

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        """Verify a Stripe webhook and reduce it to the fields billing cares about."""
        if not settings.stripe_webhook_secret:
            raise BillingGuardError(
                "BG-PAY-002", detail="BILLING_GUARD_STRIPE_WEBHOOK_SECRET is not set"
            )
        try:
            event = stripe.Webhook.construct_event(
                payload, signature or "", settings.stripe_webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise BillingGuardError("BG-SEC-001", detail=str(exc)) from exc

        return self.describe_event(event["type"], event["data"]["object"])

    def describe_event(self, event_type: str, obj: Any) -> WebhookEvent:
        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            items = (obj.get("items") or {}).get("data") or []
            price_id = items[0].get("price", {}).get("id") if items else None
            return WebhookEvent(
                type=event_type,
                customer_ref=obj.get("customer"),
                subscription_ref=obj.get("id"),
                status=obj.get("status"),
                tier=self.tier_from_price_id(price_id),
            )

        if event_type == "customer.subscription.deleted":
            return WebhookEvent(
                type=event_type,
                customer_ref=obj.get("customer"),
                subscription_ref=obj.get("id"),
                status="canceled",
            )

        if event_type in ("invoice.payment_failed", "invoice.payment_succeeded"):
            return WebhookEvent(
                type=event_type,
                customer_ref=obj.get("customer"),
                subscription_ref=obj.get("subscription"),
            )

        return WebhookEvent(type=event_type)


payment_processor = PaymentProcessor()


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency."""
    return payment_processor
