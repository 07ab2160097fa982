"""
Billing Settings Service
========================

PURPOSE:
    Owns the lifecycle of ProjectBillingSettings:

    initialize_trial_settings()  new project → trial, 10-day window, 10 pages
    get_or_create()              first access starts the trial
    upgrade()                    explicit upgrade: processor customer + subscription
    cancel()                     explicit cancellation: back to trial billing,
                                 trial window NOT restarted, pages used kept
    update()                     automation mode / preauth limit / paid-mode switch
    set_api_key() / get_api_key  bring-your-own provider key, AES-GCM at rest

    Moving in or out of trial only happens through upgrade() and cancel().
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from cryptography.exceptions import InvalidTag

from billing_guard.config import settings as app_settings
from billing_guard.core.errors import BillingGuardError
from billing_guard.core.key_crypto import decrypt_with_fallback, encrypt_api_key
from billing_guard.schemas.billing import (
    AutomationMode,
    BillingMode,
    ProjectBillingSettings,
    SubscriptionTier,
)
from billing_guard.services.feature_gate import can_use_automation_mode, can_use_billing_mode
from billing_guard.services.payment_processor import PaymentProcessor, WebhookEvent
from billing_guard.services.settings_store import BillingStore

logger = logging.getLogger(__name__)

__all__ = ["initialize_trial_settings", "BillingSettingsService"]

_ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "incomplete", "past_due"})


def initialize_trial_settings(
    project_id: str,
    now: Optional[datetime] = None,
    pages_limit: Optional[int] = None,
    duration_days: Optional[int] = None,
) -> ProjectBillingSettings:
    now = now or datetime.now(timezone.utc)
    days = duration_days if duration_days is not None else app_settings.trial_duration_days
    return ProjectBillingSettings(
        project_id=project_id,
        billing_mode=BillingMode.TRIAL,
        tier=SubscriptionTier.FREE_TRIAL,
        trial_pages_used=0,
        trial_pages_limit=pages_limit if pages_limit is not None else app_settings.trial_pages_limit,
        trial_start_at=now,
        trial_end_at=now + timedelta(days=days),
        automation_mode=AutomationMode.MANUAL,
        preauthorization_limit_usd=app_settings.default_preauthorization_limit_usd,
        created_at=now,
        updated_at=now,
    )


def _invalid(detail: str, **context) -> BillingGuardError:
    return BillingGuardError("BG-API-002", detail=detail, context=context)


class BillingSettingsService:
    def __init__(self, store: BillingStore, processor: Optional[PaymentProcessor] = None) -> None:
        self.store = store
        self.processor = processor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, project_id: str) -> ProjectBillingSettings:
        project = self.store.get(project_id)
        if project is None:
            raise BillingGuardError("BG-API-001", detail=f"project {project_id}")
        return project

    def get_or_create(self, project_id: str) -> ProjectBillingSettings:
        project = self.store.get(project_id)
        if project is not None:
            return project
        return self.store.create_if_absent(initialize_trial_settings(project_id))

    # ------------------------------------------------------------------
    # Explicit lifecycle transitions
    # ------------------------------------------------------------------

    def _require_processor(self) -> PaymentProcessor:
        if self.processor is None:
            raise BillingGuardError("BG-PAY-002", detail="no payment processor wired")
        return self.processor

    def upgrade(
        self,
        project_id: str,
        tier: SubscriptionTier,
        billing_mode: BillingMode = BillingMode.PLATFORM_MANAGED,
        email: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> ProjectBillingSettings:
        tier = SubscriptionTier(tier)
        billing_mode = BillingMode(billing_mode)
        if tier == SubscriptionTier.FREE_TRIAL:
            raise _invalid("cannot upgrade to the free trial tier", tier=tier.value)
        if not can_use_billing_mode(tier, billing_mode):
            raise _invalid(
                f"billing mode {billing_mode.value} not available on {tier.value}",
                tier=tier.value, billing_mode=billing_mode.value,
            )

        processor = self._require_processor()
        if not processor.price_id_for(tier):
            raise BillingGuardError(
                "BG-PAY-002", detail=f"no Stripe price id configured for tier {tier.value}"
            )
        project = self.get_or_create(project_id)

        customer_ref = project.payment_customer_ref
        if not customer_ref:
            customer_ref = processor.create_customer(project_id, email=email, payment_method_id=payment_method_id)
            project = self.store.save(project.model_copy(update={"payment_customer_ref": customer_ref}))

        # Old subscription stays live until the new one is stored
        previous_subscription = project.subscription_ref
        subscription = processor.create_subscription(customer_ref, tier)

        automation_mode = project.automation_mode
        if not can_use_automation_mode(tier, automation_mode):
            automation_mode = AutomationMode.MANUAL

        upgraded = project.model_copy(update={
            "tier": tier,
            "billing_mode": billing_mode,
            "automation_mode": automation_mode,
            "payment_customer_ref": customer_ref,
            "payment_method_present": project.payment_method_present or bool(payment_method_id),
            "subscription_ref": subscription.subscription_ref,
        })
        saved = self.store.save(upgraded)
        logger.info(
            "Project %s upgraded: tier=%s mode=%s subscription=%s",
            project_id, tier.value, billing_mode.value, subscription.subscription_ref,
        )

        if previous_subscription and previous_subscription != subscription.subscription_ref:
            processor.cancel_subscription(previous_subscription)
        return saved

    def ensure_customer(self, project_id: str, email: Optional[str] = None) -> ProjectBillingSettings:
        """Attach a processor customer to the project if it has none."""
        project = self.get_or_create(project_id)
        if project.payment_customer_ref:
            return project
        customer_ref = self._require_processor().create_customer(project_id, email=email)
        return self.store.save(project.model_copy(update={"payment_customer_ref": customer_ref}))

    def cancel(self, project_id: str, cancel_remote: bool = True) -> ProjectBillingSettings:
        """Explicit cancellation.

        Tier and billing mode reset to the trial values. The trial window
        and pages used are kept, so an expired trial stays expired.
        """
        project = self.get(project_id)
        if cancel_remote and project.subscription_ref:
            self._require_processor().cancel_subscription(project.subscription_ref)

        cancelled = project.model_copy(update={
            "tier": SubscriptionTier.FREE_TRIAL,
            "billing_mode": BillingMode.TRIAL,
            "automation_mode": AutomationMode.MANUAL,
            "subscription_ref": None,
        })
        saved = self.store.save(cancelled)
        logger.info("Project %s subscription cancelled", project_id)
        return saved

    def apply_webhook_event(self, event: WebhookEvent) -> Optional[ProjectBillingSettings]:
        """Sync processor-confirmed subscription changes onto the project."""
        if not event.customer_ref:
            return None
        project = self.store.find_by_customer_ref(event.customer_ref)
        if project is None:
            logger.warning("Webhook %s for unknown customer %s", event.type, event.customer_ref)
            return None

        if event.type == "customer.subscription.deleted":
            if project.subscription_ref and project.subscription_ref != event.subscription_ref:
                logger.info("Ignoring deletion of superseded subscription %s", event.subscription_ref)
                return project
            return self.cancel(project.project_id, cancel_remote=False)

        if event.type in ("customer.subscription.created", "customer.subscription.updated"):
            if project.billing_mode == BillingMode.TRIAL:
                # Leaving trial requires an explicit upgrade call
                logger.info("Subscription event for trial project %s ignored", project.project_id)
                return project
            if event.tier is None or event.status not in _ACTIVE_SUBSCRIPTION_STATUSES:
                return project

            automation_mode = project.automation_mode
            if not can_use_automation_mode(event.tier, automation_mode):
                automation_mode = AutomationMode.MANUAL
            synced = project.model_copy(update={
                "tier": event.tier,
                "automation_mode": automation_mode,
                "subscription_ref": event.subscription_ref or project.subscription_ref,
            })
            logger.info("Project %s tier synced to %s", project.project_id, event.tier.value)
            return self.store.save(synced)

        if event.type == "invoice.payment_failed":
            logger.warning(
                "Invoice payment failed: project=%s subscription=%s",
                project.project_id, event.subscription_ref,
            )
        return project

    # ------------------------------------------------------------------
    # Settings updates
    # ------------------------------------------------------------------

    def update(
        self,
        project_id: str,
        automation_mode: Optional[AutomationMode] = None,
        preauthorization_limit_usd: Optional[Decimal] = None,
        billing_mode: Optional[BillingMode] = None,
        payment_method_present: Optional[bool] = None,
    ) -> ProjectBillingSettings:
        project = self.get(project_id)
        changes = {}

        if billing_mode is not None and BillingMode(billing_mode) != project.billing_mode:
            billing_mode = BillingMode(billing_mode)
            if BillingMode.TRIAL in (billing_mode, project.billing_mode):
                raise _invalid(
                    "trial billing changes only through upgrade or cancellation",
                    billing_mode=billing_mode.value,
                )
            if not can_use_billing_mode(project.tier, billing_mode):
                raise _invalid(
                    f"billing mode {billing_mode.value} not available on {project.tier.value}",
                    billing_mode=billing_mode.value,
                )
            changes["billing_mode"] = billing_mode

        if automation_mode is not None:
            automation_mode = AutomationMode(automation_mode)
            if not can_use_automation_mode(project.tier, automation_mode):
                raise _invalid(
                    f"automation mode {automation_mode.value} not available on {project.tier.value}",
                    automation_mode=automation_mode.value,
                )
            changes["automation_mode"] = automation_mode

        if preauthorization_limit_usd is not None:
            limit = Decimal(preauthorization_limit_usd)
            if limit <= 0:
                raise _invalid("preauthorization limit must be positive", limit=str(limit))
            changes["preauthorization_limit_usd"] = limit

        if payment_method_present is not None:
            changes["payment_method_present"] = payment_method_present

        if not changes:
            return project
        logger.info("Project %s settings updated: %s", project_id, sorted(changes))
        return self.store.save(project.model_copy(update=changes))

    # ------------------------------------------------------------------
    # Bring-your-own API key
    # ------------------------------------------------------------------

    def set_api_key(self, project_id: str, api_key: Optional[str]) -> ProjectBillingSettings:
        """Store (or with an empty value, remove) the project's provider key."""
        self.get(project_id)
        if not api_key:
            logger.info("Provider API key removed for project %s", project_id)
            return self.store.set_api_key_ciphertext(project_id, None)

        token = encrypt_api_key(api_key, app_settings.get_secret_key(), project_id)
        logger.info("Provider API key stored for project %s", project_id)
        return self.store.set_api_key_ciphertext(project_id, token)

    def get_api_key(self, project_id: str) -> Optional[str]:
        token = self.store.get_api_key_ciphertext(project_id)
        if not token:
            return None
        try:
            return decrypt_with_fallback(
                token,
                app_settings.get_secret_key(),
                app_settings.previous_secret_key,
                project_id,
            )
        except (InvalidTag, ValueError) as exc:
            raise BillingGuardError(
                "BG-SEC-002", detail="stored API key failed to decrypt", context={"project_id": project_id}
            ) from exc
