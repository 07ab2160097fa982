"""
Billing Settings Service Tests
==============================

Trial initialisation, explicit upgrade / cancellation, validated settings
updates, encrypted provider keys and webhook-driven tier sync.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import NOW, make_paid, make_trial

from billing_guard.config import settings as app_settings
from billing_guard.core.errors import BillingGuardError
from billing_guard.schemas.billing import AutomationMode, BillingMode, SubscriptionTier
from billing_guard.services.payment_processor import SubscriptionInfo, WebhookEvent
from billing_guard.services.settings_service import BillingSettingsService, initialize_trial_settings


@pytest.fixture
def service(store, fake_processor):
    return BillingSettingsService(store, fake_processor)


class TestInitializeTrial:

    def test_defaults(self):
        project = initialize_trial_settings("new", now=NOW)
        assert project.billing_mode == BillingMode.TRIAL
        assert project.tier == SubscriptionTier.FREE_TRIAL
        assert project.trial_pages_used == 0
        assert project.trial_pages_limit == 10
        assert project.trial_end_at - project.trial_start_at == timedelta(days=10)
        assert project.automation_mode == AutomationMode.MANUAL
        assert project.preauthorization_limit_usd == Decimal("10.00")

    def test_get_or_create_is_idempotent(self, service):
        first = service.get_or_create("p")
        second = service.get_or_create("p")
        assert first.trial_end_at == second.trial_end_at

    def test_get_unknown_project(self, service):
        with pytest.raises(BillingGuardError) as exc_info:
            service.get("ghost")
        assert exc_info.value.code == "BG-API-001"


class TestUpgradeAndCancel:

    def test_upgrade_creates_customer_and_subscription(self, service, fake_processor):
        service.get_or_create("p")
        project = service.upgrade("p", SubscriptionTier.PRO, email="owner@example.com")
        assert project.tier == SubscriptionTier.PRO
        assert project.billing_mode == BillingMode.PLATFORM_MANAGED
        assert project.payment_customer_ref == "cus_new"
        assert project.subscription_ref == "sub_new"
        fake_processor.create_customer.assert_called_once_with("p", email="owner@example.com", payment_method_id=None)

    def test_upgrade_keeps_trial_counter(self, service, store):
        store.create_if_absent(make_trial("p", used=7))
        project = service.upgrade("p", SubscriptionTier.PRO, billing_mode=BillingMode.BRING_YOUR_OWN_KEY)
        assert project.trial_pages_used == 7
        assert project.billing_mode == BillingMode.BRING_YOUR_OWN_KEY

    def test_upgrade_to_free_trial_rejected(self, service):
        with pytest.raises(BillingGuardError) as exc_info:
            service.upgrade("p", SubscriptionTier.FREE_TRIAL)
        assert exc_info.value.code == "BG-API-002"

    def test_upgrade_with_trial_billing_rejected(self, service):
        with pytest.raises(BillingGuardError):
            service.upgrade("p", SubscriptionTier.PRO, billing_mode=BillingMode.TRIAL)

    def test_upgrade_replaces_existing_subscription(self, service, store, fake_processor):
        store.create_if_absent(make_paid("p", tier=SubscriptionTier.PRO, subscription_ref="sub_old"))
        service.upgrade("p", SubscriptionTier.ARCHITECT)
        fake_processor.cancel_subscription.assert_called_once_with("sub_old")
        fake_processor.create_customer.assert_not_called()

    def test_failed_subscription_keeps_old_one(self, service, store, fake_processor):
        store.create_if_absent(make_paid("p", tier=SubscriptionTier.PRO, subscription_ref="sub_old"))
        fake_processor.create_subscription.side_effect = BillingGuardError("BG-PAY-001", detail="timeout")

        with pytest.raises(BillingGuardError):
            service.upgrade("p", SubscriptionTier.ARCHITECT)

        fake_processor.cancel_subscription.assert_not_called()
        stored = store.get("p")
        assert stored.tier == SubscriptionTier.PRO
        assert stored.billing_mode == BillingMode.PLATFORM_MANAGED
        assert stored.subscription_ref == "sub_old"

    def test_old_subscription_cancelled_after_new_one_saved(self, service, store, fake_processor):
        store.create_if_absent(make_paid("p", tier=SubscriptionTier.PRO, subscription_ref="sub_old"))

        def cancel(subscription_ref):
            assert store.get("p").subscription_ref == "sub_new"
            return "canceled"

        fake_processor.cancel_subscription.side_effect = cancel
        service.upgrade("p", SubscriptionTier.ARCHITECT)
        fake_processor.cancel_subscription.assert_called_once_with("sub_old")

    def test_customer_kept_when_subscription_fails(self, service, fake_processor):
        service.get_or_create("p")
        fake_processor.create_subscription.side_effect = BillingGuardError("BG-PAY-001")
        with pytest.raises(BillingGuardError):
            service.upgrade("p", SubscriptionTier.PRO)
        assert service.get("p").payment_customer_ref == "cus_new"
        assert service.get("p").tier == SubscriptionTier.FREE_TRIAL

        fake_processor.create_subscription.side_effect = None
        fake_processor.create_subscription.return_value = SubscriptionInfo(
            customer_ref="cus_new", subscription_ref="sub_new", status="active", tier=SubscriptionTier.PRO,
        )
        service.upgrade("p", SubscriptionTier.PRO)
        fake_processor.create_customer.assert_called_once()

    def test_missing_price_id_checked_before_remote_calls(self, service, fake_processor):
        service.get_or_create("p")
        fake_processor.price_id_for.return_value = None
        with pytest.raises(BillingGuardError) as exc_info:
            service.upgrade("p", SubscriptionTier.EMPIRE)
        assert exc_info.value.code == "BG-PAY-002"
        fake_processor.create_customer.assert_not_called()
        fake_processor.create_subscription.assert_not_called()

    def test_cancel_resets_without_restarting_trial(self, service, store, fake_processor):
        original = make_trial("p", used=6)
        store.create_if_absent(original)
        service.upgrade("p", SubscriptionTier.BUILDER_PLUS)
        service.update("p", automation_mode=AutomationMode.SEMI_AUTO)

        project = service.cancel("p")
        assert project.tier == SubscriptionTier.FREE_TRIAL
        assert project.billing_mode == BillingMode.TRIAL
        assert project.automation_mode == AutomationMode.MANUAL
        assert project.subscription_ref is None
        assert project.trial_pages_used == 6
        assert project.trial_end_at == original.trial_end_at
        fake_processor.cancel_subscription.assert_called_once_with("sub_new")


class TestUpdate:

    def test_automation_mode_must_fit_tier(self, service, store):
        store.create_if_absent(make_paid("p", tier=SubscriptionTier.PRO))
        with pytest.raises(BillingGuardError) as exc_info:
            service.update("p", automation_mode=AutomationMode.FULL_AUTO)
        assert exc_info.value.code == "BG-API-002"

    def test_automation_and_limit_saved(self, service, store):
        store.create_if_absent(make_paid("p"))
        project = service.update(
            "p", automation_mode=AutomationMode.FULL_AUTO, preauthorization_limit_usd=Decimal("42.50")
        )
        assert project.automation_mode == AutomationMode.FULL_AUTO
        assert store.get("p").preauthorization_limit_usd == Decimal("42.50")

    @pytest.mark.parametrize("limit", [Decimal("0"), Decimal("-1")])
    def test_preauthorization_limit_must_be_positive(self, service, store, limit):
        store.create_if_absent(make_paid("p"))
        with pytest.raises(BillingGuardError):
            service.update("p", preauthorization_limit_usd=limit)

    def test_switch_between_paid_modes(self, service, store):
        store.create_if_absent(make_paid("p"))
        project = service.update("p", billing_mode=BillingMode.BRING_YOUR_OWN_KEY)
        assert project.billing_mode == BillingMode.BRING_YOUR_OWN_KEY

    def test_cannot_leave_trial_by_update(self, service):
        service.get_or_create("p")
        with pytest.raises(BillingGuardError):
            service.update("p", billing_mode=BillingMode.PLATFORM_MANAGED)

    def test_save_never_rolls_back_trial_counter(self, service, store):
        store.create_if_absent(make_trial("p", used=1))
        stale = store.get("p")
        store.increment_trial_pages("p")
        store.save(stale)
        assert store.get("p").trial_pages_used == 2


class TestApiKey:

    def test_set_and_read_back(self, service):
        service.get_or_create("p")
        project = service.set_api_key("p", "sk-live-abc123")
        assert project.api_key_present is True
        assert service.get_api_key("p") == "sk-live-abc123"

    def test_stored_value_is_not_plaintext(self, service, store):
        service.get_or_create("p")
        service.set_api_key("p", "sk-live-abc123")
        assert "sk-live-abc123" not in store.get_api_key_ciphertext("p")

    def test_remove_key(self, service):
        service.get_or_create("p")
        service.set_api_key("p", "sk-live-abc123")
        project = service.set_api_key("p", "")
        assert project.api_key_present is False
        assert service.get_api_key("p") is None

    def test_key_present_survives_settings_save(self, service):
        service.get_or_create("p")
        service.set_api_key("p", "sk-live-abc123")
        service.upgrade("p", SubscriptionTier.PRO, billing_mode=BillingMode.BRING_YOUR_OWN_KEY)
        assert service.get("p").api_key_present is True

    def test_rotated_secret_falls_back_to_previous(self, service, monkeypatch):
        service.get_or_create("p")
        service.set_api_key("p", "sk-live-abc123")
        old_secret = app_settings.get_secret_key()
        monkeypatch.setattr(app_settings, "secret_key", "brand-new-secret")
        monkeypatch.setattr(app_settings, "previous_secret_key", old_secret)
        assert service.get_api_key("p") == "sk-live-abc123"

    def test_unreadable_key(self, service, monkeypatch):
        service.get_or_create("p")
        service.set_api_key("p", "sk-live-abc123")
        monkeypatch.setattr(app_settings, "secret_key", "wrong-secret")
        monkeypatch.setattr(app_settings, "previous_secret_key", None)
        with pytest.raises(BillingGuardError) as exc_info:
            service.get_api_key("p")
        assert exc_info.value.code == "BG-SEC-002"


class TestWebhookSync:

    def test_tier_synced_for_paid_project(self, service, store):
        store.create_if_absent(make_paid("p", tier=SubscriptionTier.ARCHITECT, automation=AutomationMode.FULL_AUTO))
        project = service.apply_webhook_event(WebhookEvent(
            type="customer.subscription.updated",
            customer_ref="cus_test",
            subscription_ref="sub_2",
            status="active",
            tier=SubscriptionTier.PRO,
        ))
        assert project.tier == SubscriptionTier.PRO
        assert project.automation_mode == AutomationMode.MANUAL
        assert project.subscription_ref == "sub_2"

    def test_trial_project_not_upgraded_by_webhook(self, service, store):
        store.create_if_absent(make_trial("p", payment_customer_ref="cus_trial"))
        project = service.apply_webhook_event(WebhookEvent(
            type="customer.subscription.created",
            customer_ref="cus_trial",
            status="active",
            tier=SubscriptionTier.EMPIRE,
        ))
        assert project.tier == SubscriptionTier.FREE_TRIAL

    def test_deleted_cancels_locally(self, service, store, fake_processor):
        store.create_if_absent(make_paid("p", subscription_ref="sub_1"))
        project = service.apply_webhook_event(WebhookEvent(
            type="customer.subscription.deleted", customer_ref="cus_test", subscription_ref="sub_1",
        ))
        assert project.billing_mode == BillingMode.TRIAL
        fake_processor.cancel_subscription.assert_not_called()

    def test_unknown_customer_ignored(self, service):
        assert service.apply_webhook_event(WebhookEvent(
            type="customer.subscription.deleted", customer_ref="cus_nobody",
        )) is None
