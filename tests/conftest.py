"""
Shared fixtures for billing guard tests.

Environment is pinned before any billing_guard import so the settings
singleton and the database engine point at a throwaway directory.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

_TEST_DIR = tempfile.mkdtemp(prefix="billing-guard-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DIR}/billing_guard.db")
os.environ.setdefault("BILLING_GUARD_DATA_DIRECTORY", _TEST_DIR)
os.environ.setdefault("BILLING_GUARD_LOG_DIRECTORY", os.path.join(_TEST_DIR, "logs"))
os.environ.setdefault("BILLING_GUARD_SECRET_KEY", "test-secret-key-for-provider-keys")
os.environ.setdefault("BILLING_GUARD_STORE_BACKEND", "memory")

from sqlalchemy import delete  # noqa: E402

from billing_guard.core.database import get_engine, init_db  # noqa: E402
from billing_guard.core.errors.registry import error_registry  # noqa: E402
from billing_guard.models.billing import ProjectBillingSettingsRow, UsageLedgerRow  # noqa: E402
from billing_guard.schemas.billing import (  # noqa: E402
    AutomationMode,
    BillingMode,
    ProjectBillingSettings,
    SubscriptionTier,
)
from billing_guard.services.payment_processor import (  # noqa: E402
    HoldInfo,
    PaymentProcessor,
    SubscriptionInfo,
)
from billing_guard.services.settings_service import initialize_trial_settings  # noqa: E402
from billing_guard.services.settings_store import (  # noqa: E402
    InMemoryBillingStore,
    SqlBillingStore,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _registry():
    error_registry.load()
    yield


@pytest.fixture
def memory_store():
    return InMemoryBillingStore()


@pytest.fixture
def sql_store():
    init_db()
    engine = get_engine()
    with engine.begin() as conn:
        conn.execute(delete(UsageLedgerRow.__table__))
        conn.execute(delete(ProjectBillingSettingsRow.__table__))
    return SqlBillingStore(engine)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run a test against both store backends."""
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


def make_trial(project_id="proj-trial", used=0, limit=10, now=NOW, **overrides):
    project = initialize_trial_settings(project_id, now=now, pages_limit=limit)
    return project.model_copy(update={"trial_pages_used": used, **overrides})


def make_paid(
    project_id="proj-paid",
    mode=BillingMode.PLATFORM_MANAGED,
    tier=SubscriptionTier.BUILDER_PLUS,
    automation=AutomationMode.MANUAL,
    **overrides,
):
    fields = dict(
        project_id=project_id,
        billing_mode=mode,
        tier=tier,
        automation_mode=automation,
        trial_start_at=NOW - timedelta(days=30),
        trial_end_at=NOW - timedelta(days=20),
        payment_customer_ref="cus_test" if mode == BillingMode.PLATFORM_MANAGED else None,
        api_key_present=mode == BillingMode.BRING_YOUR_OWN_KEY,
        preauthorization_limit_usd=Decimal("10.00"),
    )
    fields.update(overrides)
    return ProjectBillingSettings(**fields)


@pytest.fixture
def fake_processor():
    """PaymentProcessor double with canned Stripe results."""
    processor = MagicMock(spec=PaymentProcessor)
    processor.is_configured = True
    processor.price_id_for.return_value = "price_test"
    processor.create_customer.return_value = "cus_new"
    processor.create_subscription.side_effect = lambda customer_ref, tier: SubscriptionInfo(
        customer_ref=customer_ref,
        subscription_ref="sub_new",
        status="active",
        tier=SubscriptionTier(tier),
    )
    processor.cancel_subscription.return_value = "canceled"
    processor.create_hold.return_value = HoldInfo(
        hold_ref="pi_hold", status="requires_capture", amount_cents=2500, client_secret="pi_hold_secret"
    )
    processor.capture_hold.return_value = HoldInfo(hold_ref="pi_hold", status="succeeded", amount_cents=2000)
    processor.cancel_hold.return_value = HoldInfo(hold_ref="pi_hold", status="canceled", amount_cents=2500)
    processor.create_setup_intent.return_value = "seti_secret"
    processor.create_portal_session.return_value = "https://billing.example/portal"
    return processor


@pytest.fixture
def client(memory_store, fake_processor):
    """TestClient wired to an in-memory store and a fake processor."""
    from fastapi.testclient import TestClient

    from billing_guard.main import app
    from billing_guard.services.payment_processor import get_payment_processor
    from billing_guard.services.settings_store import get_billing_store

    app.dependency_overrides[get_billing_store] = lambda: memory_store
    app.dependency_overrides[get_payment_processor] = lambda: fake_processor
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
