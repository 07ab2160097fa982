"""
Billing Router
==============

Project billing settings, subscriptions, preauthorization holds, usage
ledger and the tier catalog.

    GET    /api/billing/settings              settings (first access starts the trial)
    PUT    /api/billing/settings              automation / preauth limit / paid mode / API key
    POST   /api/billing/subscribe             explicit upgrade
    DELETE /api/billing/subscription          explicit cancellation
    POST   /api/billing/portal                processor billing portal URL
    POST   /api/billing/setup-intent          client secret for adding a card
    POST   /api/billing/holds                 place a preauthorization hold
    POST   /api/billing/holds/{hold_id}/capture
    DELETE /api/billing/holds/{hold_id}
    GET    /api/billing/usage                 ledger page + totals + trial info
    POST   /api/billing/usage                 record one usage entry
    GET    /api/billing/tiers                 tier catalog
    POST   /api/billing/tier-limits           site/silo limit check

Policy denials come back as 402 (or 403 for tier limits) with
{error, code, cta, upgrade_required}. Infrastructure faults are raised as
BillingGuardError and rendered by the registry handler.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from billing_guard.core.structured_logging import bind_project_id
from billing_guard.routers.deps import (
    denial_response,
    get_settings_service,
    get_usage_ledger,
)
from billing_guard.schemas.billing import (
    AutomationMode,
    BillingError,
    BillingErrorCode,
    BillingMode,
    ProjectBillingSettings,
    SubscriptionTier,
    UsageLedgerEntry,
    UsageSummary,
)
from billing_guard.services.feature_gate import (
    check_tier_limits,
    format_tier_capabilities,
    get_available_features,
    get_upgrade_recommendation,
)
from billing_guard.services.payment_processor import (
    PaymentDeclined,
    PaymentProcessor,
    get_payment_processor,
)
from billing_guard.services.settings_service import BillingSettingsService
from billing_guard.services.tier_catalog import TIER_CONFIGS, TIER_ORDER
from billing_guard.services.usage_ledger import MAX_PAGE_SIZE, UsageLedger

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class UpdateSettingsRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    automation_mode: Optional[AutomationMode] = None
    preauthorization_limit_usd: Optional[Decimal] = None
    billing_mode: Optional[BillingMode] = None
    api_key: Optional[str] = Field(None, description="Provider API key; empty string removes it")


class SubscribeRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    tier: SubscriptionTier
    billing_mode: BillingMode = BillingMode.PLATFORM_MANAGED
    email: Optional[str] = None
    payment_method_id: Optional[str] = None


class PortalRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class SetupIntentRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    email: Optional[str] = None


class HoldRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    amount_usd: Decimal = Field(..., gt=0)
    payment_method_id: Optional[str] = None
    content_job_id: Optional[str] = None


class CaptureRequest(BaseModel):
    amount_usd: Optional[Decimal] = Field(None, gt=0)


class HoldResponse(BaseModel):
    hold_id: str
    status: str
    amount_cents: int
    client_secret: Optional[str] = None


class RecordUsageRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    content_job_id: Optional[str] = None
    provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    provider_cost_usd: Decimal = Field(Decimal("0"), ge=0)
    platform_fee_usd: Decimal = Field(Decimal("0"), ge=0)
    total_charge_usd: Optional[Decimal] = Field(None, ge=0)


class RecordUsageResponse(BaseModel):
    success: bool
    entry: UsageLedgerEntry
    trial_pages_used: Optional[int] = None
    trial_pages_remaining: Optional[int] = None


class TierLimitRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    site_count: int = Field(0, ge=0)
    silo_count: int = Field(0, ge=0)
    wants_automation: bool = False
    wants_multi_site: bool = False


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------
router = APIRouter()


def _settings_payload(project: ProjectBillingSettings) -> Dict[str, Any]:
    payload = project.model_dump(mode="json")
    payload["trial_pages_remaining"] = project.trial_pages_remaining
    return payload


def _no_customer_denial() -> BillingError:
    return BillingError(
        code=BillingErrorCode.BILLING_DISABLED,
        message="No billing account for this project.",
        cta="Add a payment method to continue.",
    )


@router.get("/settings")
def get_settings(
    project_id: str = Query(..., min_length=1),
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(project_id)
    return _settings_payload(service.get_or_create(project_id))


@router.put("/settings")
def update_settings(
    body: UpdateSettingsRequest,
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(body.project_id)
    project = service.update(
        body.project_id,
        automation_mode=body.automation_mode,
        preauthorization_limit_usd=body.preauthorization_limit_usd,
        billing_mode=body.billing_mode,
    )
    if body.api_key is not None:
        project = service.set_api_key(body.project_id, body.api_key.strip())
    return _settings_payload(project)


@router.post("/subscribe")
def subscribe(
    body: SubscribeRequest,
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(body.project_id)
    project = service.upgrade(
        body.project_id,
        body.tier,
        billing_mode=body.billing_mode,
        email=body.email,
        payment_method_id=body.payment_method_id,
    )
    return _settings_payload(project)


@router.delete("/subscription")
def cancel_subscription(
    project_id: str = Query(..., min_length=1),
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(project_id)
    return _settings_payload(service.cancel(project_id))


@router.post("/portal")
def open_portal(
    body: PortalRequest,
    service: BillingSettingsService = Depends(get_settings_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    bind_project_id(body.project_id)
    project = service.get(body.project_id)
    if not project.payment_customer_ref:
        return denial_response(_no_customer_denial())
    return {"url": processor.create_portal_session(project.payment_customer_ref, body.return_url)}


@router.post("/setup-intent")
def create_setup_intent(
    body: SetupIntentRequest,
    service: BillingSettingsService = Depends(get_settings_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    bind_project_id(body.project_id)
    project = service.ensure_customer(body.project_id, email=body.email)
    return {
        "client_secret": processor.create_setup_intent(project.payment_customer_ref),
        "customer_ref": project.payment_customer_ref,
    }


@router.post("/holds", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
def create_hold(
    body: HoldRequest,
    service: BillingSettingsService = Depends(get_settings_service),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    bind_project_id(body.project_id)
    project = service.get(body.project_id)
    if not project.payment_customer_ref:
        return denial_response(_no_customer_denial())

    metadata = {"project_id": body.project_id}
    if body.content_job_id:
        metadata["content_job_id"] = body.content_job_id
    try:
        hold = processor.create_hold(
            project.payment_customer_ref,
            body.amount_usd,
            payment_method_id=body.payment_method_id,
            metadata=metadata,
        )
    except PaymentDeclined as exc:
        return denial_response(
            BillingError(
                code=BillingErrorCode.PREAUTH_FAILED,
                message=f"Pre-authorization of ${body.amount_usd:.2f} was declined: {exc}",
                cta="Update your payment method and try again.",
            ),
            decline_code=exc.decline_code,
        )
    return HoldResponse(
        hold_id=hold.hold_ref,
        status=hold.status,
        amount_cents=hold.amount_cents,
        client_secret=hold.client_secret,
    )


@router.post("/holds/{hold_id}/capture", response_model=HoldResponse)
def capture_hold(
    hold_id: str,
    body: Optional[CaptureRequest] = None,
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    hold = processor.capture_hold(hold_id, body.amount_usd if body else None)
    return HoldResponse(hold_id=hold.hold_ref, status=hold.status, amount_cents=hold.amount_cents)


@router.delete("/holds/{hold_id}", response_model=HoldResponse)
def cancel_hold(
    hold_id: str,
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    hold = processor.cancel_hold(hold_id)
    return HoldResponse(hold_id=hold.hold_ref, status=hold.status, amount_cents=hold.amount_cents)


@router.get("/usage", response_model=UsageSummary)
def get_usage(
    project_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    bind_project_id(project_id)
    return ledger.summarize(project_id, limit=limit, offset=offset)


@router.post("/usage", response_model=RecordUsageResponse, status_code=status.HTTP_201_CREATED)
def record_usage(
    body: RecordUsageRequest,
    service: BillingSettingsService = Depends(get_settings_service),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    bind_project_id(body.project_id)
    project = service.get(body.project_id)

    total = body.total_charge_usd
    if total is None:
        total = body.provider_cost_usd + body.platform_fee_usd

    receipt = ledger.record(UsageLedgerEntry(
        project_id=body.project_id,
        content_job_id=body.content_job_id,
        provider=body.provider,
        model=body.model,
        input_tokens=body.input_tokens,
        output_tokens=body.output_tokens,
        provider_cost_usd=body.provider_cost_usd,
        platform_fee_usd=body.platform_fee_usd,
        total_charge_usd=total,
        is_trial=project.billing_mode == BillingMode.TRIAL,
    ))
    if not receipt.recorded:
        return denial_response(receipt.error)

    return RecordUsageResponse(
        success=True,
        entry=receipt.entry,
        trial_pages_used=receipt.trial_pages_used,
        trial_pages_remaining=receipt.trial_pages_remaining,
    )


@router.get("/tiers")
def list_tiers() -> List[Dict[str, Any]]:
    tiers = []
    for tier in TIER_ORDER:
        config = TIER_CONFIGS[tier]
        tiers.append({
            "id": tier.value,
            "name": config.name,
            "price_usd": config.price_usd,
            "duration": config.duration,
            "credit_card_required": config.credit_card_required,
            "capabilities": format_tier_capabilities(tier),
            "features": [f.id for f in get_available_features(tier)],
        })
    return tiers


@router.post("/tier-limits")
def check_limits(
    body: TierLimitRequest,
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(body.project_id)
    project = service.get_or_create(body.project_id)
    result = check_tier_limits(project.tier, body.site_count, body.silo_count)
    if not result.allowed:
        return denial_response(
            result.error,
            status_code=status.HTTP_403_FORBIDDEN,
            limit=result.limit,
            current=result.current,
            max=result.max,
            recommended_tier=result.recommended_tier.value if result.recommended_tier else None,
        )

    recommended = get_upgrade_recommendation(
        project.tier,
        body.site_count,
        body.silo_count,
        wants_automation=body.wants_automation,
        wants_multi_site=body.wants_multi_site,
    )
    return {
        "allowed": True,
        "tier": project.tier.value,
        "recommended_tier": recommended.value if recommended else None,
    }
