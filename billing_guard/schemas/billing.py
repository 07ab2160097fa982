"""
Billing domain schemas.

Pydantic models shared by the policy services and the HTTP routers:
enums for billing/tier/automation state, project billing settings,
cost estimates, ledger entries, and the typed denial values returned by
the preflight guard and tier gate.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BillingMode(str, Enum):
    """Which party pays the AI provider."""

    TRIAL = "trial"
    BRING_YOUR_OWN_KEY = "bring_your_own_key"
    PLATFORM_MANAGED = "platform_managed"


class SubscriptionTier(str, Enum):
    FREE_TRIAL = "free_trial"
    PRO = "pro"
    BUILDER_PLUS = "builder_plus"
    ARCHITECT = "architect"
    EMPIRE = "empire"


class AutomationMode(str, Enum):
    MANUAL = "manual"
    SEMI_AUTO = "semi_auto"
    FULL_AUTO = "full_auto"


class ChangeClassification(str, Enum):
    SAFE = "safe"
    DESTRUCTIVE = "destructive"


class ChangeType(str, Enum):
    LINK_ADD = "link_add"
    ENTITY_ASSIGN = "entity_assign"
    NEW_CONTENT = "new_content"
    ANCHOR_OPTIMIZE = "anchor_optimize"
    SCHEMA_UPDATE = "schema_update"
    REDIRECT_301 = "redirect_301"
    PAGE_DELETE = "page_delete"
    CONTENT_MERGE = "content_merge"
    KEYWORD_REASSIGN = "keyword_reassign"
    SILO_RESTRUCTURE = "silo_restructure"


class BillingErrorCode(str, Enum):
    """Policy denial codes. Callers branch on these, never on the message."""

    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    TRIAL_LIMIT_REACHED = "TRIAL_LIMIT_REACHED"
    API_KEY_MISSING = "API_KEY_MISSING"
    BILLING_DISABLED = "BILLING_DISABLED"
    TIER_LIMIT_EXCEEDED = "TIER_LIMIT_EXCEEDED"
    PREAUTH_FAILED = "PREAUTH_FAILED"
    FEATURE_NOT_AVAILABLE = "FEATURE_NOT_AVAILABLE"


class BillingError(BaseModel):
    """A policy denial: code + message + call-to-action for direct display."""

    code: BillingErrorCode
    message: str
    cta: str


class ProjectBillingSettings(BaseModel):
    """Billing state owned by one project."""

    project_id: str
    billing_mode: BillingMode = BillingMode.TRIAL
    tier: SubscriptionTier = SubscriptionTier.FREE_TRIAL
    trial_pages_used: int = Field(default=0, ge=0)
    trial_pages_limit: int = Field(default=10, ge=0)
    trial_start_at: Optional[datetime] = None
    trial_end_at: Optional[datetime] = None
    automation_mode: AutomationMode = AutomationMode.MANUAL
    preauthorization_limit_usd: Decimal = Field(default=Decimal("10.00"), gt=0)
    api_key_present: bool = False
    payment_customer_ref: Optional[str] = None
    payment_method_present: bool = False
    subscription_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def trial_pages_remaining(self) -> int:
        return max(0, self.trial_pages_limit - self.trial_pages_used)


class CostEstimate(BaseModel):
    """Priced estimate for one costed operation. Never persisted.

    The trial fields are only filled in when the preflight guard
    annotates an allowed trial-mode estimate.
    """

    input_tokens: int
    output_tokens: int
    provider_cost_usd: Decimal
    platform_fee_usd: Decimal
    total_cost_usd: Decimal
    billing_mode: Union[BillingMode, str]
    trial_pages_used: Optional[int] = None
    trial_pages_remaining: Optional[int] = None


class PreflightResult(BaseModel):
    allowed: bool
    error: Optional[BillingError] = None
    estimate: Optional[CostEstimate] = None
    requires_preauthorization: bool = False


class UsageLedgerEntry(BaseModel):
    """One consumption record. Immutable once written."""

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    project_id: str
    content_job_id: Optional[str] = None
    provider: str
    model: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    provider_cost_usd: Decimal = Decimal("0")
    platform_fee_usd: Decimal = Decimal("0")
    total_charge_usd: Decimal = Decimal("0")
    is_trial: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class LedgerReceipt(BaseModel):
    """Outcome of UsageLedger.record()."""

    recorded: bool
    entry: Optional[UsageLedgerEntry] = None
    error: Optional[BillingError] = None
    trial_pages_used: Optional[int] = None
    trial_pages_remaining: Optional[int] = None


class UsageSummary(BaseModel):
    project_id: str
    total_charge_usd: Decimal = Decimal("0")
    total_provider_cost_usd: Decimal = Decimal("0")
    total_platform_fee_usd: Decimal = Decimal("0")
    count: int = 0
    total: int = 0
    limit: int = 50
    offset: int = 0
    entries: List[UsageLedgerEntry] = Field(default_factory=list)
    trial: Optional[Dict[str, Any]] = None


class TierLimitCheck(BaseModel):
    allowed: bool
    error: Optional[BillingError] = None
    limit: Optional[str] = None
    current: Optional[int] = None
    max: Optional[int] = None
    recommended_tier: Optional[SubscriptionTier] = None
