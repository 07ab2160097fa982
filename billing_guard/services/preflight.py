"""
Preflight Guard — allow/deny gate before any costed AI operation
=================================================================

PURPOSE:
    Evaluates the project's billing settings against a cost estimate and
    returns a PreflightResult. Denials are values, never exceptions:
    callers branch on ``result.error.code`` and show ``result.error.cta``.

DECISION TABLE (by billing_mode, first failing check wins):
    trial               now > trial_end_at              → TRIAL_EXPIRED
    trial               pages_used >= pages_limit       → TRIAL_LIMIT_REACHED
    trial               otherwise                       → allow (+ remaining pages)
    bring_your_own_key  no API key                      → API_KEY_MISSING
    bring_your_own_key  otherwise                       → allow
    platform_managed    no payment customer             → BILLING_DISABLED
    platform_managed    bulk and total > threshold      → allow, requires_preauthorization
    platform_managed    otherwise                       → allow
    anything else                                       → BILLING_DISABLED

The trial page check here is advisory; the authoritative limit is the
atomic conditional increment performed by the usage ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from billing_guard.config import settings as app_settings
from billing_guard.schemas.billing import (
    BillingError,
    BillingErrorCode,
    BillingMode,
    CostEstimate,
    PreflightResult,
    ProjectBillingSettings,
    SubscriptionTier,
)
from billing_guard.services.tier_catalog import TIER_CONFIGS

logger = logging.getLogger(__name__)

__all__ = ["check", "trial_upgrade_cta", "trial_limit_error"]


def trial_upgrade_cta() -> str:
    pro = TIER_CONFIGS[SubscriptionTier.PRO]
    builder = TIER_CONFIGS[SubscriptionTier.BUILDER_PLUS]
    return (
        f"Upgrade to {pro.name} (${pro.price_usd}/mo) or "
        f"{builder.name} (${builder.price_usd}/mo) to continue."
    )


def trial_limit_error(pages_used: int, pages_limit: int) -> BillingError:
    return BillingError(
        code=BillingErrorCode.TRIAL_LIMIT_REACHED,
        message=f"Trial limit reached ({pages_used}/{pages_limit} pages).",
        cta=trial_upgrade_cta(),
    )


def _as_aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _check_trial(
    project: ProjectBillingSettings,
    estimate: CostEstimate,
    now: datetime,
) -> PreflightResult:
    if project.trial_end_at is not None and now > _as_aware(project.trial_end_at):
        return PreflightResult(
            allowed=False,
            error=BillingError(
                code=BillingErrorCode.TRIAL_EXPIRED,
                message=f"{app_settings.trial_duration_days}-day trial expired. Upgrade to continue generating content.",
                cta=trial_upgrade_cta(),
            ),
        )

    if project.trial_pages_used >= project.trial_pages_limit:
        return PreflightResult(
            allowed=False,
            error=trial_limit_error(project.trial_pages_used, project.trial_pages_limit),
        )

    return PreflightResult(
        allowed=True,
        estimate=estimate.model_copy(update={
            "trial_pages_used": project.trial_pages_used,
            "trial_pages_remaining": project.trial_pages_limit - project.trial_pages_used,
        }),
    )


def _check_bring_your_own_key(
    project: ProjectBillingSettings,
    estimate: CostEstimate,
) -> PreflightResult:
    if not project.api_key_present:
        return PreflightResult(
            allowed=False,
            error=BillingError(
                code=BillingErrorCode.API_KEY_MISSING,
                message="API key required for bring-your-own-key billing.",
                cta="Add your OpenAI or Gemini API key in Settings.",
            ),
        )
    return PreflightResult(allowed=True, estimate=estimate)


def _check_platform_managed(
    project: ProjectBillingSettings,
    estimate: CostEstimate,
    is_bulk_operation: bool,
    threshold: Decimal,
) -> PreflightResult:
    if not project.payment_customer_ref:
        return PreflightResult(
            allowed=False,
            error=BillingError(
                code=BillingErrorCode.BILLING_DISABLED,
                message="Payment method required for platform-managed billing.",
                cta="Add a payment method to continue.",
            ),
        )

    if is_bulk_operation and estimate.total_cost_usd > threshold:
        logger.info(
            "Bulk job requires preauthorization: project=%s total=%s threshold=%s",
            project.project_id, estimate.total_cost_usd, threshold,
        )
        return PreflightResult(
            allowed=True,
            requires_preauthorization=True,
            estimate=estimate,
        )

    return PreflightResult(allowed=True, estimate=estimate)


def check(
    project: ProjectBillingSettings,
    estimate: CostEstimate,
    is_bulk_operation: bool = False,
    now: Optional[datetime] = None,
    preauthorization_threshold: Optional[Decimal] = None,
) -> PreflightResult:
    """Decide whether a costed operation may start.

    Args:
        project: Current billing settings for the project.
        estimate: Output of cost_estimator.estimate().
        is_bulk_operation: Bulk jobs above the threshold need a payment hold.
        now: Clock override for trial expiry (defaults to UTC now).
        preauthorization_threshold: Override for settings.preauth_threshold_usd.
    """
    now = _as_aware(now) if now is not None else datetime.now(timezone.utc)
    threshold = (
        preauthorization_threshold
        if preauthorization_threshold is not None
        else app_settings.preauth_threshold_usd
    )
    mode = project.billing_mode

    if mode == BillingMode.TRIAL:
        result = _check_trial(project, estimate, now)
    elif mode == BillingMode.BRING_YOUR_OWN_KEY:
        result = _check_bring_your_own_key(project, estimate)
    elif mode == BillingMode.PLATFORM_MANAGED:
        result = _check_platform_managed(project, estimate, is_bulk_operation, threshold)
    else:
        logger.warning("Unrecognized billing mode %r for project=%s", mode, project.project_id)
        result = PreflightResult(
            allowed=False,
            error=BillingError(
                code=BillingErrorCode.BILLING_DISABLED,
                message="Invalid billing configuration.",
                cta="Check billing settings.",
            ),
        )

    if not result.allowed:
        logger.info(
            "Preflight denied: project=%s mode=%s code=%s",
            project.project_id, mode, result.error.code.value,
        )
    return result
