"""
Tier & Feature Gate
===================

Answers "may this tier use X?" against the static tier catalog.

    is_feature_available()      rank(tier) >= rank(feature.min_tier)
    check_tier_limits()         may the project add one more site / silo?
    get_upgrade_recommendation  advisory; never returns the current or a lower tier

Tier order: free_trial < pro < builder_plus < architect < empire.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from billing_guard.schemas.billing import (
    AutomationMode,
    BillingError,
    BillingErrorCode,
    BillingMode,
    SubscriptionTier,
    TierLimitCheck,
)
from billing_guard.services.tier_catalog import (
    FEATURES,
    TIER_CONFIGS,
    FeatureConfig,
    TierConfig,
    get_feature,
    tier_rank,
)

logger = logging.getLogger(__name__)

__all__ = [
    "is_feature_available",
    "feature_denial",
    "get_available_features",
    "get_tier_config",
    "can_use_automation_mode",
    "can_use_billing_mode",
    "get_tier_display_name",
    "get_tier_price",
    "check_tier_limits",
    "get_upgrade_recommendation",
    "format_tier_capabilities",
]


def get_tier_config(tier: Union[SubscriptionTier, str]) -> TierConfig:
    return TIER_CONFIGS[SubscriptionTier(tier)]


def get_tier_display_name(tier: Union[SubscriptionTier, str]) -> str:
    return get_tier_config(tier).name


def get_tier_price(tier: Union[SubscriptionTier, str]) -> int:
    return get_tier_config(tier).price_usd


def is_feature_available(feature_id: str, tier: Union[SubscriptionTier, str]) -> bool:
    feature = get_feature(feature_id)
    if feature is None:
        return False
    return tier_rank(tier) >= tier_rank(feature.min_tier)


def feature_denial(feature_id: str) -> BillingError:
    """Denial value for a feature the current tier does not include."""
    feature = get_feature(feature_id)
    if feature is None:
        return BillingError(
            code=BillingErrorCode.FEATURE_NOT_AVAILABLE,
            message=f"Unknown feature '{feature_id}'.",
            cta="Contact support.",
        )
    required = get_tier_config(feature.min_tier)
    return BillingError(
        code=BillingErrorCode.FEATURE_NOT_AVAILABLE,
        message=f"{feature.name} requires the {required.name} plan or higher.",
        cta=f"Upgrade to {required.name} (${required.price_usd}/mo) to unlock {feature.name}.",
    )


def get_available_features(tier: Union[SubscriptionTier, str]) -> List[FeatureConfig]:
    return [f for f in FEATURES if is_feature_available(f.id, tier)]


def can_use_automation_mode(
    tier: Union[SubscriptionTier, str],
    mode: Union[AutomationMode, str],
) -> bool:
    return AutomationMode(mode) in get_tier_config(tier).automation_modes


def can_use_billing_mode(
    tier: Union[SubscriptionTier, str],
    mode: Union[BillingMode, str],
) -> bool:
    return BillingMode(mode) in get_tier_config(tier).billing_modes


def check_tier_limits(
    tier: Union[SubscriptionTier, str],
    site_count: int,
    silo_count: int,
) -> TierLimitCheck:
    """Check whether one more site or silo fits in the tier.

    Counts are the project's current usage; a count already at the tier
    maximum means the next one is refused.
    """
    config = get_tier_config(tier)

    if site_count >= config.sites:
        return _limit_denial(config, "sites", site_count, config.sites, site_count, silo_count)

    if config.silo_limit is not None and silo_count >= config.silo_limit:
        return _limit_denial(config, "silos", silo_count, config.silo_limit, site_count, silo_count)

    return TierLimitCheck(allowed=True)


def _limit_denial(
    config: TierConfig,
    limit: str,
    current: int,
    maximum: int,
    site_count: int,
    silo_count: int,
) -> TierLimitCheck:
    recommended = get_upgrade_recommendation(config.id, site_count, silo_count)
    if recommended is not None:
        target = get_tier_config(recommended)
        cta = f"Upgrade to {target.name} (${target.price_usd}/mo) for more {limit}."
    else:
        cta = "Contact sales for a custom plan."

    logger.info("Tier limit reached: tier=%s limit=%s current=%d max=%d", config.id.value, limit, current, maximum)
    return TierLimitCheck(
        allowed=False,
        error=BillingError(
            code=BillingErrorCode.TIER_LIMIT_EXCEEDED,
            message=f"{config.name} plan allows {maximum} {limit} ({current} in use).",
            cta=cta,
        ),
        limit=limit,
        current=current,
        max=maximum,
        recommended_tier=recommended,
    )


def get_upgrade_recommendation(
    current_tier: Union[SubscriptionTier, str],
    site_count: int,
    silo_count: int,
    wants_automation: bool = False,
    wants_multi_site: bool = False,
) -> Optional[SubscriptionTier]:
    """Suggest the smallest tier that fits the described usage.

    Returns None when the current tier already fits, or when the suggested
    tier would not be an upgrade.
    """
    current = SubscriptionTier(current_tier)
    config = get_tier_config(current)
    suggestion: Optional[SubscriptionTier] = None

    if config.silo_limit is not None and silo_count >= config.silo_limit:
        if site_count <= 1:
            suggestion = SubscriptionTier.BUILDER_PLUS
        elif site_count <= 5:
            suggestion = SubscriptionTier.ARCHITECT
        else:
            suggestion = SubscriptionTier.EMPIRE
    elif site_count >= config.sites:
        suggestion = SubscriptionTier.ARCHITECT if site_count < 5 else SubscriptionTier.EMPIRE
    elif wants_automation and not can_use_automation_mode(current, AutomationMode.SEMI_AUTO):
        suggestion = SubscriptionTier.BUILDER_PLUS if site_count <= 1 else SubscriptionTier.ARCHITECT
    elif wants_multi_site and current == SubscriptionTier.BUILDER_PLUS:
        suggestion = SubscriptionTier.ARCHITECT

    if suggestion is None or tier_rank(suggestion) <= tier_rank(current):
        return None
    return suggestion


def format_tier_capabilities(tier: Union[SubscriptionTier, str]) -> Dict[str, str]:
    config = get_tier_config(tier)
    automation_order = [AutomationMode.MANUAL, AutomationMode.SEMI_AUTO, AutomationMode.FULL_AUTO]

    if config.billing_modes >= {BillingMode.BRING_YOUR_OWN_KEY, BillingMode.PLATFORM_MANAGED}:
        ai_billing = "Bring Your Own Key or Platform-Managed"
    else:
        ai_billing = ", ".join(sorted(m.value for m in config.billing_modes)).replace("_", " ")

    return {
        "sites": "1 site" if config.sites == 1 else f"{config.sites} sites",
        "silos": "Unlimited silos" if config.silo_limit is None else f"{config.silo_limit} silos",
        "automation": ", ".join(
            m.value.replace("_", " ") for m in automation_order if m in config.automation_modes
        ),
        "ai_billing": ai_billing,
    }
