"""
Tier Catalog — static subscription tier, feature and change-type tables.
========================================================================

Plain immutable lookup data; nothing here is persisted per project.

TIERS (monthly USD):
    free_trial   $0     1 site   1 silo      trial billing       manual
    pro          $199   1 site   2 silos     byok / managed      manual
    builder_plus $399   1 site   unlimited   byok / managed      manual, semi_auto, full_auto
    architect    $799   5 sites  unlimited   byok / managed      manual, semi_auto, full_auto
    empire       $1999  20 sites unlimited   byok / managed      manual, semi_auto, full_auto

A silo_limit of None means unlimited.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple

from billing_guard.schemas.billing import (
    AutomationMode,
    BillingMode,
    ChangeClassification,
    ChangeType,
    SubscriptionTier,
)

__all__ = [
    "TierConfig",
    "FeatureConfig",
    "ChangeTypeConfig",
    "TIER_ORDER",
    "TIER_CONFIGS",
    "FEATURES",
    "CHANGE_TYPE_CONFIG",
    "tier_rank",
    "get_feature",
]

_PAID_BILLING_MODES = frozenset({BillingMode.BRING_YOUR_OWN_KEY, BillingMode.PLATFORM_MANAGED})
_ALL_AUTOMATION = frozenset({AutomationMode.MANUAL, AutomationMode.SEMI_AUTO, AutomationMode.FULL_AUTO})
_MANUAL_ONLY = frozenset({AutomationMode.MANUAL})


@dataclass(frozen=True)
class TierConfig:
    id: SubscriptionTier
    name: str
    price_usd: int
    duration: str
    sites: int
    silo_limit: Optional[int]
    billing_modes: FrozenSet[BillingMode]
    automation_modes: FrozenSet[AutomationMode]
    credit_card_required: bool
    scan_scope: str
    cannibalization_detection: str
    architecture_view: str
    remediation_plan: str
    content_generation: str


@dataclass(frozen=True)
class FeatureConfig:
    id: str
    name: str
    min_tier: SubscriptionTier


@dataclass(frozen=True)
class ChangeTypeConfig:
    classification: ChangeClassification
    triggers_ai_cost: bool
    label: str


# Total order, lowest first
TIER_ORDER: Tuple[SubscriptionTier, ...] = (
    SubscriptionTier.FREE_TRIAL,
    SubscriptionTier.PRO,
    SubscriptionTier.BUILDER_PLUS,
    SubscriptionTier.ARCHITECT,
    SubscriptionTier.EMPIRE,
)


def tier_rank(tier: SubscriptionTier) -> int:
    return TIER_ORDER.index(SubscriptionTier(tier))


TIER_CONFIGS: Mapping[SubscriptionTier, TierConfig] = MappingProxyType({
    SubscriptionTier.FREE_TRIAL: TierConfig(
        id=SubscriptionTier.FREE_TRIAL,
        name="Free Trial",
        price_usd=0,
        duration="10 days",
        sites=1,
        silo_limit=1,
        billing_modes=frozenset({BillingMode.TRIAL}),
        automation_modes=_MANUAL_ONLY,
        credit_card_required=False,
        scan_scope="Single silo analysis",
        cannibalization_detection="Within assigned silo",
        architecture_view="View assigned silo",
        remediation_plan="Per-page suggestions",
        content_generation="10 pages max",
    ),
    SubscriptionTier.PRO: TierConfig(
        id=SubscriptionTier.PRO,
        name="Pro",
        price_usd=199,
        duration="Monthly",
        sites=1,
        silo_limit=2,
        billing_modes=_PAID_BILLING_MODES,
        automation_modes=_MANUAL_ONLY,
        credit_card_required=True,
        scan_scope="2 silos with full analysis",
        cannibalization_detection="Within assigned silos",
        architecture_view="View assigned silos",
        remediation_plan="Per-silo suggestions",
        content_generation="Unlimited",
    ),
    SubscriptionTier.BUILDER_PLUS: TierConfig(
        id=SubscriptionTier.BUILDER_PLUS,
        name="Builder+",
        price_usd=399,
        duration="Monthly",
        sites=1,
        silo_limit=None,
        billing_modes=_PAID_BILLING_MODES,
        automation_modes=_ALL_AUTOMATION,
        credit_card_required=True,
        scan_scope="Full site crawl + remediation",
        cannibalization_detection="Auto-detect entire site",
        architecture_view="Auto-generated site-wide map",
        remediation_plan="Complete prioritized plan",
        content_generation="Unlimited",
    ),
    SubscriptionTier.ARCHITECT: TierConfig(
        id=SubscriptionTier.ARCHITECT,
        name="Architect",
        price_usd=799,
        duration="Monthly",
        sites=5,
        silo_limit=None,
        billing_modes=_PAID_BILLING_MODES,
        automation_modes=_ALL_AUTOMATION,
        credit_card_required=True,
        scan_scope="Multi-site crawl",
        cannibalization_detection="Auto-detect all sites",
        architecture_view="Multi-site architecture",
        remediation_plan="Cross-site prioritized plan",
        content_generation="Unlimited",
    ),
    SubscriptionTier.EMPIRE: TierConfig(
        id=SubscriptionTier.EMPIRE,
        name="Empire",
        price_usd=1999,
        duration="Monthly",
        sites=20,
        silo_limit=None,
        billing_modes=_PAID_BILLING_MODES,
        automation_modes=_ALL_AUTOMATION,
        credit_card_required=True,
        scan_scope="Multi-site crawl",
        cannibalization_detection="Auto-detect all sites",
        architecture_view="Multi-site architecture",
        remediation_plan="Cross-site prioritized plan",
        content_generation="Unlimited",
    ),
})


FEATURES: Tuple[FeatureConfig, ...] = (
    # Free trial
    FeatureConfig("cannibalization_detection", "Cannibalization Detection", SubscriptionTier.FREE_TRIAL),
    FeatureConfig("architecture_view", "Architecture Visualization", SubscriptionTier.FREE_TRIAL),
    FeatureConfig("remediation_plan", "Remediation Planning", SubscriptionTier.FREE_TRIAL),
    FeatureConfig("content_generation_limited", "Content Generation (10 pages)", SubscriptionTier.FREE_TRIAL),
    # Pro
    FeatureConfig("multi_silo", "Multiple Silos (2 max)", SubscriptionTier.PRO),
    FeatureConfig("unlimited_content", "Unlimited Content Generation", SubscriptionTier.PRO),
    FeatureConfig("byok_billing", "Bring Your Own Key", SubscriptionTier.PRO),
    # Builder+
    FeatureConfig("unlimited_silos", "Unlimited Silos", SubscriptionTier.BUILDER_PLUS),
    FeatureConfig("auto_detection", "Auto-detect Site-wide Cannibalization", SubscriptionTier.BUILDER_PLUS),
    FeatureConfig("auto_architecture", "Auto-generated Architecture Map", SubscriptionTier.BUILDER_PLUS),
    FeatureConfig("batch_queue", "Batch Queue Management", SubscriptionTier.BUILDER_PLUS),
    FeatureConfig("semi_auto", "Semi-Auto Mode", SubscriptionTier.BUILDER_PLUS),
    FeatureConfig("full_auto", "Full-Auto Mode", SubscriptionTier.BUILDER_PLUS),
    # Architect
    FeatureConfig("multi_site", "Multi-site Management (5 sites)", SubscriptionTier.ARCHITECT),
    FeatureConfig("cross_site_detection", "Cross-site Cannibalization Detection", SubscriptionTier.ARCHITECT),
    FeatureConfig("multi_site_architecture", "Multi-site Architecture View", SubscriptionTier.ARCHITECT),
    FeatureConfig("cross_site_plan", "Cross-site Prioritized Planning", SubscriptionTier.ARCHITECT),
    # Empire
    FeatureConfig("enterprise_sites", "Enterprise Sites (20 max)", SubscriptionTier.EMPIRE),
    FeatureConfig("delegation", "Remediation Plan Delegation", SubscriptionTier.EMPIRE),
    FeatureConfig("centralized_control", "Centralized Portfolio Control", SubscriptionTier.EMPIRE),
)

_FEATURES_BY_ID: Mapping[str, FeatureConfig] = MappingProxyType({f.id: f for f in FEATURES})


def get_feature(feature_id: str) -> Optional[FeatureConfig]:
    return _FEATURES_BY_ID.get(feature_id)


CHANGE_TYPE_CONFIG: Mapping[ChangeType, ChangeTypeConfig] = MappingProxyType({
    ChangeType.LINK_ADD: ChangeTypeConfig(ChangeClassification.SAFE, False, "Add Internal Link"),
    ChangeType.ENTITY_ASSIGN: ChangeTypeConfig(ChangeClassification.SAFE, False, "Assign Entity"),
    ChangeType.NEW_CONTENT: ChangeTypeConfig(ChangeClassification.SAFE, True, "Generate New Content"),
    ChangeType.ANCHOR_OPTIMIZE: ChangeTypeConfig(ChangeClassification.SAFE, False, "Optimize Anchor Text"),
    ChangeType.SCHEMA_UPDATE: ChangeTypeConfig(ChangeClassification.SAFE, False, "Update Schema Markup"),
    ChangeType.REDIRECT_301: ChangeTypeConfig(ChangeClassification.DESTRUCTIVE, False, "Create 301 Redirect"),
    ChangeType.PAGE_DELETE: ChangeTypeConfig(ChangeClassification.DESTRUCTIVE, False, "Delete Page"),
    ChangeType.CONTENT_MERGE: ChangeTypeConfig(ChangeClassification.DESTRUCTIVE, True, "Merge Content"),
    ChangeType.KEYWORD_REASSIGN: ChangeTypeConfig(ChangeClassification.DESTRUCTIVE, False, "Reassign Keywords"),
    ChangeType.SILO_RESTRUCTURE: ChangeTypeConfig(ChangeClassification.DESTRUCTIVE, False, "Restructure Silo"),
})
