"""
Auto-Execution Policy
=====================

Decides whether a remediation change may run without a human approving
it. First matching rule wins:

    destructive change            → never
    trial billing                 → never (trial is always manual)
    manual automation             → never
    semi_auto                     → cost <= auto_execute_threshold_usd ($1.00)
    full_auto                     → cost <= project preauthorization limit
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Union

from billing_guard.config import settings as app_settings
from billing_guard.schemas.billing import (
    AutomationMode,
    BillingMode,
    ChangeClassification,
    ChangeType,
    ProjectBillingSettings,
)
from billing_guard.services.tier_catalog import CHANGE_TYPE_CONFIG, ChangeTypeConfig

logger = logging.getLogger(__name__)

__all__ = ["can_auto_execute", "classify_change", "get_change_config"]


def can_auto_execute(
    project: ProjectBillingSettings,
    estimated_cost_usd: Decimal,
    classification: ChangeClassification,
    threshold: Optional[Decimal] = None,
) -> bool:
    if classification == ChangeClassification.DESTRUCTIVE:
        return False

    if project.billing_mode == BillingMode.TRIAL:
        return False

    mode = project.automation_mode
    if mode == AutomationMode.SEMI_AUTO:
        limit = threshold if threshold is not None else app_settings.auto_execute_threshold_usd
        return estimated_cost_usd <= limit
    if mode == AutomationMode.FULL_AUTO:
        return estimated_cost_usd <= project.preauthorization_limit_usd

    # manual, or anything unrecognised
    return False


def get_change_config(change_type: Union[ChangeType, str]) -> Optional[ChangeTypeConfig]:
    try:
        return CHANGE_TYPE_CONFIG.get(ChangeType(change_type))
    except ValueError:
        return None


def classify_change(change_type: Union[ChangeType, str]) -> ChangeClassification:
    """Return the classification of a change type.

    Unknown change types are treated as destructive so they always need
    explicit approval.
    """
    config = get_change_config(change_type)
    if config is None:
        logger.warning("Unknown change type %r; classifying as destructive", change_type)
        return ChangeClassification.DESTRUCTIVE
    return config.classification
