"""
Generation Gate — billing checks in front of AI content generation
==================================================================

Runs, in order:
    1. feature gate   (content generation on the project's tier)
    2. cost estimate  (billing mode of the project)
    3. preflight      (trial window / pages, API key, payment customer)
    4. bring-your-own key must decrypt
    5. auto-execution (safe change; otherwise the user approves)

The provider call itself happens elsewhere; this only decides whether it
may start and whether a human must approve it first.
"""

from __future__ import annotations

import logging

from billing_guard.config import settings as app_settings
from billing_guard.schemas.billing import (
    BillingErrorCode,
    BillingMode,
    ChangeClassification,
)
from billing_guard.schemas.content import GenerationDecision, GenerationRequest
from billing_guard.services import cost_estimator, preflight
from billing_guard.services.auto_execution import can_auto_execute
from billing_guard.services.feature_gate import feature_denial, is_feature_available
from billing_guard.services.settings_service import BillingSettingsService

logger = logging.getLogger(__name__)

__all__ = ["GenerationGate", "UPGRADE_REQUIRED_CODES"]

UPGRADE_REQUIRED_CODES = frozenset({
    BillingErrorCode.TRIAL_EXPIRED,
    BillingErrorCode.TRIAL_LIMIT_REACHED,
    BillingErrorCode.FEATURE_NOT_AVAILABLE,
    BillingErrorCode.TIER_LIMIT_EXCEEDED,
})


class GenerationGate:
    def __init__(self, settings_service: BillingSettingsService) -> None:
        self.settings_service = settings_service

    def evaluate(self, request: GenerationRequest) -> GenerationDecision:
        project = self.settings_service.get_or_create(request.project_id)

        if not (
            is_feature_available("content_generation_limited", project.tier)
            or is_feature_available("unlimited_content", project.tier)
        ):
            return GenerationDecision(
                allowed=False,
                error=feature_denial("content_generation_limited"),
                upgrade_required=True,
            )

        estimate = cost_estimator.estimate(
            request.prompt,
            expected_output_tokens=(
                request.expected_output_tokens
                if request.expected_output_tokens is not None
                else app_settings.content_expected_output_tokens
            ),
            provider=request.provider or app_settings.content_provider,
            model=request.model or app_settings.content_model,
            billing_mode=project.billing_mode,
        )

        result = preflight.check(project, estimate, is_bulk_operation=request.is_bulk)
        if not result.allowed:
            return GenerationDecision(
                allowed=False,
                error=result.error,
                upgrade_required=result.error.code in UPGRADE_REQUIRED_CODES,
                estimate=estimate,
            )

        if project.billing_mode == BillingMode.BRING_YOUR_OWN_KEY:
            # Raises BG-SEC-002 when the stored key cannot be read
            self.settings_service.get_api_key(project.project_id)

        if result.requires_preauthorization:
            return GenerationDecision(
                allowed=True,
                requires_preauthorization=True,
                requires_approval=True,
                estimate=result.estimate,
                message="This bulk job requires pre-authorization.",
            )

        auto = can_auto_execute(project, result.estimate.total_cost_usd, ChangeClassification.SAFE)
        logger.info(
            "Generation allowed: project=%s mode=%s total=%s auto=%s",
            project.project_id, project.billing_mode.value, result.estimate.total_cost_usd, auto,
        )
        return GenerationDecision(
            allowed=True,
            requires_approval=not auto,
            estimate=result.estimate,
            cost_message=cost_estimator.format_cost_message(
                result.estimate, project.trial_pages_used, project.trial_pages_limit
            ),
            message=(
                "Content will be generated automatically."
                if auto
                else "Please review and approve the content generation."
            ),
        )
