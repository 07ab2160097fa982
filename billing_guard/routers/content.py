"""
Content generation gate endpoints.

- POST /api/content/generate         — billing checks before AI generation
- GET  /api/content/generate/status  — billing mode, tier and trial info
"""
import logging

from fastapi import APIRouter, Depends, Query, status

from billing_guard.core.structured_logging import bind_project_id
from billing_guard.routers.deps import denial_response, get_generation_gate, get_settings_service
from billing_guard.schemas.billing import BillingErrorCode, BillingMode
from billing_guard.schemas.content import GenerationRequest
from billing_guard.services.generation_gate import GenerationGate
from billing_guard.services.settings_service import BillingSettingsService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generate")
def generate_content(
    body: GenerationRequest,
    gate: GenerationGate = Depends(get_generation_gate),
):
    bind_project_id(body.project_id)
    decision = gate.evaluate(body)

    if not decision.allowed:
        status_code = (
            status.HTTP_403_FORBIDDEN
            if decision.error.code == BillingErrorCode.FEATURE_NOT_AVAILABLE
            else status.HTTP_402_PAYMENT_REQUIRED
        )
        return denial_response(decision.error, status_code=status_code, upgrade_required=decision.upgrade_required)

    if decision.requires_preauthorization:
        return {
            "requires_preauthorization": True,
            "estimate": decision.estimate.model_dump(mode="json"),
            "message": decision.message,
        }

    return {
        "success": True,
        "requires_approval": decision.requires_approval,
        "estimate": decision.estimate.model_dump(mode="json"),
        "cost_message": decision.cost_message,
        "message": decision.message,
    }


@router.get("/generate/status")
def generation_status(
    project_id: str = Query(..., min_length=1),
    service: BillingSettingsService = Depends(get_settings_service),
):
    bind_project_id(project_id)
    project = service.get(project_id)
    trial_info = None
    if project.billing_mode == BillingMode.TRIAL:
        trial_info = {
            "pages_used": project.trial_pages_used,
            "pages_limit": project.trial_pages_limit,
            "pages_remaining": project.trial_pages_remaining,
            "end_date": project.trial_end_at.isoformat() if project.trial_end_at else None,
        }
    return {
        "billing_mode": project.billing_mode.value,
        "tier": project.tier.value,
        "automation_mode": project.automation_mode.value,
        "trial_info": trial_info,
    }
