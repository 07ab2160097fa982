"""
Content generation request/decision schemas.
"""

from typing import Optional

from pydantic import BaseModel, Field

from billing_guard.schemas.billing import BillingError, CostEstimate


class GenerationRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    content_type: str = Field(..., min_length=1)
    entity_cluster: str = Field(..., min_length=1)
    silo_id: str = Field(..., min_length=1)
    target_page_id: Optional[str] = None
    is_bulk: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None
    expected_output_tokens: Optional[int] = Field(default=None, ge=0)


class GenerationDecision(BaseModel):
    """Outcome of the billing gate in front of content generation."""

    allowed: bool
    error: Optional[BillingError] = None
    upgrade_required: bool = False
    requires_preauthorization: bool = False
    requires_approval: bool = True
    estimate: Optional[CostEstimate] = None
    cost_message: Optional[str] = None
    message: Optional[str] = None
