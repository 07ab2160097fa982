"""
Shared router dependencies and denial responses.
"""
from typing import Optional

from fastapi import Depends, status
from fastapi.responses import JSONResponse

from billing_guard.schemas.billing import BillingError
from billing_guard.services.generation_gate import UPGRADE_REQUIRED_CODES, GenerationGate
from billing_guard.services.payment_processor import PaymentProcessor, get_payment_processor
from billing_guard.services.settings_service import BillingSettingsService
from billing_guard.services.settings_store import BillingStore, get_billing_store
from billing_guard.services.usage_ledger import UsageLedger


def get_settings_service(
    store: BillingStore = Depends(get_billing_store),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> BillingSettingsService:
    return BillingSettingsService(store, processor)


def get_usage_ledger(store: BillingStore = Depends(get_billing_store)) -> UsageLedger:
    return UsageLedger(store)


def get_generation_gate(
    service: BillingSettingsService = Depends(get_settings_service),
) -> GenerationGate:
    return GenerationGate(service)


def denial_response(
    error: BillingError,
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED,
    upgrade_required: Optional[bool] = None,
    **extra,
) -> JSONResponse:
    """Render a policy denial as {error, code, cta, upgrade_required}."""
    if upgrade_required is None:
        upgrade_required = error.code in UPGRADE_REQUIRED_CODES
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error.message,
            "code": error.code.value,
            "cta": error.cta,
            "upgrade_required": upgrade_required,
            **extra,
        },
    )
