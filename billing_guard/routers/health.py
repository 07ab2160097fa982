"""
Health check endpoints.

- GET /api/health          — cheap: process alive, version, uptime
- GET /api/health/deep     — store and payment processor status
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text

from billing_guard.config import settings
from billing_guard.core.database import get_engine
from billing_guard.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from billing_guard.services.payment_processor import PaymentProcessor, get_payment_processor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Cheap health check — no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
def deep_health_check(processor: PaymentProcessor = Depends(get_payment_processor)):
    components = {
        "store": _check_store(),
        "payment_processor": {
            "status": "ok" if processor.is_configured else "degraded",
            "configured": processor.is_configured,
        },
    }

    statuses = [c["status"] for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


def _check_store() -> dict:
    if settings.store_backend == "memory":
        return {"status": "ok", "backend": "memory"}

    start = time.perf_counter()
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("health_check_error", extra={"component": "store", "error": str(e)})
        return {"status": "down", "backend": "sql", "detail_safe": f"Check failed: {type(e).__name__}"}

    return {
        "status": "ok",
        "backend": "sql",
        "latency_ms": round((time.perf_counter() - start) * 1000, 1),
    }
