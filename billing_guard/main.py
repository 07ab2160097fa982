from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_guard.config import settings
from billing_guard.routers import billing, content, health, webhooks
from billing_guard.core.database import init_db, close_db
from billing_guard.core.structured_logging import APP_VERSION, setup_logging
from billing_guard.core.errors import BillingGuardError
from billing_guard.core.errors.registry import error_registry
from billing_guard.core.errors.middleware import billing_guard_error_handler
from billing_guard.core.log_middleware import CorrelationMiddleware

# Initialize structured logging before any logger calls
setup_logging(log_dir=settings.log_directory, log_level=settings.log_level)

logger = logging.getLogger(__name__)

API_TITLE = "Billing Guard API"

API_DESCRIPTION = """
## Billing Guard - AI usage cost control

Decides whether a costed AI operation may start, prices it, records
consumption, and enforces the 10-day / 10-page free trial.

### Billing modes
- **trial**: platform pays, limited by days and pages
- **bring_your_own_key**: project supplies its own provider API key
- **platform_managed**: platform pays and bills the project with a fee

Policy denials return **402 Payment Required** with a `code` and a
display-ready `cta`.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and component checks"},
    {"name": "billing", "description": "Project billing settings, subscriptions, holds and usage"},
    {"name": "content", "description": "Billing gate in front of AI content generation"},
    {"name": "webhooks", "description": "Payment processor callbacks"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting Billing Guard API v%s (store=%s)", APP_VERSION, settings.store_backend)

    error_registry.ensure_loaded()

    if settings.store_backend == "sql":
        init_db()
        logger.info("Database initialized")

    if not settings.stripe_secret_key:
        logger.warning("Stripe not configured: subscriptions and holds will return BG-PAY-002")

    yield

    close_db()
    logger.info("Database connection closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log line
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(BillingGuardError, billing_guard_error_handler)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
    app.include_router(content.router, prefix="/api/content", tags=["content"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])

    return app


app = create_app()
