"""
Billing Guard Application Configuration
=======================================

PURPOSE:
    Pydantic-Settings based configuration for the billing guard service.
    All settings can be overridden via environment variables (BILLING_GUARD_ prefix).

BILLING CONSTANTS:
    trial_duration_days / trial_pages_limit     — trial window created with every project
    platform_fee_fraction                       — fee on top of provider cost (platform_managed)
    preauth_threshold_usd                       — bulk jobs above this need a payment hold
    auto_execute_threshold_usd                  — semi_auto ceiling for unattended runs
"""

import logging
from decimal import Decimal
from typing import List, Literal, Optional

from cryptography.fernet import Fernet
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def _generate_fernet_key() -> str:
    """Generate a key for encrypting bring-your-own API keys at rest.

    WARNING: Auto-generated keys are ephemeral — they change on each restart.
    In production, set BILLING_GUARD_SECRET_KEY to a persistent value.
    """
    return Fernet.generate_key().decode()


class Settings(BaseSettings):
    app_name: str = "billing-guard"
    debug: bool = False

    # Logging
    log_directory: str = "logs"
    log_level: str = "INFO"

    # Storage: "sql" uses DATABASE_URL (SQLite under data_directory by default),
    # "memory" keeps everything in-process (single worker only).
    data_directory: str = "/data"
    store_backend: Literal["sql", "memory"] = "sql"

    # Trial
    trial_duration_days: int = 10
    trial_pages_limit: int = 10

    # Pricing policy
    platform_fee_fraction: Decimal = Decimal("0.05")
    preauth_threshold_usd: Decimal = Decimal("10.00")
    auto_execute_threshold_usd: Decimal = Decimal("1.00")
    default_preauthorization_limit_usd: Decimal = Decimal("10.00")

    # Content generation defaults
    content_expected_output_tokens: int = 2000
    content_provider: str = "openai"
    content_model: str = "gpt-4-turbo"

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id_pro: Optional[str] = None
    stripe_price_id_builder_plus: Optional[str] = None
    stripe_price_id_architect: Optional[str] = None
    stripe_price_id_empire: Optional[str] = None
    public_app_url: str = "http://localhost:3000"

    # Encryption key for bring-your-own API keys at rest.
    # previous_secret_key is tried on decrypt during key rotation.
    secret_key: Optional[str] = None
    previous_secret_key: Optional[str] = None

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        env_prefix = "BILLING_GUARD_"

    def get_secret_key(self) -> str:
        """Return the SECRET_KEY, auto-generating if not set."""
        if self.secret_key:
            return self.secret_key

        logger.warning(
            "SECRET_KEY not set — auto-generating ephemeral key. "
            "Stored API keys will be unreadable after restart. "
            "Set BILLING_GUARD_SECRET_KEY in production."
        )
        self.secret_key = _generate_fernet_key()
        return self.secret_key


settings = Settings()
