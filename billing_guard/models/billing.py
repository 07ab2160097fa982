"""
Billing Models
==============

SQLModel tables for persistent billing state:
- ProjectBillingSettingsRow: one row per project (trial counter lives here).
- UsageLedgerRow: append-only usage records.

Money columns hold decimal strings so no precision is lost on SQLite.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProjectBillingSettingsRow(SQLModel, table=True):
    """Billing settings for a project."""

    __tablename__ = "project_billing_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(unique=True, index=True, max_length=128)
    billing_mode: str = Field(default="trial", max_length=32)
    tier: str = Field(default="free_trial", max_length=32)
    trial_pages_used: int = Field(default=0)
    trial_pages_limit: int = Field(default=10)
    trial_start_at: Optional[datetime] = Field(default=None, nullable=True)
    trial_end_at: Optional[datetime] = Field(default=None, nullable=True)
    automation_mode: str = Field(default="manual", max_length=32)
    preauthorization_limit_usd: str = Field(default="10.00", max_length=32)
    api_key_ciphertext: Optional[str] = Field(default=None, nullable=True, max_length=1024)
    payment_customer_ref: Optional[str] = Field(default=None, nullable=True, index=True, max_length=255)
    payment_method_present: bool = Field(default=False)
    subscription_ref: Optional[str] = Field(default=None, nullable=True, max_length=255)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class UsageLedgerRow(SQLModel, table=True):
    """Append-only usage record."""

    __tablename__ = "usage_ledger"

    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(unique=True, max_length=64)
    project_id: str = Field(index=True, max_length=128)
    content_job_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    provider: str = Field(max_length=32)
    model: str = Field(max_length=64)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    provider_cost_usd: str = Field(default="0", max_length=32)
    platform_fee_usd: str = Field(default="0", max_length=32)
    total_charge_usd: str = Field(default="0", max_length=32)
    is_trial: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utc_now, index=True)
