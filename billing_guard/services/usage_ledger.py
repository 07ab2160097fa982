"""
Usage Ledger
============

Append-only record of AI consumption per project.

record() writes one entry. For trial entries the project's trial page
counter is bumped in the same transaction, and only while it stays within
trial_pages_limit; a refused increment means nothing is written and a
TRIAL_LIMIT_REACHED denial comes back instead.

summarize() returns totals across the whole ledger plus one page of
entries (newest first).
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from billing_guard.schemas.billing import (
    BillingMode,
    LedgerReceipt,
    UsageLedgerEntry,
    UsageSummary,
)
from billing_guard.services.preflight import trial_limit_error
from billing_guard.services.settings_store import BillingStore

logger = logging.getLogger(__name__)

__all__ = ["UsageLedger", "MAX_PAGE_SIZE"]

MAX_PAGE_SIZE = 200


class UsageLedger:
    def __init__(self, store: BillingStore) -> None:
        self.store = store

    def record(self, entry: UsageLedgerEntry) -> LedgerReceipt:
        """Append one usage entry.

        Raises:
            BillingGuardError: BG-DB-001 when the store is unavailable,
                BG-API-001 for a trial entry on an unknown project.
        """
        write = self.store.record_usage(entry)

        if not write.recorded:
            logger.info(
                "Trial increment refused: project=%s used=%s limit=%s",
                entry.project_id, write.trial_pages_used, write.trial_pages_limit,
            )
            return LedgerReceipt(
                recorded=False,
                error=trial_limit_error(write.trial_pages_used, write.trial_pages_limit),
                trial_pages_used=write.trial_pages_used,
                trial_pages_remaining=0,
            )

        logger.info(
            "Usage recorded: project=%s entry=%s provider=%s model=%s total=%s trial=%s",
            entry.project_id, entry.entry_id, entry.provider, entry.model,
            entry.total_charge_usd, entry.is_trial,
        )

        remaining: Optional[int] = None
        if write.trial_pages_used is not None and write.trial_pages_limit is not None:
            remaining = max(0, write.trial_pages_limit - write.trial_pages_used)

        return LedgerReceipt(
            recorded=True,
            entry=entry,
            trial_pages_used=write.trial_pages_used,
            trial_pages_remaining=remaining,
        )

    def summarize(self, project_id: str, limit: int = 50, offset: int = 0) -> UsageSummary:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        entries = self.store.list_usage(project_id)
        summary = UsageSummary(
            project_id=project_id,
            total_charge_usd=sum((e.total_charge_usd for e in entries), Decimal("0")),
            total_provider_cost_usd=sum((e.provider_cost_usd for e in entries), Decimal("0")),
            total_platform_fee_usd=sum((e.platform_fee_usd for e in entries), Decimal("0")),
            total=len(entries),
            limit=limit,
            offset=offset,
            entries=entries[offset:offset + limit],
        )
        summary.count = len(summary.entries)

        project = self.store.get(project_id)
        if project is not None and project.billing_mode == BillingMode.TRIAL:
            summary.trial = {
                "pages_used": project.trial_pages_used,
                "pages_limit": project.trial_pages_limit,
                "pages_remaining": project.trial_pages_remaining,
                "trial_end_at": project.trial_end_at,
            }
        return summary
