"""
Billing Store — durable project settings + usage ledger
=======================================================

PURPOSE:
    One injected store behind every billing service. Two backends:

    SqlBillingStore       SQLModel tables (project_billing_settings, usage_ledger)
    InMemoryBillingStore  process-local dicts, per-project locks (tests, dev)

TRIAL COUNTER:
    trial_pages_used only ever moves through the atomic conditional
    increment. save() never writes it, so a stale settings snapshot
    cannot roll the counter back.

    SQL:    UPDATE project_billing_settings
            SET trial_pages_used = trial_pages_used + 1
            WHERE project_id = ? AND trial_pages_used < trial_pages_limit
    Memory: the same check-and-increment under the project's lock.

    record_usage() performs the ledger insert and the increment in one
    transaction: either both land or neither does.

ERRORS:
    Any database failure surfaces as BillingGuardError("BG-DB-001").
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, TypeVar

from sqlalchemy import insert, select as sa_select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from billing_guard.config import settings as app_settings
from billing_guard.core.database import get_engine, sqlite_retry
from billing_guard.core.errors import BillingGuardError
from billing_guard.models.billing import ProjectBillingSettingsRow, UsageLedgerRow
from billing_guard.schemas.billing import (
    AutomationMode,
    BillingMode,
    ProjectBillingSettings,
    SubscriptionTier,
    UsageLedgerEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "BillingStore",
    "UsageWrite",
    "InMemoryBillingStore",
    "SqlBillingStore",
    "get_billing_store",
    "set_billing_store",
]

T = TypeVar("T")


@dataclass(frozen=True)
class UsageWrite:
    """Result of BillingStore.record_usage()."""

    recorded: bool
    trial_pages_used: Optional[int] = None
    trial_pages_limit: Optional[int] = None


class BillingStore(Protocol):
    def get(self, project_id: str) -> Optional[ProjectBillingSettings]: ...

    def save(self, project: ProjectBillingSettings) -> ProjectBillingSettings: ...

    def create_if_absent(self, project: ProjectBillingSettings) -> ProjectBillingSettings: ...

    def increment_trial_pages(self, project_id: str) -> Optional[int]: ...

    def record_usage(self, entry: UsageLedgerEntry) -> UsageWrite: ...

    def list_usage(self, project_id: str) -> List[UsageLedgerEntry]: ...

    def find_by_customer_ref(self, customer_ref: str) -> Optional[ProjectBillingSettings]: ...

    def get_api_key_ciphertext(self, project_id: str) -> Optional[str]: ...

    def set_api_key_ciphertext(self, project_id: str, ciphertext: Optional[str]) -> ProjectBillingSettings: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryBillingStore:
    """Process-local store for tests and single-process development.

    Safe across threads, not across processes. One lock is created per
    project id and kept for the life of the store, so memory grows with
    the number of distinct projects seen.
    """

    def __init__(self) -> None:
        self._settings: Dict[str, ProjectBillingSettings] = {}
        self._api_keys: Dict[str, str] = {}
        self._ledger: List[UsageLedgerEntry] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.Lock()
            return lock

    def _require(self, project_id: str) -> ProjectBillingSettings:
        current = self._settings.get(project_id)
        if current is None:
            raise BillingGuardError("BG-API-001", detail=f"project {project_id}")
        return current

    def get(self, project_id: str) -> Optional[ProjectBillingSettings]:
        with self._lock_for(project_id):
            current = self._settings.get(project_id)
            return current.model_copy() if current else None

    def save(self, project: ProjectBillingSettings) -> ProjectBillingSettings:
        with self._lock_for(project.project_id):
            existing = self._settings.get(project.project_id)
            stored = project.model_copy(update={
                "trial_pages_used": existing.trial_pages_used if existing else project.trial_pages_used,
                "api_key_present": project.project_id in self._api_keys,
                "updated_at": utc_now(),
            })
            self._settings[project.project_id] = stored
            return stored.model_copy()

    def create_if_absent(self, project: ProjectBillingSettings) -> ProjectBillingSettings:
        with self._lock_for(project.project_id):
            existing = self._settings.get(project.project_id)
            if existing is not None:
                return existing.model_copy()
            self._settings[project.project_id] = project.model_copy()
            return project.model_copy()

    def _increment_locked(self, project_id: str) -> Optional[int]:
        current = self._require(project_id)
        if current.trial_pages_used >= current.trial_pages_limit:
            return None
        used = current.trial_pages_used + 1
        self._settings[project_id] = current.model_copy(
            update={"trial_pages_used": used, "updated_at": utc_now()}
        )
        return used

    def increment_trial_pages(self, project_id: str) -> Optional[int]:
        with self._lock_for(project_id):
            return self._increment_locked(project_id)

    def record_usage(self, entry: UsageLedgerEntry) -> UsageWrite:
        with self._lock_for(entry.project_id):
            if not entry.is_trial:
                self._ledger.append(entry.model_copy())
                return UsageWrite(recorded=True)

            used = self._increment_locked(entry.project_id)
            limit = self._settings[entry.project_id].trial_pages_limit
            if used is None:
                return UsageWrite(
                    recorded=False,
                    trial_pages_used=self._settings[entry.project_id].trial_pages_used,
                    trial_pages_limit=limit,
                )
            self._ledger.append(entry.model_copy())
            return UsageWrite(recorded=True, trial_pages_used=used, trial_pages_limit=limit)

    def list_usage(self, project_id: str) -> List[UsageLedgerEntry]:
        with self._lock_for(project_id):
            entries = [e.model_copy() for e in reversed(self._ledger) if e.project_id == project_id]
        # stable sort: equal timestamps stay newest-first
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def find_by_customer_ref(self, customer_ref: str) -> Optional[ProjectBillingSettings]:
        for project in list(self._settings.values()):
            if project.payment_customer_ref == customer_ref:
                return project.model_copy()
        return None

    def get_api_key_ciphertext(self, project_id: str) -> Optional[str]:
        return self._api_keys.get(project_id)

    def set_api_key_ciphertext(self, project_id: str, ciphertext: Optional[str]) -> ProjectBillingSettings:
        with self._lock_for(project_id):
            current = self._require(project_id)
            if ciphertext:
                self._api_keys[project_id] = ciphertext
            else:
                self._api_keys.pop(project_id, None)
            updated = current.model_copy(
                update={"api_key_present": bool(ciphertext), "updated_at": utc_now()}
            )
            self._settings[project_id] = updated
            return updated.model_copy()


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if ts is None or ts.tzinfo is not None:
        return ts
    return ts.replace(tzinfo=timezone.utc)


def _row_to_settings(row: ProjectBillingSettingsRow) -> ProjectBillingSettings:
    return ProjectBillingSettings(
        project_id=row.project_id,
        billing_mode=BillingMode(row.billing_mode),
        tier=SubscriptionTier(row.tier),
        trial_pages_used=row.trial_pages_used,
        trial_pages_limit=row.trial_pages_limit,
        trial_start_at=_aware(row.trial_start_at),
        trial_end_at=_aware(row.trial_end_at),
        automation_mode=AutomationMode(row.automation_mode),
        preauthorization_limit_usd=Decimal(row.preauthorization_limit_usd),
        api_key_present=bool(row.api_key_ciphertext),
        payment_customer_ref=row.payment_customer_ref,
        payment_method_present=row.payment_method_present,
        subscription_ref=row.subscription_ref,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _apply_settings(row: ProjectBillingSettingsRow, project: ProjectBillingSettings) -> None:
    row.billing_mode = BillingMode(project.billing_mode).value
    row.tier = SubscriptionTier(project.tier).value
    row.trial_pages_limit = project.trial_pages_limit
    row.trial_start_at = project.trial_start_at
    row.trial_end_at = project.trial_end_at
    row.automation_mode = AutomationMode(project.automation_mode).value
    row.preauthorization_limit_usd = str(project.preauthorization_limit_usd)
    row.payment_customer_ref = project.payment_customer_ref
    row.payment_method_present = project.payment_method_present
    row.subscription_ref = project.subscription_ref
    row.updated_at = utc_now()


def _row_to_entry(row: UsageLedgerRow) -> UsageLedgerEntry:
    return UsageLedgerEntry(
        entry_id=row.entry_id,
        project_id=row.project_id,
        content_job_id=row.content_job_id,
        provider=row.provider,
        model=row.model,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        provider_cost_usd=Decimal(row.provider_cost_usd),
        platform_fee_usd=Decimal(row.platform_fee_usd),
        total_charge_usd=Decimal(row.total_charge_usd),
        is_trial=row.is_trial,
        created_at=_aware(row.created_at),
    )


def _entry_values(entry: UsageLedgerEntry) -> dict:
    return {
        "entry_id": entry.entry_id,
        "project_id": entry.project_id,
        "content_job_id": entry.content_job_id,
        "provider": entry.provider,
        "model": entry.model,
        "input_tokens": entry.input_tokens,
        "output_tokens": entry.output_tokens,
        "provider_cost_usd": str(entry.provider_cost_usd),
        "platform_fee_usd": str(entry.platform_fee_usd),
        "total_charge_usd": str(entry.total_charge_usd),
        "is_trial": entry.is_trial,
        "created_at": entry.created_at,
    }


_settings_table = ProjectBillingSettingsRow.__table__
_ledger_table = UsageLedgerRow.__table__


class SqlBillingStore:
    """SQLModel-backed store (SQLite or PostgreSQL via DATABASE_URL)."""

    def __init__(self, engine=None) -> None:
        self._engine = engine

    @property
    def engine(self):
        return self._engine if self._engine is not None else get_engine()

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return sqlite_retry(fn)
        except SQLAlchemyError as exc:
            logger.error("Billing store %s failed: %s", operation, exc)
            raise BillingGuardError(
                "BG-DB-001", detail=str(exc), context={"operation": operation}
            ) from exc

    def _load_row(self, session: Session, project_id: str) -> Optional[ProjectBillingSettingsRow]:
        stmt = select(ProjectBillingSettingsRow).where(ProjectBillingSettingsRow.project_id == project_id)
        return session.exec(stmt).first()

    def get(self, project_id: str) -> Optional[ProjectBillingSettings]:
        def _get():
            with Session(self.engine) as session:
                row = self._load_row(session, project_id)
                return _row_to_settings(row) if row else None

        return self._run("get", _get)

    def save(self, project: ProjectBillingSettings) -> ProjectBillingSettings:
        def _save():
            with Session(self.engine) as session:
                row = self._load_row(session, project.project_id)
                if row is None:
                    row = ProjectBillingSettingsRow(
                        project_id=project.project_id,
                        trial_pages_used=project.trial_pages_used,
                        created_at=project.created_at,
                    )
                _apply_settings(row, project)
                session.add(row)
                session.commit()
                session.refresh(row)
                return _row_to_settings(row)

        return self._run("save", _save)

    def create_if_absent(self, project: ProjectBillingSettings) -> ProjectBillingSettings:
        def _create():
            with Session(self.engine) as session:
                row = self._load_row(session, project.project_id)
                if row is not None:
                    return _row_to_settings(row)
                row = ProjectBillingSettingsRow(
                    project_id=project.project_id,
                    trial_pages_used=project.trial_pages_used,
                    created_at=project.created_at,
                )
                _apply_settings(row, project)
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another request created it first
                    session.rollback()
                    return _row_to_settings(self._load_row(session, project.project_id))
                session.refresh(row)
                logger.info("Created billing settings for project=%s", project.project_id)
                return _row_to_settings(row)

        return self._run("create_if_absent", _create)

    @staticmethod
    def _conditional_increment(conn, project_id: str) -> bool:
        result = conn.execute(
            update(_settings_table)
            .where(
                _settings_table.c.project_id == project_id,
                _settings_table.c.trial_pages_used < _settings_table.c.trial_pages_limit,
            )
            .values(
                trial_pages_used=_settings_table.c.trial_pages_used + 1,
                updated_at=utc_now(),
            )
        )
        return result.rowcount == 1

    @staticmethod
    def _trial_counts(conn, project_id: str):
        return conn.execute(
            sa_select(_settings_table.c.trial_pages_used, _settings_table.c.trial_pages_limit)
            .where(_settings_table.c.project_id == project_id)
        ).first()

    def increment_trial_pages(self, project_id: str) -> Optional[int]:
        def _increment():
            with self.engine.begin() as conn:
                if not self._conditional_increment(conn, project_id):
                    return None
                return self._trial_counts(conn, project_id).trial_pages_used

        return self._run("increment_trial_pages", _increment)

    def record_usage(self, entry: UsageLedgerEntry) -> UsageWrite:
        def _record():
            with self.engine.begin() as conn:
                if not entry.is_trial:
                    conn.execute(insert(_ledger_table).values(**_entry_values(entry)))
                    return UsageWrite(recorded=True)

                incremented = self._conditional_increment(conn, entry.project_id)
                if incremented:
                    conn.execute(insert(_ledger_table).values(**_entry_values(entry)))
                counts = self._trial_counts(conn, entry.project_id)
                if counts is None:
                    raise BillingGuardError("BG-API-001", detail=f"project {entry.project_id}")
                return UsageWrite(
                    recorded=incremented,
                    trial_pages_used=counts.trial_pages_used,
                    trial_pages_limit=counts.trial_pages_limit,
                )

        return self._run("record_usage", _record)

    def list_usage(self, project_id: str) -> List[UsageLedgerEntry]:
        def _list():
            with Session(self.engine) as session:
                stmt = (
                    select(UsageLedgerRow)
                    .where(UsageLedgerRow.project_id == project_id)
                    .order_by(UsageLedgerRow.created_at.desc(), UsageLedgerRow.id.desc())
                )
                return [_row_to_entry(row) for row in session.exec(stmt).all()]

        return self._run("list_usage", _list)

    def find_by_customer_ref(self, customer_ref: str) -> Optional[ProjectBillingSettings]:
        def _find():
            with Session(self.engine) as session:
                stmt = select(ProjectBillingSettingsRow).where(
                    ProjectBillingSettingsRow.payment_customer_ref == customer_ref
                )
                row = session.exec(stmt).first()
                return _row_to_settings(row) if row else None

        return self._run("find_by_customer_ref", _find)

    def get_api_key_ciphertext(self, project_id: str) -> Optional[str]:
        def _get_key():
            with Session(self.engine) as session:
                row = self._load_row(session, project_id)
                return row.api_key_ciphertext if row else None

        return self._run("get_api_key_ciphertext", _get_key)

    def set_api_key_ciphertext(self, project_id: str, ciphertext: Optional[str]) -> ProjectBillingSettings:
        def _set_key():
            with Session(self.engine) as session:
                row = self._load_row(session, project_id)
                if row is None:
                    raise BillingGuardError("BG-API-001", detail=f"project {project_id}")
                row.api_key_ciphertext = ciphertext or None
                row.updated_at = utc_now()
                session.add(row)
                session.commit()
                session.refresh(row)
                return _row_to_settings(row)

        return self._run("set_api_key_ciphertext", _set_key)


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------
_store: Optional[BillingStore] = None
_store_lock = threading.Lock()


def get_billing_store() -> BillingStore:
    """FastAPI dependency — returns the process-wide billing store."""
    global _store
    with _store_lock:
        if _store is None:
            if app_settings.store_backend == "memory":
                _store = InMemoryBillingStore()
            else:
                _store = SqlBillingStore()
            logger.info("Billing store backend: %s", app_settings.store_backend)
        return _store


def set_billing_store(store: Optional[BillingStore]) -> None:
    """Replace the process-wide store (None resets to the configured backend)."""
    global _store
    with _store_lock:
        _store = store
