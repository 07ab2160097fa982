"""
Usage Ledger Tests
==================

Append-only recording, the atomic trial page increment (including under
concurrent callers), and usage summaries. Every test runs against both the
in-memory and the SQL store.
"""

import threading
from decimal import Decimal

import pytest
from conftest import make_paid, make_trial

from billing_guard.core.errors import BillingGuardError
from billing_guard.schemas.billing import BillingErrorCode, BillingMode, UsageLedgerEntry
from billing_guard.services.usage_ledger import UsageLedger


def _entry(project_id, is_trial=True, total="0.05", job=None):
    return UsageLedgerEntry(
        project_id=project_id,
        content_job_id=job,
        provider="openai",
        model="gpt-4-turbo",
        input_tokens=100,
        output_tokens=1000,
        provider_cost_usd=Decimal(total),
        platform_fee_usd=Decimal("0"),
        total_charge_usd=Decimal(total),
        is_trial=is_trial,
    )


class TestRecord:

    def test_trial_entry_increments_counter(self, store):
        store.create_if_absent(make_trial("p1", used=3))
        receipt = UsageLedger(store).record(_entry("p1"))
        assert receipt.recorded is True
        assert receipt.trial_pages_used == 4
        assert receipt.trial_pages_remaining == 6
        assert store.get("p1").trial_pages_used == 4

    def test_paid_entry_leaves_counter_alone(self, store):
        store.create_if_absent(make_paid("p2"))
        receipt = UsageLedger(store).record(_entry("p2", is_trial=False))
        assert receipt.recorded is True
        assert receipt.trial_pages_used is None
        assert store.get("p2").trial_pages_used == 0
        assert len(store.list_usage("p2")) == 1

    def test_refused_at_limit_writes_nothing(self, store):
        store.create_if_absent(make_trial("p3", used=10))
        receipt = UsageLedger(store).record(_entry("p3"))
        assert receipt.recorded is False
        assert receipt.error.code == BillingErrorCode.TRIAL_LIMIT_REACHED
        assert store.get("p3").trial_pages_used == 10
        assert store.list_usage("p3") == []

    def test_last_page(self, store):
        store.create_if_absent(make_trial("p4", used=9))
        ledger = UsageLedger(store)
        assert ledger.record(_entry("p4")).recorded is True
        assert ledger.record(_entry("p4")).recorded is False
        assert store.get("p4").trial_pages_used == 10

    def test_trial_entry_for_unknown_project(self, store):
        with pytest.raises(BillingGuardError) as exc_info:
            UsageLedger(store).record(_entry("missing"))
        assert exc_info.value.code == "BG-API-001"

    def test_entries_round_trip_money_exactly(self, store):
        store.create_if_absent(make_paid("p5"))
        UsageLedger(store).record(_entry("p5", is_trial=False, total="0.0325500"))
        [entry] = store.list_usage("p5")
        assert entry.total_charge_usd == Decimal("0.03255")
        assert entry.created_at.tzinfo is not None


class TestConcurrentTrialCeiling:

    @pytest.mark.parametrize("used,limit,callers", [(9, 10, 8), (0, 10, 25)])
    def test_counter_never_exceeds_limit(self, store, used, limit, callers):
        store.create_if_absent(make_trial("race", used=used, limit=limit))
        ledger = UsageLedger(store)
        barrier = threading.Barrier(callers)
        receipts = []
        errors = []
        lock = threading.Lock()

        def worker(i):
            barrier.wait()
            try:
                receipt = ledger.record(_entry("race", job=f"job-{i}"))
            except Exception as exc:  # surfaced via the assertion below
                with lock:
                    errors.append(exc)
                return
            with lock:
                receipts.append(receipt)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        recorded = [r for r in receipts if r.recorded]
        assert len(recorded) == min(callers, limit - used)
        assert store.get("race").trial_pages_used == min(limit, used + callers)
        assert len(store.list_usage("race")) == len(recorded)


class TestSummarize:

    def test_totals_and_pagination(self, store):
        store.create_if_absent(make_paid("s1"))
        ledger = UsageLedger(store)
        for i in range(5):
            ledger.record(_entry("s1", is_trial=False, total=f"0.{i + 1}0", job=f"job-{i}"))

        summary = ledger.summarize("s1", limit=2, offset=1)
        assert summary.total == 5
        assert summary.count == 2
        assert summary.total_charge_usd == Decimal("1.50")
        assert summary.limit == 2
        assert summary.offset == 1
        assert summary.trial is None

    def test_newest_first(self, store):
        store.create_if_absent(make_paid("s2"))
        ledger = UsageLedger(store)
        ledger.record(_entry("s2", is_trial=False, job="first"))
        ledger.record(_entry("s2", is_trial=False, job="second"))
        entries = ledger.summarize("s2").entries
        assert [e.content_job_id for e in entries] == ["second", "first"]

    def test_trial_info_for_trial_project(self, store):
        store.create_if_absent(make_trial("s3", used=2))
        ledger = UsageLedger(store)
        ledger.record(_entry("s3"))
        summary = ledger.summarize("s3")
        assert summary.trial["pages_used"] == 3
        assert summary.trial["pages_remaining"] == 7

    def test_page_size_clamped(self, store):
        summary = UsageLedger(store).summarize("nobody", limit=10_000, offset=-5)
        assert summary.limit == 200
        assert summary.offset == 0
        assert summary.entries == []
        assert summary.total_charge_usd == 0

    def test_platform_managed_mode_has_no_trial_block(self, store):
        store.create_if_absent(make_paid("s4", mode=BillingMode.PLATFORM_MANAGED))
        assert UsageLedger(store).summarize("s4").trial is None


class TestInMemoryLocks:

    def test_one_lock_per_project_kept_for_store_lifetime(self, memory_store):
        first = memory_store._lock_for("a")
        assert memory_store._lock_for("a") is first
        assert memory_store._lock_for("b") is not first
        memory_store.create_if_absent(make_trial("a"))
        memory_store.increment_trial_pages("a")
        assert memory_store._lock_for("a") is first
