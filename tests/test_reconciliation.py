"""
Tests for reconciliation of orphaned pending transfers
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fundflow.accounts import AccountStore
from fundflow.ledger import TransactionLedger, TransferStatus
from fundflow.reconciliation import NO_MUTATION_REASON, PendingTransferReconciler
from fundflow.storage import InMemoryStorage
from fundflow.transfers import TransferOrchestrator, TransferPhase, TransferRequest


class ProcessCrash(Exception):
    """Stands in for the process dying mid-transfer"""


class TestPendingTransferReconciler:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.accounts = AccountStore(self.storage)
        self.ledger = TransactionLedger(self.storage)
        self.reconciler = PendingTransferReconciler(self.accounts, self.ledger, grace_seconds=300)
        self.alice = self.accounts.open_account("Alice", initial_balance=Decimal("100.00"))
        self.bob = self.accounts.open_account("Bob", initial_balance=Decimal("10.00"))
        self.later = datetime.now(timezone.utc) + timedelta(seconds=600)

    def open_pending(self, amount="40.00"):
        return self.ledger.open(self.alice.id, self.bob.id, Decimal(amount))

    def test_no_mutation_marks_failed(self):
        record = self.open_pending()

        report = self.reconciler.reconcile(now=self.later)

        assert report.failed == [record.id]
        assert report.total_resolved == 1
        loaded = self.ledger.get_record(record.id)
        assert loaded.status == TransferStatus.FAILED
        assert loaded.error_message == NO_MUTATION_REASON
        assert self.accounts.get_balance(self.alice.id) == Decimal("100.00")

    def test_both_legs_applied_marks_completed(self):
        record = self.open_pending()
        self.accounts.try_debit(self.alice.id, record.amount, record.id)
        self.accounts.credit(self.bob.id, record.amount, record.id)

        report = self.reconciler.reconcile(now=self.later)

        assert report.completed == [record.id]
        assert self.ledger.get_record(record.id).status == TransferStatus.COMPLETED

    def test_partial_mutation_reported_inconsistent(self):
        record = self.open_pending()
        self.accounts.try_debit(self.alice.id, record.amount, record.id)

        report = self.reconciler.reconcile(now=self.later)

        assert report.inconsistent == [record.id]
        assert report.total_resolved == 0
        assert self.ledger.get_record(record.id).status == TransferStatus.PENDING

    def test_recent_pending_left_alone(self):
        record = self.open_pending()

        report = self.reconciler.reconcile()

        assert report.to_dict() == {"completed": [], "failed": [], "inconsistent": [], "skipped": []}
        assert self.ledger.get_record(record.id).is_pending

    def test_terminal_records_ignored(self):
        done = self.open_pending()
        self.ledger.mark_completed(done.id)

        report = self.reconciler.reconcile(now=self.later)

        assert report.total_resolved == 0
        assert self.ledger.get_record(done.id).status == TransferStatus.COMPLETED

    def test_crash_before_commit(self):
        """Test a transfer interrupted after its record was opened"""
        def crash(attempt):
            if attempt.phase == TransferPhase.COMMITTING:
                raise ProcessCrash()

        orchestrator = TransferOrchestrator(self.accounts, self.ledger, on_phase=crash)
        with pytest.raises(ProcessCrash):
            orchestrator.transfer(TransferRequest(self.alice.id, self.bob.id, "40.00"))

        [orphan] = self.ledger.find_by_status(TransferStatus.PENDING)

        report = self.reconciler.reconcile(now=self.later)

        assert report.failed == [orphan.id]
        assert self.accounts.get_balance(self.alice.id) == Decimal("100.00")
        assert self.accounts.get_balance(self.bob.id) == Decimal("10.00")
        assert self.ledger.find_by_status(TransferStatus.PENDING) == []

    def test_second_pass_is_a_no_op(self):
        self.open_pending()
        self.reconciler.reconcile(now=self.later)

        report = self.reconciler.reconcile(now=self.later)
        assert report.total_resolved == 0
        assert report.inconsistent == []
