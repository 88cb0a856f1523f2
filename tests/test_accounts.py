"""
Tests for the account store: opening accounts, conditional debit, credit,
balance postings and per-account locking
"""

import threading
from decimal import Decimal

import pytest

from fundflow.accounts import AccountStore, PostingKind
from fundflow.exceptions import (
    AccountNotFoundError, DuplicateAccountError, FundflowError,
    InsufficientFundsError, TransactionConflictError
)
from fundflow.storage import InMemoryStorage


class TestAccountStore:
    """Test account store functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage)
        self.alice = self.store.open_account("Alice", "Alice@Example.com", Decimal("100.00"))
        self.bob = self.store.open_account("Bob", "bob@example.com", Decimal("10.00"))

    def test_open_account(self):
        account = self.store.open_account("Carol", initial_balance="25")

        assert account.holder_name == "Carol"
        assert account.balance == Decimal("25.00")
        assert account.version == 0
        assert self.store.get_account(account.id).balance == Decimal("25.00")

    def test_open_account_with_explicit_id(self):
        account = self.store.open_account("Dave", account_id="acct-dave")
        assert account.id == "acct-dave"
        assert account.balance == Decimal("0.00")

    def test_negative_opening_balance_rejected(self):
        with pytest.raises(ValueError):
            self.store.open_account("Eve", initial_balance=Decimal("-0.01"))

    def test_duplicate_account_id_rejected(self):
        with pytest.raises(DuplicateAccountError):
            self.store.open_account("Mallory", account_id=self.alice.id)

    def test_duplicate_email_rejected(self):
        with pytest.raises(DuplicateAccountError):
            self.store.open_account("Alice Again", "alice@example.com")

    def test_oversized_opening_balance_rejected(self):
        with pytest.raises(ValueError):
            self.store.open_account("Whale", initial_balance=Decimal("1e16"))
        with pytest.raises(ValueError):
            self.store.open_account("Leviathan", initial_balance="1e30")

    def test_concurrent_opens_with_same_email(self):
        """Test that racing opens cannot register one email twice"""
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def open_carol(n):
            barrier.wait()
            try:
                self.store.open_account(f"Carol {n}", "carol@example.com")
                outcome = "opened"
            except DuplicateAccountError:
                outcome = "duplicate"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=open_carol, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert outcomes.count("opened") == 1
        assert outcomes.count("duplicate") == 7
        assert len(self.storage.find("accounts", {"email": "carol@example.com"})) == 1

    def test_lookup_by_email_is_case_insensitive(self):
        found = self.store.get_account_by_email("  ALICE@example.COM ")
        assert found.id == self.alice.id
        assert self.store.get_account_by_email("nobody@example.com") is None

    def test_get_balance(self):
        assert self.store.get_balance(self.alice.id) == Decimal("100.00")
        with pytest.raises(AccountNotFoundError):
            self.store.get_balance("missing")

    def test_try_debit(self):
        """Test debit returns before/after balances and records a posting"""
        change = self.store.try_debit(self.alice.id, Decimal("40.00"), "t1")

        assert change.kind == PostingKind.DEBIT
        assert change.balance_before == Decimal("100.00")
        assert change.balance_after == Decimal("60.00")
        assert change.posting_id == "t1:debit"

        account = self.store.get_account(self.alice.id)
        assert account.balance == Decimal("60.00")
        assert account.version == 1

    def test_try_debit_entire_balance(self):
        self.store.try_debit(self.alice.id, Decimal("100.00"), "t1")
        assert self.store.get_balance(self.alice.id) == Decimal("0.00")

    def test_try_debit_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            self.store.try_debit(self.bob.id, Decimal("10.01"), "t1")

        assert exc_info.value.message == "Insufficient balance. Available: 10.00"
        assert exc_info.value.transaction_id == "t1"
        assert self.store.get_balance(self.bob.id) == Decimal("10.00")
        assert self.store.postings_for_transfer("t1") == []

    def test_credit(self):
        change = self.store.credit(self.bob.id, Decimal("5.50"), "t1")

        assert change.kind == PostingKind.CREDIT
        assert change.balance_after == Decimal("15.50")
        assert self.store.get_balance(self.bob.id) == Decimal("15.50")

    def test_unknown_account(self):
        with pytest.raises(AccountNotFoundError):
            self.store.credit("missing", Decimal("1.00"), "t1")
        with pytest.raises(AccountNotFoundError):
            self.store.try_debit("missing", Decimal("1.00"), "t1")

    def test_non_positive_posting_amount(self):
        with pytest.raises(ValueError):
            self.store.credit(self.bob.id, Decimal("0"), "t1")
        with pytest.raises(ValueError):
            self.store.try_debit(self.alice.id, Decimal("-5"), "t1")

    def test_postings_for_transfer(self):
        with self.storage.atomic():
            self.store.try_debit(self.alice.id, Decimal("30.00"), "t1")
            self.store.credit(self.bob.id, Decimal("30.00"), "t1")

        postings = self.store.postings_for_transfer("t1")
        assert [p.kind for p in postings] == [PostingKind.DEBIT, PostingKind.CREDIT]
        assert postings[1].account_id == self.bob.id
        assert postings[1].balance_before == Decimal("10.00")

    def test_duplicate_posting_rejected(self):
        self.store.try_debit(self.alice.id, Decimal("1.00"), "t1")
        with pytest.raises(FundflowError):
            self.store.try_debit(self.alice.id, Decimal("1.00"), "t1")
        assert self.store.get_balance(self.alice.id) == Decimal("99.00")

    def test_debit_rolled_back_with_enclosing_unit(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.store.try_debit(self.alice.id, Decimal("50.00"), "t1")
                raise RuntimeError("crash before credit")

        assert self.store.get_balance(self.alice.id) == Decimal("100.00")
        assert self.store.postings_for_transfer("t1") == []

    def test_total_balance(self):
        assert self.store.total_balance() == Decimal("110.00")
        assert len(self.store.list_accounts()) == 2


class TestAccountLocking:
    """Per-account locks and concurrent debits"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage, lock_timeout=0.05)

    def test_lock_timeout_raises_conflict(self):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with self.store.lock_accounts("a"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        assert held.wait(5)
        try:
            with pytest.raises(TransactionConflictError):
                with self.store.lock_accounts("b", "a"):
                    pass
        finally:
            release.set()
            thread.join(5)

        # Both locks were released after the timeout
        with self.store.lock_accounts("a", "b"):
            pass

    def test_locks_are_reentrant(self):
        with self.store.lock_accounts("a", "b"):
            with self.store.lock_accounts("a"):
                pass

    def test_concurrent_debits_never_overdraw(self):
        """Test that racing debits cannot take the balance below zero"""
        store = AccountStore(self.storage)
        account = store.open_account("Racer", initial_balance=Decimal("100.00"))
        results = []
        results_lock = threading.Lock()

        def debit(n):
            try:
                store.try_debit(account.id, Decimal("10.00"), f"t{n}")
                outcome = True
            except InsufficientFundsError:
                outcome = False
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=debit, args=(n,)) for n in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 10
        assert store.get_balance(account.id) == Decimal("0.00")
        assert store.get_account(account.id).version == 10
