"""
Account Store Module

Holds account balances and exposes the only two ways a balance may change:
a conditional debit and a credit. Both run inside the caller's atomic unit and
write a balance posting keyed by transfer id, which is the evidence used to
reconcile orphaned transfers.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional
from contextlib import contextmanager
import threading
import uuid

from .currency import MAX_AMOUNT, ZERO, quantize_amount, to_decimal
from .storage import StorageInterface, StorageRecord
from .exceptions import (
    AccountNotFoundError, DuplicateAccountError, FundflowError,
    InsufficientFundsError, TransactionConflictError
)
from .logging_config import get_logger


class PostingKind:
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass
class Account(StorageRecord):
    """
    Balance-holding account. Holder identity belongs to the account-holder
    entity; only ``balance`` and ``version`` are owned here.
    """
    holder_name: str
    email: Optional[str]
    balance: Decimal
    version: int = 0

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    @property
    def identity(self) -> Dict[str, Optional[str]]:
        """Identity shown to the counterparty of a transfer"""
        return {
            "account_id": self.id,
            "holder_name": self.holder_name,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            holder_name=data.get('holder_name', ''),
            email=data.get('email'),
            balance=Decimal(data['balance']),
            version=data.get('version', 0),
        )


@dataclass
class BalanceChange:
    """A single applied balance mutation"""
    transfer_id: str
    account_id: str
    kind: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    applied_at: datetime

    @property
    def posting_id(self) -> str:
        return posting_id(self.transfer_id, self.kind)

    def to_dict(self) -> Dict:
        return {
            "id": self.posting_id,
            "transfer_id": self.transfer_id,
            "account_id": self.account_id,
            "kind": self.kind,
            "amount": str(self.amount),
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "applied_at": self.applied_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BalanceChange':
        return cls(
            transfer_id=data['transfer_id'],
            account_id=data['account_id'],
            kind=data['kind'],
            amount=Decimal(data['amount']),
            balance_before=Decimal(data['balance_before']),
            balance_after=Decimal(data['balance_after']),
            applied_at=datetime.fromisoformat(data['applied_at']),
        )


def posting_id(transfer_id: str, kind: str) -> str:
    return f"{transfer_id}:{kind}"


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    return email.strip().lower()


class AccountStore:
    """
    Account balances with atomic conditional debit and credit.

    Locks are per account and are always taken in ascending account id
    order, so two transfers over the same pair in opposite directions cannot
    deadlock.
    """

    def __init__(self, storage: StorageInterface, lock_timeout: float = 5.0):
        self.storage = storage
        self.lock_timeout = lock_timeout
        self.accounts_table = "accounts"
        self.postings_table = "balance_postings"
        self.storage.mark_append_only(self.postings_table)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._open_lock = threading.Lock()
        self.logger = get_logger("fundflow.accounts")

    def open_account(
        self,
        holder_name: str,
        email: Optional[str] = None,
        initial_balance: Decimal = ZERO,
        account_id: Optional[str] = None
    ) -> Account:
        """
        Open a new account

        Args:
            holder_name: Display name of the account holder
            email: Contact email, used to look up transfer receivers
            initial_balance: Opening balance (must not be negative)
            account_id: Specific account id (generated if not provided)

        Returns:
            Created Account
        """
        balance = quantize_amount(to_decimal(initial_balance))
        if balance < 0:
            raise ValueError("Opening balance cannot be negative")
        if balance > MAX_AMOUNT:
            raise ValueError("Opening balance is too large")

        account_id = account_id or str(uuid.uuid4())
        email = normalize_email(email)
        now = datetime.now(timezone.utc)

        # Uniqueness checks and the insert commit before the next open starts
        with self._open_lock, self.storage.atomic():
            if self.storage.exists(self.accounts_table, account_id):
                raise DuplicateAccountError(f"Account {account_id} already exists")
            if email and self.get_account_by_email(email):
                raise DuplicateAccountError(f"An account with email {email} already exists")

            account = Account(
                id=account_id,
                created_at=now,
                updated_at=now,
                holder_name=holder_name,
                email=email,
                balance=balance,
            )
            self._save_account(account)

        self.logger.info(f"Account opened: {account.id}")
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        """Get account by holder email (case-insensitive)"""
        results = self.storage.find(self.accounts_table, {"email": normalize_email(email)})
        if results:
            return Account.from_dict(results[0])
        return None

    def get_balance(self, account_id: str) -> Decimal:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account.balance

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def total_balance(self) -> Decimal:
        """Sum of all balances; conserved by every committed transfer"""
        return sum((account.balance for account in self.list_accounts()), ZERO)

    @contextmanager
    def lock_accounts(self, *account_ids: str) -> Iterator[None]:
        """
        Hold the locks of the given accounts for the duration of the block.

        Raises:
            TransactionConflictError: If a lock is not acquired within
                ``lock_timeout`` seconds
        """
        acquired = []
        try:
            for account_id in sorted(set(account_ids)):
                lock = self._lock_for(account_id)
                if not lock.acquire(timeout=self.lock_timeout):
                    raise TransactionConflictError(
                        f"Timed out waiting for lock on account {account_id}"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def try_debit(self, account_id: str, amount: Decimal, transfer_id: str) -> BalanceChange:
        """
        Debit an account if it holds at least ``amount``.

        Raises:
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If the balance is lower than the amount
        """
        _require_positive(amount)
        with self.lock_accounts(account_id), self.storage.atomic():
            account = self._require(account_id)
            if account.balance < amount:
                raise InsufficientFundsError(
                    f"Insufficient balance. Available: {account.balance:.2f}",
                    transaction_id=transfer_id
                )
            return self._apply(account, -amount, PostingKind.DEBIT, transfer_id)

    def credit(self, account_id: str, amount: Decimal, transfer_id: str) -> BalanceChange:
        """
        Credit an account.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        _require_positive(amount)
        with self.lock_accounts(account_id), self.storage.atomic():
            account = self._require(account_id)
            return self._apply(account, amount, PostingKind.CREDIT, transfer_id)

    def postings_for_transfer(self, transfer_id: str) -> List[BalanceChange]:
        """Balance mutations that were applied on behalf of a transfer"""
        postings = []
        for kind in (PostingKind.DEBIT, PostingKind.CREDIT):
            data = self.storage.load(self.postings_table, posting_id(transfer_id, kind))
            if data:
                postings.append(BalanceChange.from_dict(data))
        return postings

    def _apply(self, account: Account, delta: Decimal, kind: str, transfer_id: str) -> BalanceChange:
        if self.storage.exists(self.postings_table, posting_id(transfer_id, kind)):
            raise FundflowError(f"Transfer {transfer_id} already has a {kind} posting")

        now = datetime.now(timezone.utc)
        before = account.balance
        after = quantize_amount(before + delta)
        if after < 0:
            raise InsufficientFundsError(
                f"Insufficient balance. Available: {before:.2f}", transaction_id=transfer_id
            )

        account.balance = after
        account.version += 1
        account.updated_at = now
        self._save_account(account)

        change = BalanceChange(
            transfer_id=transfer_id,
            account_id=account.id,
            kind=kind,
            amount=abs(delta),
            balance_before=before,
            balance_after=after,
            applied_at=now,
        )
        self.storage.save(self.postings_table, change.posting_id, change.to_dict())
        return change

    def _require(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())


def _require_positive(amount: Decimal) -> None:
    if amount <= 0:
        raise ValueError("Posting amount must be positive")
