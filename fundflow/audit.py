"""
Audit Trail Module

Hash-chained, append-only record of completed and failed transfers with
before/after balances and request provenance. SHA-256 chaining provides
tamper detection; the backing table rejects updates and deletes.

The audit trail is observational: a missing entry never invalidates a
completed transfer and a present entry never validates one.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .exceptions import AuditLogError, FundflowError, ImmutableAuditEntryError
from .logging_config import get_logger


class AuditStatus(Enum):
    """Outcome recorded by an audit entry"""
    COMPLETED = "completed"
    FAILED = "failed"


class SortKey(Enum):
    CREATED_AT = "created_at"
    AMOUNT = "amount"


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"


def _convert_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEntry(StorageRecord):
    """
    Immutable audit entry with hash chaining for tamper detection
    """
    sequence: int
    transaction_id: str
    sender_id: str
    receiver_id: Optional[str]
    amount: Decimal
    status: AuditStatus
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        self.metadata = {k: _convert_value(v) for k, v in (self.metadata or {}).items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'transaction_id': self.transaction_id,
            'sender_id': self.sender_id,
            'receiver_id': self.receiver_id,
            'amount': str(self.amount),
            'status': self.status.value,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def involves(self, account_id: str) -> bool:
        return account_id in (self.sender_id, self.receiver_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        """Create AuditEntry from dictionary with proper type deserialization"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['amount'] = Decimal(data['amount'])
        data['status'] = AuditStatus(data['status'])
        return cls(**data)


@dataclass
class AccountStats:
    """Aggregate over an account's completed transfers"""
    total_sent: Decimal
    total_received: Decimal
    total_transactions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sent": str(self.total_sent),
            "total_received": str(self.total_received),
            "total_transactions": self.total_transactions,
        }


class AuditTrail:
    """
    Append-only, hash-chained audit trail of transfers
    """

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "audit_entries",
        default_limit: int = 50,
        max_limit: int = 500
    ):
        self.storage = storage
        self.table_name = table_name
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.storage.mark_append_only(self.table_name)
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()  # Serializes chaining
        self.logger = get_logger("fundflow.audit")
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent entry"""
        entries = self.storage.load_all(self.table_name)
        if entries:
            latest = max(entries, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._last_sequence = latest.get('sequence', 0)

    def append(
        self,
        transaction_id: str,
        sender_id: str,
        receiver_id: Optional[str],
        amount: Decimal,
        status: AuditStatus,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """
        Append an audit entry to the chain

        Args:
            transaction_id: Transfer record the entry describes
            sender_id: Debited account
            receiver_id: Credited account (None when it was never resolved)
            amount: Transfer amount
            status: Outcome being recorded
            metadata: Balances before/after and request provenance

        Returns:
            Created AuditEntry

        Raises:
            AuditLogError: If the entry could not be written
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            # Re-load the head in case another writer extended the chain
            self._load_chain_head()

            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._last_sequence + 1,
                transaction_id=transaction_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                amount=Decimal(amount),
                status=AuditStatus(status),
                previous_hash=self._last_hash or "",
                current_hash="",  # Will be calculated below
                metadata=metadata or {}
            )
            entry.current_hash = entry.calculate_hash()

            try:
                self.storage.save(self.table_name, entry.id, entry.to_dict())
            except FundflowError:
                raise
            except Exception as e:
                raise AuditLogError(f"Failed to write audit entry for {transaction_id}: {e}") from e

            self._last_hash = entry.current_hash
            self._last_sequence = entry.sequence

        self.logger.debug(f"Audit entry created: {entry.id}")
        return entry

    def update_entry(self, entry_id: str, changes: Dict[str, Any]) -> None:
        """Audit entries are immutable; always raises"""
        raise ImmutableAuditEntryError(f"Audit entry {entry_id} is immutable and cannot be updated")

    def delete_entry(self, entry_id: str) -> None:
        """Audit entries are immutable; always raises"""
        raise ImmutableAuditEntryError(f"Audit entry {entry_id} is immutable and cannot be deleted")

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return AuditEntry.from_dict(data)
        return None

    def get_entry_by_transaction(self, transaction_id: str) -> Optional[AuditEntry]:
        """Earliest audit entry recorded for a transfer"""
        entries = [
            AuditEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {"transaction_id": transaction_id})
        ]
        if not entries:
            return None
        return min(entries, key=lambda e: e.sequence)

    def list_entries(
        self,
        account_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        sort_key: str = "created_at",
        sort_order: str = "desc"
    ) -> List[AuditEntry]:
        """
        Entries where the account was sender or receiver.

        Args:
            account_id: Account whose history is requested
            limit: Page size (defaults to ``default_limit``, capped at ``max_limit``)
            offset: Number of entries to skip
            sort_key: "created_at" or "amount"
            sort_order: "asc" or "desc"

        Returns:
            One page of AuditEntry objects

        Raises:
            ValueError: On an unknown sort key/order or a negative offset
        """
        key = SortKey(sort_key)
        order = SortOrder(sort_order)
        if limit is None:
            limit = self.default_limit
        if limit <= 0:
            raise ValueError("Limit must be positive")
        if offset < 0:
            raise ValueError("Offset cannot be negative")
        limit = min(limit, self.max_limit)

        entries = [e for e in self._all_entries() if e.involves(account_id)]

        # Sequence breaks ties so repeated reads return the same page
        if key == SortKey.AMOUNT:
            entries.sort(key=lambda e: (e.amount, e.sequence), reverse=order == SortOrder.DESC)
        else:
            entries.sort(key=lambda e: (e.created_at, e.sequence), reverse=order == SortOrder.DESC)

        return entries[offset:offset + limit]

    def history_for_account(self, account_id: str, **query) -> List[Dict[str, Any]]:
        """
        Entries as seen from one account: direction, counterparty and that
        account's balance before/after.
        """
        history = []
        for entry in self.list_entries(account_id, **query):
            is_sender = entry.sender_id == account_id
            side = "sender" if is_sender else "receiver"
            history.append({
                "id": entry.id,
                "transaction_id": entry.transaction_id,
                "type": "sent" if is_sender else "received",
                "amount": entry.amount,
                "counterparty_id": entry.receiver_id if is_sender else entry.sender_id,
                "status": entry.status.value,
                "timestamp": entry.created_at,
                "balance_before": entry.metadata.get(f"{side}_balance_before"),
                "balance_after": entry.metadata.get(f"{side}_balance_after"),
            })
        return history

    def get_stats(self, account_id: str) -> AccountStats:
        """Sum sent, sum received and count over completed entries"""
        total_sent = Decimal('0.00')
        total_received = Decimal('0.00')
        count = 0
        for entry in self._all_entries():
            if entry.status != AuditStatus.COMPLETED or not entry.involves(account_id):
                continue
            count += 1
            if entry.sender_id == account_id:
                total_sent += entry.amount
            if entry.receiver_id == account_id:
                total_received += entry.amount
        return AccountStats(total_sent, total_received, count)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = self._all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for i, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

    def count_entries(self) -> int:
        """Get total number of audit entries"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit entry"""
        return self._last_hash

    def _all_entries(self) -> List[AuditEntry]:
        entries = [AuditEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=lambda e: e.sequence)
        return entries
