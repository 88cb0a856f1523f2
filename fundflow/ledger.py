"""
Transaction Ledger Module

Durable record of every transfer attempt. A record is opened ``pending`` and
moves exactly once to ``completed`` or ``failed``; terminal records never
change again. The ``completed`` write shares the atomic unit of the balance
mutations it certifies.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .exceptions import InvalidStatusTransitionError, TransferRecordNotFoundError
from .logging_config import get_logger, log_action


class TransferStatus(Enum):
    """Lifecycle of a transfer record"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.COMPLETED, TransferStatus.FAILED},
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
}


@dataclass
class TransferRecord(StorageRecord):
    """Ledger entry for one transfer attempt"""
    sender_id: str
    receiver_id: str
    amount: Decimal
    status: TransferStatus = TransferStatus.PENDING
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Transfer amount must be positive")

    @property
    def is_pending(self) -> bool:
        return self.status == TransferStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['amount'] = str(self.amount)
        result['status'] = self.status.value
        result['completed_at'] = self.completed_at.isoformat() if self.completed_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferRecord':
        completed_at = None
        if data.get('completed_at'):
            completed_at = datetime.fromisoformat(data['completed_at'])
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sender_id=data['sender_id'],
            receiver_id=data['receiver_id'],
            amount=Decimal(data['amount']),
            status=TransferStatus(data['status']),
            error_message=data.get('error_message'),
            completed_at=completed_at,
        )


class TransactionLedger:
    """
    Pending/completed/failed state machine over transfer records
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transfers"
        self.logger = get_logger("fundflow.ledger")

    def open(self, sender_id: str, receiver_id: str, amount: Decimal) -> TransferRecord:
        """
        Open a pending record for a new transfer attempt

        Returns:
            TransferRecord in PENDING status
        """
        now = datetime.now(timezone.utc)
        record = TransferRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
        )
        self._save(record)

        log_action(
            self.logger, "debug", "Transfer record opened",
            action="open_transfer", resource=f"transfer:{record.id}",
            extra={"sender_id": sender_id, "receiver_id": receiver_id, "amount": str(amount)}
        )
        return record

    def mark_completed(self, record_id: str) -> TransferRecord:
        """
        Mark a pending record completed.

        Must run inside the atomic unit that applied both balance mutations.
        """
        return self._transition(record_id, TransferStatus.COMPLETED)

    def mark_failed(self, record_id: str, reason: str) -> TransferRecord:
        """Mark a pending record failed with the reason it was abandoned"""
        return self._transition(record_id, TransferStatus.FAILED, reason)

    def get_record(self, record_id: str) -> Optional[TransferRecord]:
        """Get transfer record by ID"""
        data = self.storage.load(self.table_name, record_id)
        if data:
            return TransferRecord.from_dict(data)
        return None

    def find_by_status(self, status: TransferStatus) -> List[TransferRecord]:
        """Records in the given status, oldest first"""
        records = [
            TransferRecord.from_dict(data)
            for data in self.storage.find(self.table_name, {"status": status.value})
        ]
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def find_stale_pending(self, older_than: datetime) -> List[TransferRecord]:
        """Pending records created before ``older_than``"""
        return [r for r in self.find_by_status(TransferStatus.PENDING) if r.created_at < older_than]

    def _transition(
        self,
        record_id: str,
        new_status: TransferStatus,
        error_message: Optional[str] = None
    ) -> TransferRecord:
        with self.storage.atomic():
            record = self.get_record(record_id)
            if not record:
                raise TransferRecordNotFoundError(f"Transfer record {record_id} not found")

            if new_status not in ALLOWED_TRANSITIONS[record.status]:
                raise InvalidStatusTransitionError(
                    f"Transfer {record_id} cannot move from {record.status.value} to {new_status.value}"
                )

            now = datetime.now(timezone.utc)
            record.status = new_status
            record.updated_at = now
            if new_status == TransferStatus.COMPLETED:
                record.completed_at = now
            else:
                record.error_message = error_message
            self._save(record)

        log_action(
            self.logger, "debug", f"Transfer record {new_status.value}",
            action=f"mark_{new_status.value}", resource=f"transfer:{record_id}",
            extra={"error_message": error_message} if error_message else None
        )
        return record

    def _save(self, record: TransferRecord) -> None:
        self.storage.save(self.table_name, record.id, record.to_dict())
