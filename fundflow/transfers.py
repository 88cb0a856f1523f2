"""
Transfer Processing Module

Moves funds between two accounts as one all-or-nothing unit: the sender
debit, the receiver credit and the ledger completion commit together or not
at all. Audit entries are dispatched after commit, off the transfer path.

Phases of an attempt:

    VALIDATING -> RESERVING -> COMMITTING -> COMPLETED
    VALIDATING -> REJECTED
    RESERVING | COMMITTING -> ABORTED
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import time

from .accounts import Account, AccountStore, BalanceChange
from .audit import AuditStatus
from .currency import AmountLike, parse_amount
from .dispatch import AuditDispatcher, AuditRequest
from .ledger import TransactionLedger, TransferRecord
from .exceptions import (
    InsufficientFundsError, InvalidAmountError,
    InvalidPhaseTransitionError, ReceiverNotFoundError, SelfTransferError,
    SenderNotFoundError, TransactionConflictError, TransferError,
    TransientConflictError
)
from .logging_config import get_logger, log_action


class TransferPhase(Enum):
    """Phases of a single transfer attempt"""
    VALIDATING = "validating"
    RESERVING = "reserving"
    COMMITTING = "committing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ABORTED = "aborted"


PHASE_TRANSITIONS = {
    TransferPhase.VALIDATING: {TransferPhase.RESERVING, TransferPhase.REJECTED},
    TransferPhase.RESERVING: {TransferPhase.COMMITTING, TransferPhase.ABORTED},
    TransferPhase.COMMITTING: {TransferPhase.COMPLETED, TransferPhase.ABORTED},
    TransferPhase.COMPLETED: set(),
    TransferPhase.REJECTED: set(),
    TransferPhase.ABORTED: set(),
}


@dataclass(frozen=True)
class TransferRequest:
    """A validated-at-the-edge request to move funds"""
    sender_id: str
    receiver_id: str
    amount: AmountLike
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def provenance(self) -> Dict[str, Any]:
        return {
            key: value for key, value in (
                ("ip_address", self.ip_address),
                ("user_agent", self.user_agent),
                ("correlation_id", self.correlation_id),
            ) if value is not None
        }


@dataclass
class TransferAttempt:
    """Tracks the phase of one attempt through the state machine"""
    request: TransferRequest
    phase: TransferPhase = TransferPhase.VALIDATING
    record_id: Optional[str] = None
    commit_attempts: int = 0
    phases: List[TransferPhase] = field(default_factory=lambda: [TransferPhase.VALIDATING])

    @property
    def is_terminal(self) -> bool:
        return not PHASE_TRANSITIONS[self.phase]

    def advance(self, phase: TransferPhase) -> None:
        if phase not in PHASE_TRANSITIONS[self.phase]:
            raise InvalidPhaseTransitionError(
                f"Transfer attempt cannot move from {self.phase.value} to {phase.value}"
            )
        self.phase = phase
        self.phases.append(phase)


@dataclass
class TransferReceipt:
    """Caller-visible result of a completed transfer"""
    transaction_id: str
    amount: Decimal
    receiver: Dict[str, Optional[str]]
    sender_new_balance: Decimal
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": str(self.amount),
            "receiver": dict(self.receiver),
            "sender_new_balance": str(self.sender_new_balance),
            "timestamp": self.timestamp.isoformat(),
        }


class TransferOrchestrator:
    """
    Validates, commits and reports fund transfers
    """

    def __init__(
        self,
        accounts: AccountStore,
        ledger: TransactionLedger,
        dispatcher: Optional[AuditDispatcher] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        backoff_multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        on_phase: Optional[Callable[[TransferAttempt], None]] = None
    ):
        if accounts.storage is not ledger.storage:
            raise ValueError("Account store and ledger must share one storage backend")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.accounts = accounts
        self.ledger = ledger
        self.storage = accounts.storage
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self._sleep = sleep
        self._on_phase = on_phase
        self.logger = get_logger("fundflow.transfers")

    def transfer(self, request: TransferRequest) -> TransferReceipt:
        """
        Execute a transfer

        Args:
            request: Sender, receiver, amount and request provenance

        Returns:
            TransferReceipt for the committed transfer

        Raises:
            InvalidAmountError, SelfTransferError, SenderNotFoundError,
            ReceiverNotFoundError: Rejected before anything was written
            InsufficientFundsError: Aborted; the record is marked failed
            TransientConflictError: Retry budget exhausted; safe to retry
        """
        attempt = TransferAttempt(request=request)

        try:
            amount, sender, receiver = self._validate(request)
        except TransferError as e:
            self._advance(attempt, TransferPhase.REJECTED)
            log_action(
                self.logger, "info", f"Transfer rejected: {e.message}",
                user_id=request.sender_id, action="transfer_rejected",
                correlation_id=request.correlation_id, extra={"code": e.code}
            )
            raise

        self._advance(attempt, TransferPhase.RESERVING)
        try:
            record = self.ledger.open(sender.id, receiver.id, amount)
        except Exception:
            self._advance(attempt, TransferPhase.ABORTED)
            raise
        attempt.record_id = record.id

        self._advance(attempt, TransferPhase.COMMITTING)
        try:
            debit, credit, completed = self._commit_with_retry(attempt, record)
        except InsufficientFundsError as e:
            self._advance(attempt, TransferPhase.ABORTED)
            log_action(
                self.logger, "warning", f"Transfer aborted: {e.message}",
                user_id=sender.id, action="transfer_aborted",
                resource=f"transfer:{record.id}", correlation_id=request.correlation_id,
                extra={"code": e.code, "amount": str(amount)}
            )
            self._dispatch_failure(request, record, e.message)
            raise
        except Exception as e:
            self._advance(attempt, TransferPhase.ABORTED)
            reason = e.message if isinstance(e, TransferError) else str(e)
            self._abandon(record, reason)
            self.logger.error(f"Transfer {record.id} failed: {reason}")
            self._dispatch_failure(request, record, reason)
            raise

        self._advance(attempt, TransferPhase.COMPLETED)
        log_action(
            self.logger, "info", "Transfer completed",
            user_id=sender.id, action="transfer_completed",
            resource=f"transfer:{record.id}", correlation_id=request.correlation_id,
            extra={
                "sender_id": sender.id,
                "receiver_id": receiver.id,
                "amount": str(amount),
                "attempts": attempt.commit_attempts,
            }
        )

        # Locks are released by now; the audit write never holds them
        self._dispatch_success(request, completed, debit, credit)

        return TransferReceipt(
            transaction_id=completed.id,
            amount=completed.amount,
            receiver=receiver.identity,
            sender_new_balance=debit.balance_after,
            timestamp=completed.created_at,
        )

    def transfer_to_email(
        self,
        sender_id: str,
        receiver_email: str,
        amount: AmountLike,
        **provenance
    ) -> TransferReceipt:
        """Transfer to the account registered under ``receiver_email``"""
        receiver = self.accounts.get_account_by_email(receiver_email)
        if not receiver:
            raise ReceiverNotFoundError("Receiver not found")
        return self.transfer(TransferRequest(
            sender_id=sender_id,
            receiver_id=receiver.id,
            amount=amount,
            **provenance
        ))

    def _validate(self, request: TransferRequest) -> Tuple[Decimal, Account, Account]:
        """Pure checks; nothing is written"""
        try:
            amount = parse_amount(request.amount)
        except ValueError as e:
            raise InvalidAmountError(str(e))

        if request.sender_id == request.receiver_id:
            raise SelfTransferError("Cannot transfer funds to yourself")

        sender = self.accounts.get_account(request.sender_id)
        if not sender:
            raise SenderNotFoundError("Sender not found")

        receiver = self.accounts.get_account(request.receiver_id)
        if not receiver:
            raise ReceiverNotFoundError("Receiver not found")

        return amount, sender, receiver

    def _commit_with_retry(
        self,
        attempt: TransferAttempt,
        record: TransferRecord
    ) -> Tuple[BalanceChange, BalanceChange, TransferRecord]:
        delay = self.backoff_seconds
        last_error: Optional[TransactionConflictError] = None

        while attempt.commit_attempts < self.max_attempts:
            attempt.commit_attempts += 1
            try:
                return self._commit(record)
            except TransactionConflictError as e:
                last_error = e
                log_action(
                    self.logger, "warning",
                    f"Transfer commit conflict (attempt {attempt.commit_attempts}/{self.max_attempts}): {e}",
                    action="transfer_conflict", resource=f"transfer:{record.id}"
                )
                if attempt.commit_attempts < self.max_attempts:
                    self._sleep(delay)
                    delay *= self.backoff_multiplier

        raise TransientConflictError(
            f"Transfer could not commit after {self.max_attempts} attempts: {last_error}",
            transaction_id=record.id
        )

    def _commit(self, record: TransferRecord) -> Tuple[BalanceChange, BalanceChange, TransferRecord]:
        """Debit, credit and completion as one atomic unit under both account locks"""
        with self.accounts.lock_accounts(record.sender_id, record.receiver_id):
            try:
                with self.storage.atomic():
                    debit = self.accounts.try_debit(record.sender_id, record.amount, record.id)
                    credit = self.accounts.credit(record.receiver_id, record.amount, record.id)
                    completed = self.ledger.mark_completed(record.id)
            except InsufficientFundsError as e:
                # Rolled back; fail the record while the locks are still held
                e.transaction_id = record.id
                self._abandon(record, e.message)
                raise
        return debit, credit, completed

    def _abandon(self, record: TransferRecord, reason: str) -> None:
        """Best effort: leave no pending record behind after an abort"""
        try:
            self.ledger.mark_failed(record.id, reason)
        except Exception as e:
            # Left pending; the reconciler resolves it
            self.logger.error(f"Could not mark transfer {record.id} failed: {e}")

    def _advance(self, attempt: TransferAttempt, phase: TransferPhase) -> None:
        attempt.advance(phase)
        if self._on_phase:
            self._on_phase(attempt)

    def _dispatch_success(
        self,
        request: TransferRequest,
        record: TransferRecord,
        debit: BalanceChange,
        credit: BalanceChange
    ) -> None:
        metadata = {
            "sender_balance_before": debit.balance_before,
            "sender_balance_after": debit.balance_after,
            "receiver_balance_before": credit.balance_before,
            "receiver_balance_after": credit.balance_after,
        }
        metadata.update(request.provenance)
        self._dispatch(AuditRequest(
            transaction_id=record.id,
            sender_id=record.sender_id,
            receiver_id=record.receiver_id,
            amount=record.amount,
            status=AuditStatus.COMPLETED,
            metadata=metadata,
        ))

    def _dispatch_failure(self, request: TransferRequest, record: TransferRecord, reason: str) -> None:
        metadata = {"error_message": reason}
        metadata.update(request.provenance)
        self._dispatch(AuditRequest(
            transaction_id=record.id,
            sender_id=record.sender_id,
            receiver_id=record.receiver_id,
            amount=record.amount,
            status=AuditStatus.FAILED,
            metadata=metadata,
        ))

    def _dispatch(self, audit_request: AuditRequest) -> None:
        if not self.dispatcher:
            return
        try:
            self.dispatcher.dispatch(audit_request)
        except Exception as e:
            # Audit is best-effort; the transfer outcome stands
            self.logger.error(f"Audit dispatch failed for {audit_request.transaction_id}: {e}")
