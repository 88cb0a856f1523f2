"""
Error Taxonomy

Every transfer failure carries a stable machine-readable code and a
``retryable`` flag so callers can tell a transient conflict from a permanent
rejection.
"""

from typing import Any, Dict, Optional


class FundflowError(Exception):
    """Base class for all fundflow errors"""


class TransferError(FundflowError):
    """A transfer attempt that did not complete"""
    code = "TRANSFER_FAILED"
    retryable = False

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.transaction_id = transaction_id

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.transaction_id:
            result["transaction_id"] = self.transaction_id
        return result


class SelfTransferError(TransferError):
    code = "SELF_TRANSFER"


class ReceiverNotFoundError(TransferError):
    code = "RECEIVER_NOT_FOUND"


class SenderNotFoundError(TransferError):
    code = "SENDER_NOT_FOUND"


class InvalidAmountError(TransferError):
    code = "INVALID_AMOUNT"


class InsufficientFundsError(TransferError):
    code = "INSUFFICIENT_FUNDS"


class TransientConflictError(TransferError):
    """Retry budget exhausted on conflicting concurrent work; safe to retry"""
    code = "TRANSIENT_CONFLICT"
    retryable = True


class TransactionConflictError(FundflowError):
    """The atomic unit could not acquire its locks or commit; may succeed on retry"""


class AccountNotFoundError(FundflowError):
    pass


class DuplicateAccountError(FundflowError):
    pass


class TransferRecordNotFoundError(FundflowError):
    pass


class InvalidStatusTransitionError(FundflowError):
    """A ledger record was asked to leave a terminal status"""


class InvalidPhaseTransitionError(FundflowError):
    pass


class AuditLogError(FundflowError):
    """An audit entry could not be written"""


class ImmutableAuditEntryError(FundflowError):
    """Attempted update or delete of an append-only record"""
