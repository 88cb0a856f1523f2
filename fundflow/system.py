"""
System Wiring

Builds the storage backend, account store, ledger, audit trail, dispatcher,
orchestrator and reconciler from configuration.
"""

from typing import Optional

from .accounts import AccountStore
from .audit import AuditTrail
from .config import FundflowConfig, get_config
from .dispatch import AuditDispatcher
from .ledger import TransactionLedger
from .reconciliation import PendingTransferReconciler
from .storage import StorageInterface, create_storage
from .transfers import TransferOrchestrator, TransferReceipt, TransferRequest
from .logging_config import get_logger


class TransferSystem:
    """
    All transfer components sharing one storage backend.

    Usable as a context manager: entering starts the audit dispatcher,
    leaving drains and stops it and closes storage.
    """

    def __init__(self, storage: StorageInterface, config: Optional[FundflowConfig] = None):
        self.config = config or get_config()
        self.storage = storage
        self.accounts = AccountStore(storage, lock_timeout=self.config.lock_timeout_seconds)
        self.ledger = TransactionLedger(storage)
        self.audit_trail = AuditTrail(
            storage,
            default_limit=self.config.history_default_limit,
            max_limit=self.config.history_max_limit
        )
        self.dispatcher: Optional[AuditDispatcher] = None
        if self.config.enable_audit_logging:
            self.dispatcher = AuditDispatcher(
                self.audit_trail, max_queue_size=self.config.audit_queue_size
            )
        self.orchestrator = TransferOrchestrator(
            self.accounts,
            self.ledger,
            dispatcher=self.dispatcher,
            max_attempts=self.config.max_transfer_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
            backoff_multiplier=self.config.retry_backoff_multiplier,
        )
        self.reconciler = PendingTransferReconciler(
            self.accounts, self.ledger,
            grace_seconds=self.config.reconciliation_grace_seconds
        )
        self.logger = get_logger("fundflow.system")

    @classmethod
    def from_config(cls, config: Optional[FundflowConfig] = None) -> 'TransferSystem':
        config = config or get_config()
        return cls(create_storage(config.database_url), config)

    def start(self) -> None:
        if self.dispatcher:
            self.dispatcher.start()

    def stop(self) -> None:
        if self.dispatcher:
            self.dispatcher.stop(timeout=self.config.audit_shutdown_timeout_seconds)
        self.storage.close()

    def transfer(self, request: TransferRequest) -> TransferReceipt:
        return self.orchestrator.transfer(request)

    def __enter__(self) -> 'TransferSystem':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
