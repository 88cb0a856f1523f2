"""
Pending Transfer Reconciliation

Resolves transfer records left ``pending`` by a process that stopped between
reserving a record and finishing its atomic unit. The balance postings keyed
by transfer id decide the outcome:

    debit and credit applied -> completed
    nothing applied          -> failed
    exactly one leg applied  -> left pending and reported as inconsistent
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import List, Optional

from .accounts import AccountStore, PostingKind
from .ledger import TransactionLedger, TransferRecord
from .logging_config import get_logger, log_action


NO_MUTATION_REASON = "reconciled: no balance mutation applied"


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass"""
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    inconsistent: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total_resolved(self) -> int:
        return len(self.completed) + len(self.failed)

    def to_dict(self):
        return {
            "completed": list(self.completed),
            "failed": list(self.failed),
            "inconsistent": list(self.inconsistent),
            "skipped": list(self.skipped),
        }


class PendingTransferReconciler:
    """
    Scans for stale pending transfers and forces each to a terminal status
    """

    def __init__(
        self,
        accounts: AccountStore,
        ledger: TransactionLedger,
        grace_seconds: int = 300
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.grace_period = timedelta(seconds=grace_seconds)
        self.logger = get_logger("fundflow.reconciliation")

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Resolve every pending record older than the grace window

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            ReconciliationReport listing record ids by outcome
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.grace_period
        report = ReconciliationReport()

        stale = self.ledger.find_stale_pending(cutoff)
        for record in stale:
            self._reconcile_record(record, report)

        if stale:
            log_action(
                self.logger, "info", "Reconciliation pass finished",
                action="reconcile", extra=report.to_dict()
            )
        return report

    def _reconcile_record(self, record: TransferRecord, report: ReconciliationReport) -> None:
        # Same locks as the transfer path, so an in-flight unit finishes first
        with self.accounts.lock_accounts(record.sender_id, record.receiver_id):
            current = self.ledger.get_record(record.id)
            if current is None or not current.is_pending:
                report.skipped.append(record.id)
                return

            kinds = {posting.kind for posting in self.accounts.postings_for_transfer(record.id)}

            if kinds == {PostingKind.DEBIT, PostingKind.CREDIT}:
                self.ledger.mark_completed(record.id)
                report.completed.append(record.id)
                log_action(
                    self.logger, "warning", "Orphaned transfer reconciled as completed",
                    action="reconcile_completed", resource=f"transfer:{record.id}"
                )
            elif not kinds:
                self.ledger.mark_failed(record.id, NO_MUTATION_REASON)
                report.failed.append(record.id)
                log_action(
                    self.logger, "warning", "Orphaned transfer reconciled as failed",
                    action="reconcile_failed", resource=f"transfer:{record.id}"
                )
            else:
                report.inconsistent.append(record.id)
                log_action(
                    self.logger, "error",
                    f"Transfer has a partial balance mutation ({', '.join(sorted(kinds))} only)",
                    action="reconcile_inconsistent", resource=f"transfer:{record.id}",
                    extra={"sender_id": record.sender_id, "receiver_id": record.receiver_id,
                           "amount": str(record.amount)}
                )
