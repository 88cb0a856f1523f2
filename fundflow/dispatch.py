"""
Audit Dispatch Module

Fire-and-forget delivery of audit entries. The transfer path enqueues and
returns; a single background worker writes to the audit trail. Failures are
logged and dropped, never surfaced to the transfer.
"""

import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from queue import Queue, Empty, Full
from typing import Any, Callable, Dict, Optional

from .audit import AuditTrail, AuditStatus
from .logging_config import get_logger, log_action


@dataclass
class AuditRequest:
    """Audit entry waiting to be written"""
    transaction_id: str
    sender_id: str
    receiver_id: Optional[str]
    amount: Decimal
    status: AuditStatus
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditDispatcher:
    """
    Bounded queue drained by one daemon worker thread.

    ``dispatch`` never blocks: when the queue is full or the dispatcher is
    stopped the request is dropped with an error log.
    """

    def __init__(
        self,
        audit_trail: AuditTrail,
        max_queue_size: int = 10000,
        writer: Optional[Callable[[AuditRequest], Any]] = None
    ):
        self.audit_trail = audit_trail
        self._queue: Queue = Queue(maxsize=max_queue_size)
        self._writer = writer or self._write
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._lock = threading.Lock()
        self.logger = get_logger("fundflow.dispatch")
        self.dropped = 0
        self.failed = 0
        self.written = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker thread"""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._run, name="fundflow-audit-dispatcher", daemon=True
            )
            self._thread.start()
        self.logger.info("Audit dispatcher started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Drain what is queued (bounded by ``timeout``) and stop the worker"""
        with self._lock:
            if not self._running:
                return
            self._running = False
            thread = self._thread
            self._thread = None
        if thread:
            thread.join(timeout)
            if thread.is_alive():
                self.logger.warning(
                    f"Audit dispatcher stopped with {self._queue.qsize()} entries unwritten"
                )
        self.logger.info("Audit dispatcher stopped")

    def dispatch(self, request: AuditRequest) -> bool:
        """
        Enqueue an audit request without blocking.

        Returns:
            True if queued, False if dropped
        """
        if not self._running:
            self._drop(request, "dispatcher not running")
            return False
        try:
            self._queue.put_nowait(request)
        except Full:
            self._drop(request, "queue full")
            return False
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait until every queued request has been handled.

        Returns:
            True if the queue drained within ``timeout``
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        # Keep draining after stop() so queued entries are not lost
        while self._running or not self._queue.empty():
            try:
                request = self._queue.get(timeout=0.1)
            except Empty:
                continue
            try:
                self._writer(request)
                self.written += 1
            except Exception as e:
                self.failed += 1
                log_action(
                    self.logger, "error", f"Audit entry creation failed: {e}",
                    action="audit_write_failed", resource=f"transfer:{request.transaction_id}",
                    extra={
                        "sender_id": request.sender_id,
                        "receiver_id": request.receiver_id,
                        "amount": str(request.amount),
                        "status": request.status.value,
                    }
                )
            finally:
                self._queue.task_done()

    def _write(self, request: AuditRequest) -> None:
        self.audit_trail.append(
            transaction_id=request.transaction_id,
            sender_id=request.sender_id,
            receiver_id=request.receiver_id,
            amount=request.amount,
            status=request.status,
            metadata=request.metadata,
        )

    def _drop(self, request: AuditRequest, reason: str) -> None:
        self.dropped += 1
        log_action(
            self.logger, "error", f"Audit entry dropped: {reason}",
            action="audit_dropped", resource=f"transfer:{request.transaction_id}"
        )
