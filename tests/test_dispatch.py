"""
Tests for the background audit dispatcher
"""

import threading
from decimal import Decimal

from fundflow.audit import AuditStatus, AuditTrail
from fundflow.dispatch import AuditDispatcher, AuditRequest
from fundflow.storage import InMemoryStorage


def make_request(transaction_id="tx-1", status=AuditStatus.COMPLETED):
    return AuditRequest(
        transaction_id=transaction_id,
        sender_id="alice",
        receiver_id="bob",
        amount=Decimal("40.00"),
        status=status,
        metadata={"sender_balance_after": Decimal("60.00")},
    )


class TestAuditDispatcher:
    """Test fire-and-forget audit delivery"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = None

    def teardown_method(self):
        if self.dispatcher:
            self.dispatcher.stop(timeout=2)

    def test_dispatched_entries_are_written(self):
        self.dispatcher = AuditDispatcher(self.audit_trail)
        self.dispatcher.start()

        assert self.dispatcher.dispatch(make_request("tx-1"))
        assert self.dispatcher.dispatch(make_request("tx-2", AuditStatus.FAILED))
        assert self.dispatcher.flush(timeout=5)

        assert self.audit_trail.count_entries() == 2
        assert self.dispatcher.written == 2
        entry = self.audit_trail.get_entry_by_transaction("tx-1")
        assert entry.metadata["sender_balance_after"] == "60.00"
        assert self.audit_trail.verify_integrity()["valid"]

    def test_writer_failure_is_swallowed(self):
        """Test that a failed write is counted and the worker keeps going"""
        calls = []

        def flaky_writer(request):
            calls.append(request.transaction_id)
            if len(calls) == 1:
                raise RuntimeError("audit store unavailable")
            self.dispatcher._write(request)

        self.dispatcher = AuditDispatcher(self.audit_trail, writer=flaky_writer)
        self.dispatcher.start()
        self.dispatcher.dispatch(make_request("tx-1"))
        self.dispatcher.dispatch(make_request("tx-2"))
        assert self.dispatcher.flush(timeout=5)

        assert calls == ["tx-1", "tx-2"]
        assert self.dispatcher.failed == 1
        assert self.dispatcher.written == 1
        assert self.audit_trail.get_entry_by_transaction("tx-1") is None
        assert self.audit_trail.get_entry_by_transaction("tx-2") is not None

    def test_dispatch_when_stopped_is_dropped(self):
        self.dispatcher = AuditDispatcher(self.audit_trail)

        assert not self.dispatcher.dispatch(make_request())
        assert self.dispatcher.dropped == 1
        assert self.audit_trail.count_entries() == 0

    def test_full_queue_drops_without_blocking(self):
        entered = threading.Event()
        release = threading.Event()

        def blocking_writer(request):
            entered.set()
            release.wait(5)

        self.dispatcher = AuditDispatcher(self.audit_trail, max_queue_size=1, writer=blocking_writer)
        self.dispatcher.start()
        try:
            assert self.dispatcher.dispatch(make_request("tx-1"))
            assert entered.wait(5)
            assert self.dispatcher.dispatch(make_request("tx-2"))
            assert not self.dispatcher.dispatch(make_request("tx-3"))
            assert self.dispatcher.dropped == 1
            assert self.dispatcher.pending() == 1
        finally:
            release.set()

        assert self.dispatcher.flush(timeout=5)
        assert self.dispatcher.written == 2

    def test_flush_times_out_without_spawning_threads(self):
        entered = threading.Event()
        release = threading.Event()

        def hung_writer(request):
            entered.set()
            release.wait(5)

        self.dispatcher = AuditDispatcher(self.audit_trail, writer=hung_writer)
        self.dispatcher.start()
        try:
            self.dispatcher.dispatch(make_request("tx-1"))
            assert entered.wait(5)

            threads_before = threading.active_count()
            for _ in range(5):
                assert not self.dispatcher.flush(timeout=0.01)
            assert threading.active_count() <= threads_before
        finally:
            release.set()

        assert self.dispatcher.flush(timeout=5)

    def test_flush_on_idle_dispatcher(self):
        self.dispatcher = AuditDispatcher(self.audit_trail)
        assert self.dispatcher.flush(timeout=0)

    def test_stop_drains_queue(self):
        self.dispatcher = AuditDispatcher(self.audit_trail)
        self.dispatcher.start()
        for n in range(20):
            self.dispatcher.dispatch(make_request(f"tx-{n}"))

        self.dispatcher.stop(timeout=5)

        assert not self.dispatcher.is_running
        assert self.audit_trail.count_entries() == 20

    def test_start_is_idempotent(self):
        self.dispatcher = AuditDispatcher(self.audit_trail)
        self.dispatcher.start()
        thread = self.dispatcher._thread
        self.dispatcher.start()
        assert self.dispatcher._thread is thread
