"""
Queue Worker Unit Tests
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Dict, List, Set

import pytest

from conftest import make_sale
from vendhub_fiscal.exceptions import ErrorClassification, NetworkError, ProviderError
from vendhub_fiscal.models.device import DeviceStatus
from vendhub_fiscal.models.queue import FiscalPayload, OperationKind, QueueStatus
from vendhub_fiscal.models.receipt import ReceiptStatus
from vendhub_fiscal.models.sale import ReceiptType
from vendhub_fiscal.models.shift import ShiftStatus
from vendhub_fiscal.providers.base import ProviderResult
from vendhub_fiscal.providers.factory import ProviderFactory
from vendhub_fiscal.providers.sandbox import SandboxProvider
from vendhub_fiscal.services.queue_worker import QueueWorker, WorkerPool


def open_shift(shifts, worker, device_id):
    shifts.request_open(device_id, cashier="Operator")
    worker.drain_device(device_id)
    return shifts.current_shift(device_id)


class InFlightTracker:
    """Counts provider calls in flight per device"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[str, int] = {}
        self.overlaps: List[str] = []
        self.devices_seen: Set[str] = set()

    def enter(self, device_id: str) -> None:
        with self._lock:
            self._in_flight[device_id] = self._in_flight.get(device_id, 0) + 1
            self.devices_seen.add(device_id)
            if self._in_flight[device_id] > 1:
                self.overlaps.append(device_id)

    def leave(self, device_id: str) -> None:
        with self._lock:
            self._in_flight[device_id] -= 1


class TrackedSandbox(SandboxProvider):
    """Sandbox that reports every call to a shared tracker"""

    def __init__(self, device_id: str, tracker: InFlightTracker) -> None:
        super().__init__(terminal_id=f"SB{device_id[:4]}")
        self._device_id = device_id
        self._tracker = tracker

    def submit(
        self,
        operation: OperationKind,
        payload: FiscalPayload,
        idempotency_key: str,
        timeout: float,
    ) -> ProviderResult:
        self._tracker.enter(self._device_id)
        try:
            time.sleep(0.002)
            return super().submit(operation, payload, idempotency_key, timeout)
        finally:
            self._tracker.leave(self._device_id)


class TestFiscalizationScenario:
    """End-to-end run of one device"""

    def test_sale_fiscalized_after_two_timeouts(
        self, device, shifts, queue, ledger, worker, fiscalization, provider, clock
    ):
        """Should open S1, retry the sale twice, then count it once"""
        open_item = shifts.request_open(device.id, cashier="Operator")
        assert open_item.priority == 10
        assert worker.drain_device(device.id) == 1
        s1 = shifts.current_shift(device.id)
        assert s1.status is ShiftStatus.OPEN
        assert s1.shift_number == 1

        provider.script(
            OperationKind.RECEIPT_SALE, NetworkError.timeout(), NetworkError.timeout()
        )
        item = fiscalization.submit_sale(
            make_sale(device.id, price="100000"), idempotency_key="sale-42"
        )
        assert item.priority == 5
        assert item.shift_id == s1.id

        worker.drain_device(device.id)
        assert queue.get(item.id).status is QueueStatus.RETRY
        clock.advance(1)
        worker.drain_device(device.id)
        assert queue.get(item.id).retry_count == 2
        clock.advance(2)
        worker.drain_device(device.id)

        done = queue.get(item.id)
        assert done.status is QueueStatus.SUCCESS
        assert done.retry_count == 2
        receipt = ledger.get(item.receipt_id)
        assert receipt.status is ReceiptStatus.SUCCESS
        assert receipt.fiscal_number is not None
        assert shifts.get_shift(s1.id).total_sales == Decimal("100000")
        assert len(provider.calls_for(OperationKind.RECEIPT_SALE)) == 3

        again = fiscalization.submit_sale(
            make_sale(device.id, price="100000"), idempotency_key="sale-42"
        )
        siblings = queue.items_for_key("sale-42")
        assert again.id != item.id
        assert len(siblings) == 2
        assert [i.status for i in siblings].count(QueueStatus.SUCCESS) == 1

    def test_same_idempotency_key_used_for_every_attempt(
        self, device, shifts, worker, fiscalization, provider, clock
    ):
        """Should send the admission key on each provider call"""
        open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, NetworkError.connection_refused())
        fiscalization.submit_sale(make_sale(device.id))

        worker.drain_device(device.id)
        clock.advance(5)
        worker.drain_device(device.id)

        keys = {key for _, key, _ in provider.calls_for(OperationKind.RECEIPT_SALE)}
        assert keys == {"sale-42:receipt_sale"}


class TestFailureHandling:
    """Tests for failure classification"""

    def test_permanent_failure_fails_immediately(
        self, device, shifts, queue, ledger, worker, fiscalization, provider
    ):
        """Should not retry a provider rejection"""
        s1 = open_shift(shifts, worker, device.id)
        provider.script(
            OperationKind.RECEIPT_SALE,
            ProviderError.permanent("Unknown IKPU code", status_code=400),
        )
        item = fiscalization.submit_sale(make_sale(device.id))

        worker.drain_device(device.id)

        failed = queue.get(item.id)
        assert failed.status is QueueStatus.FAILED
        assert failed.retry_count == 1
        assert failed.error_classification is ErrorClassification.PERMANENT
        assert "Unknown IKPU code" in failed.last_error
        assert ledger.get(item.receipt_id).status is ReceiptStatus.FAILED
        assert shifts.get_shift(s1.id).receipts_count == 0

    def test_retry_budget_exhausted(
        self, device, shifts, queue, ledger, worker, fiscalization, provider, clock
    ):
        """Should fail after max_retries transient failures"""
        open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, *[NetworkError.timeout() for _ in range(5)])
        item = fiscalization.submit_sale(make_sale(device.id))

        for _ in range(5):
            worker.drain_device(device.id)
            clock.advance(3600)

        failed = queue.get(item.id)
        assert failed.status is QueueStatus.FAILED
        assert failed.retry_count == failed.max_retries == 5
        assert "timed out" in failed.last_error
        assert len(provider.calls_for(OperationKind.RECEIPT_SALE)) == 5
        assert ledger.get(item.receipt_id).status is ReceiptStatus.FAILED

        # Terminal: nothing left to do
        clock.advance(3600)
        assert worker.drain_device(device.id) == 0

    def test_backoff_doubles(self, device, shifts, queue, worker, fiscalization, provider, clock):
        """Should schedule retries at base * 2^retry_count"""
        open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, NetworkError.timeout(), NetworkError.timeout())
        item = fiscalization.submit_sale(make_sale(device.id))

        start = clock.now()
        worker.drain_device(device.id)
        assert (queue.get(item.id).next_retry_at - start).total_seconds() == 1

        clock.advance(1)
        worker.drain_device(device.id)
        assert (queue.get(item.id).next_retry_at - clock.now()).total_seconds() == 2

    def test_unexpected_exception_is_transient(
        self, device, shifts, queue, worker, fiscalization, provider
    ):
        """Should retry exceptions raised outside the package"""
        open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, RuntimeError("socket closed"))
        item = fiscalization.submit_sale(make_sale(device.id))

        worker.drain_device(device.id)

        retried = queue.get(item.id)
        assert retried.status is QueueStatus.RETRY
        assert retried.error_classification is ErrorClassification.TRANSIENT
        assert "RuntimeError" in retried.last_error

    def test_invariant_violation_fails_and_alerts(
        self, device, shifts, queue, store, worker, fiscalization, caplog
    ):
        """Should fail at CRITICAL when a receipt's shift was closed under it"""
        s1 = open_shift(shifts, worker, device.id)
        item = fiscalization.submit_sale(make_sale(device.id))

        shift = store.get_shift(s1.id)
        shift.status = ShiftStatus.CLOSED
        store.put_shift(shift)

        with caplog.at_level(logging.CRITICAL):
            worker.drain_device(device.id)

        failed = queue.get(item.id)
        assert failed.status is QueueStatus.FAILED
        assert failed.error_classification is ErrorClassification.INVARIANT
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_records_last_sync(self, device, shifts, registry, worker, fiscalization, provider):
        """Should remember the outcome of the last provider call"""
        open_shift(shifts, worker, device.id)
        assert registry.get(device.id).last_sync.status == "ok"

        provider.script(OperationKind.RECEIPT_SALE, NetworkError.timeout())
        fiscalization.submit_sale(make_sale(device.id))
        worker.drain_device(device.id)

        last_sync = registry.get(device.id).last_sync
        assert last_sync.status == "error"
        assert "timed out" in last_sync.error


class TestShiftGating:
    """Tests for receipts that need an open shift"""

    def test_receipt_waits_for_shift(self, device, queue, ledger, worker, fiscalization, provider, clock):
        """Should retry on the precondition delay without calling the provider"""
        item = fiscalization.submit_sale(make_sale(device.id))

        worker.drain_device(device.id)

        waiting = queue.get(item.id)
        assert waiting.status is QueueStatus.RETRY
        assert waiting.error_classification is ErrorClassification.PRECONDITION
        assert (waiting.next_retry_at - clock.now()).total_seconds() == 2
        assert provider.calls == []
        assert ledger.find(item.receipt_id) is None

    def test_shift_open_runs_before_queued_receipt(
        self, device, shifts, queue, worker, fiscalization, provider
    ):
        """Should take the higher-priority shift_open first"""
        sale = fiscalization.submit_sale(make_sale(device.id))
        shifts.request_open(device.id)

        assert worker.drain_device(device.id) == 2

        assert [call[0] for call in provider.calls] == [
            OperationKind.SHIFT_OPEN, OperationKind.RECEIPT_SALE,
        ]
        assert queue.get(sale.id).status is QueueStatus.SUCCESS
        assert shifts.current_shift(device.id).receipts_count == 1

    def test_auto_open_shift(self, make_device, shifts, queue, ledger, worker, fiscalization, provider, config):
        """Should synthesize and run a shift_open for a receipt"""
        device = make_device("D2", auto_open_shift=True)
        item = fiscalization.submit_sale(make_sale(device.id))

        worker.drain_device(device.id)

        shift = shifts.current_shift(device.id)
        assert shift is not None
        assert shift.cashier_name == config.default_cashier
        assert queue.get(item.id).status is QueueStatus.SUCCESS
        assert ledger.get(item.receipt_id).shift_id == shift.id
        opens = queue.list_items(device_id=device.id, operation=OperationKind.SHIFT_OPEN)
        assert len(opens) == 1
        assert opens[0].status is QueueStatus.SUCCESS

    def test_second_shift_open_fails(self, device, shifts, queue, worker):
        """Should reject opening a shift while one is open"""
        open_shift(shifts, worker, device.id)
        duplicate = shifts.request_open(device.id)

        worker.drain_device(device.id)

        assert queue.get(duplicate.id).status is QueueStatus.FAILED
        assert shifts.shift_history(device.id)[0].shift_number == 1


class TestShiftClose:
    """Tests for shift_close processing"""

    def test_close_waits_for_backlog(
        self, device, shifts, queue, worker, fiscalization, provider, clock
    ):
        """Should retry the close until the shift's receipts are done"""
        s1 = open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, NetworkError.timeout())
        sale = fiscalization.submit_sale(make_sale(device.id))
        close = shifts.request_close(device.id)

        worker.drain_device(device.id)
        assert queue.get(sale.id).status is QueueStatus.RETRY
        blocked = queue.get(close.id)
        assert blocked.status is QueueStatus.RETRY
        assert blocked.error_classification is ErrorClassification.PRECONDITION

        clock.advance(2)
        worker.drain_device(device.id)

        closed = shifts.get_shift(s1.id)
        assert queue.get(sale.id).status is QueueStatus.SUCCESS
        assert queue.get(close.id).status is QueueStatus.SUCCESS
        assert closed.status is ShiftStatus.CLOSED
        assert closed.total_sales == Decimal("10000")
        assert closed.z_report_number is not None

    def test_close_outlasts_receipt_backoff(
        self, device, shifts, queue, worker, fiscalization, provider, clock
    ):
        """Should keep waiting while a receipt works through its own backoff"""
        s1 = open_shift(shifts, worker, device.id)
        provider.script(OperationKind.RECEIPT_SALE, *[NetworkError.timeout() for _ in range(4)])
        sale = fiscalization.submit_sale(make_sale(device.id))
        close = shifts.request_close(device.id)

        for _ in range(30):
            clock.advance(1)
            worker.drain_device(device.id)

        done = queue.get(close.id)
        assert queue.get(sale.id).status is QueueStatus.SUCCESS
        assert done.status is QueueStatus.SUCCESS
        assert done.retry_count == 0
        closed = shifts.get_shift(s1.id)
        assert closed.status is ShiftStatus.CLOSED
        assert closed.receipts_count == 1

    def test_z_report_retried_after_local_close(
        self, device, shifts, queue, worker, provider, clock
    ):
        """Should keep the shift closed while the Z-report is retried"""
        s1 = open_shift(shifts, worker, device.id)
        provider.script(OperationKind.SHIFT_CLOSE, NetworkError.timeout())
        close = shifts.request_close(device.id)

        worker.drain_device(device.id)
        assert shifts.get_shift(s1.id).status is ShiftStatus.CLOSED
        assert queue.get(close.id).status is QueueStatus.RETRY
        assert shifts.pending_z_report(device.id).id == close.id

        clock.advance(1)
        worker.drain_device(device.id)
        assert queue.get(close.id).status is QueueStatus.SUCCESS
        assert shifts.pending_z_report(device.id) is None
        assert shifts.get_shift(s1.id).z_report_number is not None

    def test_open_waits_for_pending_z_report(
        self, device, shifts, queue, worker, provider, clock
    ):
        """Should not open a new shift before the previous Z-report is filed"""
        open_shift(shifts, worker, device.id)
        provider.script(OperationKind.SHIFT_CLOSE, NetworkError.timeout())
        shifts.request_close(device.id)
        worker.drain_device(device.id)

        reopen = shifts.request_open(device.id)
        clock.advance(0.5)
        worker.drain_device(device.id)
        assert queue.get(reopen.id).status is QueueStatus.RETRY

        # The reopen outranks the close and waits once more
        clock.advance(2)
        worker.drain_device(device.id)
        assert shifts.pending_z_report(device.id) is None
        assert queue.get(reopen.id).status is QueueStatus.RETRY

        clock.advance(2)
        worker.drain_device(device.id)
        assert queue.get(reopen.id).status is QueueStatus.SUCCESS
        assert shifts.current_shift(device.id).shift_number == 2


class TestXReport:
    """Tests for x_report processing"""

    def test_mismatch_is_recorded(self, device, shifts, queue, worker, provider):
        """Should store the provider report with its differences"""
        open_shift(shifts, worker, device.id)
        provider.script(
            OperationKind.X_REPORT,
            ProviderResult(total_sales=Decimal("5.00"), receipts_count=3),
        )
        item = shifts.request_x_report(device.id, requested_by="operator")

        worker.drain_device(device.id)

        done = queue.get(item.id)
        assert done.status is QueueStatus.SUCCESS
        assert set(done.result["mismatches"]) == {"total_sales", "receipts_count"}

    def test_needs_open_shift(self, device, shifts, queue, worker, provider):
        """Should wait for a shift before asking for an X-report"""
        item = shifts.request_x_report(device.id)

        worker.drain_device(device.id)

        assert queue.get(item.id).status is QueueStatus.RETRY
        assert provider.calls_for(OperationKind.X_REPORT) == []


class TestRecoveryAndLeases:
    """Tests for crash recovery and device leases"""

    def test_stale_item_is_recovered(
        self, device, shifts, queue, worker, fiscalization, clock, config
    ):
        """Should put an abandoned PROCESSING item back into play"""
        open_shift(shifts, worker, device.id)
        item = fiscalization.submit_sale(make_sale(device.id))
        queue.claim_next(device.id)

        clock.advance(config.stale_processing_after / 1000 + 1)
        worker.run_once()

        done = queue.get(item.id)
        assert done.status is QueueStatus.SUCCESS
        assert done.retry_count == 1

    def test_fiscalized_receipt_not_resubmitted(
        self, device, shifts, queue, ledger, worker, fiscalization, provider, clock, config
    ):
        """Should finish bookkeeping for a receipt fiscalized before a crash"""
        s1 = open_shift(shifts, worker, device.id)
        item = fiscalization.submit_sale(make_sale(device.id))
        claimed = queue.claim_next(device.id)
        receipt = ledger.materialize(claimed, s1, device)
        ledger.mark_success(receipt.id, ProviderResult(fiscal_number="FN-1", fiscal_sign="S"))

        clock.advance(config.stale_processing_after / 1000 + 1)
        worker.run_once()

        assert queue.get(item.id).status is QueueStatus.SUCCESS
        assert provider.calls_for(OperationKind.RECEIPT_SALE) == []
        assert ledger.get(receipt.id).fiscal_number == "FN-1"
        assert shifts.get_shift(s1.id).receipts_count == 1

    def test_device_leased_elsewhere_is_skipped(self, device, shifts, leases, worker):
        """Should not touch a device another worker holds"""
        shifts.request_open(device.id)
        leases.acquire(device.id, "worker-2")

        assert worker.drain_device(device.id) == 0
        assert shifts.current_shift(device.id) is None

    def test_lease_released_after_drain(self, device, shifts, leases, worker):
        shifts.request_open(device.id)
        worker.drain_device(device.id)
        assert leases.is_held(device.id) is False

    def test_only_active_devices_are_drained(self, device, registry, shifts, worker):
        """Should leave queues of inactive devices alone"""
        shifts.request_open(device.id)
        registry.set_maintenance(device.id)

        assert worker.run_once() == 0
        assert registry.get(device.id).status is DeviceStatus.MAINTENANCE


class TestWorkerPool:
    """Tests for the threaded pool"""

    def test_pool_drains_queue(self, device, shifts, queue, worker):
        item = shifts.request_open(device.id)
        pool = WorkerPool(lambda name: worker, size=1, poll_interval=10)

        pool.start()
        try:
            deadline = time.monotonic() + 5
            while queue.get(item.id).status is not QueueStatus.SUCCESS:
                assert time.monotonic() < deadline
                time.sleep(0.01)
        finally:
            pool.stop(timeout=5)

        assert pool.running is False
        assert shifts.current_shift(device.id) is not None

    def test_devices_drained_in_parallel(
        self, make_device, store, registry, queue, shifts, ledger, leases, policies,
        clock, config, fiscalization,
    ):
        """Should keep one call in flight per device and exact totals per shift"""
        tracker = InFlightTracker()
        providers = ProviderFactory(config, registry.get_credentials)
        providers.register(
            "sandbox",
            lambda device, credentials, cfg, audit: TrackedSandbox(device.id, tracker),
        )

        devices = [make_device(f"D{n}") for n in range(1, 5)]
        admitted = []
        for device in devices:
            shifts.request_open(device.id)
            for n in range(6):
                admitted.append(fiscalization.submit_sale(make_sale(
                    device.id, sale_id=f"{device.name}-{n}", price=str(1000 * (n + 1)),
                )))
            admitted.append(fiscalization.submit_sale(make_sale(
                device.id, sale_id=f"{device.name}-0", price="1000",
                receipt_type=ReceiptType.REFUND,
            )))

        def build_worker(name: str) -> QueueWorker:
            return QueueWorker(
                store, registry, queue, shifts, ledger, leases, providers, policies,
                clock, config, name=name,
            )

        pool = WorkerPool(build_worker, size=3, poll_interval=5)
        pool.start()
        try:
            deadline = time.monotonic() + 10
            while any(queue.get(i.id).status is not QueueStatus.SUCCESS for i in admitted):
                assert time.monotonic() < deadline
                time.sleep(0.01)
        finally:
            pool.stop(timeout=5)

        assert tracker.overlaps == []
        assert tracker.devices_seen == {d.id for d in devices}
        for device in devices:
            shift = shifts.current_shift(device.id)
            receipts = store.list_receipts(
                lambda r: r.shift_id == shift.id and r.status is ReceiptStatus.SUCCESS
            )
            sales = [r.total for r in receipts if r.type is ReceiptType.SALE]
            refunds = [r.total for r in receipts if r.type is ReceiptType.REFUND]
            assert shift.total_sales == sum(sales) == Decimal("21000")
            assert shift.total_refunds == sum(refunds) == Decimal("1000")
            assert shift.receipts_count == len(receipts) == 7


def test_handler_table_covers_every_operation(worker):
    assert set(worker._handlers) == set(OperationKind)
    assert isinstance(worker, QueueWorker)
