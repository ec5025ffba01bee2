"""
Queue worker

Drains fiscal queues one device at a time. A worker claims a device lease,
then processes that device's eligible items in priority order, calling the
provider adapter for each one. Every outcome ends as a queue transition:

* success: fiscal data persisted, shift updated, item SUCCESS
* transient or precondition failure: item RETRY with backoff
* permanent failure, invariant violation or spent budget: item FAILED

The worker never raises out of its processing loop.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.exceptions import (
    ConfigError,
    ErrorClassification,
    FiscalError,
    InvariantViolationError,
    PendingOperationsError,
    RetryLimitExceededError,
    ShiftAlreadyOpenError,
    ShiftNotOpenError,
    classify_error,
)
from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.models.lease import DeviceLease
from vendhub_fiscal.models.queue import FiscalQueueItem, OperationKind, QueueStatus
from vendhub_fiscal.models.receipt import FiscalReceipt, ReceiptStatus
from vendhub_fiscal.models.shift import FiscalShift
from vendhub_fiscal.providers.base import ProviderResult
from vendhub_fiscal.providers.factory import ProviderFactory
from vendhub_fiscal.services.device_lease import DeviceLeaseManager
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.retry_policy import RetryPolicies
from vendhub_fiscal.services.shift_manager import ShiftManager
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


Handler = Callable[[FiscalQueueItem, FiscalDevice, DeviceLease], None]


class QueueWorker:
    """
    Single queue worker

    Example:
        >>> worker = QueueWorker(store, registry, queue, shifts, ledger, leases,
        ...                      providers, policies, clock, config, name="worker-1")
        >>> worker.run_once()
        3
    """

    def __init__(
        self,
        store: InMemoryFiscalStore,
        registry: DeviceRegistry,
        queue: FiscalQueue,
        shifts: ShiftManager,
        ledger: ReceiptLedger,
        leases: DeviceLeaseManager,
        providers: ProviderFactory,
        policies: RetryPolicies,
        clock: Optional[Clock] = None,
        config: Optional[FiscalConfig] = None,
        name: str = "worker-1",
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._shifts = shifts
        self._ledger = ledger
        self._leases = leases
        self._providers = providers
        self._policies = policies
        self._clock = clock or SystemClock()
        self._config = config or FiscalConfig()
        self.name = name

        self._handlers: Dict[OperationKind, Handler] = {
            OperationKind.RECEIPT_SALE: self._handle_receipt,
            OperationKind.RECEIPT_REFUND: self._handle_receipt,
            OperationKind.SHIFT_OPEN: self._handle_shift_open,
            OperationKind.SHIFT_CLOSE: self._handle_shift_close,
            OperationKind.X_REPORT: self._handle_x_report,
        }
        missing = set(OperationKind) - set(self._handlers)
        if missing:
            raise ConfigError(
                f"No handler for operations: {', '.join(sorted(m.value for m in missing))}"
            )

    # ============ Loop ============

    def run_once(self) -> int:
        """
        One pass: recover stale items, enqueue scheduled shift changes,
        then drain every ACTIVE device

        Returns:
            Number of items processed
        """
        self.recover_stale()
        self._shifts.run_auto_schedule(self._clock.now())
        processed = 0
        for device in self._registry.active_devices():
            processed += self.drain_device(device.id)
        return processed

    def drain_device(self, device_id: str, max_items: Optional[int] = None) -> int:
        """Process eligible items of one device while holding its lease"""
        lease = self._leases.acquire(device_id, self.name)
        if lease is None:
            return 0

        processed = 0
        try:
            while max_items is None or processed < max_items:
                item = self._queue.claim_next(device_id)
                if item is None:
                    break
                self.process(item, lease)
                processed += 1

                lease = self._leases.renew(lease)
                if lease is None:
                    break
        finally:
            if lease is not None:
                self._leases.release(lease)
        return processed

    def recover_stale(self) -> List[FiscalQueueItem]:
        """Put items abandoned in PROCESSING back into play"""
        recovered = self._queue.recover_stale(
            self._config.stale_processing_after,
            skip_devices=self._leases.held_devices(),
        )
        for item in recovered:
            if item.receipt_id is None:
                continue
            if item.status is QueueStatus.FAILED:
                self._ledger.mark_failed(item.receipt_id, item.last_error, item.retry_count)
            else:
                self._ledger.mark_pending(item.receipt_id, item.last_error, item.retry_count)
        return recovered

    def process(self, item: FiscalQueueItem, lease: DeviceLease) -> None:
        """Run a claimed (PROCESSING) item to its next state; never raises"""
        try:
            device = self._registry.get(item.device_id)
            self._handlers[item.operation](item, device, lease)
        except Exception as e:
            self._handle_failure(item, e)

    # ============ Handlers ============

    def _handle_receipt(
        self, item: FiscalQueueItem, device: FiscalDevice, lease: DeviceLease
    ) -> None:
        existing = self._ledger.find(item.receipt_id)
        if existing is not None and existing.status is ReceiptStatus.SUCCESS:
            # Fiscalized before a crash; finish the bookkeeping only
            self._settle_receipt(item, existing)
            return

        shift = self._target_shift(item, device, existing, lease)
        receipt = self._ledger.materialize(item, shift, device)
        result = self._call_provider(device, item)
        receipt = self._ledger.mark_success(receipt.id, result)
        self._settle_receipt(item, receipt)

    def _handle_shift_open(
        self, item: FiscalQueueItem, device: FiscalDevice, lease: DeviceLease
    ) -> None:
        current = self._shifts.current_shift(device.id)
        if current is not None and current.opened_by_item_id == item.id:
            self._queue.mark_success(item.id, self._shift_result(current))
            return

        blocking = self._shifts.pending_z_report(device.id)
        if blocking is not None:
            raise PendingOperationsError(blocking.shift_id, [blocking.id])

        if current is not None:
            raise ShiftAlreadyOpenError(device.id, current.id)

        result = self._call_provider(device, item)
        with self._store.transaction():
            shift = self._shifts.open_shift(
                device.id,
                item.payload.body.cashier_name,
                provider_shift_id=result.provider_shift_id,
                opened_by_item_id=item.id,
            )
            self._queue.mark_success(item.id, self._shift_result(shift))

    def _handle_shift_close(
        self, item: FiscalQueueItem, device: FiscalDevice, lease: DeviceLease
    ) -> None:
        shift_id = item.payload.shift_id
        if shift_id is None:
            current = self._shifts.current_shift(device.id)
            if current is None:
                self._queue.mark_success(item.id, {"closed": False, "reason": "no open shift"})
                return
            shift_id = current.id

        shift = self._shifts.get_shift(shift_id)
        if shift.is_open:
            # PendingOperationsError retries until the shift's backlog drains
            shift = self._shifts.close_shift(
                shift.id, exclude_item_id=item.id, request_z_report=False
            )

        if shift.z_report_number:
            self._queue.mark_success(item.id, self._shift_result(shift))
            return

        result = self._call_provider(device, item)
        with self._store.transaction():
            shift = self._shifts.record_z_report(shift.id, result)
            self._queue.mark_success(item.id, self._shift_result(shift))

    def _handle_x_report(
        self, item: FiscalQueueItem, device: FiscalDevice, lease: DeviceLease
    ) -> None:
        shift = self._shifts.current_shift(device.id)
        if shift is None:
            raise ShiftNotOpenError(f"No open shift on device {device.id}")

        result = self._call_provider(device, item)
        mismatches = self._compare_totals(shift, result)
        if mismatches:
            logger.warning(
                f"X-report of device {device.id} differs from local totals "
                f"of shift #{shift.shift_number}: {mismatches}"
            )
        self._queue.mark_success(item.id, {
            "shift_id": shift.id,
            "report": result.model_dump(mode="json", exclude={"raw"}),
            "mismatches": mismatches,
        })

    # ============ Receipt helpers ============

    def _target_shift(
        self,
        item: FiscalQueueItem,
        device: FiscalDevice,
        existing: Optional[FiscalReceipt],
        lease: DeviceLease,
    ) -> FiscalShift:
        """
        The OPEN shift a receipt belongs to

        Raises:
            InvariantViolationError: If the receipt's shift was closed under it
            ShiftNotOpenError: If the device has no open shift yet
        """
        shift_id = existing.shift_id if existing is not None else item.payload.shift_id
        if shift_id is not None:
            shift = self._shifts.get_shift(shift_id)
            if not shift.is_open:
                raise InvariantViolationError(
                    f"Receipt {item.receipt_id} targets {shift.status.value} shift {shift_id}",
                    details={"shift_id": shift_id, "item_id": item.id},
                )
            return shift

        current = self._shifts.current_shift(device.id)
        if current is not None:
            return current

        if device.settings.auto_open_shift and self._shifts.pending_z_report(device.id) is None:
            self._auto_open(device, lease)
            current = self._shifts.current_shift(device.id)
            if current is not None:
                return current

        raise ShiftNotOpenError(f"No open shift on device {device.id}")

    def _auto_open(self, device: FiscalDevice, lease: DeviceLease) -> None:
        """Enqueue a shift_open and run it now, inside the current lease"""
        open_item = self._shifts.request_open(device.id)
        if not self._queue.is_eligible(open_item, self._clock.now()):
            return

        logger.info(f"Auto-opening shift on device {device.id} (item {open_item.id})")
        claimed = self._queue.mark_processing(open_item.id)
        self.process(claimed, lease)
        self._leases.renew(lease)

    def _settle_receipt(self, item: FiscalQueueItem, receipt: FiscalReceipt) -> None:
        """Apply a fiscalized receipt to its shift and close out the item"""
        with self._store.transaction():
            try:
                self._shifts.apply_receipt_to_shift(receipt.shift_id, receipt)
            except ShiftNotOpenError as e:
                raise InvariantViolationError(
                    f"Fiscalized receipt {receipt.id} cannot be applied: {str(e)}",
                    details={"shift_id": receipt.shift_id, "receipt_id": receipt.id},
                ) from e

            self._queue.mark_success(item.id, {
                "receipt_id": receipt.id,
                "shift_id": receipt.shift_id,
                "fiscal_number": receipt.fiscal_number,
                "fiscal_sign": receipt.fiscal_sign,
                "receipt_url": receipt.receipt_url,
                "qr_code_url": receipt.qr_code_url,
            })

    # ============ Provider ============

    def _call_provider(self, device: FiscalDevice, item: FiscalQueueItem) -> ProviderResult:
        provider = self._providers.get(device)
        try:
            result = provider.submit(
                item.operation,
                item.payload,
                item.idempotency_key,
                self._config.provider_timeout_seconds,
            )
        except Exception as e:
            self._registry.record_sync(device.id, "error", str(e))
            raise
        self._registry.record_sync(device.id, "ok")
        return result

    # ============ Failures ============

    def _handle_failure(self, item: FiscalQueueItem, error: Exception) -> None:
        classification = classify_error(error)
        if isinstance(error, FiscalError):
            message = error.get_description()
        else:
            message = f"{type(error).__name__}: {str(error)}"

        try:
            if classification is ErrorClassification.INVARIANT:
                logger.critical(
                    f"Invariant violated by {item.operation.value} item {item.id} "
                    f"on device {item.device_id}: {message}"
                )
                self._fail(item, message, classification)
            elif classification is ErrorClassification.PERMANENT:
                self._fail(item, message, classification)
            else:
                # Backlog waits do not spend the retry budget
                count_attempt = not isinstance(error, PendingOperationsError)
                self._retry(item, message, classification, count_attempt)
        except Exception:
            # Leave the item in PROCESSING; stale recovery picks it up
            logger.exception(f"Could not record the outcome of item {item.id}")

    def _retry(
        self,
        item: FiscalQueueItem,
        message: str,
        classification: ErrorClassification,
        count_attempt: bool = True,
    ) -> None:
        now = self._clock.now()
        if classification is ErrorClassification.PRECONDITION:
            next_retry_at = self._policies.precondition_retry_at(item.operation, now)
        else:
            next_retry_at = self._policies.next_retry_at(item.operation, item.retry_count, now)

        try:
            updated = self._queue.mark_retry(
                item.id, message, next_retry_at, classification, count_attempt=count_attempt
            )
        except RetryLimitExceededError:
            self._fail(item, message, classification)
            return

        if item.receipt_id is not None:
            self._ledger.mark_pending(item.receipt_id, message, updated.retry_count)

    def _fail(
        self, item: FiscalQueueItem, message: str, classification: ErrorClassification
    ) -> None:
        failed = self._queue.mark_failed(item.id, message, classification)
        if item.receipt_id is not None:
            self._ledger.mark_failed(item.receipt_id, message, failed.retry_count)

    # ============ Helpers ============

    @staticmethod
    def _shift_result(shift: FiscalShift) -> Dict[str, Any]:
        return {
            "shift_id": shift.id,
            "shift_number": shift.shift_number,
            "status": shift.status.value,
            "provider_shift_id": shift.provider_shift_id,
            "z_report_number": shift.z_report_number,
            "z_report_url": shift.z_report_url,
        }

    @staticmethod
    def _compare_totals(shift: FiscalShift, result: ProviderResult) -> Dict[str, Any]:
        mismatches = {}
        for field in ("total_sales", "total_refunds"):
            remote = getattr(result, field)
            local = getattr(shift, field)
            if remote is not None and remote != local:
                mismatches[field] = {"local": str(local), "provider": str(remote)}
        if result.receipts_count is not None and result.receipts_count != shift.receipts_count:
            mismatches["receipts_count"] = {
                "local": shift.receipts_count, "provider": result.receipts_count,
            }
        return mismatches


class WorkerPool:
    """
    Pool of worker threads

    Each thread runs its own QueueWorker over the shared services. Device
    leases keep the threads off each other's devices.
    """

    def __init__(
        self,
        worker_factory: Callable[[str], QueueWorker],
        size: int = 4,
        poll_interval: int = 1000,
        on_idle: Optional[Callable[[], None]] = None,
    ) -> None:
        self._workers = [worker_factory(f"worker-{i + 1}") for i in range(size)]
        self._poll_interval = poll_interval / 1000.0
        self._on_idle = on_idle
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for worker in self._workers:
            thread = threading.Thread(
                target=self._run, args=(worker,), name=worker.name, daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} fiscal queue workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Fiscal queue workers stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def _run(self, worker: QueueWorker) -> None:
        while not self._stop.is_set():
            try:
                processed = worker.run_once()
                if processed == 0 and self._on_idle is not None:
                    self._on_idle()
            except Exception:
                logger.exception(f"{worker.name} pass failed")
                processed = 0
            if processed == 0:
                self._stop.wait(self._poll_interval)
