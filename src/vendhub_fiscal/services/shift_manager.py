"""
Shift manager

Enforces the OPEN/CLOSED lifecycle of fiscal shifts: at most one OPEN
shift per device, totals that only grow while OPEN, and no close while
queue items still reference the shift. Shift changes requested by
operators or by the auto schedule are enqueued, never applied inline.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.exceptions import (
    PendingOperationsError,
    ShiftAlreadyOpenError,
    ShiftNotFoundError,
    ShiftNotOpenError,
)
from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.models.queue import (
    ACTIVE_STATUSES,
    FiscalQueueItem,
    OperationKind,
    ShiftCloseBody,
    ShiftClosePayload,
    ShiftOpenBody,
    ShiftOpenPayload,
    XReportBody,
    XReportPayload,
)
from vendhub_fiscal.models.receipt import FiscalReceipt
from vendhub_fiscal.models.reports import ShiftTotals, XReport
from vendhub_fiscal.models.sale import ReceiptType
from vendhub_fiscal.models.shift import FiscalShift, ShiftStatus, VatSummaryLine
from vendhub_fiscal.providers.base import ProviderResult
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


def shift_open_key(device_id: str, shift_number: int) -> str:
    return f"shift_open:{device_id}:{shift_number}"


def shift_close_key(shift_id: str) -> str:
    return f"shift_close:{shift_id}"


class ShiftManager:
    """
    Shift lifecycle

    Example:
        >>> shifts = ShiftManager(store, queue, registry, clock)
        >>> shifts.request_open("device-1", cashier="Operator")
        >>> # the queue worker opens the shift at the provider, then:
        >>> shifts.current_shift("device-1").status
        <ShiftStatus.OPEN: 'open'>
    """

    def __init__(
        self,
        store: InMemoryFiscalStore,
        queue: FiscalQueue,
        registry: DeviceRegistry,
        clock: Optional[Clock] = None,
        config: Optional[FiscalConfig] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._registry = registry
        self._clock = clock or SystemClock()
        self._config = config or FiscalConfig()
        self._audit = audit or AuditLogger(enabled=False)

    # ============ Transitions ============

    def open_shift(
        self,
        device_id: str,
        cashier: str,
        provider_shift_id: Optional[str] = None,
        opened_by_item_id: Optional[str] = None,
    ) -> FiscalShift:
        """
        Open a new shift with the next sequence number

        Raises:
            ShiftAlreadyOpenError: If the device already has an OPEN shift
        """
        with self._store.transaction():
            current = self._store.get_open_shift(device_id)
            if current is not None:
                raise ShiftAlreadyOpenError(device_id, current.id)

            shift = FiscalShift(
                device_id=device_id,
                shift_number=self._store.last_shift_number(device_id) + 1,
                cashier_name=cashier,
                status=ShiftStatus.OPEN,
                opened_at=self._clock.now(),
                provider_shift_id=provider_shift_id,
                opened_by_item_id=opened_by_item_id,
            )
            self._store.put_shift(shift)

        self._audit.record(
            "shift.opened", entity_id=shift.id, device_id=device_id,
            shift_number=shift.shift_number, cashier=cashier,
        )
        logger.info(f"Shift #{shift.shift_number} opened on device {device_id}")
        return shift

    def close_shift(
        self,
        shift_id: str,
        exclude_item_id: Optional[str] = None,
        request_z_report: bool = True,
    ) -> FiscalShift:
        """
        Freeze totals and close a shift

        The Z-report is requested through a shift_close queue item unless
        the caller is that item itself.

        Raises:
            ShiftNotFoundError: If the shift does not exist
            ShiftNotOpenError: If the shift is not OPEN
            PendingOperationsError: If queue items still reference the shift
        """
        with self._store.transaction():
            shift = self.get_shift(shift_id)
            if not shift.is_open:
                raise ShiftNotOpenError(f"Shift {shift_id} is not open", shift_id=shift_id)

            pending = [
                item for item in self._queue.pending_for_shift(shift_id, exclude_item_id)
                if item.operation is not OperationKind.SHIFT_CLOSE
            ]
            if pending:
                raise PendingOperationsError(shift_id, [item.id for item in pending])

            shift.status = ShiftStatus.CLOSED
            shift.closed_at = self._clock.now()
            self._store.put_shift(shift)

            if request_z_report:
                self._enqueue_close(shift, ShiftCloseBody(reason="manual"))

        self._audit.record(
            "shift.closed", entity_id=shift.id, device_id=shift.device_id,
            shift_number=shift.shift_number, total_sales=str(shift.total_sales),
            total_refunds=str(shift.total_refunds), receipts_count=shift.receipts_count,
        )
        logger.info(
            f"Shift #{shift.shift_number} closed on device {shift.device_id}: "
            f"{shift.receipts_count} receipts, net {shift.net_total}"
        )
        return shift

    def apply_receipt_to_shift(self, shift_id: str, receipt: FiscalReceipt) -> FiscalShift:
        """
        Add a fiscalized receipt to the shift totals (once per receipt)

        Raises:
            ShiftNotOpenError: If the shift is no longer OPEN
        """
        with self._store.transaction():
            shift = self.get_shift(shift_id)
            if not shift.is_open:
                raise ShiftNotOpenError(
                    f"Cannot apply receipt {receipt.id}: shift {shift_id} is {shift.status.value}",
                    shift_id=shift_id,
                )
            if receipt.id in shift.applied_receipt_ids:
                return shift

            if receipt.type is ReceiptType.SALE:
                shift.total_sales += receipt.total
                shift.total_cash += receipt.payment.cash
                shift.total_card += receipt.payment.card
                shift.total_other += receipt.payment.other
                for line in receipt.vat_breakdown:
                    self._add_vat(shift, line.vat_rate, line.gross_amount, line.vat_amount)
            else:
                shift.total_refunds += receipt.total
            shift.receipts_count += 1
            shift.applied_receipt_ids.append(receipt.id)
            self._store.put_shift(shift)

        return shift

    def record_z_report(self, shift_id: str, result: ProviderResult) -> FiscalShift:
        """Store the Z-report of a closed shift (first report wins)"""
        with self._store.transaction():
            shift = self.get_shift(shift_id)
            if shift.is_open:
                raise ShiftNotOpenError(
                    f"Shift {shift_id} must be closed before its Z-report", shift_id=shift_id
                )
            if shift.z_report_number:
                return shift

            shift.z_report_number = result.z_report_number or "unnumbered"
            shift.z_report_url = result.z_report_url
            shift.z_report = result.model_dump(mode="json")
            self._store.put_shift(shift)

        self._audit.record(
            "shift.z_report", entity_id=shift.id, device_id=shift.device_id,
            z_report_number=shift.z_report_number,
        )
        return shift

    # ============ Queue requests ============

    def request_open(
        self, device_id: str, cashier: Optional[str] = None
    ) -> FiscalQueueItem:
        """Enqueue a shift_open for the device's next shift number"""
        device = self._registry.get(device_id)
        next_number = self._store.last_shift_number(device_id) + 1
        payload = ShiftOpenPayload(
            device_id=device_id,
            idempotency_key=shift_open_key(device_id, next_number),
            body=ShiftOpenBody(cashier_name=self._cashier_for(device, cashier)),
        )
        return self._queue.enqueue(
            device_id, OperationKind.SHIFT_OPEN, payload,
            organization_id=device.organization_id,
        )

    def request_close(
        self, device_id: str, shift_id: Optional[str] = None, reason: str = "manual"
    ) -> FiscalQueueItem:
        """
        Enqueue a shift_close for the device's open shift

        Raises:
            ShiftNotOpenError: If there is no open shift to close
        """
        if shift_id is None:
            current = self._store.get_open_shift(device_id)
            if current is None:
                raise ShiftNotOpenError(f"No open shift on device {device_id}")
            shift = current
        else:
            shift = self.get_shift(shift_id)
        return self._enqueue_close(shift, ShiftCloseBody(reason=reason))

    def request_x_report(
        self, device_id: str, requested_by: Optional[str] = None
    ) -> FiscalQueueItem:
        """Enqueue an interim report request; every request is a separate report"""
        device = self._registry.get(device_id)
        current = self._store.get_open_shift(device_id)
        shift_ref = current.id if current else "none"
        payload = XReportPayload(
            device_id=device_id,
            idempotency_key=f"x_report:{device_id}:{shift_ref}:{uuid.uuid4().hex}",
            body=XReportBody(requested_by=requested_by),
        )
        logger.debug(
            f"X-report requested for device {device_id} "
            f"(open shift: {current.id if current else None})"
        )
        return self._queue.enqueue(
            device_id, OperationKind.X_REPORT, payload,
            organization_id=device.organization_id,
        )

    def run_auto_schedule(self, now: Optional[datetime] = None) -> List[FiscalQueueItem]:
        """
        Enqueue scheduled shift changes for devices with auto-management

        A shift open before today's close time (device time zone) gets a
        shift_close; a device without an open shift after today's open time,
        whose last shift started before it, gets a shift_open.
        """
        now = now or self._clock.now()
        enqueued = []

        for device in self._registry.active_devices():
            settings = device.settings
            local = now.astimezone(settings.zone)
            current = self._store.get_open_shift(device.id)

            if settings.auto_close_shift and settings.close_time and current is not None:
                close_at = datetime.combine(local.date(), settings.close_time, tzinfo=settings.zone)
                if local >= close_at and current.opened_at < close_at:
                    enqueued.append(
                        self._enqueue_close(current, ShiftCloseBody(reason="schedule"))
                    )

            if settings.auto_open_shift and settings.open_time and current is None:
                open_at = datetime.combine(local.date(), settings.open_time, tzinfo=settings.zone)
                last = self._last_shift(device.id)
                if local >= open_at and (last is None or last.opened_at < open_at):
                    enqueued.append(self.request_open(device.id))

        return enqueued

    # ============ Reads ============

    def get_shift(self, shift_id: str) -> FiscalShift:
        shift = self._store.get_shift(shift_id)
        if shift is None:
            raise ShiftNotFoundError(shift_id)
        return shift

    def current_shift(self, device_id: str) -> Optional[FiscalShift]:
        return self._store.get_open_shift(device_id)

    def shift_history(self, device_id: str, limit: int = 10) -> List[FiscalShift]:
        """Shifts of a device, newest first"""
        shifts = self._store.list_shifts(device_id)
        shifts.reverse()
        return shifts[:limit]

    def shift_totals(self, shift_id: str) -> ShiftTotals:
        return ShiftTotals.from_shift(self.get_shift(shift_id))

    def x_report(self, device_id: str) -> XReport:
        """
        Local interim report of the open shift

        Raises:
            ShiftNotOpenError: If the device has no open shift
        """
        shift = self._store.get_open_shift(device_id)
        if shift is None:
            raise ShiftNotOpenError(f"No open shift on device {device_id}")
        return XReport(
            **ShiftTotals.from_shift(shift).model_dump(),
            generated_at=self._clock.now(),
            source="local",
        )

    def pending_z_report(self, device_id: str) -> Optional[FiscalQueueItem]:
        """
        The unfinished shift_close of the device's last closed shift, if any

        While it is pending the provider still has that shift open, so no new
        shift may be opened.
        """
        last = self._last_shift(device_id)
        if last is None or last.is_open or last.z_report_number:
            return None
        for item in self._queue.items_for_key(shift_close_key(last.id)):
            if item.status in ACTIVE_STATUSES:
                return item
        return None

    # ============ Private Helper Methods ============

    def _enqueue_close(self, shift: FiscalShift, body: ShiftCloseBody) -> FiscalQueueItem:
        device = self._registry.get(shift.device_id)
        payload = ShiftClosePayload(
            device_id=shift.device_id,
            idempotency_key=shift_close_key(shift.id),
            shift_id=shift.id,
            body=body,
        )
        return self._queue.enqueue(
            shift.device_id, OperationKind.SHIFT_CLOSE, payload,
            organization_id=device.organization_id,
        )

    def _last_shift(self, device_id: str) -> Optional[FiscalShift]:
        shifts = self._store.list_shifts(device_id)
        return shifts[-1] if shifts else None

    def _cashier_for(self, device: FiscalDevice, cashier: Optional[str]) -> str:
        return cashier or device.settings.default_cashier or self._config.default_cashier

    @staticmethod
    def _add_vat(shift: FiscalShift, rate: Decimal, gross: Decimal, vat: Decimal) -> None:
        for line in shift.vat_summary:
            if line.vat_rate == rate:
                line.gross_amount += gross
                line.vat_amount += vat
                return
        shift.vat_summary.append(VatSummaryLine(vat_rate=rate, gross_amount=gross, vat_amount=vat))
