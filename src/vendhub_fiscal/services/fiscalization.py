"""
Fiscalization service

Entry point for upstream systems: admits sale and refund events into the
fiscal queue and answers operator queries about receipts, shifts and
failed operations.
"""

import logging
import uuid
from typing import List, Optional

from vendhub_fiscal.exceptions import (
    DeviceUnavailableError,
    ReceiptNotFoundError,
    ValidationError,
)
from vendhub_fiscal.models.queue import (
    FiscalQueueItem,
    OperationKind,
    QueueStatus,
    ReceiptPayload,
)
from vendhub_fiscal.models.receipt import FiscalReceipt, ReceiptDraft, ReceiptStatus
from vendhub_fiscal.models.reports import (
    DeviceStatistics,
    ReceiptStatusView,
    ShiftTotals,
)
from vendhub_fiscal.models.sale import ReceiptType, SaleEvent
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.receipt_builder import ReceiptBuilder
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.shift_manager import ShiftManager
from vendhub_fiscal.store.memory import InMemoryFiscalStore


logger = logging.getLogger(__name__)


def receipt_operation(receipt_type: ReceiptType) -> OperationKind:
    if receipt_type is ReceiptType.REFUND:
        return OperationKind.RECEIPT_REFUND
    return OperationKind.RECEIPT_SALE


def sale_key(sale_id: str, receipt_type: ReceiptType = ReceiptType.SALE) -> str:
    """Idempotency key of a sale or refund event"""
    return f"{sale_id}:{receipt_operation(receipt_type).value}"


class FiscalizationService:
    """
    Sale admission and read surface

    Example:
        >>> service = FiscalizationService(store, registry, queue, shifts, ledger, builder)
        >>> item = service.submit_sale(sale)
        >>> service.receipt_status(item.receipt_id).status
        <ReceiptStatus.PENDING: 'pending'>
    """

    def __init__(
        self,
        store: InMemoryFiscalStore,
        registry: DeviceRegistry,
        queue: FiscalQueue,
        shifts: ShiftManager,
        ledger: ReceiptLedger,
        builder: Optional[ReceiptBuilder] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._queue = queue
        self._shifts = shifts
        self._ledger = ledger
        self._builder = builder or ReceiptBuilder()

    # ============ Admission ============

    def submit_sale(
        self, sale: SaleEvent, idempotency_key: Optional[str] = None
    ) -> FiscalQueueItem:
        """
        Build the receipt draft of a sale and enqueue it

        Submitting the same sale again while its item is not terminal
        returns that item.

        Raises:
            DeviceNotFoundError: If the device does not exist
            DeviceUnavailableError: If the device is retired
            MissingTaxCodeError: If a line has no resolvable tax code
            PaymentMismatchError: If the payment does not cover the total
        """
        device = self._registry.get(sale.device_id)
        if device.is_retired:
            raise DeviceUnavailableError(device.id, "device is retired")
        draft = self._builder.build(sale)
        self._check_device_rates(draft, device.settings.vat_rates)

        operation = receipt_operation(sale.type)
        key = idempotency_key or sale_key(sale.sale_id, sale.type)

        with self._store.transaction():
            shift = self._shifts.current_shift(device.id)
            payload = ReceiptPayload(
                operation=operation.value,
                device_id=device.id,
                idempotency_key=key,
                shift_id=shift.id if shift is not None else None,
                receipt_id=str(uuid.uuid4()),
                body=draft,
            )
            item = self._queue.enqueue(
                device.id, operation, payload, organization_id=device.organization_id
            )

        logger.debug(f"Sale {sale.sale_id} admitted as item {item.id} (receipt {item.receipt_id})")
        return item

    # ============ Reads ============

    def receipt_status(self, receipt_id: str) -> ReceiptStatusView:
        """
        Fiscalization status of a receipt

        Before the worker has created the receipt record the status is
        derived from its queue item.

        Raises:
            ReceiptNotFoundError: If no receipt or queue item has this id
        """
        items = self._store.list_items(lambda i: i.receipt_id == receipt_id)
        if not items:
            raise ReceiptNotFoundError(receipt_id)
        return self._view(items[-1])

    def sale_status(
        self, sale_id: str, receipt_type: ReceiptType = ReceiptType.SALE
    ) -> ReceiptStatusView:
        """Status of the latest admission of a sale"""
        items = self._queue.items_for_key(sale_key(sale_id, receipt_type))
        if not items:
            raise ReceiptNotFoundError(sale_id)
        return self._view(items[-1])

    def failed_items(
        self,
        organization_id: Optional[str] = None,
        device_id: Optional[str] = None,
        include_acknowledged: bool = False,
    ) -> List[FiscalQueueItem]:
        return self._queue.failed_items(organization_id, device_id, include_acknowledged)

    def shift_totals(self, shift_id: str) -> ShiftTotals:
        return self._shifts.shift_totals(shift_id)

    def device_statistics(self, device_id: str) -> DeviceStatistics:
        device = self._registry.get(device_id)
        shift = self._shifts.current_shift(device_id)
        return DeviceStatistics(
            device_id=device.id,
            name=device.name,
            status=device.status,
            current_shift=ShiftTotals.from_shift(shift) if shift is not None else None,
            queue=self._queue.stats(device_id),
            last_sync=device.last_sync,
        )

    def list_receipts(
        self,
        organization_id: str,
        device_id: Optional[str] = None,
        shift_id: Optional[str] = None,
        receipt_type: Optional[ReceiptType] = None,
        status: Optional[ReceiptStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FiscalReceipt]:
        return self._ledger.list(
            organization_id, device_id, shift_id, receipt_type, status, limit, offset
        )

    def list_queue(
        self,
        organization_id: str,
        device_id: Optional[str] = None,
        status: Optional[QueueStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[FiscalQueueItem]:
        return self._queue.list_items(
            organization_id=organization_id, device_id=device_id, status=status,
            limit=limit, offset=offset,
        )

    # ============ Operator actions ============

    def acknowledge(
        self, item_id: str, acknowledged_by: str, note: Optional[str] = None
    ) -> FiscalQueueItem:
        """Sign off a FAILED item; its FAILED receipt becomes CANCELLED"""
        with self._store.transaction():
            item = self._queue.acknowledge(item_id, acknowledged_by, note)
            if item.receipt_id is not None:
                receipt = self._ledger.find(item.receipt_id)
                if receipt is not None and receipt.status is ReceiptStatus.FAILED:
                    self._ledger.cancel(receipt.id)
        return item

    def update_receipt_metadata(self, receipt_id: str, **metadata) -> FiscalReceipt:
        return self._ledger.update_metadata(receipt_id, **metadata)

    # ============ Private Helper Methods ============

    def _view(self, item: FiscalQueueItem) -> ReceiptStatusView:
        receipt = self._ledger.find(item.receipt_id)
        if receipt is None:
            if item.status is QueueStatus.FAILED:
                status = ReceiptStatus.FAILED
            elif item.status is QueueStatus.PROCESSING:
                status = ReceiptStatus.PROCESSING
            else:
                status = ReceiptStatus.PENDING
            return ReceiptStatusView(
                receipt_id=item.receipt_id,
                sale_id=item.payload.body.sale_id,
                device_id=item.device_id,
                status=status,
                queue_item_id=item.id,
                queue_status=item.status,
                retry_count=item.retry_count,
                last_error=item.last_error,
                shift_id=item.shift_id,
            )

        return ReceiptStatusView(
            receipt_id=receipt.id,
            sale_id=receipt.sale_id,
            device_id=receipt.device_id,
            status=receipt.status,
            queue_item_id=item.id,
            queue_status=item.status,
            retry_count=item.retry_count,
            last_error=item.last_error or receipt.last_error,
            shift_id=receipt.shift_id,
            fiscal_number=receipt.fiscal_number,
            fiscal_sign=receipt.fiscal_sign,
            receipt_url=receipt.receipt_url,
            qr_code_url=receipt.qr_code_url,
        )

    @staticmethod
    def _check_device_rates(draft: ReceiptDraft, allowed) -> None:
        if not allowed:
            return
        for line in draft.lines:
            if line.vat_rate not in allowed:
                raise ValidationError(
                    f"Line {line.line_no}: VAT rate {line.vat_rate}% is not enabled on the device",
                    field="vat_rate",
                    details={"line_no": line.line_no, "allowed": [str(r) for r in allowed]},
                )
