"""
Receipt ledger

Keeps FiscalReceipt records. The queue worker creates a receipt once its
shift is known to be OPEN and drives its status from there; a receipt
reaches SUCCESS at most once and afterwards only its display metadata may
change.
"""

import logging
from typing import List, Optional

from vendhub_fiscal.exceptions import (
    InvalidTransitionError,
    InvariantViolationError,
    ReceiptNotFoundError,
)
from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.models.queue import FiscalQueueItem, ReceiptPayload
from vendhub_fiscal.models.receipt import FiscalReceipt, ReceiptMetadata, ReceiptStatus
from vendhub_fiscal.models.sale import ReceiptType
from vendhub_fiscal.models.shift import FiscalShift
from vendhub_fiscal.providers.base import ProviderResult
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class ReceiptLedger:
    """FiscalReceipt records and their status"""

    def __init__(
        self,
        store: InMemoryFiscalStore,
        clock: Optional[Clock] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._audit = audit or AuditLogger(enabled=False)

    def get(self, receipt_id: str) -> FiscalReceipt:
        receipt = self._store.get_receipt(receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        return receipt

    def find(self, receipt_id: str) -> Optional[FiscalReceipt]:
        return self._store.get_receipt(receipt_id)

    def materialize(
        self, item: FiscalQueueItem, shift: FiscalShift, device: FiscalDevice
    ) -> FiscalReceipt:
        """
        Create the receipt of a queue item in PROCESSING, or move an existing
        one back to PROCESSING for another attempt

        Raises:
            InvariantViolationError: If the shift is not OPEN
        """
        payload: ReceiptPayload = item.payload
        with self._store.transaction():
            receipt = self._store.get_receipt(payload.receipt_id)
            now = self._clock.now()

            if receipt is None:
                if not shift.is_open:
                    raise InvariantViolationError(
                        f"Receipt {payload.receipt_id} cannot be created in "
                        f"{shift.status.value} shift {shift.id}",
                        details={"shift_id": shift.id},
                    )
                draft = payload.body
                receipt = FiscalReceipt(
                    id=payload.receipt_id,
                    organization_id=device.organization_id,
                    device_id=device.id,
                    shift_id=shift.id,
                    queue_item_id=item.id,
                    sale_id=draft.sale_id,
                    machine_id=draft.machine_id,
                    type=draft.type,
                    status=ReceiptStatus.PROCESSING,
                    lines=list(draft.lines),
                    vat_breakdown=list(draft.vat_breakdown),
                    total=draft.total,
                    vat_total=draft.vat_total,
                    payment=draft.payment,
                    retry_count=item.retry_count,
                    metadata=ReceiptMetadata(operator_name=draft.operator_name),
                    created_at=now,
                    updated_at=now,
                )
                self._store.put_receipt(receipt)
                self._audit.record(
                    "receipt.created", entity_id=receipt.id, device_id=device.id,
                    shift_id=shift.id, sale_id=receipt.sale_id, total=str(receipt.total),
                )
                return receipt

            if receipt.status is ReceiptStatus.PENDING:
                receipt.status = ReceiptStatus.PROCESSING
                receipt.updated_at = now
                self._store.put_receipt(receipt)
            elif receipt.status is not ReceiptStatus.PROCESSING:
                raise InvalidTransitionError(
                    "Receipt", receipt.id, receipt.status.value, ReceiptStatus.PROCESSING.value
                )
            return receipt

    def mark_success(self, receipt_id: str, result: ProviderResult) -> FiscalReceipt:
        """
        Persist fiscal data; PROCESSING -> SUCCESS

        Raises:
            InvariantViolationError: If the receipt was already fiscalized
        """
        with self._store.transaction():
            receipt = self.get(receipt_id)
            if receipt.status is ReceiptStatus.SUCCESS:
                raise InvariantViolationError(
                    f"Receipt {receipt_id} is already fiscalized as {receipt.fiscal_number}",
                    details={"fiscal_number": receipt.fiscal_number},
                )
            if receipt.status is not ReceiptStatus.PROCESSING:
                raise InvalidTransitionError(
                    "Receipt", receipt.id, receipt.status.value, ReceiptStatus.SUCCESS.value
                )

            now = self._clock.now()
            receipt.status = ReceiptStatus.SUCCESS
            receipt.fiscal_number = result.fiscal_number
            receipt.fiscal_sign = result.fiscal_sign
            receipt.receipt_url = result.receipt_url
            receipt.qr_code_url = result.qr_code_url
            receipt.provider_receipt_id = result.provider_receipt_id
            receipt.last_error = None
            receipt.fiscalized_at = now
            receipt.updated_at = now
            self._store.put_receipt(receipt)

        self._audit.record(
            "receipt.fiscalized", entity_id=receipt.id, device_id=receipt.device_id,
            fiscal_number=receipt.fiscal_number, shift_id=receipt.shift_id,
        )
        return receipt

    def mark_pending(self, receipt_id: str, error: str, retry_count: int) -> Optional[FiscalReceipt]:
        """Back to PENDING after a retryable failure"""
        return self._settle(receipt_id, ReceiptStatus.PENDING, error, retry_count)

    def mark_failed(self, receipt_id: str, error: str, retry_count: int) -> Optional[FiscalReceipt]:
        """FAILED after a permanent failure or an exhausted retry budget"""
        return self._settle(receipt_id, ReceiptStatus.FAILED, error, retry_count)

    def cancel(self, receipt_id: str) -> FiscalReceipt:
        """FAILED -> CANCELLED, once an operator has acknowledged the failure"""
        with self._store.transaction():
            receipt = self.get(receipt_id)
            if receipt.status is not ReceiptStatus.FAILED:
                raise InvalidTransitionError(
                    "Receipt", receipt.id, receipt.status.value, ReceiptStatus.CANCELLED.value
                )
            receipt.status = ReceiptStatus.CANCELLED
            receipt.updated_at = self._clock.now()
            self._store.put_receipt(receipt)

        self._audit.record("receipt.cancelled", entity_id=receipt.id, device_id=receipt.device_id)
        return receipt

    def update_metadata(
        self,
        receipt_id: str,
        machine_name: Optional[str] = None,
        location_name: Optional[str] = None,
        operator_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> FiscalReceipt:
        """Change display metadata; allowed in every status"""
        with self._store.transaction():
            receipt = self.get(receipt_id)
            updates = {
                "machine_name": machine_name,
                "location_name": location_name,
                "operator_name": operator_name,
                "comment": comment,
            }
            receipt.metadata = receipt.metadata.model_copy(
                update={k: v for k, v in updates.items() if v is not None}
            )
            receipt.updated_at = self._clock.now()
            self._store.put_receipt(receipt)
        return receipt

    def list(
        self,
        organization_id: Optional[str] = None,
        device_id: Optional[str] = None,
        shift_id: Optional[str] = None,
        receipt_type: Optional[ReceiptType] = None,
        status: Optional[ReceiptStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FiscalReceipt]:
        """Receipts matching the filters, newest first"""
        receipts = self._store.list_receipts(
            lambda r: (organization_id is None or r.organization_id == organization_id)
            and (device_id is None or r.device_id == device_id)
            and (shift_id is None or r.shift_id == shift_id)
            and (receipt_type is None or r.type is receipt_type)
            and (status is None or r.status is status)
        )
        receipts.reverse()
        return receipts[offset:offset + limit]

    def _settle(
        self, receipt_id: str, status: ReceiptStatus, error: str, retry_count: int
    ) -> Optional[FiscalReceipt]:
        with self._store.transaction():
            receipt = self._store.get_receipt(receipt_id)
            if receipt is None:
                return None
            if receipt.status is ReceiptStatus.SUCCESS:
                # Fiscalized at the provider; the record stays as it is
                logger.warning(
                    f"Receipt {receipt_id} is fiscalized; not moving it to {status.value}"
                )
                return receipt

            receipt.status = status
            receipt.last_error = error
            receipt.retry_count = retry_count
            receipt.updated_at = self._clock.now()
            self._store.put_receipt(receipt)

        if status is ReceiptStatus.FAILED:
            self._audit.record(
                "receipt.failed", entity_id=receipt.id, device_id=receipt.device_id,
                error=error,
            )
        return receipt
