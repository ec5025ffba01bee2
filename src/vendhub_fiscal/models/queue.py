"""Fiscal queue item and typed operation payloads"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vendhub_fiscal.exceptions import ErrorClassification
from vendhub_fiscal.models.receipt import ReceiptDraft


class OperationKind(str, Enum):
    """Fiscal operation kinds"""
    RECEIPT_SALE = "receipt_sale"
    RECEIPT_REFUND = "receipt_refund"
    SHIFT_OPEN = "shift_open"
    SHIFT_CLOSE = "shift_close"
    X_REPORT = "x_report"

    @property
    def is_receipt(self) -> bool:
        return self in (OperationKind.RECEIPT_SALE, OperationKind.RECEIPT_REFUND)


class QueueStatus(str, Enum):
    """Queue item status"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


TERMINAL_STATUSES = frozenset({QueueStatus.SUCCESS, QueueStatus.FAILED})
ACTIVE_STATUSES = frozenset({QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.RETRY})


# ============ Payloads ============

class _PayloadBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., min_length=1)
    idempotency_key: str = Field(..., description="Caller-chosen dedup key", min_length=1)
    shift_id: Optional[str] = Field(None, description="Target shift, when known at admission")


class ReceiptPayload(_PayloadBase):
    """Sale or refund receipt to fiscalize"""

    operation: Literal["receipt_sale", "receipt_refund"]
    receipt_id: str = Field(..., description="Receipt ID allocated at admission")
    body: ReceiptDraft


class ShiftOpenBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    cashier_name: str = Field(..., min_length=1)


class ShiftOpenPayload(_PayloadBase):
    """Open a shift on the device"""

    operation: Literal["shift_open"] = "shift_open"
    body: ShiftOpenBody


class ShiftCloseBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    cashier_name: Optional[str] = None
    reason: str = "manual"


class ShiftClosePayload(_PayloadBase):
    """
    Close a shift and file its Z-report

    Without a shift_id the shift that is open when the item runs is closed.
    """

    operation: Literal["shift_close"] = "shift_close"
    body: ShiftCloseBody = Field(default_factory=ShiftCloseBody)


class XReportBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    requested_by: Optional[str] = None


class XReportPayload(_PayloadBase):
    """Request an interim shift report"""

    operation: Literal["x_report"] = "x_report"
    body: XReportBody = Field(default_factory=XReportBody)


FiscalPayload = Annotated[
    Union[ReceiptPayload, ShiftOpenPayload, ShiftClosePayload, XReportPayload],
    Field(discriminator="operation"),
]


# ============ Queue item ============

class StatusChange(BaseModel):
    """One entry of a queue item's status history"""

    status: QueueStatus
    at: datetime
    note: Optional[str] = None


class Acknowledgement(BaseModel):
    """Operator sign-off on a FAILED item"""

    acknowledged_by: str
    acknowledged_at: datetime
    note: Optional[str] = None


class FiscalQueueItem(BaseModel):
    """Unit of fiscal work"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = Field(0, description="Store insertion order, breaks creation-time ties")
    organization_id: Optional[str] = None
    device_id: str
    operation: OperationKind
    payload: FiscalPayload
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 0
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(..., ge=1)
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_classification: Optional[ErrorClassification] = None
    result: Optional[Dict[str, Any]] = None

    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    acknowledgement: Optional[Acknowledgement] = None
    history: List[StatusChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_item(self) -> "FiscalQueueItem":
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count must not exceed max_retries")
        if self.payload.operation != self.operation.value:
            raise ValueError(
                f"payload operation {self.payload.operation} does not match {self.operation.value}"
            )
        if self.payload.device_id != self.device_id:
            raise ValueError("payload device_id does not match the item device")
        return self

    @property
    def idempotency_key(self) -> str:
        return self.payload.idempotency_key

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def receipt_id(self) -> Optional[str]:
        return getattr(self.payload, "receipt_id", None)

    @property
    def shift_id(self) -> Optional[str]:
        return self.payload.shift_id
