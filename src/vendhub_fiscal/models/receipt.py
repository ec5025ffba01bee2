"""Fiscal receipt models"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from vendhub_fiscal.models.sale import PaymentSplit, ReceiptType


class ReceiptStatus(str, Enum):
    """Fiscal receipt status"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReceiptLine(BaseModel):
    """Receipt line with computed VAT"""

    model_config = ConfigDict(frozen=True)

    line_no: int = Field(..., ge=1)
    name: str
    tax_code: str = Field(..., description="Tax classification code (IKPU)")
    package_code: Optional[str] = None
    quantity: Decimal
    unit: str = "pcs"
    price: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total: Decimal


class VatBreakdown(BaseModel):
    """VAT totals for one rate"""

    model_config = ConfigDict(frozen=True)

    vat_rate: Decimal
    gross_amount: Decimal
    vat_amount: Decimal


class ReceiptDraft(BaseModel):
    """
    Self-contained receipt content produced by the receipt builder

    Immutable; stored inside queue payloads.
    """

    model_config = ConfigDict(frozen=True)

    sale_id: str
    machine_id: str
    device_id: str
    type: ReceiptType
    lines: Tuple[ReceiptLine, ...]
    vat_breakdown: Tuple[VatBreakdown, ...]
    total: Decimal
    vat_total: Decimal
    payment: PaymentSplit
    operator_name: Optional[str] = None


class ReceiptMetadata(BaseModel):
    """Display metadata; the only part of a receipt editable after SUCCESS"""

    machine_name: Optional[str] = None
    location_name: Optional[str] = None
    operator_name: Optional[str] = None
    comment: Optional[str] = None


class FiscalReceipt(BaseModel):
    """Fiscalization record for one sale or refund"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: Optional[str] = None
    device_id: str
    shift_id: str
    queue_item_id: str
    sale_id: str
    machine_id: str
    type: ReceiptType
    status: ReceiptStatus = ReceiptStatus.PROCESSING

    lines: List[ReceiptLine] = Field(default_factory=list)
    vat_breakdown: List[VatBreakdown] = Field(default_factory=list)
    total: Decimal
    vat_total: Decimal
    payment: PaymentSplit

    fiscal_number: Optional[str] = None
    fiscal_sign: Optional[str] = None
    receipt_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    provider_receipt_id: Optional[str] = None

    retry_count: int = 0
    last_error: Optional[str] = None
    metadata: ReceiptMetadata = Field(default_factory=ReceiptMetadata)

    created_at: datetime
    updated_at: datetime
    fiscalized_at: Optional[datetime] = None

    @property
    def is_fiscalized(self) -> bool:
        return self.status is ReceiptStatus.SUCCESS
