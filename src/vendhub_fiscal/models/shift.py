"""Fiscal shift model"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from vendhub_fiscal.models.money import ZERO


class ShiftStatus(str, Enum):
    """Fiscal shift status"""
    OPEN = "open"
    CLOSED = "closed"


class VatSummaryLine(BaseModel):
    """Accumulated VAT for one rate"""

    vat_rate: Decimal = Field(..., description="VAT rate percentage")
    gross_amount: Decimal = Field(ZERO, description="Gross amount at this rate")
    vat_amount: Decimal = Field(ZERO, description="VAT included in the gross amount")


class FiscalShift(BaseModel):
    """Fiscal shift model"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str = Field(..., description="Device the shift belongs to")
    shift_number: int = Field(..., description="Sequence number on the device", ge=1)
    cashier_name: str = Field(..., description="Cashier who opened the shift")
    status: ShiftStatus = Field(ShiftStatus.OPEN, description="Shift status")
    opened_at: datetime
    closed_at: Optional[datetime] = None

    total_sales: Decimal = ZERO
    total_refunds: Decimal = ZERO
    total_cash: Decimal = ZERO
    total_card: Decimal = ZERO
    total_other: Decimal = ZERO
    receipts_count: int = 0
    vat_summary: List[VatSummaryLine] = Field(default_factory=list)

    applied_receipt_ids: List[str] = Field(
        default_factory=list, description="Receipts already counted in the totals"
    )
    provider_shift_id: Optional[str] = None
    opened_by_item_id: Optional[str] = Field(None, description="shift_open queue item")
    z_report_number: Optional[str] = None
    z_report_url: Optional[str] = None
    z_report: Optional[dict] = Field(None, description="Raw Z-report returned by the provider")

    @property
    def is_open(self) -> bool:
        return self.status is ShiftStatus.OPEN

    @property
    def net_total(self) -> Decimal:
        return self.total_sales - self.total_refunds
