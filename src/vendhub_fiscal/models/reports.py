"""Read-only projections for operators"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vendhub_fiscal.models.device import DeviceStatus, SyncRecord
from vendhub_fiscal.models.queue import QueueStatus
from vendhub_fiscal.models.receipt import ReceiptStatus
from vendhub_fiscal.models.shift import FiscalShift, ShiftStatus, VatSummaryLine


class ShiftTotals(BaseModel):
    """Totals of one shift"""

    shift_id: str
    device_id: str
    shift_number: int
    status: ShiftStatus
    cashier_name: str
    opened_at: datetime
    closed_at: Optional[datetime] = None
    total_sales: Decimal
    total_refunds: Decimal
    total_cash: Decimal
    total_card: Decimal
    total_other: Decimal
    net_total: Decimal
    receipts_count: int
    vat_summary: List[VatSummaryLine] = Field(default_factory=list)
    z_report_number: Optional[str] = None
    z_report_url: Optional[str] = None

    @classmethod
    def from_shift(cls, shift: FiscalShift) -> "ShiftTotals":
        return cls(
            shift_id=shift.id,
            device_id=shift.device_id,
            shift_number=shift.shift_number,
            status=shift.status,
            cashier_name=shift.cashier_name,
            opened_at=shift.opened_at,
            closed_at=shift.closed_at,
            total_sales=shift.total_sales,
            total_refunds=shift.total_refunds,
            total_cash=shift.total_cash,
            total_card=shift.total_card,
            total_other=shift.total_other,
            net_total=shift.net_total,
            receipts_count=shift.receipts_count,
            vat_summary=[line.model_copy() for line in shift.vat_summary],
            z_report_number=shift.z_report_number,
            z_report_url=shift.z_report_url,
        )


class XReport(ShiftTotals):
    """Interim report of an open shift"""

    generated_at: datetime
    source: str = Field("local", description="local or provider")
    raw: Optional[Dict[str, Any]] = None


class ReceiptStatusView(BaseModel):
    """Current fiscalization status of a sale"""

    receipt_id: str
    sale_id: str
    device_id: str
    status: ReceiptStatus
    queue_item_id: str
    queue_status: QueueStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    shift_id: Optional[str] = None
    fiscal_number: Optional[str] = None
    fiscal_sign: Optional[str] = None
    receipt_url: Optional[str] = None
    qr_code_url: Optional[str] = None


class QueueStats(BaseModel):
    """Queue counters for one device"""

    pending: int = Field(0, description="PENDING and RETRY items")
    processing: int = 0
    failed: int = Field(0, description="FAILED items not yet acknowledged")
    succeeded: int = 0


class DeviceStatistics(BaseModel):
    """Device dashboard view"""

    device_id: str
    name: str
    status: DeviceStatus
    current_shift: Optional[ShiftTotals] = None
    queue: QueueStats = Field(default_factory=QueueStats)
    last_sync: Optional[SyncRecord] = None
