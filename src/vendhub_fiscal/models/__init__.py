"""Models module initialization"""

from vendhub_fiscal.models.lease import DeviceLease
from vendhub_fiscal.models.device import (
    DeviceSettings,
    DeviceStatus,
    FiscalDevice,
    OperatingMode,
    SealedSecret,
    SyncRecord,
)
from vendhub_fiscal.models.money import MONEY_QUANT, to_money
from vendhub_fiscal.models.queue import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Acknowledgement,
    FiscalPayload,
    FiscalQueueItem,
    OperationKind,
    QueueStatus,
    ReceiptPayload,
    ShiftCloseBody,
    ShiftClosePayload,
    ShiftOpenBody,
    ShiftOpenPayload,
    StatusChange,
    XReportBody,
    XReportPayload,
)
from vendhub_fiscal.models.receipt import (
    FiscalReceipt,
    ReceiptDraft,
    ReceiptLine,
    ReceiptMetadata,
    ReceiptStatus,
    VatBreakdown,
)
from vendhub_fiscal.models.reports import (
    DeviceStatistics,
    QueueStats,
    ReceiptStatusView,
    ShiftTotals,
    XReport,
)
from vendhub_fiscal.models.sale import PaymentSplit, ReceiptType, SaleEvent, SaleLineItem
from vendhub_fiscal.models.shift import FiscalShift, ShiftStatus, VatSummaryLine
from vendhub_fiscal.models.tax import IKPU_CODE_PATTERN, TaxCatalog, TaxRate

__all__ = [
    "DeviceLease",
    "DeviceSettings",
    "DeviceStatus",
    "FiscalDevice",
    "OperatingMode",
    "SealedSecret",
    "SyncRecord",
    "MONEY_QUANT",
    "to_money",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Acknowledgement",
    "FiscalPayload",
    "FiscalQueueItem",
    "OperationKind",
    "QueueStatus",
    "ReceiptPayload",
    "ShiftCloseBody",
    "ShiftClosePayload",
    "ShiftOpenBody",
    "ShiftOpenPayload",
    "StatusChange",
    "XReportBody",
    "XReportPayload",
    "FiscalReceipt",
    "ReceiptDraft",
    "ReceiptLine",
    "ReceiptMetadata",
    "ReceiptStatus",
    "VatBreakdown",
    "DeviceStatistics",
    "QueueStats",
    "ReceiptStatusView",
    "ShiftTotals",
    "XReport",
    "PaymentSplit",
    "ReceiptType",
    "SaleEvent",
    "SaleLineItem",
    "FiscalShift",
    "ShiftStatus",
    "VatSummaryLine",
    "IKPU_CODE_PATTERN",
    "TaxCatalog",
    "TaxRate",
]
