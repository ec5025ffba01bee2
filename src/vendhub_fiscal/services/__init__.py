"""Services module initialization"""

from vendhub_fiscal.services.device_lease import DeviceLeaseManager
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.fiscalization import FiscalizationService
from vendhub_fiscal.services.queue_worker import QueueWorker, WorkerPool
from vendhub_fiscal.services.receipt_builder import ReceiptBuilder, calculate_vat
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.retry_policy import RetryPolicies, RetryPolicy
from vendhub_fiscal.services.shift_manager import ShiftManager

__all__ = [
    "DeviceLeaseManager",
    "DeviceRegistry",
    "FiscalQueue",
    "FiscalizationService",
    "QueueWorker",
    "WorkerPool",
    "ReceiptBuilder",
    "calculate_vat",
    "ReceiptLedger",
    "RetryPolicies",
    "RetryPolicy",
    "ShiftManager",
]
