"""
Fiscal provider adapter interface

Adapters are side-effectful only towards the provider API. Persistence,
retries and shift bookkeeping belong to the services.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vendhub_fiscal.models.queue import FiscalPayload, OperationKind


class ProviderResult(BaseModel):
    """
    Provider-agnostic response of a successful call

    Receipt operations fill the fiscal fields, shift_close fills the
    Z-report fields, x_report and shift_close fill the totals.
    """

    fiscal_number: Optional[str] = None
    fiscal_sign: Optional[str] = None
    receipt_url: Optional[str] = None
    qr_code_url: Optional[str] = None
    provider_receipt_id: Optional[str] = None

    provider_shift_id: Optional[str] = None
    z_report_number: Optional[str] = None
    z_report_url: Optional[str] = None

    total_sales: Optional[Decimal] = None
    total_refunds: Optional[Decimal] = None
    total_cash: Optional[Decimal] = None
    total_card: Optional[Decimal] = None
    receipts_count: Optional[int] = None
    vat_summary: List[Dict[str, Any]] = Field(default_factory=list)

    raw: Optional[Any] = Field(None, description="Raw provider response")


class FiscalProvider(ABC):
    """
    Adapter for one fiscal terminal / OFD account

    Implementations must honor the idempotency key where the provider
    supports it, respect the timeout, and raise ProviderError with a
    classification on failure.
    """

    name: str = "base"

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def submit(
        self,
        operation: OperationKind,
        payload: FiscalPayload,
        idempotency_key: str,
        timeout: float,
    ) -> ProviderResult:
        """
        Execute one fiscal operation

        Args:
            operation: Operation kind
            payload: Typed payload of the queue item
            idempotency_key: Key the provider may use to dedupe the call
            timeout: Bound on the call in seconds

        Raises:
            ProviderError: Classified failure
        """

    def close(self) -> None:
        """Release transport resources"""
