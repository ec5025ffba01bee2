"""
MultiKassa fiscal provider adapter

MultiKassa exposes a Basic-auth JSON API in front of the fiscal terminal.
Amounts on the wire are integers in tiyin (1/100 of a sum).
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from vendhub_fiscal.client.http_client import CircuitBreakerConfig, HttpClient
from vendhub_fiscal.exceptions import ProviderError
from vendhub_fiscal.models.queue import (
    FiscalPayload,
    OperationKind,
    ReceiptPayload,
    ShiftOpenPayload,
)
from vendhub_fiscal.models.receipt import ReceiptDraft
from vendhub_fiscal.providers.base import FiscalProvider, ProviderResult
from vendhub_fiscal.utils.audit import AuditLogger


logger = logging.getLogger(__name__)


class MultiKassaDefaults:
    """Default values for the MultiKassa adapter"""
    BASE_URL = "http://localhost:8080/api/v1"
    TIMEOUT = 30000
    DEFAULT_CASHIER = "VendHub Auto"


def to_tiyin(amount: Decimal) -> int:
    """Convert sum to tiyin"""
    return int((Decimal(amount) * 100).to_integral_value())


def from_tiyin(value: Optional[Any]) -> Optional[Decimal]:
    """Convert tiyin to sum"""
    if value is None:
        return None
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


class MultiKassaProvider(FiscalProvider):
    """
    MultiKassa adapter

    Example:
        >>> provider = MultiKassaProvider(
        ...     credentials={"login": "vendhub", "password": "secret"},
        ...     base_url="http://localhost:8080/api/v1",
        ... )
        >>> result = provider.submit(OperationKind.SHIFT_OPEN, payload, "key-1", 30.0)
    """

    name = "multikassa"

    def __init__(
        self,
        credentials: Dict[str, Any],
        base_url: Optional[str] = None,
        sandbox_mode: bool = True,
        timeout: int = MultiKassaDefaults.TIMEOUT,
        default_cashier: Optional[str] = None,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
        audit: Optional[AuditLogger] = None,
        http_client: Optional[HttpClient] = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout / 1000.0)

        login = credentials.get("login")
        password = credentials.get("password")
        if not login or not password:
            raise ProviderError.permanent("MultiKassa credentials require login and password")

        self.sandbox_mode = sandbox_mode
        self.company_tin = credentials.get("company_tin")
        self.default_cashier = (
            default_cashier
            or credentials.get("default_cashier")
            or MultiKassaDefaults.DEFAULT_CASHIER
        )
        self._client = http_client or HttpClient(
            base_url or MultiKassaDefaults.BASE_URL,
            timeout=timeout,
            auth=(login, password),
            circuit_breaker_config=circuit_breaker_config,
            audit=audit,
        )

    def submit(
        self,
        operation: OperationKind,
        payload: FiscalPayload,
        idempotency_key: str,
        timeout: float,
    ) -> ProviderResult:
        headers = {"Idempotency-Key": idempotency_key}
        timeout_ms = int(timeout * 1000)

        if operation is OperationKind.SHIFT_OPEN:
            return self._open_shift(payload, headers, timeout_ms)
        if operation is OperationKind.SHIFT_CLOSE:
            return self._close_shift(headers, timeout_ms)
        if operation is OperationKind.X_REPORT:
            return self._x_report(timeout_ms)
        if operation.is_receipt:
            return self._create_receipt(operation, payload, headers, timeout_ms)

        raise ProviderError.permanent(f"Unsupported operation: {operation.value}")

    # ============ Shift Operations ============

    def _open_shift(
        self, payload: ShiftOpenPayload, headers: Dict[str, str], timeout: int
    ) -> ProviderResult:
        cashier_name = payload.body.cashier_name or self.default_cashier
        logger.info(f"Opening MultiKassa shift (cashier={cashier_name})")

        response = self._client.post(
            "/shift/open", {"cashier_name": cashier_name}, headers=headers, timeout=timeout
        )
        data = self._expect_object(response.data)
        shift_id = data.get("shift_id")
        return ProviderResult(
            provider_shift_id=str(shift_id) if shift_id is not None else None,
            raw=data,
        )

    def _close_shift(self, headers: Dict[str, str], timeout: int) -> ProviderResult:
        logger.info("Closing MultiKassa shift (Z-report)")

        response = self._client.post("/shift/close", {}, headers=headers, timeout=timeout)
        data = self._expect_object(response.data)
        z_number = data.get("z_report_number")
        return ProviderResult(
            z_report_number=str(z_number) if z_number is not None else None,
            z_report_url=data.get("z_report_url"),
            raw=data,
            **self._totals(data),
        )

    def _x_report(self, timeout: int) -> ProviderResult:
        response = self._client.get("/shift/x-report", timeout=timeout)
        data = self._expect_object(response.data)
        return ProviderResult(raw=data, **self._totals(data))

    # ============ Receipt Operations ============

    def _create_receipt(
        self,
        operation: OperationKind,
        payload: ReceiptPayload,
        headers: Dict[str, str],
        timeout: int,
    ) -> ProviderResult:
        path = "/receipt/sale" if operation is OperationKind.RECEIPT_SALE else "/receipt/refund"
        body = self.build_receipt_payload(payload.body, external_id=payload.idempotency_key)

        response = self._client.post(path, body, headers=headers, timeout=timeout)
        data = self._expect_object(response.data)

        if not data.get("fiscal_number") or not data.get("fiscal_sign"):
            # Accepted without fiscal data; the same idempotency key is safe to resend
            raise ProviderError(
                "MultiKassa accepted the receipt without fiscal data", raw=data
            )

        receipt_id = data.get("receipt_id")
        return ProviderResult(
            fiscal_number=str(data["fiscal_number"]),
            fiscal_sign=str(data["fiscal_sign"]),
            receipt_url=data.get("receipt_url"),
            qr_code_url=data.get("qr_code_url"),
            provider_receipt_id=str(receipt_id) if receipt_id is not None else None,
            raw=data,
        )

    def build_receipt_payload(
        self, draft: ReceiptDraft, external_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build receipt payload for the API"""
        return {
            "type": draft.type.value,
            "items": [
                {
                    "name": line.name,
                    "ikpu_code": line.tax_code,
                    "package_code": line.package_code,
                    "quantity": float(line.quantity),
                    "price": to_tiyin(line.price),
                    "vat_rate": float(line.vat_rate),
                    "unit": line.unit,
                }
                for line in draft.lines
            ],
            "payment": {
                "cash": to_tiyin(draft.payment.cash),
                "card": to_tiyin(draft.payment.card + draft.payment.other),
            },
            "total": to_tiyin(draft.total),
            "external_id": external_id,
            "operator_name": draft.operator_name,
        }

    # ============ Helpers ============

    def _expect_object(self, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ProviderError.permanent(
                "Unexpected MultiKassa response format", raw=data
            )
        return data

    def _totals(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "total_sales": from_tiyin(data.get("total_sales")),
            "total_refunds": from_tiyin(data.get("total_refunds")),
            "total_cash": from_tiyin(data.get("total_cash", 0)),
            "total_card": from_tiyin(data.get("total_card", 0)),
            "receipts_count": data.get("receipts_count"),
            "vat_summary": data.get("vat_summary") or [],
        }

    def close(self) -> None:
        self._client.close()
