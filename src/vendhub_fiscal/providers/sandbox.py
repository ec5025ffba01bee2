"""
In-memory sandbox provider for local development and tests

Fiscalizes everything immediately, numbering receipts and Z-reports from
simple counters. Resending an idempotency key returns the first result.
"""

import itertools
import threading
from decimal import Decimal
from typing import Dict

from vendhub_fiscal.exceptions import ProviderError
from vendhub_fiscal.models.money import ZERO
from vendhub_fiscal.models.queue import FiscalPayload, OperationKind
from vendhub_fiscal.providers.base import FiscalProvider, ProviderResult


class SandboxProvider(FiscalProvider):
    """Provider double that never talks to the network"""

    name = "sandbox"

    def __init__(self, terminal_id: str = "SANDBOX") -> None:
        super().__init__()
        self.terminal_id = terminal_id
        self._receipt_numbers = itertools.count(1)
        self._z_numbers = itertools.count(1)
        self._shift_ids = itertools.count(1)
        self._results: Dict[str, ProviderResult] = {}
        self._shift_open = False
        self._totals = self._empty_totals()
        self._lock = threading.Lock()

    def submit(
        self,
        operation: OperationKind,
        payload: FiscalPayload,
        idempotency_key: str,
        timeout: float,
    ) -> ProviderResult:
        with self._lock:
            previous = self._results.get(idempotency_key)
            if previous is not None:
                return previous

            if operation is OperationKind.SHIFT_OPEN:
                result = self._open_shift()
            elif operation is OperationKind.SHIFT_CLOSE:
                result = self._close_shift()
            elif operation is OperationKind.X_REPORT:
                self._require_open_shift()
                result = ProviderResult(raw={"sandbox": True}, **self._totals)
            else:
                result = self._receipt(operation, payload)

            # X-reports are snapshots and are not cached
            if operation is not OperationKind.X_REPORT:
                self._results[idempotency_key] = result
            return result

    def _open_shift(self) -> ProviderResult:
        if self._shift_open:
            raise ProviderError.permanent("Sandbox shift is already open")
        self._shift_open = True
        self._totals = self._empty_totals()
        shift_id = f"{self.terminal_id}-S{next(self._shift_ids)}"
        return ProviderResult(provider_shift_id=shift_id, raw={"sandbox": True})

    def _close_shift(self) -> ProviderResult:
        self._require_open_shift()
        self._shift_open = False
        number = next(self._z_numbers)
        return ProviderResult(
            z_report_number=f"Z{number:06d}",
            z_report_url=f"https://sandbox.local/z/{self.terminal_id}/{number}",
            raw={"sandbox": True},
            **self._totals,
        )

    def _receipt(self, operation: OperationKind, payload: FiscalPayload) -> ProviderResult:
        self._require_open_shift()
        draft = payload.body
        if operation is OperationKind.RECEIPT_SALE:
            self._totals["total_sales"] += draft.total
            self._totals["total_cash"] += draft.payment.cash
            self._totals["total_card"] += draft.payment.card
        else:
            self._totals["total_refunds"] += draft.total
        self._totals["receipts_count"] += 1

        number = next(self._receipt_numbers)
        fiscal_number = f"{self.terminal_id}{number:010d}"
        return ProviderResult(
            fiscal_number=fiscal_number,
            fiscal_sign=f"{number * 7919 % 10**10:010d}",
            receipt_url=f"https://sandbox.local/r/{fiscal_number}",
            qr_code_url=f"https://sandbox.local/qr/{fiscal_number}",
            provider_receipt_id=str(number),
            raw={"sandbox": True},
        )

    def _require_open_shift(self) -> None:
        if not self._shift_open:
            raise ProviderError.permanent("Sandbox shift is not open")

    @staticmethod
    def _empty_totals() -> dict:
        return {
            "total_sales": ZERO,
            "total_refunds": ZERO,
            "total_cash": ZERO,
            "total_card": ZERO,
            "receipts_count": 0,
        }

    @property
    def shift_open(self) -> bool:
        return self._shift_open

    @property
    def sales_total(self) -> Decimal:
        return self._totals["total_sales"]
