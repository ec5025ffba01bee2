"""
Shared fixtures for the fiscal core tests
"""

import itertools
import random
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import pytest

from vendhub_fiscal.config import FiscalConfig
from vendhub_fiscal.models.device import DeviceSettings, FiscalDevice
from vendhub_fiscal.models.queue import FiscalPayload, OperationKind
from vendhub_fiscal.models.sale import PaymentSplit, ReceiptType, SaleEvent, SaleLineItem
from vendhub_fiscal.providers.base import FiscalProvider, ProviderResult
from vendhub_fiscal.providers.factory import ProviderFactory
from vendhub_fiscal.services.device_lease import DeviceLeaseManager
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.fiscalization import FiscalizationService
from vendhub_fiscal.services.queue_worker import QueueWorker
from vendhub_fiscal.services.receipt_builder import ReceiptBuilder
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.retry_policy import RetryPolicies
from vendhub_fiscal.services.shift_manager import ShiftManager
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import FixedClock


SNACK_CODE = "10202001001000000"
DRINK_CODE = "10202002001000000"

Outcome = Union[ProviderResult, Exception]


class ScriptedProvider(FiscalProvider):
    """
    Provider double driven by a per-operation script

    Queued outcomes are consumed in order; an Exception is raised, a
    ProviderResult is returned. With nothing queued a default success is
    produced.
    """

    name = "scripted"

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[OperationKind, str, Any]] = []
        self._script: Dict[OperationKind, Deque[Outcome]] = defaultdict(deque)
        self._numbers = itertools.count(1)

    def script(self, operation: OperationKind, *outcomes: Outcome) -> None:
        self._script[operation].extend(outcomes)

    def calls_for(self, operation: OperationKind) -> List[Tuple[OperationKind, str, Any]]:
        return [call for call in self.calls if call[0] is operation]

    def submit(
        self,
        operation: OperationKind,
        payload: FiscalPayload,
        idempotency_key: str,
        timeout: float,
    ) -> ProviderResult:
        self.calls.append((operation, idempotency_key, payload))
        if self._script[operation]:
            outcome = self._script[operation].popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return self._default(operation)

    def _default(self, operation: OperationKind) -> ProviderResult:
        n = next(self._numbers)
        if operation is OperationKind.SHIFT_OPEN:
            return ProviderResult(provider_shift_id=f"PS-{n}")
        if operation is OperationKind.SHIFT_CLOSE:
            return ProviderResult(z_report_number=f"Z-{n}", z_report_url=f"https://ofd.test/z/{n}")
        if operation is OperationKind.X_REPORT:
            return ProviderResult()
        return ProviderResult(
            fiscal_number=f"FN-{n:06d}",
            fiscal_sign=f"SIGN-{n}",
            receipt_url=f"https://ofd.test/r/{n}",
            qr_code_url=f"https://ofd.test/qr/{n}",
            provider_receipt_id=str(n),
        )


def make_sale(
    device_id: str,
    sale_id: str = "sale-42",
    price: str = "10000",
    quantity: str = "1",
    vat_rate: Optional[str] = "12",
    tax_code: Optional[str] = SNACK_CODE,
    receipt_type: ReceiptType = ReceiptType.SALE,
    cash: Optional[str] = None,
    card: str = "0",
) -> SaleEvent:
    """One-line sale paid in cash unless a split is given"""
    total = Decimal(price) * Decimal(quantity)
    return SaleEvent(
        sale_id=sale_id,
        machine_id="VM-001",
        device_id=device_id,
        type=receipt_type,
        line_items=[
            SaleLineItem(
                name="Snickers 50g",
                tax_code=tax_code,
                quantity=Decimal(quantity),
                price=Decimal(price),
                vat_rate=Decimal(vat_rate) if vat_rate is not None else None,
            )
        ],
        payment=PaymentSplit(
            cash=Decimal(cash) if cash is not None else total - Decimal(card),
            card=Decimal(card),
        ),
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def config() -> FiscalConfig:
    return FiscalConfig(
        max_retries=5,
        retry_base_delay=1000,
        retry_max_delay=60000,
        retry_jitter=0.0,
        precondition_retry_delay=2000,
        enable_audit_log=False,
    )


@pytest.fixture
def audit() -> AuditLogger:
    return AuditLogger(enabled=False)


@pytest.fixture
def store() -> InMemoryFiscalStore:
    return InMemoryFiscalStore()


@pytest.fixture
def registry(store, clock, audit) -> DeviceRegistry:
    return DeviceRegistry(store, clock, audit=audit)


@pytest.fixture
def queue(store, clock, config, audit) -> FiscalQueue:
    return FiscalQueue(store, clock, config, audit)


@pytest.fixture
def shifts(store, queue, registry, clock, config, audit) -> ShiftManager:
    return ShiftManager(store, queue, registry, clock, config, audit)


@pytest.fixture
def ledger(store, clock, audit) -> ReceiptLedger:
    return ReceiptLedger(store, clock, audit)


@pytest.fixture
def leases(store, clock, config) -> DeviceLeaseManager:
    return DeviceLeaseManager(store, clock, config.lease_ttl)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def providers(config, registry, provider) -> ProviderFactory:
    factory = ProviderFactory(config, registry.get_credentials)
    factory.register("sandbox", lambda device, credentials, cfg, audit: provider)
    return factory


@pytest.fixture
def policies(config) -> RetryPolicies:
    return RetryPolicies.from_config(config, rng=random.Random(42))


@pytest.fixture
def worker(store, registry, queue, shifts, ledger, leases, providers, policies, clock, config):
    return QueueWorker(
        store, registry, queue, shifts, ledger, leases, providers, policies,
        clock, config, name="worker-1",
    )


@pytest.fixture
def fiscalization(store, registry, queue, shifts, ledger) -> FiscalizationService:
    return FiscalizationService(store, registry, queue, shifts, ledger, ReceiptBuilder())


@pytest.fixture
def make_device(registry):
    """Register and activate a sandbox device"""
    def factory(name: str = "D1", **settings: Any) -> FiscalDevice:
        device = registry.register(
            "org-1", name, "sandbox", settings=DeviceSettings(**settings),
        )
        return registry.activate(device.id)

    return factory


@pytest.fixture
def device(make_device) -> FiscalDevice:
    return make_device("D1")
