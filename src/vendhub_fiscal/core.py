"""
Fiscal core

Wires the store, services, provider adapters and workers from one
FiscalConfig.
"""

import logging
import random
from typing import Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.crypto.credential_vault import CredentialVault
from vendhub_fiscal.models.tax import TaxCatalog
from vendhub_fiscal.providers.factory import ProviderFactory
from vendhub_fiscal.services.device_lease import DeviceLeaseManager
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.fiscalization import FiscalizationService
from vendhub_fiscal.services.queue_worker import QueueWorker, WorkerPool
from vendhub_fiscal.services.receipt_builder import ReceiptBuilder
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.retry_policy import RetryPolicies
from vendhub_fiscal.services.shift_manager import ShiftManager
from vendhub_fiscal.store.json_store import JsonFileFiscalStore
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class FiscalCore:
    """
    Fully wired fiscal core

    Example:
        >>> core = FiscalCore.from_config(ConfigLoader().load(file="fiscal.json"))
        >>> device = core.registry.register("org-1", "Lobby", "multikassa",
        ...                                 credentials={"login": "l", "password": "p"})
        >>> core.registry.activate(device.id)
        >>> core.fiscalization.submit_sale(sale)
        >>> core.run_pending()
    """

    def __init__(
        self,
        config: FiscalConfig,
        store: InMemoryFiscalStore,
        clock: Clock,
        audit: AuditLogger,
        vault: Optional[CredentialVault] = None,
        catalog: Optional[TaxCatalog] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.audit = audit

        self.registry = DeviceRegistry(store, clock, vault, audit)
        self.queue = FiscalQueue(store, clock, config, audit)
        self.shifts = ShiftManager(store, self.queue, self.registry, clock, config, audit)
        self.ledger = ReceiptLedger(store, clock, audit)
        self.leases = DeviceLeaseManager(store, clock, config.lease_ttl)
        self.providers = ProviderFactory(config, self.registry.get_credentials, audit)
        self.policies = RetryPolicies.from_config(config, rng=rng)
        self.fiscalization = FiscalizationService(
            store, self.registry, self.queue, self.shifts, self.ledger,
            ReceiptBuilder(catalog),
        )
        self._pool: Optional[WorkerPool] = None

    @classmethod
    def from_config(
        cls,
        config: FiscalConfig,
        store: Optional[InMemoryFiscalStore] = None,
        clock: Optional[Clock] = None,
        catalog: Optional[TaxCatalog] = None,
        rng: Optional[random.Random] = None,
    ) -> "FiscalCore":
        """Build the store, vault and audit log the config asks for"""
        if store is None:
            if config.state_store_path:
                store = JsonFileFiscalStore(config.state_store_path)
            else:
                store = InMemoryFiscalStore()

        vault = None
        if config.vault_secret:
            vault = CredentialVault(config.vault_secret, config.vault_iterations)

        audit = AuditLogger(path=config.audit_log_path, enabled=config.enable_audit_log)
        return cls(config, store, clock or SystemClock(), audit, vault, catalog, rng)

    def create_worker(self, name: str = "worker-1") -> QueueWorker:
        return QueueWorker(
            self.store, self.registry, self.queue, self.shifts, self.ledger,
            self.leases, self.providers, self.policies, self.clock, self.config, name,
        )

    def run_pending(self) -> int:
        """Drain every eligible item synchronously with a single worker"""
        return self.create_worker("inline").run_once()

    def start_workers(self) -> WorkerPool:
        if self._pool is None:
            self._pool = WorkerPool(
                self.create_worker,
                size=self.config.worker_count,
                poll_interval=self.config.poll_interval,
            )
        self._pool.start()
        return self._pool

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._pool is not None:
            self._pool.stop(timeout)
            self._pool = None
        self.providers.close()

    def __enter__(self) -> "FiscalCore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
