"""
Fiscal device registry

Holds device configuration and sealed credentials. Devices are never
deleted; retiring a device stamps ``retired_at`` and deactivates it.
"""

import logging
from typing import Any, Dict, List, Optional

from vendhub_fiscal.crypto.credential_vault import CredentialVault
from vendhub_fiscal.exceptions import ConfigError, DeviceNotFoundError, DeviceUnavailableError
from vendhub_fiscal.models.device import (
    DeviceSettings,
    DeviceStatus,
    FiscalDevice,
    OperatingMode,
    SyncRecord,
)
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)

# Providers that need no credentials to go live
CREDENTIAL_FREE_PROVIDERS = ("sandbox",)


class DeviceRegistry:
    """
    Lookup and administration of fiscal devices

    Example:
        >>> registry = DeviceRegistry(store, vault=CredentialVault("master-secret"))
        >>> device = registry.register("org-1", "Lobby kiosk", "multikassa",
        ...                            credentials={"login": "vh", "password": "pw"})
        >>> registry.activate(device.id)
    """

    def __init__(
        self,
        store: InMemoryFiscalStore,
        clock: Optional[Clock] = None,
        vault: Optional[CredentialVault] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._vault = vault
        self._audit = audit or AuditLogger(enabled=False)

    # ============ Lookup ============

    def get(self, device_id: str, organization_id: Optional[str] = None) -> FiscalDevice:
        """
        Get a device

        Raises:
            DeviceNotFoundError: If missing or owned by another organization
        """
        device = self._store.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        if organization_id is not None and device.organization_id != organization_id:
            raise DeviceNotFoundError(device_id)
        return device

    def list(self, organization_id: str, include_retired: bool = False) -> List[FiscalDevice]:
        devices = self._store.list_devices(organization_id)
        if not include_retired:
            devices = [d for d in devices if not d.is_retired]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    def active_devices(self) -> List[FiscalDevice]:
        """Devices whose queues the worker drains"""
        return [d for d in self._store.list_devices() if d.is_active]

    def get_credentials(self, device: FiscalDevice) -> Dict[str, Any]:
        """
        Open the sealed credentials of a device

        Raises:
            ConfigError: If credentials are sealed but no vault is configured
        """
        if device.credentials is None:
            return {}
        if self._vault is None:
            raise ConfigError(
                "vault_secret is required to open device credentials",
                code="CONFIG_VAULT_MISSING",
            )
        return self._vault.open(device.id, device.credentials)

    # ============ Administration ============

    def register(
        self,
        organization_id: str,
        name: str,
        provider: str,
        credentials: Optional[Dict[str, Any]] = None,
        mode: OperatingMode = OperatingMode.SANDBOX,
        settings: Optional[DeviceSettings] = None,
        serial_number: Optional[str] = None,
        terminal_id: Optional[str] = None,
    ) -> FiscalDevice:
        """Register a device; it starts INACTIVE"""
        now = self._clock.now()
        device = FiscalDevice(
            organization_id=organization_id,
            name=name,
            provider=provider.strip().lower(),
            serial_number=serial_number,
            terminal_id=terminal_id,
            mode=mode,
            status=DeviceStatus.INACTIVE,
            settings=settings or DeviceSettings(),
            created_at=now,
            updated_at=now,
        )
        if credentials:
            device.credentials = self._seal(device.id, credentials)

        self._store.put_device(device)
        self._audit.record(
            "device.registered", entity_id=device.id, device_id=device.id,
            organization_id=organization_id, provider=device.provider, mode=mode.value,
        )
        logger.info(f"Fiscal device registered: {device.id} ({device.provider})")
        return device

    def update(
        self,
        device_id: str,
        name: Optional[str] = None,
        settings: Optional[DeviceSettings] = None,
        mode: Optional[OperatingMode] = None,
        serial_number: Optional[str] = None,
        terminal_id: Optional[str] = None,
    ) -> FiscalDevice:
        """Update descriptive fields and settings"""
        with self._store.transaction():
            device = self._get_mutable(device_id)
            if name is not None:
                device.name = name
            if settings is not None:
                device.settings = settings
            if mode is not None:
                device.mode = mode
            if serial_number is not None:
                device.serial_number = serial_number
            if terminal_id is not None:
                device.terminal_id = terminal_id
            device.updated_at = self._clock.now()
            self._store.put_device(device)

        self._audit.record("device.updated", entity_id=device_id, device_id=device_id)
        return device

    def set_credentials(self, device_id: str, credentials: Dict[str, Any]) -> FiscalDevice:
        """Replace the sealed credentials of a device"""
        with self._store.transaction():
            device = self._get_mutable(device_id)
            device.credentials = self._seal(device.id, credentials)
            device.updated_at = self._clock.now()
            self._store.put_device(device)

        self._audit.record("device.credentials_changed", entity_id=device_id, device_id=device_id)
        return device

    def activate(self, device_id: str) -> FiscalDevice:
        """
        Put a device into service

        Raises:
            DeviceUnavailableError: If retired or missing credentials
        """
        device = self.get(device_id)
        if device.credentials is None and device.provider not in CREDENTIAL_FREE_PROVIDERS:
            raise DeviceUnavailableError(device_id, "credentials are not configured")
        return self._set_status(device_id, DeviceStatus.ACTIVE)

    def deactivate(self, device_id: str) -> FiscalDevice:
        return self._set_status(device_id, DeviceStatus.INACTIVE)

    def set_maintenance(self, device_id: str) -> FiscalDevice:
        return self._set_status(device_id, DeviceStatus.MAINTENANCE)

    def mark_error(self, device_id: str, reason: str) -> FiscalDevice:
        return self._set_status(device_id, DeviceStatus.ERROR, reason)

    def retire(self, device_id: str) -> FiscalDevice:
        """Soft-retire a device; its records stay queryable"""
        with self._store.transaction():
            device = self._get_mutable(device_id)
            now = self._clock.now()
            device.status = DeviceStatus.INACTIVE
            device.retired_at = now
            device.updated_at = now
            self._store.put_device(device)

        self._audit.record("device.retired", entity_id=device_id, device_id=device_id)
        logger.info(f"Fiscal device retired: {device_id}")
        return device

    def record_sync(self, device_id: str, status: str, error: Optional[str] = None) -> None:
        """Remember the outcome of the last provider call"""
        with self._store.transaction():
            device = self.get(device_id)
            device.last_sync = SyncRecord(
                synced_at=self._clock.now(), status=status, error=error
            )
            self._store.put_device(device)

    # ============ Private Helper Methods ============

    def _get_mutable(self, device_id: str) -> FiscalDevice:
        device = self.get(device_id)
        if device.is_retired:
            raise DeviceUnavailableError(device_id, "device is retired")
        return device

    def _set_status(
        self, device_id: str, status: DeviceStatus, reason: Optional[str] = None
    ) -> FiscalDevice:
        with self._store.transaction():
            device = self._get_mutable(device_id)
            previous = device.status
            device.status = status
            device.updated_at = self._clock.now()
            self._store.put_device(device)

        self._audit.record(
            "device.status_changed", entity_id=device_id, device_id=device_id,
            previous=previous.value, status=status.value, reason=reason,
        )
        logger.info(f"Fiscal device {device_id}: {previous.value} -> {status.value}")
        return device

    def _seal(self, device_id: str, credentials: Dict[str, Any]):
        if self._vault is None:
            raise ConfigError(
                "vault_secret is required to store device credentials",
                code="CONFIG_VAULT_MISSING",
            )
        return self._vault.seal(device_id, credentials)
