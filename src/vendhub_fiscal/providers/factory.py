"""Build provider adapters for fiscal devices"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.exceptions import ConfigError
from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.providers.base import FiscalProvider
from vendhub_fiscal.providers.multikassa import MultiKassaProvider
from vendhub_fiscal.providers.sandbox import SandboxProvider
from vendhub_fiscal.utils.audit import AuditLogger


logger = logging.getLogger(__name__)


ProviderBuilder = Callable[
    [FiscalDevice, Dict[str, Any], FiscalConfig, Optional[AuditLogger]], FiscalProvider
]

CredentialsLoader = Callable[[FiscalDevice], Dict[str, Any]]


def _build_multikassa(
    device: FiscalDevice,
    credentials: Dict[str, Any],
    config: FiscalConfig,
    audit: Optional[AuditLogger],
) -> FiscalProvider:
    return MultiKassaProvider(
        credentials=credentials,
        base_url=device.settings.base_url or None,
        sandbox_mode=device.sandbox_mode,
        timeout=config.provider_timeout,
        default_cashier=device.settings.default_cashier or config.default_cashier,
        audit=audit,
    )


def _build_sandbox(
    device: FiscalDevice,
    credentials: Dict[str, Any],
    config: FiscalConfig,
    audit: Optional[AuditLogger],
) -> FiscalProvider:
    return SandboxProvider(terminal_id=device.terminal_id or "SANDBOX")


class ProviderFactory:
    """
    Creates and caches one adapter per device

    Example:
        >>> factory = ProviderFactory(config, registry.get_credentials)
        >>> provider = factory.get(device)
    """

    def __init__(
        self,
        config: FiscalConfig,
        credentials_loader: CredentialsLoader,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._config = config
        self._credentials_loader = credentials_loader
        self._audit = audit
        self._builders: Dict[str, ProviderBuilder] = {
            "multikassa": _build_multikassa,
            "sandbox": _build_sandbox,
        }
        self._cache: Dict[str, FiscalProvider] = {}
        self._lock = threading.Lock()

    def register(self, name: str, builder: ProviderBuilder) -> None:
        """Register a builder for a provider name"""
        self._builders[name.strip().lower()] = builder

    def supports(self, name: str) -> bool:
        return name.strip().lower() in self._builders

    def get(self, device: FiscalDevice) -> FiscalProvider:
        """
        Get the adapter of a device

        Raises:
            ConfigError: If the provider name has no registered builder
        """
        with self._lock:
            provider = self._cache.get(device.id)
            if provider is not None:
                return provider

            name = device.provider.strip().lower()
            builder = self._builders.get(name)
            if builder is None:
                raise ConfigError(
                    f"Unsupported provider {device.provider!r} for device {device.id}",
                    code="CONFIG_UNSUPPORTED_PROVIDER",
                )

            credentials = self._credentials_loader(device)
            provider = builder(device, credentials, self._config, self._audit)
            self._cache[device.id] = provider
            logger.info(f"Provider {name} ready for device {device.id}")
            return provider

    def invalidate(self, device_id: str) -> None:
        """Drop the cached adapter, e.g. after credentials or settings change"""
        with self._lock:
            provider = self._cache.pop(device_id, None)
        if provider is not None:
            provider.close()

    def close(self) -> None:
        with self._lock:
            providers = list(self._cache.values())
            self._cache.clear()
        for provider in providers:
            provider.close()
