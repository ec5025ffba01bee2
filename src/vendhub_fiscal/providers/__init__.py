"""Providers module initialization"""

from vendhub_fiscal.providers.base import FiscalProvider, ProviderResult
from vendhub_fiscal.providers.factory import ProviderFactory
from vendhub_fiscal.providers.multikassa import MultiKassaProvider
from vendhub_fiscal.providers.sandbox import SandboxProvider

__all__ = [
    "FiscalProvider",
    "ProviderResult",
    "ProviderFactory",
    "MultiKassaProvider",
    "SandboxProvider",
]
