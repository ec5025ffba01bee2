"""
VendHub Fiscal Core for Python

Main entry point for the package
"""

from vendhub_fiscal.core import FiscalCore
from vendhub_fiscal.exceptions import (
    FiscalError,
    FiscalErrorCategory,
    ErrorClassification,
    ValidationError,
    ConfigError,
    CryptoError,
    DeviceNotFoundError,
    DeviceUnavailableError,
    ShiftAlreadyOpenError,
    ShiftNotOpenError,
    ShiftNotFoundError,
    PendingOperationsError,
    MissingTaxCodeError,
    PaymentMismatchError,
    ReceiptNotFoundError,
    QueueItemNotFoundError,
    InvalidTransitionError,
    RetryLimitExceededError,
    InvariantViolationError,
    ProviderError,
    NetworkError,
    classify_error,
)

# HTTP Client
from vendhub_fiscal.client import (
    HttpClient,
    HttpMethod,
    HttpResponse,
    CircuitState,
    CircuitBreakerConfig,
)

# Configuration
from vendhub_fiscal.config import (
    FiscalConfig,
    PartialFiscalConfig,
    ConfigLoader,
    ConfigValidator,
    ENV_VAR_MAPPING,
    ConfigDefaults,
)

# Models
from vendhub_fiscal.models import (
    DeviceSettings,
    DeviceStatus,
    FiscalDevice,
    OperatingMode,
    FiscalShift,
    ShiftStatus,
    FiscalReceipt,
    ReceiptDraft,
    ReceiptStatus,
    FiscalQueueItem,
    OperationKind,
    QueueStatus,
    SaleEvent,
    SaleLineItem,
    PaymentSplit,
    ReceiptType,
    TaxCatalog,
    TaxRate,
)

# Providers
from vendhub_fiscal.providers import (
    FiscalProvider,
    ProviderResult,
    ProviderFactory,
    MultiKassaProvider,
    SandboxProvider,
)

# Services
from vendhub_fiscal.services import (
    DeviceRegistry,
    FiscalQueue,
    FiscalizationService,
    QueueWorker,
    WorkerPool,
    ReceiptBuilder,
    ReceiptLedger,
    RetryPolicies,
    RetryPolicy,
    ShiftManager,
)

from vendhub_fiscal.crypto import CredentialVault
from vendhub_fiscal.store import InMemoryFiscalStore, JsonFileFiscalStore

__version__ = "0.1.0"

__all__ = [
    "FiscalCore",
    # Exceptions
    "FiscalError",
    "FiscalErrorCategory",
    "ErrorClassification",
    "ValidationError",
    "ConfigError",
    "CryptoError",
    "DeviceNotFoundError",
    "DeviceUnavailableError",
    "ShiftAlreadyOpenError",
    "ShiftNotOpenError",
    "ShiftNotFoundError",
    "PendingOperationsError",
    "MissingTaxCodeError",
    "PaymentMismatchError",
    "ReceiptNotFoundError",
    "QueueItemNotFoundError",
    "InvalidTransitionError",
    "RetryLimitExceededError",
    "InvariantViolationError",
    "ProviderError",
    "NetworkError",
    "classify_error",
    # HTTP Client
    "HttpClient",
    "HttpMethod",
    "HttpResponse",
    "CircuitState",
    "CircuitBreakerConfig",
    # Configuration
    "FiscalConfig",
    "PartialFiscalConfig",
    "ConfigLoader",
    "ConfigValidator",
    "ENV_VAR_MAPPING",
    "ConfigDefaults",
    # Models
    "DeviceSettings",
    "DeviceStatus",
    "FiscalDevice",
    "OperatingMode",
    "FiscalShift",
    "ShiftStatus",
    "FiscalReceipt",
    "ReceiptDraft",
    "ReceiptStatus",
    "FiscalQueueItem",
    "OperationKind",
    "QueueStatus",
    "SaleEvent",
    "SaleLineItem",
    "PaymentSplit",
    "ReceiptType",
    "TaxCatalog",
    "TaxRate",
    # Providers
    "FiscalProvider",
    "ProviderResult",
    "ProviderFactory",
    "MultiKassaProvider",
    "SandboxProvider",
    # Services
    "DeviceRegistry",
    "FiscalQueue",
    "FiscalizationService",
    "QueueWorker",
    "WorkerPool",
    "ReceiptBuilder",
    "ReceiptLedger",
    "RetryPolicies",
    "RetryPolicy",
    "ShiftManager",
    # Storage
    "CredentialVault",
    "InMemoryFiscalStore",
    "JsonFileFiscalStore",
]
