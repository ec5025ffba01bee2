"""
Configuration module
"""

from vendhub_fiscal.config.fiscal_config import (
    FiscalConfig,
    PartialFiscalConfig,
    ENV_VAR_MAPPING,
    ConfigDefaults,
)
from vendhub_fiscal.config.config_loader import ConfigLoader
from vendhub_fiscal.config.config_validator import (
    ConfigValidator,
    ValidationResult,
    ValidationErrorDetail,
)

__all__ = [
    "FiscalConfig",
    "PartialFiscalConfig",
    "ENV_VAR_MAPPING",
    "ConfigDefaults",
    "ConfigLoader",
    "ConfigValidator",
    "ValidationResult",
    "ValidationErrorDetail",
]
