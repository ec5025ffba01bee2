"""
Fiscal Core Configuration Types and Schema
Type-safe configuration objects for the fiscal queue and worker
"""

from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class ConfigDefaults:
    """Default configuration values"""
    PROVIDER_TIMEOUT = 30000
    MAX_RETRIES = 5
    RETRY_BASE_DELAY = 5000
    RETRY_MAX_DELAY = 3600000
    RETRY_JITTER = 0.1
    PRECONDITION_RETRY_DELAY = 5000
    WORKER_COUNT = 4
    POLL_INTERVAL = 1000
    LEASE_TTL = 120000
    STALE_PROCESSING_AFTER = 300000
    DEFAULT_CASHIER = "VendHub Auto"
    ENABLE_AUDIT_LOG = True
    VAULT_ITERATIONS = 100000
    PRIORITIES = {
        "shift_open": 10,
        "receipt_refund": 6,
        "receipt_sale": 5,
        "x_report": 2,
        "shift_close": 1,
    }


# Environment variable mapping
ENV_VAR_MAPPING = {
    "FISCAL_PROVIDER_TIMEOUT": "provider_timeout",
    "FISCAL_MAX_RETRIES": "max_retries",
    "FISCAL_RETRY_BASE_DELAY": "retry_base_delay",
    "FISCAL_RETRY_MAX_DELAY": "retry_max_delay",
    "FISCAL_RETRY_JITTER": "retry_jitter",
    "FISCAL_PRECONDITION_RETRY_DELAY": "precondition_retry_delay",
    "FISCAL_WORKER_COUNT": "worker_count",
    "FISCAL_POLL_INTERVAL": "poll_interval",
    "FISCAL_LEASE_TTL": "lease_ttl",
    "FISCAL_STALE_PROCESSING_AFTER": "stale_processing_after",
    "FISCAL_DEFAULT_CASHIER": "default_cashier",
    "FISCAL_ENABLE_AUDIT_LOG": "enable_audit_log",
    "FISCAL_AUDIT_LOG_PATH": "audit_log_path",
    "FISCAL_STATE_STORE_PATH": "state_store_path",
    "FISCAL_VAULT_SECRET": "vault_secret",
    "FISCAL_VAULT_ITERATIONS": "vault_iterations",
}


class FiscalConfig(BaseModel):
    """
    Main fiscal core configuration
    All durations are in milliseconds, like the provider SDK settings
    """

    # Provider calls
    provider_timeout: int = Field(
        default=ConfigDefaults.PROVIDER_TIMEOUT,
        description="Timeout of a single provider call in milliseconds",
        ge=1000,
        le=300000
    )

    # Retry policy defaults
    max_retries: int = Field(
        default=ConfigDefaults.MAX_RETRIES,
        description="Attempts allowed per queue item before it is FAILED",
        ge=1,
        le=50
    )
    retry_base_delay: int = Field(
        default=ConfigDefaults.RETRY_BASE_DELAY,
        description="Base backoff delay in milliseconds",
        ge=1,
        le=600000
    )
    retry_max_delay: int = Field(
        default=ConfigDefaults.RETRY_MAX_DELAY,
        description="Backoff cap in milliseconds",
        ge=1,
        le=86400000
    )
    retry_jitter: float = Field(
        default=ConfigDefaults.RETRY_JITTER,
        description="Random jitter added to a backoff, as a ratio of the delay",
        ge=0.0,
        le=1.0
    )
    precondition_retry_delay: int = Field(
        default=ConfigDefaults.PRECONDITION_RETRY_DELAY,
        description="Delay before retrying an item whose shift is not ready",
        ge=1,
        le=600000
    )
    priorities: Dict[str, int] = Field(
        default_factory=lambda: dict(ConfigDefaults.PRIORITIES),
        description="Default priority per operation kind"
    )

    # Worker pool
    worker_count: int = Field(
        default=ConfigDefaults.WORKER_COUNT,
        description="Number of worker threads",
        ge=1,
        le=64
    )
    poll_interval: int = Field(
        default=ConfigDefaults.POLL_INTERVAL,
        description="Idle sleep between queue scans in milliseconds",
        ge=10,
        le=60000
    )
    lease_ttl: int = Field(
        default=ConfigDefaults.LEASE_TTL,
        description="Lifetime of a per-device worker lease in milliseconds",
        ge=1000
    )
    stale_processing_after: int = Field(
        default=ConfigDefaults.STALE_PROCESSING_AFTER,
        description="PROCESSING items older than this are recovered to RETRY",
        ge=1000
    )

    # Shifts
    default_cashier: str = Field(
        default=ConfigDefaults.DEFAULT_CASHIER,
        description="Cashier name used for automatically opened shifts",
        min_length=1
    )

    # Optional - Audit logging
    enable_audit_log: bool = Field(
        default=ConfigDefaults.ENABLE_AUDIT_LOG,
        description="Enable audit logging"
    )
    audit_log_path: Optional[str] = Field(
        default=None,
        description="File path for audit logs (JSON lines)"
    )

    # Optional - State persistence
    state_store_path: Optional[str] = Field(
        default=None,
        description="Path of the JSON state store; in-memory when unset"
    )

    # Credential vault
    vault_secret: Optional[str] = Field(
        default=None,
        description="Master secret sealing device credentials",
        min_length=8
    )
    vault_iterations: int = Field(
        default=ConfigDefaults.VAULT_ITERATIONS,
        description="PBKDF2 iterations for the credential vault",
        ge=1000
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("priorities")
    @classmethod
    def validate_priorities(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Validate priority keys are known operation kinds"""
        unknown = set(v) - set(ConfigDefaults.PRIORITIES)
        if unknown:
            raise ValueError(
                f"Unknown operation kinds in priorities: {', '.join(sorted(unknown))}"
            )
        merged = dict(ConfigDefaults.PRIORITIES)
        merged.update(v)
        return merged

    @model_validator(mode="after")
    def validate_timings(self) -> "FiscalConfig":
        """A lease must outlive a provider call, and staleness must outlive a lease"""
        if self.lease_ttl <= self.provider_timeout:
            raise ValueError("lease_ttl must be greater than provider_timeout")
        if self.stale_processing_after <= self.lease_ttl:
            raise ValueError("stale_processing_after must be greater than lease_ttl")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must not be lower than retry_base_delay")
        return self

    @property
    def provider_timeout_seconds(self) -> float:
        return self.provider_timeout / 1000.0

    def priority_for(self, operation: str) -> int:
        """Get the default priority of an operation kind"""
        return self.priorities.get(operation, 0)


class PartialFiscalConfig(BaseModel):
    """
    Partial configuration for merging from multiple sources
    All fields are optional to allow partial configuration
    """

    provider_timeout: Optional[int] = None
    max_retries: Optional[int] = None
    retry_base_delay: Optional[int] = None
    retry_max_delay: Optional[int] = None
    retry_jitter: Optional[float] = None
    precondition_retry_delay: Optional[int] = None
    priorities: Optional[Dict[str, int]] = None
    worker_count: Optional[int] = None
    poll_interval: Optional[int] = None
    lease_ttl: Optional[int] = None
    stale_processing_after: Optional[int] = None
    default_cashier: Optional[str] = None
    enable_audit_log: Optional[bool] = None
    audit_log_path: Optional[str] = None
    state_store_path: Optional[str] = None
    vault_secret: Optional[str] = None
    vault_iterations: Optional[int] = None

    model_config = {
        "str_strip_whitespace": True,
    }
