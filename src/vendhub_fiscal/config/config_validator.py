"""
Configuration Validator
Validates fiscal core configuration with clear error messages
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vendhub_fiscal.config.fiscal_config import ConfigDefaults


@dataclass
class ValidationErrorDetail:
    """Validation error detail"""
    field: str
    message: str
    value: Optional[Any] = None


@dataclass
class ValidationResult:
    """Validation result"""
    valid: bool
    errors: List[ValidationErrorDetail] = field(default_factory=list)


# (field, minimum, maximum) in milliseconds
DURATION_RANGES = (
    ("provider_timeout", 1000, 300000),
    ("retry_base_delay", 1, 600000),
    ("retry_max_delay", 1, 86400000),
    ("precondition_retry_delay", 1, 600000),
    ("poll_interval", 10, 60000),
    ("lease_ttl", 1000, None),
    ("stale_processing_after", 1000, None),
)


class ConfigValidator:
    """
    ConfigValidator class
    Provides comprehensive validation for fiscal core configuration
    """

    def __init__(self) -> None:
        self._errors: List[ValidationErrorDetail] = []

    def validate(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Validate the entire configuration dictionary

        Args:
            config: Configuration dictionary to validate

        Returns:
            ValidationResult with any errors
        """
        self._errors = []

        self._validate_durations(config)
        self._validate_counts(config)
        self._validate_timing_order(config)
        self._validate_priorities(config)
        self._validate_vault(config)
        self._validate_paths(config)

        return ValidationResult(
            valid=len(self._errors) == 0,
            errors=self._errors.copy()
        )

    def validate_or_raise(self, config: Dict[str, Any]) -> None:
        """
        Validate and raise if invalid

        Args:
            config: Configuration dictionary to validate

        Raises:
            ValidationError: If configuration is invalid
        """
        from vendhub_fiscal.exceptions import ValidationError

        result = self.validate(config)
        if not result.valid:
            error_messages = "; ".join(
                f"{e.field}: {e.message}" for e in result.errors
            )
            raise ValidationError(f"Configuration validation failed: {error_messages}")

    def _validate_durations(self, config: Dict[str, Any]) -> None:
        """Validate millisecond durations"""
        for name, minimum, maximum in DURATION_RANGES:
            value = config.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                self._errors.append(ValidationErrorDetail(
                    field=name,
                    message=f"{name} must be a positive integer (milliseconds)",
                    value=value
                ))
            elif value < minimum:
                self._errors.append(ValidationErrorDetail(
                    field=name,
                    message=f"{name} should be at least {minimum}ms",
                    value=value
                ))
            elif maximum is not None and value > maximum:
                self._errors.append(ValidationErrorDetail(
                    field=name,
                    message=f"{name} should not exceed {maximum}ms",
                    value=value
                ))

    def _validate_counts(self, config: Dict[str, Any]) -> None:
        """Validate retry and worker counts"""
        max_retries = config.get("max_retries")
        if max_retries is not None:
            if not isinstance(max_retries, int) or max_retries < 1:
                self._errors.append(ValidationErrorDetail(
                    field="max_retries",
                    message="max_retries must be a positive integer",
                    value=max_retries
                ))
            elif max_retries > 50:
                self._errors.append(ValidationErrorDetail(
                    field="max_retries",
                    message="max_retries should not exceed 50",
                    value=max_retries
                ))

        worker_count = config.get("worker_count")
        if worker_count is not None:
            if not isinstance(worker_count, int) or not 1 <= worker_count <= 64:
                self._errors.append(ValidationErrorDetail(
                    field="worker_count",
                    message="worker_count must be an integer between 1 and 64",
                    value=worker_count
                ))

        jitter = config.get("retry_jitter")
        if jitter is not None:
            if not isinstance(jitter, (int, float)) or not 0 <= jitter <= 1:
                self._errors.append(ValidationErrorDetail(
                    field="retry_jitter",
                    message="retry_jitter must be a ratio between 0 and 1",
                    value=jitter
                ))

    def _validate_timing_order(self, config: Dict[str, Any]) -> None:
        """Validate that lease and staleness windows nest around a provider call"""
        timeout = config.get("provider_timeout", ConfigDefaults.PROVIDER_TIMEOUT)
        lease_ttl = config.get("lease_ttl", ConfigDefaults.LEASE_TTL)
        stale = config.get("stale_processing_after", ConfigDefaults.STALE_PROCESSING_AFTER)

        if not all(isinstance(v, int) for v in (timeout, lease_ttl, stale)):
            return

        if lease_ttl <= timeout:
            self._errors.append(ValidationErrorDetail(
                field="lease_ttl",
                message="lease_ttl must be greater than provider_timeout",
                value=lease_ttl
            ))
        if stale <= lease_ttl:
            self._errors.append(ValidationErrorDetail(
                field="stale_processing_after",
                message="stale_processing_after must be greater than lease_ttl",
                value=stale
            ))

    def _validate_priorities(self, config: Dict[str, Any]) -> None:
        """Validate priority overrides"""
        priorities = config.get("priorities")
        if priorities is None:
            return
        if not isinstance(priorities, dict):
            self._errors.append(ValidationErrorDetail(
                field="priorities",
                message="priorities must be a mapping of operation kind to integer",
                value=priorities
            ))
            return
        valid_kinds = list(ConfigDefaults.PRIORITIES)
        for kind, value in priorities.items():
            if kind not in valid_kinds:
                self._errors.append(ValidationErrorDetail(
                    field="priorities",
                    message=f"operation kind must be one of: {', '.join(valid_kinds)}",
                    value=kind
                ))
            elif not isinstance(value, int):
                self._errors.append(ValidationErrorDetail(
                    field="priorities",
                    message=f"priority of {kind} must be an integer",
                    value=value
                ))

    def _validate_vault(self, config: Dict[str, Any]) -> None:
        """Validate credential vault settings"""
        secret = config.get("vault_secret")
        if secret is not None and (not isinstance(secret, str) or len(secret) < 8):
            self._errors.append(ValidationErrorDetail(
                field="vault_secret",
                message="vault_secret must be at least 8 characters",
                value="[REDACTED]"
            ))

        iterations = config.get("vault_iterations")
        if iterations is not None and (not isinstance(iterations, int) or iterations < 1000):
            self._errors.append(ValidationErrorDetail(
                field="vault_iterations",
                message="vault_iterations must be an integer of at least 1000",
                value=iterations
            ))

    def _validate_paths(self, config: Dict[str, Any]) -> None:
        """Validate path fields"""
        for path_field in ["audit_log_path", "state_store_path"]:
            path_value = config.get(path_field)
            if path_value is not None and path_value != "":
                if not isinstance(path_value, str):
                    self._errors.append(ValidationErrorDetail(
                        field=path_field,
                        message=f"{path_field} must be a string",
                        value=path_value
                    ))
