"""Exception classes for the VendHub fiscal core"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class FiscalErrorCategory(str, Enum):
    """Fiscal error category codes"""
    DEVICE = "DEV"
    SHIFT = "SHIFT"
    RECEIPT = "RCPT"
    QUEUE = "QUEUE"
    PROVIDER = "PROV"
    NETWORK = "NET"
    VALIDATION = "VAL"
    INVARIANT = "INV"
    CRYPTO = "CRYPTO"
    CONFIG = "CONFIG"
    UNKNOWN = "UNKNOWN"


class ErrorClassification(str, Enum):
    """How the queue worker reacts to a failed operation"""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PRECONDITION = "precondition"
    INVARIANT = "invariant"


class FiscalError(Exception):
    """
    Base exception for fiscal errors

    All errors in the package extend from this class.
    Provides consistent error handling and categorization.
    """

    classification: ErrorClassification = ErrorClassification.PERMANENT

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.cause = cause
        self.details = details
        self.timestamp = datetime.now(timezone.utc)
        self.category = self._determine_category(code)

    def _determine_category(self, code: Optional[str]) -> FiscalErrorCategory:
        """Determine error category from code"""
        if not code:
            return FiscalErrorCategory.UNKNOWN

        for category in FiscalErrorCategory:
            if category is FiscalErrorCategory.UNKNOWN:
                continue
            if code.startswith(category.value):
                return category

        return FiscalErrorCategory.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary"""
        return {
            "name": self.__class__.__name__,
            "message": str(self),
            "code": self.code,
            "status_code": self.status_code,
            "category": self.category.value,
            "classification": self.classification.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    def has_code(self, code: str) -> bool:
        """Check if error has a specific code"""
        return self.code == code

    def is_category(self, category: FiscalErrorCategory) -> bool:
        """Check if error belongs to a category"""
        return self.category == category

    def get_description(self) -> str:
        """Get human-readable error description"""
        parts = [str(self)]

        if self.code:
            parts.insert(0, f"[{self.code}]")

        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")

        return " ".join(parts)


class ValidationError(FiscalError):
    """Validation error"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code="VAL01", details=details)
        self.field = field


class ConfigError(FiscalError):
    """Configuration error"""

    def __init__(
        self,
        message: str,
        code: str = "CONFIG01",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class CryptoError(FiscalError):
    """Cryptographic operation error"""

    def __init__(
        self,
        message: str,
        code: str = "CRYPTO01",
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, cause=cause, details=details)


# ============ Devices ============

class DeviceNotFoundError(FiscalError):
    """Fiscal device does not exist (or belongs to another organization)"""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Fiscal device not found: {device_id}", code="DEV01", status_code=404)
        self.device_id = device_id


class DeviceUnavailableError(FiscalError):
    """Device is retired or otherwise cannot accept the requested change"""

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(
            f"Fiscal device {device_id} is unavailable: {reason}", code="DEV02"
        )
        self.device_id = device_id


# ============ Shifts ============

class ShiftAlreadyOpenError(FiscalError):
    """An OPEN shift already exists for the device"""

    def __init__(self, device_id: str, shift_id: str) -> None:
        super().__init__(
            f"Shift {shift_id} is already open on device {device_id}",
            code="SHIFT01",
            details={"device_id": device_id, "shift_id": shift_id},
        )
        self.device_id = device_id
        self.shift_id = shift_id


class ShiftNotOpenError(FiscalError):
    """The shift is not OPEN (or the device has no OPEN shift)"""

    classification = ErrorClassification.PRECONDITION

    def __init__(self, message: str, shift_id: Optional[str] = None) -> None:
        super().__init__(message, code="SHIFT02", details={"shift_id": shift_id})
        self.shift_id = shift_id


class ShiftNotFoundError(FiscalError):
    """Shift does not exist"""

    def __init__(self, shift_id: str) -> None:
        super().__init__(f"Shift not found: {shift_id}", code="SHIFT03", status_code=404)
        self.shift_id = shift_id


class PendingOperationsError(FiscalError):
    """Shift cannot close while queue items still reference it"""

    classification = ErrorClassification.PRECONDITION

    def __init__(self, shift_id: str, pending_item_ids: list) -> None:
        super().__init__(
            f"Shift {shift_id} has {len(pending_item_ids)} pending operation(s)",
            code="SHIFT04",
            details={"shift_id": shift_id, "pending_item_ids": list(pending_item_ids)},
        )
        self.shift_id = shift_id
        self.pending_item_ids = list(pending_item_ids)


# ============ Receipts ============

class MissingTaxCodeError(FiscalError):
    """A line item has no resolvable tax classification or VAT rate"""

    def __init__(self, message: str, line_no: Optional[int] = None) -> None:
        super().__init__(message, code="RCPT01", details={"line_no": line_no})
        self.line_no = line_no


class PaymentMismatchError(FiscalError):
    """Payment split does not add up to the receipt total"""

    def __init__(self, total: Any, paid: Any) -> None:
        super().__init__(
            f"Payment split {paid} does not match receipt total {total}",
            code="RCPT02",
            details={"total": str(total), "paid": str(paid)},
        )
        self.total = total
        self.paid = paid


class ReceiptNotFoundError(FiscalError):
    """Receipt does not exist"""

    def __init__(self, receipt_id: str) -> None:
        super().__init__(f"Receipt not found: {receipt_id}", code="RCPT03", status_code=404)
        self.receipt_id = receipt_id


# ============ Queue ============

class QueueItemNotFoundError(FiscalError):
    """Queue item does not exist"""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Queue item not found: {item_id}", code="QUEUE01", status_code=404)
        self.item_id = item_id


class InvalidTransitionError(FiscalError):
    """Requested status change is not allowed by the state machine"""

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} {entity_id} cannot move from {current} to {target}",
            code="QUEUE02",
            details={"current": current, "target": target},
        )
        self.entity_id = entity_id
        self.current = current
        self.target = target


class RetryLimitExceededError(FiscalError):
    """Retry budget spent; caller must mark the item FAILED instead"""

    def __init__(self, item_id: str, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Queue item {item_id} exhausted its retry budget "
            f"({retry_count}/{max_retries})",
            code="QUEUE03",
        )
        self.item_id = item_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class InvariantViolationError(FiscalError):
    """Internal consistency was broken; never retried, always alerted"""

    classification = ErrorClassification.INVARIANT

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="INV01", details=details)


# ============ Provider ============

class ProviderError(FiscalError):
    """
    Failure reported by (or while talking to) a fiscal provider

    The classification decides whether the queue retries the operation.
    """

    def __init__(
        self,
        message: str,
        classification: ErrorClassification = ErrorClassification.TRANSIENT,
        status_code: Optional[int] = None,
        code: str = "PROV01",
        raw: Optional[Any] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code, cause=cause)
        self.classification = classification
        self.raw = raw

    @property
    def retryable(self) -> bool:
        return self.classification is ErrorClassification.TRANSIENT

    @classmethod
    def permanent(
        cls, message: str, status_code: Optional[int] = None, raw: Optional[Any] = None
    ) -> "ProviderError":
        """Create a non-retryable rejection"""
        return cls(
            message,
            classification=ErrorClassification.PERMANENT,
            status_code=status_code,
            code="PROV02",
            raw=raw,
        )

    @classmethod
    def from_status(
        cls, message: str, status_code: int, raw: Optional[Any] = None
    ) -> "ProviderError":
        """Classify an HTTP status returned by the provider"""
        if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
            return cls(message, status_code=status_code, raw=raw)
        return cls.permanent(message, status_code=status_code, raw=raw)


RETRYABLE_STATUS_CODES = (408, 425, 429, 500, 502, 503, 504)


class NetworkError(ProviderError):
    """
    Network error for HTTP transport layer failures
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        network_code: str = "NET10",
        retryable: bool = True,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message,
            classification=(
                ErrorClassification.TRANSIENT if retryable else ErrorClassification.PERMANENT
            ),
            status_code=status_code,
            code=network_code,
            cause=cause,
        )
        self.network_code = network_code

    @classmethod
    def timeout(cls, message: str = "Request timed out") -> "NetworkError":
        """Create a timeout error"""
        return cls(message, status_code=408, network_code="NET01")

    @classmethod
    def connection_refused(
        cls, message: str = "Connection refused"
    ) -> "NetworkError":
        """Create a connection refused error"""
        return cls(message, network_code="NET02")

    @classmethod
    def circuit_breaker_open(cls, retry_after_seconds: int) -> "NetworkError":
        """Create a circuit breaker open error"""
        return cls(
            f"Circuit breaker is open. Retry after {retry_after_seconds} seconds",
            status_code=503,
            network_code="NET05",
        )

    @classmethod
    def ssl_error(cls, message: str = "SSL/TLS error") -> "NetworkError":
        """Create an SSL error"""
        return cls(message, network_code="NET04", retryable=False)


def classify_error(error: BaseException) -> ErrorClassification:
    """
    Map any exception raised while processing a queue item to the
    worker's retry taxonomy

    Exceptions from outside the package count as transient; the retry
    budget still bounds them.
    """
    if isinstance(error, FiscalError):
        return error.classification
    return ErrorClassification.TRANSIENT
