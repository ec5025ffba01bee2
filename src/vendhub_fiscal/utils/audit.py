"""
Audit trail for fiscal operations

Every queue, shift and receipt transition (and every provider HTTP call)
produces an AuditEntry. Entries are appended as JSON lines to the audit log
file when one is configured and handed to an optional callback.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union


logger = logging.getLogger(__name__)


# Sensitive fields that should be redacted in logs
SENSITIVE_FIELDS = [
    "authorization",
    "x-api-key",
    "apikey",
    "api_key",
    "password",
    "secret",
    "credentials",
    "ciphertext",
    "token",
]


def redact_sensitive_data(obj: Any) -> Any:
    """Redact sensitive data from object for logging"""
    if obj is None:
        return obj

    if isinstance(obj, str):
        return obj

    if isinstance(obj, list):
        return [redact_sensitive_data(item) for item in obj]

    if isinstance(obj, dict):
        redacted = {}
        for key, value in obj.items():
            lower_key = str(key).lower()
            is_sensitive = any(
                field in lower_key for field in SENSITIVE_FIELDS
            )

            if is_sensitive:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, (dict, list)):
                redacted[key] = redact_sensitive_data(value)
            else:
                redacted[key] = value
        return redacted

    return obj


@dataclass
class AuditEntry:
    """Audit log entry"""
    timestamp: str
    event: str
    entity_id: Optional[str] = None
    device_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """
    Append-only audit logger

    Example:
        >>> audit = AuditLogger(path="./logs/fiscal-audit.log")
        >>> audit.record("queue.item.enqueued", entity_id=item.id, device_id=item.device_id)
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        enabled: bool = True,
        callback: Optional[Callable[[AuditEntry], None]] = None,
    ) -> None:
        self._path = Path(path) if path else None
        self._enabled = enabled
        self._callback = callback
        self._lock = threading.Lock()

        if self._path is not None and self._enabled:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    def set_callback(self, callback: Callable[[AuditEntry], None]) -> None:
        """Set audit log callback"""
        self._callback = callback

    @property
    def enabled(self) -> bool:
        return self._enabled

    def record(
        self,
        event: str,
        entity_id: Optional[str] = None,
        device_id: Optional[str] = None,
        **data: Any,
    ) -> Optional[AuditEntry]:
        """Record an audit event; returns None when auditing is disabled"""
        if not self._enabled:
            return None

        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            entity_id=entity_id,
            device_id=device_id,
            data=redact_sensitive_data(data),
        )

        if self._path is not None:
            line = json.dumps(asdict(entry), default=str)
            with self._lock:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")

        if self._callback is not None:
            self._callback(entry)

        logger.debug(f"audit {event} entity={entity_id} device={device_id}")
        return entry
