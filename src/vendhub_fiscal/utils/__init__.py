"""Utilities module initialization"""

from vendhub_fiscal.utils.audit import AuditEntry, AuditLogger, redact_sensitive_data
from vendhub_fiscal.utils.clock import Clock, FixedClock, SystemClock

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "redact_sensitive_data",
    "Clock",
    "FixedClock",
    "SystemClock",
]
