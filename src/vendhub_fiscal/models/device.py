"""Fiscal device model"""

import uuid
from datetime import datetime, time, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeviceStatus(str, Enum):
    """Fiscal device status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class OperatingMode(str, Enum):
    """Provider environment a device talks to"""
    SANDBOX = "sandbox"
    LIVE = "live"


class SealedSecret(BaseModel):
    """Encrypted credential blob (AES-256-GCM, see CredentialVault)"""

    model_config = ConfigDict(frozen=True)

    version: int = Field(1, description="Vault format version")
    salt: str = Field(..., description="PBKDF2 salt (hex)")
    nonce: str = Field(..., description="GCM nonce (hex)")
    ciphertext: str = Field(..., description="Encrypted credentials (hex)", repr=False)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class DeviceSettings(BaseModel):
    """Per-device provider and shift automation settings"""

    base_url: Optional[str] = Field(None, description="Override provider base URL")
    default_cashier: Optional[str] = Field(None, description="Cashier for automatic shifts")
    vat_rates: List[Decimal] = Field(default_factory=list, description="VAT rates the device accepts")
    auto_open_shift: bool = Field(False, description="Open a shift when a receipt needs one")
    auto_close_shift: bool = Field(False, description="Close the shift daily at close_shift_at")
    open_shift_at: Optional[str] = Field(None, description="Daily auto-open time (HH:MM)")
    close_shift_at: Optional[str] = Field(None, description="Daily auto-close time (HH:MM)")
    timezone: str = Field("UTC", description="IANA time zone of the schedule")

    @field_validator("open_shift_at", "close_shift_at")
    @classmethod
    def validate_hhmm(cls, v: Optional[str]) -> Optional[str]:
        """Validate HH:MM format"""
        if v is None:
            return v
        try:
            _parse_hhmm(v)
        except ValueError as e:
            raise ValueError("shift times must use HH:MM format") from e
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if v == "UTC":
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone: {v}") from e
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v != "":
            if not v.startswith(("http://", "https://")):
                raise ValueError("base_url must be a valid HTTP/HTTPS URL")
        return v

    @property
    def zone(self) -> tzinfo:
        if self.timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.timezone)

    @property
    def open_time(self) -> Optional[time]:
        return _parse_hhmm(self.open_shift_at) if self.open_shift_at else None

    @property
    def close_time(self) -> Optional[time]:
        return _parse_hhmm(self.close_shift_at) if self.close_shift_at else None


class SyncRecord(BaseModel):
    """Outcome of the last provider call made for a device"""

    synced_at: datetime
    status: str
    error: Optional[str] = None


class FiscalDevice(BaseModel):
    """Fiscal device model"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str = Field(..., description="Owning organization")
    name: str = Field(..., description="Display name", min_length=1)
    provider: str = Field(..., description="Provider adapter name, e.g. multikassa")
    serial_number: Optional[str] = Field(None, description="Terminal serial number")
    terminal_id: Optional[str] = Field(None, description="Provider terminal ID")
    credentials: Optional[SealedSecret] = Field(None, description="Sealed provider credentials")
    mode: OperatingMode = Field(OperatingMode.SANDBOX, description="Sandbox or live")
    status: DeviceStatus = Field(DeviceStatus.INACTIVE, description="Device status")
    settings: DeviceSettings = Field(default_factory=DeviceSettings)
    last_sync: Optional[SyncRecord] = None
    created_at: datetime
    updated_at: datetime
    retired_at: Optional[datetime] = None

    @property
    def is_retired(self) -> bool:
        return self.retired_at is not None

    @property
    def is_active(self) -> bool:
        return self.status is DeviceStatus.ACTIVE and not self.is_retired

    @property
    def sandbox_mode(self) -> bool:
        return self.mode is OperatingMode.SANDBOX
