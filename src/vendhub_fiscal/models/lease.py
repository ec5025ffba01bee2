"""Per-device worker lease"""

from datetime import datetime

from pydantic import BaseModel, Field


class DeviceLease(BaseModel):
    """Claim a worker holds on a device while draining its queue"""

    device_id: str
    owner: str = Field(..., description="Worker name")
    token: str = Field(..., description="Fencing token of this claim")
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
