"""
Per-device leases

A worker must hold a device's lease before dequeuing for it, which keeps
at most one operation in flight per device. Leases expire, so a crashed
worker cannot wedge a device: once the TTL passes another worker takes
the device over.
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional, Set

from vendhub_fiscal.models.lease import DeviceLease
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class DeviceLeaseManager:
    """Acquire, renew and release device leases"""

    def __init__(
        self,
        store: InMemoryFiscalStore,
        clock: Optional[Clock] = None,
        ttl_ms: int = 120000,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._ttl = timedelta(milliseconds=ttl_ms)

    def acquire(self, device_id: str, owner: str) -> Optional[DeviceLease]:
        """Claim a device; None when another worker holds a live lease"""
        with self._store.transaction():
            now = self._clock.now()
            current = self._store.get_lease(device_id)
            if current is not None and not current.is_expired(now) and current.owner != owner:
                return None
            if current is not None and current.is_expired(now) and current.owner != owner:
                logger.warning(
                    f"Taking over expired lease of device {device_id} from {current.owner}"
                )

            lease = DeviceLease(
                device_id=device_id,
                owner=owner,
                token=uuid.uuid4().hex,
                acquired_at=now,
                expires_at=now + self._ttl,
            )
            self._store.put_lease(lease)
            return lease

    def renew(self, lease: DeviceLease) -> Optional[DeviceLease]:
        """Extend a lease; None when it was lost to another worker"""
        with self._store.transaction():
            current = self._store.get_lease(lease.device_id)
            if current is None or current.token != lease.token:
                logger.warning(f"Lease on device {lease.device_id} lost by {lease.owner}")
                return None

            current.expires_at = self._clock.now() + self._ttl
            self._store.put_lease(current)
            return current

    def release(self, lease: DeviceLease) -> None:
        with self._store.transaction():
            current = self._store.get_lease(lease.device_id)
            if current is not None and current.token == lease.token:
                self._store.delete_lease(lease.device_id)

    def is_held(self, device_id: str) -> bool:
        lease = self._store.get_lease(device_id)
        return lease is not None and not lease.is_expired(self._clock.now())

    def held_devices(self) -> Set[str]:
        now = self._clock.now()
        return {
            lease.device_id for lease in self._store.list_leases()
            if not lease.is_expired(now)
        }
