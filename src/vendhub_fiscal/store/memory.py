"""
In-memory fiscal state store

Holds devices, shifts, receipts, queue items and device leases. Every
read returns a deep copy, so callers change state only by writing a record
back. Writes grouped in ``transaction()`` are applied atomically: the
store lock is held for the whole block and an exception restores the state
seen on entry.
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from pydantic import BaseModel

from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.models.lease import DeviceLease
from vendhub_fiscal.models.queue import FiscalQueueItem
from vendhub_fiscal.models.receipt import FiscalReceipt
from vendhub_fiscal.models.shift import FiscalShift, ShiftStatus


M = TypeVar("M", bound=BaseModel)


def _copy(record: Optional[M]) -> Optional[M]:
    if record is None:
        return None
    return record.model_copy(deep=True)


class InMemoryFiscalStore:
    """Thread-safe in-memory store"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._devices: Dict[str, FiscalDevice] = {}
        self._shifts: Dict[str, FiscalShift] = {}
        self._receipts: Dict[str, FiscalReceipt] = {}
        self._items: Dict[str, FiscalQueueItem] = {}
        self._leases: Dict[str, DeviceLease] = {}
        self._keys: Dict[str, List[str]] = {}
        self._sequence = 0

    # ============ Transactions ============

    @contextmanager
    def transaction(self) -> Iterator["InMemoryFiscalStore"]:
        """Group reads and writes into one atomic unit (re-entrant)"""
        with self._lock:
            snapshot = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if snapshot is not None:
                    self._restore(snapshot)
                raise
            self._depth -= 1
            if self._depth == 0:
                self._flush()

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "devices": dict(self._devices),
            "shifts": dict(self._shifts),
            "receipts": dict(self._receipts),
            "items": dict(self._items),
            "leases": dict(self._leases),
            "keys": {key: list(ids) for key, ids in self._keys.items()},
            "sequence": self._sequence,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._devices = snapshot["devices"]
        self._shifts = snapshot["shifts"]
        self._receipts = snapshot["receipts"]
        self._items = snapshot["items"]
        self._leases = snapshot["leases"]
        self._keys = snapshot["keys"]
        self._sequence = snapshot["sequence"]

    def _flush(self) -> None:
        """Persist committed state; nothing to do in memory"""

    def _write(self, fn: Callable[[], Any]) -> Any:
        with self.transaction():
            return fn()

    # ============ Devices ============

    def get_device(self, device_id: str) -> Optional[FiscalDevice]:
        with self._lock:
            return _copy(self._devices.get(device_id))

    def put_device(self, device: FiscalDevice) -> None:
        self._write(lambda: self._devices.__setitem__(device.id, device.model_copy(deep=True)))

    def list_devices(self, organization_id: Optional[str] = None) -> List[FiscalDevice]:
        with self._lock:
            return [
                _copy(device) for device in self._devices.values()
                if organization_id is None or device.organization_id == organization_id
            ]

    # ============ Shifts ============

    def get_shift(self, shift_id: str) -> Optional[FiscalShift]:
        with self._lock:
            return _copy(self._shifts.get(shift_id))

    def put_shift(self, shift: FiscalShift) -> None:
        self._write(lambda: self._shifts.__setitem__(shift.id, shift.model_copy(deep=True)))

    def list_shifts(self, device_id: str) -> List[FiscalShift]:
        """Shifts of a device, oldest first"""
        with self._lock:
            shifts = [s for s in self._shifts.values() if s.device_id == device_id]
            return [_copy(s) for s in sorted(shifts, key=lambda s: s.shift_number)]

    def get_open_shift(self, device_id: str) -> Optional[FiscalShift]:
        with self._lock:
            for shift in self._shifts.values():
                if shift.device_id == device_id and shift.status is ShiftStatus.OPEN:
                    return _copy(shift)
            return None

    def last_shift_number(self, device_id: str) -> int:
        with self._lock:
            return max(
                (s.shift_number for s in self._shifts.values() if s.device_id == device_id),
                default=0,
            )

    # ============ Receipts ============

    def get_receipt(self, receipt_id: str) -> Optional[FiscalReceipt]:
        with self._lock:
            return _copy(self._receipts.get(receipt_id))

    def put_receipt(self, receipt: FiscalReceipt) -> None:
        self._write(lambda: self._receipts.__setitem__(receipt.id, receipt.model_copy(deep=True)))

    def list_receipts(
        self, predicate: Optional[Callable[[FiscalReceipt], bool]] = None
    ) -> List[FiscalReceipt]:
        """Receipts in creation order"""
        with self._lock:
            receipts = sorted(self._receipts.values(), key=lambda r: r.created_at)
            return [_copy(r) for r in receipts if predicate is None or predicate(r)]

    # ============ Queue items ============

    def get_item(self, item_id: str) -> Optional[FiscalQueueItem]:
        with self._lock:
            return _copy(self._items.get(item_id))

    def add_item(self, item: FiscalQueueItem) -> FiscalQueueItem:
        """Insert a new item, assigning its sequence number"""
        def insert() -> FiscalQueueItem:
            self._sequence += 1
            stored = item.model_copy(deep=True)
            stored.sequence = self._sequence
            self._items[stored.id] = stored
            self._keys.setdefault(stored.idempotency_key, []).append(stored.id)
            return stored.model_copy(deep=True)

        return self._write(insert)

    def put_item(self, item: FiscalQueueItem) -> None:
        def update() -> None:
            if item.id not in self._items:
                raise KeyError(item.id)
            self._items[item.id] = item.model_copy(deep=True)

        self._write(update)

    def list_items(
        self, predicate: Optional[Callable[[FiscalQueueItem], bool]] = None
    ) -> List[FiscalQueueItem]:
        """Queue items in insertion order"""
        with self._lock:
            items = sorted(self._items.values(), key=lambda i: i.sequence)
            return [_copy(i) for i in items if predicate is None or predicate(i)]

    def items_by_key(self, idempotency_key: str) -> List[FiscalQueueItem]:
        with self._lock:
            return [_copy(self._items[i]) for i in self._keys.get(idempotency_key, [])]

    # ============ Leases ============

    def get_lease(self, device_id: str) -> Optional[DeviceLease]:
        with self._lock:
            return _copy(self._leases.get(device_id))

    def put_lease(self, lease: DeviceLease) -> None:
        self._write(lambda: self._leases.__setitem__(lease.device_id, lease.model_copy()))

    def delete_lease(self, device_id: str) -> None:
        self._write(lambda: self._leases.pop(device_id, None))

    def list_leases(self) -> List[DeviceLease]:
        with self._lock:
            return [_copy(lease) for lease in self._leases.values()]
