"""
JSON file fiscal state store

Same API as the in-memory store. The whole state is written as one JSON
snapshot when the outermost transaction commits, using an atomic write
(temp file, then rename) with owner-only permissions.
"""

import json
import logging
import os
from pathlib import Path
from typing import Union

from vendhub_fiscal.exceptions import FiscalError
from vendhub_fiscal.models.device import FiscalDevice
from vendhub_fiscal.models.lease import DeviceLease
from vendhub_fiscal.models.queue import FiscalQueueItem
from vendhub_fiscal.models.receipt import FiscalReceipt
from vendhub_fiscal.models.shift import FiscalShift
from vendhub_fiscal.store.memory import InMemoryFiscalStore


logger = logging.getLogger(__name__)


class JsonStoreDefaults:
    """Default values for the JSON store"""
    VERSION = 1
    FILE_PERMISSIONS = 0o600


class JsonFileFiscalStore(InMemoryFiscalStore):
    """
    File-backed store

    Example:
        >>> store = JsonFileFiscalStore("./state/fiscal.json")
        >>> with store.transaction():
        ...     store.put_device(device)
    """

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self._path = Path(path).resolve()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load an existing snapshot, if any"""
        if not self._path.exists():
            return

        try:
            data = json.loads(self._path.read_text("utf-8"))
            if data.get("version") != JsonStoreDefaults.VERSION:
                raise ValueError(f"Unsupported state version: {data.get('version')}")

            self._devices = {
                d["id"]: FiscalDevice.model_validate(d) for d in data.get("devices", [])
            }
            self._shifts = {
                s["id"]: FiscalShift.model_validate(s) for s in data.get("shifts", [])
            }
            self._receipts = {
                r["id"]: FiscalReceipt.model_validate(r) for r in data.get("receipts", [])
            }
            self._items = {
                i["id"]: FiscalQueueItem.model_validate(i) for i in data.get("queue_items", [])
            }
            self._leases = {
                lease["device_id"]: DeviceLease.model_validate(lease)
                for lease in data.get("leases", [])
            }
        except (OSError, ValueError, KeyError) as e:
            raise FiscalError(
                f"Failed to load fiscal state from {self._path}: {str(e)}",
                code="STORE01",
                cause=e,
            )

        self._keys = {}
        for item in sorted(self._items.values(), key=lambda i: i.sequence):
            self._keys.setdefault(item.idempotency_key, []).append(item.id)
        self._sequence = max((i.sequence for i in self._items.values()), default=0)

        logger.info(
            f"Loaded fiscal state from {self._path}: {len(self._devices)} devices, "
            f"{len(self._items)} queue items"
        )

    def _flush(self) -> None:
        """Write the snapshot atomically"""
        snapshot = {
            "version": JsonStoreDefaults.VERSION,
            "devices": [d.model_dump(mode="json") for d in self._devices.values()],
            "shifts": [s.model_dump(mode="json") for s in self._shifts.values()],
            "receipts": [r.model_dump(mode="json") for r in self._receipts.values()],
            "queue_items": [i.model_dump(mode="json") for i in self._items.values()],
            "leases": [lease.model_dump(mode="json") for lease in self._leases.values()],
        }

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)

            temp_path = self._path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(snapshot, indent=2), "utf-8")
            os.chmod(temp_path, JsonStoreDefaults.FILE_PERMISSIONS)
            temp_path.replace(self._path)
        except OSError as e:
            raise FiscalError(
                f"Failed to save fiscal state to {self._path}: {str(e)}",
                code="STORE02",
                cause=e,
            )
