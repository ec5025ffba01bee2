"""
Fiscal State Store Unit Tests
"""

import json
import os
import stat

import pytest

from conftest import make_sale
from vendhub_fiscal.exceptions import FiscalError
from vendhub_fiscal.models.queue import OperationKind, QueueStatus
from vendhub_fiscal.services.device_registry import DeviceRegistry
from vendhub_fiscal.services.fiscal_queue import FiscalQueue
from vendhub_fiscal.services.fiscalization import FiscalizationService
from vendhub_fiscal.services.receipt_ledger import ReceiptLedger
from vendhub_fiscal.services.shift_manager import ShiftManager
from vendhub_fiscal.store.json_store import JsonFileFiscalStore


def build_services(store, clock, config):
    registry = DeviceRegistry(store, clock)
    queue = FiscalQueue(store, clock, config)
    shifts = ShiftManager(store, queue, registry, clock, config)
    fiscalization = FiscalizationService(
        store, registry, queue, shifts, ReceiptLedger(store, clock)
    )
    return registry, queue, shifts, fiscalization


class TestInMemoryTransactions:
    """Tests for transaction semantics"""

    def test_rollback_on_error(self, store, registry, device):
        with pytest.raises(RuntimeError):
            with store.transaction():
                registry.deactivate(device.id)
                raise RuntimeError("boom")

        assert store.get_device(device.id).is_active

    def test_nested_rollback_reaches_outermost(self, store, registry, device):
        with pytest.raises(RuntimeError):
            with store.transaction():
                registry.deactivate(device.id)
                with store.transaction():
                    registry.set_maintenance(device.id)
                raise RuntimeError("boom")

        assert store.get_device(device.id).is_active

    def test_reads_are_copies(self, store, device):
        """Should not let callers change stored records in place"""
        copy = store.get_device(device.id)
        copy.name = "changed"
        assert store.get_device(device.id).name == "D1"

    def test_sequence_assigned(self, queue, fiscalization, device):
        first = fiscalization.submit_sale(make_sale(device.id, sale_id="a"))
        second = fiscalization.submit_sale(make_sale(device.id, sale_id="b"))
        assert second.sequence == first.sequence + 1


class TestJsonFileFiscalStore:
    """Tests for JsonFileFiscalStore"""

    def test_state_survives_restart(self, tmp_path, clock, config):
        path = tmp_path / "state" / "fiscal.json"
        registry, queue, shifts, fiscalization = build_services(
            JsonFileFiscalStore(path), clock, config
        )
        device = registry.activate(registry.register("org-1", "D1", "sandbox").id)
        shift = shifts.open_shift(device.id, "Operator")
        item = fiscalization.submit_sale(make_sale(device.id))

        reloaded = JsonFileFiscalStore(path)
        registry, queue, shifts, fiscalization = build_services(reloaded, clock, config)

        assert registry.get(device.id).is_active
        assert shifts.current_shift(device.id).id == shift.id
        restored = queue.get(item.id)
        assert restored.status is QueueStatus.PENDING
        assert restored.operation is OperationKind.RECEIPT_SALE
        assert restored.payload.body.total == item.payload.body.total
        # Dedup index is rebuilt from the snapshot
        assert fiscalization.submit_sale(make_sale(device.id)).id == item.id
        next_item = fiscalization.submit_sale(make_sale(device.id, sale_id="sale-43"))
        assert next_item.sequence == item.sequence + 1

    def test_snapshot_written_on_commit(self, tmp_path):
        path = tmp_path / "fiscal.json"
        store = JsonFileFiscalStore(path)
        assert not path.exists()

        with store.transaction():
            store.delete_lease("dev-1")

        data = json.loads(path.read_text("utf-8"))
        assert data["version"] == 1
        assert data["queue_items"] == []

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "fiscal.json"
        with JsonFileFiscalStore(path).transaction():
            pass
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_rolled_back_changes_not_written(self, tmp_path, clock, config):
        path = tmp_path / "fiscal.json"
        store = JsonFileFiscalStore(path)
        registry = DeviceRegistry(store, clock)
        registry.register("org-1", "D1", "sandbox")

        with pytest.raises(RuntimeError):
            with store.transaction():
                registry.register("org-1", "D2", "sandbox")
                raise RuntimeError("boom")

        data = json.loads(path.read_text("utf-8"))
        assert [d["name"] for d in data["devices"]] == ["D1"]

    def test_unsupported_version(self, tmp_path):
        path = tmp_path / "fiscal.json"
        path.write_text(json.dumps({"version": 99}), "utf-8")
        with pytest.raises(FiscalError) as exc_info:
            JsonFileFiscalStore(path)
        assert exc_info.value.code == "STORE01"

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "fiscal.json"
        path.write_text("{not json", "utf-8")
        with pytest.raises(FiscalError):
            JsonFileFiscalStore(path)
