"""
Shift Manager Unit Tests
"""

from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from conftest import make_sale
from vendhub_fiscal.exceptions import (
    PendingOperationsError,
    ShiftAlreadyOpenError,
    ShiftNotFoundError,
    ShiftNotOpenError,
)
from vendhub_fiscal.models.queue import OperationKind, QueueStatus
from vendhub_fiscal.models.receipt import FiscalReceipt, ReceiptStatus
from vendhub_fiscal.models.sale import PaymentSplit, ReceiptType
from vendhub_fiscal.models.shift import ShiftStatus
from vendhub_fiscal.providers.base import ProviderResult
from vendhub_fiscal.services.receipt_builder import ReceiptBuilder


def fiscalized_receipt(device_id, shift_id, clock, price="10000", receipt_type=ReceiptType.SALE,
                       card="0", sale_id="sale-1") -> FiscalReceipt:
    draft = ReceiptBuilder().build(
        make_sale(device_id, sale_id=sale_id, price=price, card=card, receipt_type=receipt_type)
    )
    return FiscalReceipt(
        organization_id="org-1",
        device_id=device_id,
        shift_id=shift_id,
        queue_item_id="item-1",
        sale_id=draft.sale_id,
        machine_id=draft.machine_id,
        type=draft.type,
        status=ReceiptStatus.SUCCESS,
        lines=list(draft.lines),
        vat_breakdown=list(draft.vat_breakdown),
        total=draft.total,
        vat_total=draft.vat_total,
        payment=draft.payment,
        fiscal_number="FN-1",
        created_at=clock.now(),
        updated_at=clock.now(),
    )


class TestOpenShift:
    """Tests for opening shifts"""

    def test_open_first_shift(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")

        assert shift.shift_number == 1
        assert shift.status is ShiftStatus.OPEN
        assert shift.opened_at == clock.now()
        assert shift.total_sales == 0
        assert shift.receipts_count == 0

    def test_one_open_shift_per_device(self, shifts, device):
        first = shifts.open_shift(device.id, "Operator")
        with pytest.raises(ShiftAlreadyOpenError) as exc_info:
            shifts.open_shift(device.id, "Operator")
        assert exc_info.value.shift_id == first.id

    def test_numbers_increase(self, shifts, device):
        first = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(first.id)
        second = shifts.open_shift(device.id, "Operator")
        assert second.shift_number == 2

    def test_devices_are_independent(self, shifts, make_device):
        d1 = make_device("D1")
        d2 = make_device("D2")
        shifts.open_shift(d1.id, "Operator")
        assert shifts.open_shift(d2.id, "Operator").shift_number == 1


class TestCloseShift:
    """Tests for closing shifts"""

    def test_close_enqueues_z_report(self, shifts, queue, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        clock.advance(3600)

        closed = shifts.close_shift(shift.id)

        assert closed.status is ShiftStatus.CLOSED
        assert closed.closed_at == clock.now()
        items = queue.list_items(device_id=device.id, operation=OperationKind.SHIFT_CLOSE)
        assert len(items) == 1
        assert items[0].shift_id == shift.id
        assert items[0].idempotency_key == f"shift_close:{shift.id}"

    def test_close_without_z_report_request(self, shifts, queue, device):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(shift.id, request_z_report=False)
        assert queue.list_items(device_id=device.id) == []

    def test_close_closed_shift(self, shifts, device):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(shift.id)
        with pytest.raises(ShiftNotOpenError):
            shifts.close_shift(shift.id)

    def test_close_unknown_shift(self, shifts):
        with pytest.raises(ShiftNotFoundError):
            shifts.close_shift("missing")

    def test_close_blocked_by_pending_receipt(self, shifts, fiscalization, device):
        """Should refuse to close while a receipt of the shift is queued"""
        shift = shifts.open_shift(device.id, "Operator")
        item = fiscalization.submit_sale(make_sale(device.id))

        with pytest.raises(PendingOperationsError) as exc_info:
            shifts.close_shift(shift.id)

        assert exc_info.value.pending_item_ids == [item.id]
        assert shifts.get_shift(shift.id).status is ShiftStatus.OPEN

    def test_close_allowed_after_failure(self, shifts, queue, fiscalization, device):
        shift = shifts.open_shift(device.id, "Operator")
        item = fiscalization.submit_sale(make_sale(device.id))
        queue.mark_failed(item.id, "rejected")

        assert shifts.close_shift(shift.id).status is ShiftStatus.CLOSED


class TestApplyReceipt:
    """Tests for shift totals"""

    def test_sale_updates_totals(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        receipt = fiscalized_receipt(device.id, shift.id, clock, price="11200", card="5000")

        updated = shifts.apply_receipt_to_shift(shift.id, receipt)

        assert updated.total_sales == Decimal("11200")
        assert updated.total_cash == Decimal("6200")
        assert updated.total_card == Decimal("5000")
        assert updated.receipts_count == 1
        assert len(updated.vat_summary) == 1
        assert updated.vat_summary[0].vat_rate == Decimal("12")
        assert updated.vat_summary[0].vat_amount == Decimal("1200.00")

    def test_apply_is_idempotent(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        receipt = fiscalized_receipt(device.id, shift.id, clock)

        shifts.apply_receipt_to_shift(shift.id, receipt)
        updated = shifts.apply_receipt_to_shift(shift.id, receipt)

        assert updated.total_sales == Decimal("10000")
        assert updated.receipts_count == 1

    def test_refund_counts_separately(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.apply_receipt_to_shift(shift.id, fiscalized_receipt(device.id, shift.id, clock))
        refund = fiscalized_receipt(
            device.id, shift.id, clock, price="4000",
            receipt_type=ReceiptType.REFUND, sale_id="sale-2",
        )

        updated = shifts.apply_receipt_to_shift(shift.id, refund)

        assert updated.total_refunds == Decimal("4000")
        assert updated.total_cash == Decimal("10000")
        assert updated.net_total == Decimal("6000")
        assert updated.receipts_count == 2

    def test_apply_to_closed_shift(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(shift.id)
        with pytest.raises(ShiftNotOpenError):
            shifts.apply_receipt_to_shift(shift.id, fiscalized_receipt(device.id, shift.id, clock))


class TestZReport:
    """Tests for Z-report bookkeeping"""

    def test_first_report_wins(self, shifts, device):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(shift.id)

        shifts.record_z_report(shift.id, ProviderResult(z_report_number="Z-1"))
        updated = shifts.record_z_report(shift.id, ProviderResult(z_report_number="Z-2"))

        assert updated.z_report_number == "Z-1"

    def test_report_needs_closed_shift(self, shifts, device):
        shift = shifts.open_shift(device.id, "Operator")
        with pytest.raises(ShiftNotOpenError):
            shifts.record_z_report(shift.id, ProviderResult(z_report_number="Z-1"))


class TestRequests:
    """Tests for queued shift requests"""

    def test_request_open_dedups(self, shifts, device):
        first = shifts.request_open(device.id, cashier="Operator")
        second = shifts.request_open(device.id)
        assert first.id == second.id
        assert first.payload.body.cashier_name == "Operator"

    def test_open_key_names_next_shift(self, shifts, device):
        """Should give every shift its own open key"""
        first = shifts.request_open(device.id)
        assert first.idempotency_key == f"shift_open:{device.id}:1"

        shift = shifts.open_shift(device.id, "Operator")
        shifts.close_shift(shift.id, request_z_report=False)

        second = shifts.request_open(device.id)
        assert second.idempotency_key == f"shift_open:{device.id}:2"
        assert second.id != first.id

    def test_x_report_keys_are_unique(self, shifts, device):
        shift = shifts.open_shift(device.id, "Operator")

        first = shifts.request_x_report(device.id)
        second = shifts.request_x_report(device.id)

        assert first.id != second.id
        assert first.idempotency_key != second.idempotency_key
        assert first.idempotency_key.startswith(f"x_report:{device.id}:{shift.id}:")

    def test_request_open_uses_device_cashier(self, shifts, make_device):
        device = make_device("D3", default_cashier="Kiosk 3")
        item = shifts.request_open(device.id)
        assert item.payload.body.cashier_name == "Kiosk 3"

    def test_request_close_without_shift(self, shifts, device):
        with pytest.raises(ShiftNotOpenError):
            shifts.request_close(device.id)

    def test_request_x_report(self, shifts, device):
        item = shifts.request_x_report(device.id, requested_by="ops")
        assert item.operation is OperationKind.X_REPORT
        assert item.status is QueueStatus.PENDING


class TestAutoSchedule:
    """Tests for scheduled shift changes"""

    def test_auto_close_after_close_time(self, shifts, queue, make_device, clock):
        device = make_device("D1", auto_close_shift=True, close_shift_at="23:00")
        shift = shifts.open_shift(device.id, "Operator")

        assert shifts.run_auto_schedule(clock.now()) == []

        late = datetime(2024, 1, 1, 23, 5, tzinfo=timezone.utc)
        enqueued = shifts.run_auto_schedule(late)

        assert len(enqueued) == 1
        assert enqueued[0].operation is OperationKind.SHIFT_CLOSE
        assert enqueued[0].shift_id == shift.id
        assert enqueued[0].payload.body.reason == "schedule"
        # Dedup keeps the schedule from piling up items
        assert shifts.run_auto_schedule(late)[0].id == enqueued[0].id

    def test_auto_open_after_open_time(self, shifts, make_device):
        device = make_device("D1", auto_open_shift=True, open_shift_at="08:00")

        early = datetime(2024, 1, 2, 7, 0, tzinfo=timezone.utc)
        assert shifts.run_auto_schedule(early) == []

        morning = datetime(2024, 1, 2, 8, 30, tzinfo=timezone.utc)
        enqueued = shifts.run_auto_schedule(morning)

        assert [i.operation for i in enqueued] == [OperationKind.SHIFT_OPEN]
        assert enqueued[0].device_id == device.id

    def test_schedule_uses_device_time_zone(self, shifts, make_device):
        try:
            ZoneInfo("Asia/Tashkent")
        except ZoneInfoNotFoundError:
            pytest.skip("IANA time zone database not installed")
        make_device("D1", auto_open_shift=True, open_shift_at="08:00", timezone="Asia/Tashkent")

        # 03:30 UTC is 08:30 in Tashkent (UTC+5)
        enqueued = shifts.run_auto_schedule(datetime(2024, 1, 2, 3, 30, tzinfo=timezone.utc))

        assert len(enqueued) == 1


class TestReads:
    """Tests for shift queries"""

    def test_history_newest_first(self, shifts, device):
        for _ in range(3):
            shift = shifts.open_shift(device.id, "Operator")
            shifts.close_shift(shift.id, request_z_report=False)

        history = shifts.shift_history(device.id, limit=2)

        assert [s.shift_number for s in history] == [3, 2]

    def test_local_x_report(self, shifts, device, clock):
        shift = shifts.open_shift(device.id, "Operator")
        shifts.apply_receipt_to_shift(shift.id, fiscalized_receipt(device.id, shift.id, clock))

        report = shifts.x_report(device.id)

        assert report.source == "local"
        assert report.total_sales == Decimal("10000")
        assert report.generated_at == clock.now()

    def test_x_report_without_shift(self, shifts, device):
        with pytest.raises(ShiftNotOpenError):
            shifts.x_report(device.id)

    def test_shift_totals(self, shifts, device):
        shift = shifts.open_shift(device.id, "Operator")
        totals = shifts.shift_totals(shift.id)
        assert totals.shift_id == shift.id
        assert totals.net_total == 0
