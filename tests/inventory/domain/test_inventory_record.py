"""Tests for the InventoryRecord aggregate: reservations, backorders and restocks."""

import pytest
from inventory.stock.events import LowStockCrossed, StockBackordered
from inventory.stock.stock import (
    BackorderPolicy,
    InventoryRecord,
    StockChangeType,
    StockStatus,
    derive_stock_status,
)
from shared.errors import InsufficientStock, ValidationError


def _make_record(**overrides):
    defaults = {
        "product_id": "prod-001",
        "quantity": 10,
        "sku": "TEE-BLK",
    }
    defaults.update(overrides)
    return InventoryRecord.create(**defaults)


class TestCreation:
    def test_keyed_by_product(self):
        record = _make_record()
        assert record.id == "prod-001"
        assert record.variation_id is None

    def test_keyed_by_variation_when_given(self):
        record = _make_record(variation_id="var-001")
        assert record.id == "var-001"
        assert record.product_id == "prod-001"

    def test_status_derived_from_quantity(self):
        assert _make_record(quantity=0).stock_status == StockStatus.OUT_OF_STOCK
        assert _make_record(quantity=0, backorders="notify").stock_status == StockStatus.ON_BACKORDER
        assert _make_record(quantity=3).stock_status == StockStatus.IN_STOCK

    def test_untracked_keeps_given_status(self):
        record = _make_record(manage_stock=False, quantity=0, stock_status="outofstock")
        assert record.stock_status == StockStatus.OUT_OF_STOCK


class TestDeriveStockStatus:
    @pytest.mark.parametrize(
        "quantity,policy,expected",
        [
            (5, BackorderPolicy.NO, StockStatus.IN_STOCK),
            (0, BackorderPolicy.NO, StockStatus.OUT_OF_STOCK),
            (-2, BackorderPolicy.YES, StockStatus.ON_BACKORDER),
            (0, BackorderPolicy.NOTIFY, StockStatus.ON_BACKORDER),
        ],
    )
    def test_status(self, quantity, policy, expected):
        assert derive_stock_status(quantity, policy) == expected


class TestReserve:
    def test_reserve_decrements_stock(self):
        record = _make_record(quantity=10)
        reservation = record.reserve(3, order_id="ord-001")

        assert record.stock_quantity == 7
        assert reservation.quantity == 3
        assert reservation.backordered == 0

    def test_reserve_records_sale_movement(self):
        record = _make_record(quantity=10)
        record.reserve(3, order_id="ord-001")

        movement = record.movements[-1]
        assert movement.change_type == StockChangeType.SALE
        assert movement.quantity_change == -3
        assert movement.quantity_after == 7
        assert movement.order_id == "ord-001"

    def test_reserve_last_unit_marks_out_of_stock(self):
        record = _make_record(quantity=1)
        record.reserve(1)
        assert record.stock_quantity == 0
        assert record.stock_status == StockStatus.OUT_OF_STOCK

    def test_shortage_rejected_without_backorders(self):
        record = _make_record(quantity=2)

        with pytest.raises(InsufficientStock) as exc_info:
            record.reserve(3)

        assert "quantity" in exc_info.value.messages
        assert exc_info.value.details["available"] == 2
        assert exc_info.value.details["requested"] == 3
        assert record.stock_quantity == 2
        assert record.movements == []

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_rejected(self, quantity):
        with pytest.raises(ValidationError) as exc_info:
            _make_record().reserve(quantity)
        assert "quantity" in exc_info.value.messages

    def test_untracked_always_succeeds(self):
        record = _make_record(manage_stock=False, quantity=0)
        reservation = record.reserve(50)

        assert reservation.untracked is True
        assert record.stock_quantity == 0
        assert record.movements == []


class TestBackorders:
    def test_yes_policy_goes_negative_silently(self):
        record = _make_record(quantity=1, backorders="yes")
        reservation = record.reserve(3)

        assert record.stock_quantity == -2
        assert record.stock_status == StockStatus.ON_BACKORDER
        assert reservation.backordered == 2
        assert reservation.notify_backorder is False
        assert not any(isinstance(e, StockBackordered) for e in record._events)

    def test_notify_policy_raises_event(self):
        record = _make_record(quantity=0, backorders="notify")
        reservation = record.reserve(2, order_id="ord-001")

        assert reservation.notify_backorder is True
        event = record._events[-1]
        assert isinstance(event, StockBackordered)
        assert event.backordered_quantity == 2
        assert event.stock_quantity == -2
        assert event.order_id == "ord-001"

    def test_already_negative_counts_whole_quantity(self):
        record = _make_record(quantity=-1, backorders="yes")
        reservation = record.reserve(2)
        assert reservation.backordered == 2


class TestLowStock:
    def test_crossing_threshold_raises_event(self):
        record = _make_record(quantity=6)
        record.reserve(2, default_low_stock=5)

        event = record._events[-1]
        assert isinstance(event, LowStockCrossed)
        assert event.previous_quantity == 6
        assert event.stock_quantity == 4
        assert event.low_stock_amount == 5

    def test_already_below_threshold_is_silent(self):
        record = _make_record(quantity=4)
        record.reserve(1, default_low_stock=5)
        assert record._events == []

    def test_record_threshold_overrides_default(self):
        record = _make_record(quantity=10, low_stock_amount=8)
        record.reserve(3, default_low_stock=2)
        assert record._events[-1].low_stock_amount == 8

    def test_no_threshold_no_event(self):
        record = _make_record(quantity=2)
        record.reserve(2)
        assert record._events == []


class TestRestockAndRelease:
    def test_release_returns_reservation(self):
        record = _make_record(quantity=5)
        reservation = record.reserve(2)
        record.release(reservation)

        assert record.stock_quantity == 5
        assert record.movements[-1].change_type == StockChangeType.CANCELLATION

    def test_release_foreign_reservation_rejected(self):
        reservation = _make_record(product_id="other").reserve(1)
        with pytest.raises(ValidationError):
            _make_record().release(reservation)

    def test_restock_adds_quantity(self):
        record = _make_record(quantity=0)
        record.restock(4, change_type=StockChangeType.REFUND, order_id="ord-001", note="Refund r-1")

        assert record.stock_quantity == 4
        assert record.stock_status == StockStatus.IN_STOCK
        assert record.movements[-1].change_type == StockChangeType.REFUND
        assert record.movements[-1].note == "Refund r-1"

    def test_restock_untracked_is_noop(self):
        record = _make_record(manage_stock=False, quantity=0)
        record.restock(4)
        assert record.stock_quantity == 0


class TestAdjust:
    def test_adjust_requires_reason(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_record().adjust(-1, "")
        assert "reason" in exc_info.value.messages

    def test_adjust_cannot_go_negative_without_backorders(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_record(quantity=1).adjust(-2, "Cycle count")
        assert "quantity_change" in exc_info.value.messages

    def test_adjust_records_movement(self):
        record = _make_record(quantity=10)
        record.adjust(-3, "Damaged in warehouse")

        assert record.stock_quantity == 7
        assert record.movements[-1].change_type == StockChangeType.ADJUSTMENT
        assert record.movements[-1].note == "Damaged in warehouse"

    def test_adjust_untracked_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_record(manage_stock=False).adjust(1, "Count")
        assert "manage_stock" in exc_info.value.messages

    def test_status_only_settable_when_untracked(self):
        with pytest.raises(ValidationError):
            _make_record().set_stock_status("outofstock")

        record = _make_record(manage_stock=False)
        record.set_stock_status("onbackorder")
        assert record.stock_status == StockStatus.ON_BACKORDER
