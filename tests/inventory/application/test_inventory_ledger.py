"""Application tests for InventoryLedger: locked reservations and restocks."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from inventory.stock.events import LowStockCrossed
from inventory.stock.ledger import InventoryLedger, lock_key
from inventory.stock.stock import InventoryRecord, StockChangeType
from protean import UnitOfWork
from shared.domain import checkout
from shared.errors import InsufficientStock, ItemUnavailable, SettlementTimeout


@pytest.fixture
def ledger(locks, settings):
    ledger = InventoryLedger(locks, settings)
    ledger.repository.add(InventoryRecord.create("prod-001", quantity=10))
    return ledger


class TestReserve:
    def test_reserve_persists_decrement(self, ledger):
        ledger.reserve("prod-001", 4, order_id="ord-001")
        assert ledger.get("prod-001").stock_quantity == 6

    def test_unknown_record(self, ledger):
        with pytest.raises(ItemUnavailable) as exc_info:
            ledger.reserve("missing", 1)
        assert exc_info.value.reason == "unknown_inventory"

    def test_shortage_leaves_stock_untouched(self, ledger):
        with pytest.raises(InsufficientStock):
            ledger.reserve("prod-001", 11)
        assert ledger.get("prod-001").stock_quantity == 10

    def test_reservation_rolls_back_with_outer_unit_of_work(self, ledger):
        with pytest.raises(RuntimeError):
            with UnitOfWork():
                ledger.reserve("prod-001", 4)
                raise RuntimeError("settlement failed")

        assert ledger.get("prod-001").stock_quantity == 10

    def test_low_stock_event_stored_on_commit(self, ledger, stored_events):
        ledger.reserve("prod-001", 6)
        events = stored_events(LowStockCrossed)
        assert len(events) == 1
        assert events[0].stock_quantity == 4

    def test_concurrent_reservations_never_oversell(self, ledger):
        def take(_):
            with checkout.domain_context():
                try:
                    return ledger.reserve("prod-001", 3)
                except InsufficientStock as exc:
                    return exc

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(take, range(6)))

        assert sum(isinstance(r, InsufficientStock) for r in results) == 3
        assert ledger.get("prod-001").stock_quantity == 1

    def test_waits_no_longer_than_lock_timeout(self, ledger, locks):
        def take():
            with checkout.domain_context():
                return ledger.reserve("prod-001", 1)

        with locks.hold([lock_key("prod-001")], timeout=1.0):
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(take)
                with pytest.raises(SettlementTimeout):
                    future.result()


class TestRestock:
    def test_restock_records_change_type(self, ledger):
        ledger.reserve("prod-001", 2, order_id="ord-001")
        record = ledger.restock("prod-001", 2, change_type=StockChangeType.CANCELLATION, order_id="ord-001")

        assert record.stock_quantity == 10
        assert record.movements[-1].change_type == StockChangeType.CANCELLATION

    def test_adjust(self, ledger):
        record = ledger.adjust("prod-001", -2, "Cycle count")
        assert record.stock_quantity == 8
        assert ledger.get("prod-001").stock_quantity == 8
