"""Domain events reach the event store with the unit of work that raised them."""

import pytest
from inventory.stock.events import LowStockCrossed
from inventory.stock.stock import InventoryRecord
from protean import UnitOfWork, current_domain
from shared.persistence import load


@pytest.fixture
def record():
    record = InventoryRecord.create("tee", quantity=10, low_stock_amount=5)
    current_domain.repository_for(InventoryRecord).add(record)
    return record


def _reserve(quantity):
    record = load(InventoryRecord, "tee")
    record.reserve(quantity, order_id="order-1")
    current_domain.repository_for(InventoryRecord).add(record)


class TestEventStore:
    def test_event_stored_on_commit(self, record, stored_events):
        with UnitOfWork():
            _reserve(6)

        events = stored_events(LowStockCrossed)
        assert len(events) == 1
        assert events[0].inventory_id == "tee"
        assert events[0].previous_quantity == 10
        assert events[0].stock_quantity == 4

    def test_event_stream_named_after_the_aggregate(self, record):
        with UnitOfWork():
            _reserve(6)

        messages = current_domain.event_store.store.read("checkout::inventory_record-tee")
        assert [m.metadata.headers.type for m in messages] == [LowStockCrossed.__type__]

    def test_rolled_back_events_never_stored(self, record, stored_events):
        with pytest.raises(RuntimeError):
            with UnitOfWork():
                _reserve(6)
                raise RuntimeError("boom")

        assert stored_events(LowStockCrossed) == []
        assert load(InventoryRecord, "tee").stock_quantity == 10

    def test_events_of_a_reloaded_aggregate_are_kept(self, record, stored_events):
        # Two reservations on the same record inside one unit of work: the
        # second load must see the first change and keep its events
        with UnitOfWork():
            _reserve(2)
            _reserve(4)

        events = stored_events(LowStockCrossed)
        assert [(e.previous_quantity, e.stock_quantity) for e in events] == [(8, 4)]
        assert load(InventoryRecord, "tee").stock_quantity == 4

    def test_event_type_names_the_domain(self):
        assert LowStockCrossed.__type__ == "Checkout.LowStockCrossed.v1"
