"""Application tests for folding completed orders into customer statistics."""

import pytest
from identity.customer.customer import Customer
from identity.customer.statistics import record_completed_order
from protean import UnitOfWork, current_domain
from shared.money import Money


@pytest.fixture
def customers():
    return current_domain.repository_for(Customer)


class TestRecordCompletedOrder:
    def test_unknown_customer_gets_a_record(self, customers):
        customer = record_completed_order("guest-1", "ord-1", Money("27.00"), email="guest@example.com")

        stored = customers.get("guest-1")
        assert stored.email == "guest@example.com"
        assert stored.orders_count == 1
        assert customer.total_spent == Money("27.00")

    def test_existing_customer_updated(self, customers):
        customers.add(Customer.register("ada@example.com", customer_id="cust-001"))

        record_completed_order("cust-001", "ord-1", Money("10.00"))
        record_completed_order("cust-001", "ord-2", Money("20.00"))

        stored = customers.get("cust-001")
        assert stored.orders_count == 2
        assert stored.average_order_value == Money("15.00")

    def test_repeat_is_ignored(self, customers):
        record_completed_order("cust-001", "ord-1", Money("10.00"))
        record_completed_order("cust-001", "ord-1", Money("10.00"))

        assert customers.get("cust-001").orders_count == 1

    def test_two_orders_in_one_unit_of_work(self, customers):
        customers.add(Customer.register("ada@example.com", customer_id="cust-001"))

        with UnitOfWork():
            record_completed_order("cust-001", "ord-1", Money("10.00"))
            record_completed_order("cust-001", "ord-2", Money("30.00"))

        stored = customers.get("cust-001")
        assert stored.counted_order_ids == ["ord-1", "ord-2"]
        assert stored.total_spent == Money("40.00")
