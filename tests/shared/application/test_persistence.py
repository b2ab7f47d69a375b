"""Tests for row locks, sequences and aggregate loading inside units of work."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from identity.customer.customer import Customer
from protean import UnitOfWork, current_domain
from protean.exceptions import ObjectNotFoundError
from shared.domain import checkout
from shared.errors import SettlementTimeout
from shared.money import Money
from shared.persistence import find_all, load


@pytest.fixture
def customers():
    return current_domain.repository_for(Customer)


class TestRepository:
    def test_add_outside_unit_of_work_commits(self, customers):
        customers.add(Customer(id="c1", email="one@example.com"))
        assert customers.get("c1").email == "one@example.com"

    def test_get_missing_raises(self, customers):
        with pytest.raises(ObjectNotFoundError):
            customers.get("missing")

    def test_rollback_discards_everything(self, customers):
        with pytest.raises(RuntimeError):
            with UnitOfWork():
                customers.add(Customer(id="c1", email="one@example.com"))
                customers.add(Customer(id="c2", email="two@example.com"))
                raise RuntimeError("boom")

        assert load(Customer, "c1") is None
        assert load(Customer, "c2") is None

    def test_writes_invisible_to_other_threads_until_commit(self, customers):
        def look():
            with checkout.domain_context():
                return load(Customer, "c1")

        with UnitOfWork():
            customers.add(Customer(id="c1", email="one@example.com"))
            with ThreadPoolExecutor(max_workers=1) as pool:
                assert pool.submit(look).result() is None

        assert load(Customer, "c1") is not None

    def test_nested_units_of_work_join_the_outer_one(self, customers):
        with pytest.raises(RuntimeError):
            with UnitOfWork():
                with UnitOfWork():
                    customers.add(Customer(id="c1", email="one@example.com"))
                raise RuntimeError("outer failed")

        assert load(Customer, "c1") is None


class TestLoad:
    def test_missing_returns_none(self):
        assert load(Customer, "missing") is None

    def test_returns_the_instance_the_unit_of_work_holds(self, customers):
        customers.add(Customer(id="c1", email="one@example.com"))

        with UnitOfWork():
            first = load(Customer, "c1")
            first.record_completed_order("order-1", Money("10.00"))
            customers.add(first)

            assert load(Customer, "c1") is first

        assert customers.get("c1").orders_count == 1

    def test_find_all_prefers_held_instances(self, customers):
        customers.add(Customer(id="c1", email="one@example.com"))
        customers.add(Customer(id="c2", email="one@example.com"))

        with UnitOfWork():
            held = load(Customer, "c1")
            found = find_all(Customer, email="one@example.com")

            assert {customer.id for customer in found} == {"c1", "c2"}
            assert next(customer for customer in found if customer.id == "c1") is held
            # The query did not displace the held instance
            assert load(Customer, "c1") is held

    def test_find_all_is_not_paged(self, customers):
        for index in range(120):
            customers.add(Customer(id=f"c{index}", email="many@example.com"))

        assert len(find_all(Customer, email="many@example.com")) == 120


class TestRowLocks:
    def test_locks_are_reentrant(self, locks):
        with locks.hold(["a", "b"], timeout=0.5):
            with locks.hold(["b"], timeout=0.5):
                pass

    def test_acquired_in_sorted_order(self, locks):
        with locks.hold(["b", "a", "b"], timeout=0.5) as keys:
            assert keys == ["a", "b"]

    def test_timeout_names_the_key(self, locks):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(["row:1"], timeout=1.0):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(1)
        try:
            with pytest.raises(SettlementTimeout) as exc_info:
                with locks.hold(["row:0", "row:1"], timeout=0.05):
                    pass
            assert exc_info.value.details["key"] == "row:1"
        finally:
            release.set()
            thread.join()

        # row:0 was released when acquisition failed
        def take_row_zero():
            with locks.hold(["row:0"], timeout=0.05) as keys:
                return keys

        with ThreadPoolExecutor(max_workers=1) as pool:
            assert pool.submit(take_row_zero).result() == ["row:0"]


class TestSequences:
    def test_starts_at_given_value(self, sequences):
        assert sequences.next_value("order_number", 1000) == 1000
        assert sequences.next_value("order_number", 1000) == 1001

    def test_values_not_reused_after_rollback(self, sequences):
        with pytest.raises(RuntimeError):
            with UnitOfWork():
                sequences.next_value("order_number", 1000)
                raise RuntimeError("boom")
        assert sequences.next_value("order_number", 1000) == 1001

    def test_concurrent_draws_are_unique(self, sequences):
        with ThreadPoolExecutor(max_workers=8) as pool:
            values = list(pool.map(lambda _: sequences.next_value("seq"), range(100)))
        assert sorted(values) == list(range(1, 101))

    def test_reset(self, sequences):
        sequences.next_value("seq")
        sequences.reset()
        assert sequences.next_value("seq") == 1
