"""Folding completed orders into customer statistics.

Called by settlement while it holds the customer's row lock. A customer seen
for the first time (guest checkout with a known id) gets a record here.
"""

from protean import current_domain

from identity.customer.customer import Customer
from identity.domain import logger
from shared.money import Money
from shared.persistence import load


def record_completed_order(customer_id, order_id, total: Money, completed_at=None, email=None):
    customer = load(Customer, customer_id) or Customer(id=customer_id, email=email)

    if not customer.record_completed_order(order_id, total, completed_at):
        logger.debug("customer_order_already_counted", customer_id=customer_id, order_id=order_id)
        return customer

    current_domain.repository_for(Customer).add(customer)
    logger.info(
        "customer_stats_updated",
        customer_id=customer_id,
        order_id=order_id,
        orders_count=customer.orders_count,
        total_spent=str(customer.total_spent),
    )
    return customer
