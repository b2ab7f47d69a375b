"""Domain events for the Order and Refund aggregates.

Stored with the transaction that raised them, for external reporting and
notification.
"""

from protean.fields import Boolean, Decimal, Identifier, Integer, String, Text

from ordering.domain import checkout


@checkout.event(part_of="Order")
class OrderStatusChanged:
    """An order moved from one status to another."""

    order_id = Identifier(required=True)
    order_number = Integer(required=True)
    customer_id = Identifier()
    from_status = String()
    to_status = String(required=True)
    total = Decimal(required=True)
    note = Text()


@checkout.event(part_of="Refund")
class RefundIssued:
    """Part or all of a settled order was refunded."""

    refund_id = Identifier(required=True)
    order_id = Identifier(required=True)
    order_number = Integer(required=True)
    amount = Decimal(required=True)
    refunded_total = Decimal(required=True)
    fully_refunded = Boolean(default=False)
    restocked = Boolean(default=False)
    reason = Text()
