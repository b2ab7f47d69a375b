"""Domain events for the InventoryRecord aggregate.

Advisory signals only: none of them blocks a sale. They reach the event store
when the settlement or refund that caused them commits.
"""

from protean.fields import Identifier, Integer, String

from inventory.domain import checkout


@checkout.event(part_of="InventoryRecord")
class LowStockCrossed:
    """Stock dropped from above the low-stock amount to at or below it."""

    inventory_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variation_id = Identifier()
    sku = String()
    previous_quantity = Integer(required=True)
    stock_quantity = Integer(required=True)
    low_stock_amount = Integer(required=True)


@checkout.event(part_of="InventoryRecord")
class StockBackordered:
    """A sale took stock below zero under the ``notify`` backorder policy."""

    inventory_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variation_id = Identifier()
    order_id = Identifier()
    backordered_quantity = Integer(required=True)
    stock_quantity = Integer(required=True)
