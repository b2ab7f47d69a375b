"""InventoryRecord aggregate: stock for one product or variation.

Stock Model:
    manage_stock:   False means untracked; every reservation succeeds
    stock_quantity: on-hand count, negative only while backordered
    backorders:     no / notify / yes
    stock_status:   derived from quantity and backorder policy after every
                    change, never written on its own for tracked records

Every change appends a StockMovement so the quantity can be audited.
"""

from datetime import datetime
from enum import Enum

from protean import atomic_change, invariant
from pydantic import Field

from inventory.domain import checkout
from inventory.stock.events import LowStockCrossed, StockBackordered
from shared.errors import InsufficientStock, ValidationError
from shared.utils import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class BackorderPolicy(Enum):
    NO = "no"
    NOTIFY = "notify"
    YES = "yes"


class StockStatus(Enum):
    IN_STOCK = "instock"
    OUT_OF_STOCK = "outofstock"
    ON_BACKORDER = "onbackorder"


class StockChangeType(Enum):
    SALE = "Sale"
    REFUND = "Refund"
    RESTOCK = "Restock"
    CANCELLATION = "Cancellation"
    ADJUSTMENT = "Adjustment"


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@checkout.value_object(part_of="InventoryRecord")
class StockMovement:
    change_type: StockChangeType
    quantity_change: int
    quantity_after: int
    order_id: str | None = None
    note: str | None = None
    recorded_at: datetime = Field(default_factory=utcnow)


@checkout.value_object(part_of="InventoryRecord")
class Reservation:
    """Provisional hold taken during settlement.

    It becomes a real decrement when the unit of work commits and vanishes
    with it on rollback.
    """

    inventory_id: str
    quantity: int
    order_id: str | None = None
    untracked: bool = False
    backordered: int = 0
    notify_backorder: bool = False


def derive_stock_status(quantity: int, backorders: BackorderPolicy) -> StockStatus:
    if quantity > 0:
        return StockStatus.IN_STOCK
    if backorders != BackorderPolicy.NO:
        return StockStatus.ON_BACKORDER
    return StockStatus.OUT_OF_STOCK


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@checkout.aggregate
class InventoryRecord:
    """Stock for a product, or for a variation that manages its own stock."""

    product_id: str
    variation_id: str | None = None
    sku: str | None = None
    manage_stock: bool = True
    stock_quantity: int = 0
    backorders: BackorderPolicy = BackorderPolicy.NO
    low_stock_amount: int | None = None
    stock_status: StockStatus = StockStatus.IN_STOCK
    movements: list[StockMovement] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    def defaults(self):
        if self.manage_stock:
            self.stock_status = derive_stock_status(self.stock_quantity, self.backorders)

    @invariant.post
    def tracked_status_follows_quantity(self):
        if self.manage_stock and self.stock_status != derive_stock_status(self.stock_quantity, self.backorders):
            raise ValidationError({"stock_status": ["Status is derived for tracked stock"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        product_id,
        variation_id=None,
        quantity=0,
        manage_stock=True,
        backorders=BackorderPolicy.NO,
        low_stock_amount=None,
        sku=None,
        stock_status=StockStatus.IN_STOCK,
    ):
        """Create the record keyed by the variation id when given, else the product id."""
        return cls(
            id=str(variation_id or product_id),
            product_id=str(product_id),
            variation_id=str(variation_id) if variation_id else None,
            sku=sku,
            manage_stock=manage_stock,
            stock_quantity=quantity,
            backorders=BackorderPolicy(backorders),
            low_stock_amount=low_stock_amount,
            stock_status=StockStatus(stock_status),
        )

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def is_in_stock(self) -> bool:
        return self.stock_status != StockStatus.OUT_OF_STOCK

    def can_supply(self, quantity: int) -> bool:
        if not self.manage_stock:
            return self.is_in_stock()
        if self.backorders != BackorderPolicy.NO:
            return True
        return self.stock_quantity >= quantity

    def _record(self, change_type, quantity_change, order_id=None, note=None):
        quantity = self.stock_quantity + quantity_change
        with atomic_change(self):
            self.stock_quantity = quantity
            if self.manage_stock:
                self.stock_status = derive_stock_status(quantity, self.backorders)
            self.movements = [
                *self.movements,
                StockMovement(
                    change_type=change_type,
                    quantity_change=quantity_change,
                    quantity_after=quantity,
                    order_id=order_id,
                    note=note,
                ),
            ]
            self.updated_at = utcnow()

    def _check_low_stock(self, previous, default_threshold):
        """Raise LowStockCrossed only on the transition across the threshold."""
        threshold = self.low_stock_amount if self.low_stock_amount is not None else default_threshold
        if threshold is None:
            return
        if previous > threshold >= self.stock_quantity:
            self.raise_(
                LowStockCrossed(
                    inventory_id=self.id,
                    product_id=self.product_id,
                    variation_id=self.variation_id,
                    sku=self.sku,
                    previous_quantity=previous,
                    stock_quantity=self.stock_quantity,
                    low_stock_amount=threshold,
                )
            )

    # -------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------
    def reserve(self, quantity, order_id=None, default_low_stock=None) -> Reservation:
        """Take ``quantity`` out of stock, honouring the backorder policy."""
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})

        if not self.manage_stock:
            return Reservation(inventory_id=self.id, quantity=quantity, order_id=order_id, untracked=True)

        previous = self.stock_quantity
        if previous - quantity < 0 and self.backorders == BackorderPolicy.NO:
            raise InsufficientStock(
                {"quantity": [f"Only {max(previous, 0)} in stock"]},
                inventory_id=self.id,
                available=max(previous, 0),
                requested=quantity,
            )

        backordered = quantity - max(previous, 0) if previous - quantity < 0 else 0
        self._record(StockChangeType.SALE, -quantity, order_id=order_id)

        notify = backordered > 0 and self.backorders == BackorderPolicy.NOTIFY
        if notify:
            self.raise_(
                StockBackordered(
                    inventory_id=self.id,
                    product_id=self.product_id,
                    variation_id=self.variation_id,
                    order_id=order_id,
                    backordered_quantity=backordered,
                    stock_quantity=self.stock_quantity,
                )
            )
        self._check_low_stock(previous, default_low_stock)

        return Reservation(
            inventory_id=self.id,
            quantity=quantity,
            order_id=order_id,
            backordered=backordered,
            notify_backorder=notify,
        )

    def release(self, reservation: Reservation) -> None:
        """Give back a reservation taken earlier in the same unit of work."""
        if reservation.inventory_id != self.id:
            raise ValidationError({"reservation": ["Reservation belongs to another record"]})
        if reservation.untracked or not self.manage_stock:
            return
        self._record(StockChangeType.CANCELLATION, reservation.quantity, order_id=reservation.order_id)

    # -------------------------------------------------------------------
    # Restocking and adjustment
    # -------------------------------------------------------------------
    def restock(self, quantity, change_type=StockChangeType.RESTOCK, order_id=None, note=None) -> None:
        if quantity <= 0:
            raise ValidationError({"quantity": ["Quantity must be positive"]})
        if not self.manage_stock:
            return
        self._record(StockChangeType(change_type), quantity, order_id=order_id, note=note)

    def adjust(self, quantity_change, reason, default_low_stock=None) -> None:
        """Manually correct the on-hand count."""
        if not reason:
            raise ValidationError({"reason": ["Reason is required for stock adjustments"]})
        if not self.manage_stock:
            raise ValidationError({"manage_stock": ["Stock is not tracked for this item"]})

        new_quantity = self.stock_quantity + quantity_change
        if new_quantity < 0 and self.backorders == BackorderPolicy.NO:
            raise ValidationError(
                {"quantity_change": [f"Adjustment would result in negative stock: {new_quantity}"]}
            )

        previous = self.stock_quantity
        self._record(StockChangeType.ADJUSTMENT, quantity_change, note=reason)
        self._check_low_stock(previous, default_low_stock)

    def set_stock_status(self, status) -> None:
        """Only untracked records carry a manually set status."""
        if self.manage_stock:
            raise ValidationError({"stock_status": ["Status is derived for tracked stock"]})
        self.stock_status = StockStatus(status)
