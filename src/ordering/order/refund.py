"""Refund aggregate: an append-only reversal of part of a settled order."""

from datetime import datetime

from protean import invariant
from pydantic import Field

from ordering.domain import checkout
from ordering.order.events import RefundIssued
from shared.errors import ValidationError
from shared.money import Money
from shared.utils import utcnow


@checkout.value_object(part_of="Refund")
class RefundLine:
    """What the caller asks to refund for one order item."""

    order_item_id: str
    quantity: int = Field(default=0, ge=0)
    amount: Money = Field(default_factory=Money.zero)
    tax: Money = Field(default_factory=Money.zero)

    @property
    def is_negative(self) -> bool:
        return self.amount < 0 or self.tax < 0


def reject_negative_lines(lines) -> None:
    """A negative line would lower the refunded total of its item and reopen its cap."""
    for line in lines:
        if line.is_negative:
            raise ValidationError(
                {"lines": [f"Refund amounts for {line.order_item_id} cannot be negative"]},
                reason="negative_refund_line",
                order_item_id=line.order_item_id,
            )


@checkout.value_object(part_of="Refund")
class RefundItem:
    order_item_id: str
    quantity: int = 0
    refund_total: Money
    refund_tax: Money = Field(default_factory=Money.zero)

    @property
    def amount(self) -> Money:
        return self.refund_total + self.refund_tax


@checkout.aggregate
class Refund:
    order_id: str
    amount: Money
    reason: str | None = None
    items: tuple[RefundItem, ...] = ()
    restock: bool = False
    refunded_payment: bool = False
    gateway_refund_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @invariant.post
    def amount_is_positive(self):
        if self.amount <= 0:
            raise ValidationError({"amount": ["Refund amount must be positive"]})

    @classmethod
    def create(cls, order_id, lines, reason=None, restock=False):
        reject_negative_lines(lines)
        items = tuple(
            RefundItem(
                order_item_id=line.order_item_id,
                quantity=line.quantity,
                refund_total=line.amount,
                refund_tax=line.tax,
            )
            for line in lines
        )
        amount = Money.total(item.amount for item in items)
        if amount <= 0:
            raise ValidationError({"amount": ["Refund amount must be positive"]})
        return cls(order_id=order_id, amount=amount, reason=reason, items=items, restock=restock)

    def issued(self, order, fully_refunded: bool) -> None:
        self.raise_(
            RefundIssued(
                refund_id=self.id,
                order_id=order.id,
                order_number=order.order_number,
                amount=self.amount.amount,
                refunded_total=order.refunded_total.amount,
                fully_refunded=fully_refunded,
                restocked=self.restock,
                reason=self.reason,
            )
        )
