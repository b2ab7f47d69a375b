"""Customer aggregate root with denormalised purchase statistics."""

from datetime import datetime

from protean import atomic_change, invariant
from pydantic import Field

from identity.domain import checkout
from shared.errors import ValidationError
from shared.money import Money
from shared.utils import utcnow


def lock_key(customer_id) -> str:
    return f"customer:{customer_id}"


@checkout.aggregate
class Customer:
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_vat_exempt: bool = False

    # Statistics, written only through record_completed_order()
    orders_count: int = 0
    total_spent: Money = Field(default_factory=Money.zero)
    average_order_value: Money = Field(default_factory=Money.zero)
    is_paying_customer: bool = False
    last_order_id: str | None = None
    last_order_date: datetime | None = None
    counted_order_ids: list[str] = Field(default_factory=list)

    date_created: datetime = Field(default_factory=utcnow)

    @invariant.post
    def every_counted_order_is_in_the_count(self):
        if self.orders_count != len(self.counted_order_ids):
            raise ValidationError({"orders_count": ["Order count does not match the counted orders"]})

    @classmethod
    def register(cls, email, first_name=None, last_name=None, customer_id=None, is_vat_exempt=False):
        if not email or "@" not in email:
            raise ValidationError({"email": ["A valid email address is required"]})
        kwargs = {"id": str(customer_id)} if customer_id else {}
        return cls(
            email=email.lower(),
            first_name=first_name,
            last_name=last_name,
            is_vat_exempt=is_vat_exempt,
            **kwargs,
        )

    def record_completed_order(self, order_id, total: Money, completed_at=None) -> bool:
        """Fold a completed order into the statistics.

        Returns False, changing nothing, when the order was already counted.
        The caller must hold the customer's row lock: the average is derived
        from the pre-update total.
        """
        if order_id in self.counted_order_ids:
            return False

        new_count = self.orders_count + 1
        new_total = self.total_spent + total

        with atomic_change(self):
            self.orders_count = new_count
            self.total_spent = new_total
            self.average_order_value = Money.round(new_total.amount / new_count)
            self.is_paying_customer = True
            self.last_order_id = order_id
            self.last_order_date = completed_at or utcnow()
            self.counted_order_ids = [*self.counted_order_ids, order_id]
        return True
