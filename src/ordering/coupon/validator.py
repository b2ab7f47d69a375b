"""Coupon validation and discount computation.

Checks run in a fixed order and stop at the first failure:

    1. expired                     (date_expires passed)
    2. not yet usable              (status draft / pending, or otherwise unpublished)
    3. usage_limit exhausted
    4. usage_limit_per_user exhausted for this customer
    5. minimum / maximum cart amount
    6. product / category inclusion and exclusion
    7. individual_use conflicts with an already-applied coupon
    8. email restrictions

Discounts are computed against the current line bases, i.e. after every
coupon applied before this one.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from ordering.coupon.coupon import Coupon, CouponStatus, DiscountType
from ordering.domain import checkout
from shared.money import Money
from shared.utils import utcnow

_HUNDRED = Decimal(100)


@checkout.value_object
class CartLineView:
    key: str
    product_id: str
    variation_id: str | None = None
    category_ids: tuple[str, ...] = ()
    on_sale: bool = False
    quantity: int
    base: Money


@checkout.value_object
class CartView:
    lines: tuple[CartLineView, ...]
    subtotal: Money
    applied_codes: tuple[str, ...] = ()
    has_individual_use: bool = False

    def base_total(self) -> Money:
        return Money.total(line.base for line in self.lines)


@checkout.value_object
class CustomerView:
    customer_id: str | None = None
    email: str | None = None
    coupon_usage: int = 0


@dataclass(frozen=True)
class Accept:
    discount: Money
    allocations: dict[str, Money] = field(default_factory=dict)


@dataclass(frozen=True)
class Reject:
    reason: str
    message: str


class CouponValidator:
    def __init__(self, clock=utcnow) -> None:
        self.clock = clock

    def validate(self, coupon: Coupon, cart: CartView, customer: CustomerView) -> Accept | Reject:
        rejection = self.check(coupon, cart, customer)
        if rejection is not None:
            return rejection

        allocations = self.discount(coupon, cart)
        return Accept(discount=Money.total(allocations.values()), allocations=allocations)

    def check(self, coupon: Coupon, cart: CartView, customer: CustomerView) -> Reject | None:
        code = coupon.code

        if coupon.is_expired(self.clock()):
            return Reject("expired", f"Coupon {code!r} has expired")

        if coupon.status != CouponStatus.PUBLISH:
            return Reject("not_yet_usable", f"Coupon {code!r} is not active")

        if coupon.is_exhausted():
            return Reject("usage_limit_reached", f"Coupon {code!r} has reached its usage limit")

        if coupon.is_exhausted_for(customer.coupon_usage):
            return Reject(
                "usage_limit_per_user_reached",
                f"Coupon {code!r} usage limit reached for this customer",
            )

        if coupon.minimum_amount is not None and cart.subtotal < coupon.minimum_amount:
            return Reject(
                "minimum_not_met",
                f"Minimum spend for {code!r} is {coupon.minimum_amount.display()}",
            )
        if coupon.maximum_amount is not None and cart.subtotal > coupon.maximum_amount:
            return Reject(
                "maximum_exceeded",
                f"Maximum spend for {code!r} is {coupon.maximum_amount.display()}",
            )

        rejection = self._check_products(coupon, cart)
        if rejection is not None:
            return rejection

        if coupon.individual_use and cart.applied_codes:
            return Reject("individual_use", f"Coupon {code!r} cannot be used with other coupons")
        if cart.has_individual_use:
            return Reject("individual_use", "An individual-use coupon is already applied")

        if not coupon.allows_email(customer.email):
            return Reject("email_restricted", f"Coupon {code!r} is not valid for your email address")

        return None

    @staticmethod
    def _applies(coupon: Coupon, line: CartLineView) -> bool:
        return coupon.applies_to(line.product_id, line.variation_id, line.category_ids, line.on_sale)

    def _check_products(self, coupon: Coupon, cart: CartView) -> Reject | None:
        code = coupon.code
        if not coupon.is_product_type:
            # Cart-wide coupons refuse carts holding excluded items
            for line in cart.lines:
                ids = {line.product_id, line.variation_id} - {None}
                if ids & set(coupon.excluded_product_ids):
                    return Reject("excluded_product", f"Coupon {code!r} is not valid for a product in your cart")
                if set(line.category_ids) & set(coupon.excluded_category_ids):
                    return Reject("excluded_category", f"Coupon {code!r} is not valid for a category in your cart")
                if coupon.exclude_sale_items and line.on_sale:
                    return Reject("sale_items_excluded", f"Coupon {code!r} is not valid for sale items")

        if not any(self._applies(coupon, line) for line in cart.lines):
            return Reject("not_applicable", f"Coupon {code!r} does not apply to any item in your cart")
        return None

    # -------------------------------------------------------------------
    # Discount computation
    # -------------------------------------------------------------------
    def discount(self, coupon: Coupon, cart: CartView) -> dict[str, Money]:
        """Discount per line key, never more than each line's current base."""
        lines = [line for line in cart.lines if self._applies(coupon, line) and line.base > 0]
        allocations = {line.key: Money.zero() for line in cart.lines}
        if not lines:
            return allocations

        if coupon.discount_type == DiscountType.FIXED_CART:
            amount = min(Money(coupon.amount), Money.total(line.base for line in lines))
            for line, share in zip(lines, amount.allocate([line.base.amount for line in lines])):
                allocations[line.key] = share
            return allocations

        remaining_items = coupon.limit_usage_to_x_items if coupon.is_product_type else None
        for line in lines:
            units = line.quantity
            if remaining_items is not None:
                units = min(units, remaining_items)
                remaining_items -= units
            if units <= 0:
                continue

            if coupon.is_percent:
                share = Money.round(line.base.amount * coupon.amount / _HUNDRED * units / line.quantity)
            else:
                share = Money(coupon.amount) * units
            allocations[line.key] = min(share, line.base)

        return allocations
