"""Coupon aggregate and the CouponUsage audit record.

``usage_count`` only ever grows, and only at settlement commit through
``record_usage()``, which refuses to pass ``usage_limit``. Applying a coupon
to a quote reserves nothing.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from protean import invariant
from pydantic import Field

from ordering.coupon.events import CouponUsageRecorded
from ordering.domain import checkout
from shared.errors import CouponExhausted, ValidationError
from shared.money import Money
from shared.utils import utcnow


def normalise_code(code: str) -> str:
    return code.strip().lower()


def lock_key(coupon_id) -> str:
    return f"coupon:{coupon_id}"


class CouponStatus(Enum):
    PUBLISH = "publish"
    DRAFT = "draft"
    PENDING = "pending"
    PRIVATE = "private"
    TRASH = "trash"


class DiscountType(Enum):
    PERCENT = "percent"
    FIXED_CART = "fixed_cart"
    FIXED_PRODUCT = "fixed_product"
    PERCENT_PRODUCT = "percent_product"


PERCENT_TYPES = {DiscountType.PERCENT, DiscountType.PERCENT_PRODUCT}
PRODUCT_TYPES = {DiscountType.FIXED_PRODUCT, DiscountType.PERCENT_PRODUCT}


def check_amount(discount_type, amount) -> None:
    if amount < 0:
        raise ValidationError({"amount": ["Coupon amount cannot be negative"]})
    if discount_type in PERCENT_TYPES and amount > 100:
        raise ValidationError({"amount": ["Percentage discounts cannot exceed 100"]})
    if discount_type not in PERCENT_TYPES:
        Money(amount)


@checkout.aggregate
class Coupon:
    code: str
    description: str | None = None
    status: CouponStatus = CouponStatus.PUBLISH
    discount_type: DiscountType = DiscountType.FIXED_CART
    amount: Decimal = Decimal(0)

    individual_use: bool = False
    product_ids: list[str] = Field(default_factory=list)
    excluded_product_ids: list[str] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)
    excluded_category_ids: list[str] = Field(default_factory=list)
    exclude_sale_items: bool = False
    email_restrictions: list[str] = Field(default_factory=list)

    usage_limit: int | None = None
    usage_limit_per_user: int | None = None
    limit_usage_to_x_items: int | None = None
    usage_count: int = 0

    minimum_amount: Money | None = None
    maximum_amount: Money | None = None
    free_shipping: bool = False
    date_expires: datetime | None = None

    @invariant.post
    def amount_fits_discount_type(self):
        check_amount(self.discount_type, self.amount)

    @invariant.post
    def usage_stays_within_limit(self):
        if self.usage_limit is not None and self.usage_count > self.usage_limit:
            raise ValidationError({"usage_count": ["Coupon usage cannot pass its limit"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, code, discount_type=DiscountType.FIXED_CART, amount=0, **kwargs):
        if not code or not code.strip():
            raise ValidationError({"code": ["Coupon code is required"]})
        discount_type, amount = DiscountType(discount_type), Decimal(str(amount))
        check_amount(discount_type, amount)
        return cls(
            code=normalise_code(code),
            discount_type=discount_type,
            amount=amount,
            **kwargs,
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def is_percent(self) -> bool:
        return self.discount_type in PERCENT_TYPES

    @property
    def is_product_type(self) -> bool:
        return self.discount_type in PRODUCT_TYPES

    def is_expired(self, now=None) -> bool:
        return self.date_expires is not None and (now or utcnow()) > self.date_expires

    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def is_exhausted_for(self, customer_usage: int) -> bool:
        return self.usage_limit_per_user is not None and customer_usage >= self.usage_limit_per_user

    def applies_to(self, product_id, variation_id=None, category_ids=(), on_sale=False) -> bool:
        """Exclusions win over inclusions; no inclusion list means every product."""
        ids = {str(product_id)} | ({str(variation_id)} if variation_id else set())
        if ids & set(self.excluded_product_ids):
            return False
        if set(category_ids) & set(self.excluded_category_ids):
            return False
        if self.exclude_sale_items and on_sale:
            return False
        if self.product_ids and ids & set(self.product_ids):
            return True
        if self.category_ids and set(category_ids) & set(self.category_ids):
            return True
        return not (self.product_ids or self.category_ids)

    def allows_email(self, email: str | None) -> bool:
        if not self.email_restrictions:
            return True
        if not email:
            return False
        email = email.strip().lower()
        for allowed in self.email_restrictions:
            allowed = allowed.strip().lower()
            if allowed.startswith("*"):
                if email.endswith(allowed[1:]):
                    return True
            elif allowed == email:
                return True
        return False

    # -------------------------------------------------------------------
    # Usage
    # -------------------------------------------------------------------
    def record_usage(self, order_id, discount_amount: Money, customer_id=None, email=None) -> "CouponUsage":
        """Consume one use. The caller must hold the coupon's row lock."""
        if self.is_exhausted():
            raise CouponExhausted(
                {"coupon": [f"Coupon {self.code!r} has reached its usage limit"]},
                code=self.code,
                usage_limit=self.usage_limit,
            )

        self.usage_count += 1
        usage = CouponUsage(
            coupon_id=self.id,
            code=self.code,
            order_id=order_id,
            customer_id=customer_id,
            used_by_email=email.lower() if email else None,
            discount_amount=discount_amount,
        )
        self.raise_(
            CouponUsageRecorded(
                coupon_id=self.id,
                code=self.code,
                order_id=order_id,
                customer_id=customer_id,
                used_by_email=usage.used_by_email,
                discount_amount=discount_amount.amount,
                usage_count=self.usage_count,
                usage_limit=self.usage_limit,
            )
        )
        return usage


@checkout.aggregate
class CouponUsage:
    """Join record between a coupon and the order that used it.

    Owned by neither; per-customer usage counts are derived from these rows.
    """

    coupon_id: str
    code: str
    order_id: str
    customer_id: str | None = None
    used_by_email: str | None = None
    discount_amount: Money
    used_at: datetime = Field(default_factory=utcnow)

    def belongs_to(self, customer_id=None, email=None) -> bool:
        if customer_id is not None and self.customer_id == customer_id:
            return True
        return email is not None and self.used_by_email == email.lower()
