"""Quote: the priced, unpersisted input to settlement.

Amounts on lines, fees and coupon lines are stored tax-exclusive; their tax
sits next to them. The grand total is always

    subtotal - discount_total + fee_total + shipping_total + tax_total
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from ordering.domain import checkout
from ordering.tax.calculator import STANDARD, Jurisdiction, TaxRate
from shared.money import Money
from shared.utils import new_id, utcnow


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
@checkout.value_object
class CartLine:
    product_id: str
    variation_id: str | None = None
    quantity: int = Field(ge=1)


@checkout.value_object
class ShippingSelection:
    method_id: str
    title: str = ""
    cost: Money
    instance_id: str | None = None


@checkout.value_object
class Fee:
    name: str
    amount: Money
    taxable: bool = False
    tax_class: str = STANDARD


@checkout.value_object
class TaxContext:
    jurisdiction: Jurisdiction = Field(default_factory=Jurisdiction)
    rates: tuple[TaxRate, ...] = ()
    prices_include_tax: bool | None = None
    shipping_tax_class: str = STANDARD


@checkout.value_object
class CustomerContext:
    customer_id: str | None = None
    email: str | None = None
    is_vat_exempt: bool = False


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------
@checkout.value_object
class QuoteLine:
    key: str
    product_id: str
    variation_id: str | None = None
    inventory_id: str
    name: str
    sku: str | None = None
    quantity: int
    unit_price: Money
    on_sale: bool = False
    virtual: bool = False
    tax_class: str = STANDARD
    category_ids: tuple[str, ...] = ()
    subtotal: Money
    subtotal_tax: Money
    total: Money
    total_tax: Money
    taxes: dict[str, Money] = Field(default_factory=dict)


@checkout.value_object
class CouponLine:
    coupon_id: str
    code: str
    discount_type: str
    discount: Money
    discount_tax: Money
    free_shipping: bool = False


@checkout.value_object
class FeeLine:
    name: str
    tax_class: str = STANDARD
    total: Money
    total_tax: Money
    taxes: dict[str, Money] = Field(default_factory=dict)


@checkout.value_object
class ShippingLine:
    method_id: str
    instance_id: str | None = None
    title: str = ""
    total: Money
    total_tax: Money
    taxes: dict[str, Money] = Field(default_factory=dict)


@checkout.value_object
class QuoteTaxLine:
    rate_id: str
    label: str
    rate: Decimal
    compound: bool = False
    cart_tax: Money
    shipping_tax: Money

    @property
    def total(self) -> Money:
        return self.cart_tax + self.shipping_tax


@checkout.value_object
class QuoteTotals:
    subtotal: Money
    subtotal_tax: Money
    discount_total: Money
    discount_tax: Money
    fee_total: Money
    shipping_total: Money
    shipping_tax: Money
    cart_tax: Money
    tax_total: Money
    total: Money


@checkout.value_object
class Quote:
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    currency: str
    prices_include_tax: bool
    customer: CustomerContext = Field(default_factory=CustomerContext)
    lines: tuple[QuoteLine, ...]
    coupons: tuple[CouponLine, ...] = ()
    fees: tuple[FeeLine, ...] = ()
    shipping: ShippingLine | None = None
    taxes: tuple[QuoteTaxLine, ...] = ()
    totals: QuoteTotals
    cart_hash: str

    @property
    def needs_shipping(self) -> bool:
        return any(not line.virtual for line in self.lines)


def cart_hash(lines, coupon_codes, shipping: ShippingSelection | None) -> str:
    """Stable digest of what the customer asked for."""
    payload = {
        "lines": [[line.product_id, line.variation_id, line.quantity] for line in lines],
        "coupons": list(coupon_codes),
        "shipping": [shipping.method_id, str(shipping.cost)] if shipping else None,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
