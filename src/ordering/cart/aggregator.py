"""Cart aggregator: builds a Quote from line items, coupons, shipping and tax.

Quoting only reads: it validates the lines against the catalog snapshot and
current stock, applies coupons in the order they were submitted, computes
tax on the post-discount amount of each line, adds shipping and its own tax,
and sums everything into a grand total. Nothing is reserved or written.

Coupon order matters. Each coupon sees the line bases left by the coupons
before it, so ``["10off", "5pct"]`` and ``["5pct", "10off"]`` can price
differently.
"""

from collections import defaultdict
from dataclasses import dataclass

from inventory.stock.stock import InventoryRecord
from ordering.catalog.snapshot import CatalogSnapshot, ResolvedItem, TaxStatus
from ordering.cart.quote import (
    CouponLine,
    CustomerContext,
    FeeLine,
    Quote,
    QuoteLine,
    QuoteTaxLine,
    QuoteTotals,
    ShippingLine,
    TaxContext,
    cart_hash,
)
from ordering.coupon.coupon import Coupon, CouponUsage, normalise_code
from ordering.coupon.validator import CartLineView, CartView, CouponValidator, CustomerView, Reject
from ordering.domain import logger
from ordering.tax.calculator import TaxCalculator
from shared.config import EngineSettings, load_settings
from shared.errors import CouponRejected, InvalidShippingSelection, ItemUnavailable
from shared.money import SCALE, Money
from shared.persistence import find_all, load
from shared.utils import utcnow


@dataclass
class _Draft:
    key: str
    item: ResolvedItem
    quantity: int
    gross: Money


@dataclass
class _Applied:
    coupon: Coupon
    allocations: dict


class CartAggregator:
    def __init__(
        self,
        catalog: CatalogSnapshot,
        settings: EngineSettings | None = None,
        validator: CouponValidator | None = None,
        clock=utcnow,
    ) -> None:
        self.catalog = catalog
        self.settings = settings or load_settings()
        self.clock = clock
        self.validator = validator or CouponValidator(clock=clock)

    def quote(
        self,
        line_items,
        coupon_codes=(),
        shipping_selection=None,
        tax_context: TaxContext | None = None,
        customer_context: CustomerContext | None = None,
        fees=(),
        available_methods=None,
    ) -> Quote:
        tax_context = tax_context if tax_context is not None else TaxContext()
        customer = customer_context if customer_context is not None else CustomerContext()
        inclusive = (
            tax_context.prices_include_tax
            if tax_context.prices_include_tax is not None
            else self.settings.prices_include_tax
        )

        if not line_items:
            raise ItemUnavailable({"line_items": ["The cart is empty"]}, reason="empty_cart")

        now = self.clock()
        drafts = [self._resolve(line, index, now) for index, line in enumerate(line_items, start=1)]
        bases = {draft.key: draft.gross for draft in drafts}

        applied = self._apply_coupons(coupon_codes, drafts, bases, customer)
        shipping_cost = self._shipping_cost(shipping_selection, drafts, applied, available_methods)

        calculator = TaxCalculator(tax_context.rates, decimals=self.settings.tax_decimals)
        line_decimals = SCALE if self.settings.tax_round_at_subtotal else self.settings.tax_decimals
        cart_taxes = defaultdict(Money.zero)
        shipping_taxes = defaultdict(Money.zero)
        rate_index = {}

        lines = []
        coupon_parts = defaultdict(lambda: [Money.zero(), Money.zero()])
        for draft in drafts:
            rates = []
            if draft.item.tax_status == TaxStatus.TAXABLE and not customer.is_vat_exempt:
                rates = calculator.rates(tax_context.jurisdiction, draft.item.tax_class)
            rate_index.update({rate.id: rate for rate in rates})

            base = bases[draft.key]
            subtotal_lines = calculator.calculate(draft.gross, rates, inclusive, line_decimals)
            total_lines = calculator.calculate(base, rates, inclusive, line_decimals)
            subtotal_tax = TaxCalculator.total(subtotal_lines)
            total_tax = TaxCalculator.total(total_lines)

            if inclusive:
                subtotal, total = draft.gross - subtotal_tax, base - total_tax
            else:
                subtotal, total = draft.gross, base

            for tax_line in total_lines:
                cart_taxes[tax_line.rate_id] += tax_line.amount

            self._split_discount(draft.key, applied, subtotal - total, subtotal_tax - total_tax, coupon_parts)

            lines.append(
                QuoteLine(
                    key=draft.key,
                    product_id=draft.item.product_id,
                    variation_id=draft.item.variation_id,
                    inventory_id=draft.item.inventory_id,
                    name=draft.item.name,
                    sku=draft.item.sku,
                    quantity=draft.quantity,
                    unit_price=draft.item.unit_price,
                    on_sale=draft.item.on_sale,
                    virtual=draft.item.virtual,
                    tax_class=draft.item.tax_class,
                    category_ids=draft.item.category_ids,
                    subtotal=subtotal,
                    subtotal_tax=subtotal_tax,
                    total=total,
                    total_tax=total_tax,
                    taxes={t.rate_id: t.amount for t in total_lines},
                )
            )

        fee_lines = []
        for fee in fees:
            rates = []
            if fee.taxable and not customer.is_vat_exempt:
                rates = calculator.rates(tax_context.jurisdiction, fee.tax_class)
            rate_index.update({rate.id: rate for rate in rates})
            tax_lines = calculator.calculate(fee.amount, rates, False, line_decimals)
            for tax_line in tax_lines:
                cart_taxes[tax_line.rate_id] += tax_line.amount
            fee_lines.append(
                FeeLine(
                    name=fee.name,
                    tax_class=fee.tax_class,
                    total=fee.amount,
                    total_tax=TaxCalculator.total(tax_lines),
                    taxes={t.rate_id: t.amount for t in tax_lines},
                )
            )

        shipping_line = None
        if shipping_selection is not None:
            rates = []
            if not customer.is_vat_exempt:
                rates = calculator.shipping_rates(tax_context.jurisdiction, tax_context.shipping_tax_class)
            rate_index.update({rate.id: rate for rate in rates})
            tax_lines = calculator.calculate(shipping_cost, rates, False)
            for tax_line in tax_lines:
                shipping_taxes[tax_line.rate_id] += tax_line.amount
            shipping_line = ShippingLine(
                method_id=shipping_selection.method_id,
                instance_id=shipping_selection.instance_id,
                title=shipping_selection.title or shipping_selection.method_id,
                total=shipping_cost,
                total_tax=TaxCalculator.total(tax_lines),
                taxes={t.rate_id: t.amount for t in tax_lines},
            )

        decimals = self.settings.tax_decimals
        tax_lines = [
            QuoteTaxLine(
                rate_id=rate_id,
                label=rate.name,
                rate=rate.rate,
                compound=rate.compound,
                cart_tax=Money.round(cart_taxes[rate_id].amount, decimals),
                shipping_tax=Money.round(shipping_taxes[rate_id].amount, decimals),
            )
            for rate_id, rate in rate_index.items()
            if rate_id in cart_taxes or rate_id in shipping_taxes
        ]

        coupon_lines = [
            CouponLine(
                coupon_id=entry.coupon.id,
                code=entry.coupon.code,
                discount_type=entry.coupon.discount_type.value,
                discount=coupon_parts[entry.coupon.id][0],
                discount_tax=coupon_parts[entry.coupon.id][1],
                free_shipping=entry.coupon.free_shipping,
            )
            for entry in applied
        ]

        totals = self._totals(lines, coupon_lines, fee_lines, shipping_line, tax_lines)
        quote = Quote(
            currency=self.settings.currency,
            prices_include_tax=inclusive,
            customer=customer,
            lines=tuple(lines),
            coupons=tuple(coupon_lines),
            fees=tuple(fee_lines),
            shipping=shipping_line,
            taxes=tuple(tax_lines),
            totals=totals,
            cart_hash=cart_hash(line_items, [c.code for c in coupon_lines], shipping_selection),
        )

        logger.debug(
            "quote_built",
            quote_id=quote.id,
            lines=len(lines),
            coupons=[c.code for c in coupon_lines],
            total=str(totals.total),
        )
        return quote

    # -------------------------------------------------------------------
    # Line items
    # -------------------------------------------------------------------
    def _resolve(self, line, index, now) -> _Draft:
        item = self.catalog.resolve(line.product_id, line.variation_id, at=now)
        if item.sold_individually and line.quantity > 1:
            raise ItemUnavailable(
                {"line_items": [f"Only one {item.name} can be bought per order"]},
                reason="sold_individually",
                product_id=item.product_id,
            )
        self._check_stock(item, line.quantity)
        return _Draft(key=f"line-{index}", item=item, quantity=line.quantity, gross=item.unit_price * line.quantity)

    def _check_stock(self, item: ResolvedItem, quantity: int) -> None:
        record = load(InventoryRecord, item.inventory_id)
        if record is not None:
            available = record.can_supply(quantity)
            in_stock = max(record.stock_quantity, 0) if record.manage_stock else None
        elif item.manage_stock:
            in_stock = max(item.stock_quantity or 0, 0)
            available = item.backorders != "no" or in_stock >= quantity
        else:
            in_stock = None
            available = item.stock_status != "outofstock"

        if not available:
            message = f"Only {in_stock} of {item.name} in stock" if in_stock else f"{item.name} is out of stock"
            raise ItemUnavailable(
                {"line_items": [message]},
                reason="out_of_stock",
                product_id=item.product_id,
                available=in_stock or 0,
            )

    # -------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------
    def find_coupon(self, code) -> Coupon | None:
        matches = find_all(Coupon, code=normalise_code(code))
        return matches[0] if matches else None

    def customer_usage(self, coupon: Coupon, customer: CustomerContext) -> int:
        if customer.customer_id is None and customer.email is None:
            return 0
        usages = find_all(CouponUsage, coupon_id=coupon.id)
        return sum(1 for usage in usages if usage.belongs_to(customer.customer_id, customer.email))

    def _apply_coupons(self, coupon_codes, drafts, bases, customer) -> list[_Applied]:
        applied: list[_Applied] = []
        subtotal = Money.total(draft.gross for draft in drafts)

        for raw_code in coupon_codes:
            code = normalise_code(raw_code)
            if any(entry.coupon.code == code for entry in applied):
                raise CouponRejected(code, "already_applied", f"Coupon {code!r} has already been applied")

            coupon = self.find_coupon(code)
            if coupon is None:
                raise CouponRejected(code, "not_found", f"Coupon {code!r} does not exist")

            cart = CartView(
                lines=tuple(
                    CartLineView(
                        key=draft.key,
                        product_id=draft.item.product_id,
                        variation_id=draft.item.variation_id,
                        category_ids=draft.item.category_ids,
                        on_sale=draft.item.on_sale,
                        quantity=draft.quantity,
                        base=bases[draft.key],
                    )
                    for draft in drafts
                ),
                subtotal=subtotal,
                applied_codes=tuple(entry.coupon.code for entry in applied),
                has_individual_use=any(entry.coupon.individual_use for entry in applied),
            )
            view = CustomerView(
                customer_id=customer.customer_id,
                email=customer.email,
                coupon_usage=self.customer_usage(coupon, customer),
            )

            decision = self.validator.validate(coupon, cart, view)
            if isinstance(decision, Reject):
                logger.info("coupon_rejected", coupon_code=code, reason=decision.reason)
                raise CouponRejected(code, decision.reason, decision.message)

            for key, share in decision.allocations.items():
                bases[key] = bases[key] - share
            applied.append(_Applied(coupon=coupon, allocations=decision.allocations))

        return applied

    @staticmethod
    def _split_discount(key, applied, discount, discount_tax, parts) -> None:
        """Spread a line's ex-tax discount and its tax over the coupons that made it."""
        weights = [entry.allocations.get(key, Money.zero()).amount for entry in applied]
        if not applied or not any(weights):
            return
        for entry, amount, tax in zip(applied, discount.allocate(weights), discount_tax.allocate(weights)):
            parts[entry.coupon.id][0] += amount
            parts[entry.coupon.id][1] += tax

    # -------------------------------------------------------------------
    # Shipping
    # -------------------------------------------------------------------
    @staticmethod
    def _shipping_cost(selection, drafts, applied, available_methods) -> Money:
        needs_shipping = any(not draft.item.virtual for draft in drafts)
        if selection is None:
            if needs_shipping:
                raise InvalidShippingSelection(
                    {"shipping": ["A shipping method is required"]},
                    reason="shipping_required",
                )
            return Money.zero()

        if selection.cost < 0:
            raise InvalidShippingSelection(
                {"shipping": ["Shipping cost cannot be negative"]},
                reason="negative_shipping_cost",
            )
        if available_methods is not None and selection.method_id not in available_methods:
            raise InvalidShippingSelection(
                {"shipping": [f"Shipping method {selection.method_id} is not available"]},
                reason="unknown_shipping_method",
                method_id=selection.method_id,
            )

        if any(entry.coupon.free_shipping for entry in applied):
            return Money.zero()
        return selection.cost

    # -------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------
    @staticmethod
    def _totals(lines, coupon_lines, fee_lines, shipping_line, tax_lines) -> QuoteTotals:
        subtotal = Money.total(line.subtotal for line in lines)
        discount_total = Money.total(c.discount for c in coupon_lines)
        fee_total = Money.total(f.total for f in fee_lines)
        shipping_total = shipping_line.total if shipping_line else Money.zero()
        cart_tax = Money.total(t.cart_tax for t in tax_lines)
        shipping_tax = Money.total(t.shipping_tax for t in tax_lines)
        tax_total = cart_tax + shipping_tax

        return QuoteTotals(
            subtotal=subtotal,
            subtotal_tax=Money.total(line.subtotal_tax for line in lines),
            discount_total=discount_total,
            discount_tax=Money.total(c.discount_tax for c in coupon_lines),
            fee_total=fee_total,
            shipping_total=shipping_total,
            shipping_tax=shipping_tax,
            cart_tax=cart_tax,
            tax_total=tax_total,
            total=subtotal - discount_total + fee_total + shipping_total + tax_total,
        )
