"""Order aggregate: the durable, immutable outcome of a settlement.

OrderItems are one tagged variant type (line_item, shipping, tax, coupon,
fee) with kind-specific optional fields. They are written once from the
Quote and never changed afterwards; refunds are recorded beside them.

The items are the source of truth for money. The cached totals on the order
are re-derived from them with ``derive_totals()`` and must satisfy

    total == sum(line subtotals) + fees - discount_total + shipping_total + tax_total

Status transitions:

    checkout_draft -> pending -> processing -> completed -> refunded
                                    |  ^
                                    v  |
                                   on_hold
    any non-terminal status -> cancelled, failed
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from protean import atomic_change, invariant
from pydantic import Field

from ordering.domain import checkout
from ordering.order.events import OrderStatusChanged
from payments.gateway.port import PaymentStatus
from shared.errors import IntegrityViolation, InvalidTransition, RefundExceedsRemaining, ValidationError
from shared.money import Money
from shared.utils import new_id, utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    CHECKOUT_DRAFT = "checkout_draft"
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class OrderItemKind(Enum):
    LINE_ITEM = "line_item"
    SHIPPING = "shipping"
    TAX = "tax"
    COUPON = "coupon"
    FEE = "fee"


_VALID_TRANSITIONS = {
    OrderStatus.CHECKOUT_DRAFT: {OrderStatus.PENDING, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.PENDING: {
        OrderStatus.PROCESSING,
        OrderStatus.ON_HOLD,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.ON_HOLD,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.ON_HOLD: {
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},  # Only via Refund
    OrderStatus.CANCELLED: set(),  # Terminal
    OrderStatus.FAILED: set(),  # Terminal
    OrderStatus.REFUNDED: set(),  # Terminal
}

TERMINAL_STATES = {
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
    OrderStatus.REFUNDED,
}


def lock_key(order_id) -> str:
    return f"order:{order_id}"


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@checkout.value_object(part_of="Order")
class OrderItem:
    """One typed row of an order.

    Money fields are tax-exclusive. ``subtotal`` is before discounts and
    ``total`` after them (line items only; other kinds keep both equal).
    """

    id: str = Field(default_factory=new_id)
    kind: OrderItemKind
    name: str
    quantity: int = 0
    subtotal: Money = Field(default_factory=Money.zero)
    subtotal_tax: Money = Field(default_factory=Money.zero)
    total: Money = Field(default_factory=Money.zero)
    total_tax: Money = Field(default_factory=Money.zero)
    taxes: dict[str, Money] = Field(default_factory=dict)

    # line_item
    product_id: str | None = None
    variation_id: str | None = None
    inventory_id: str | None = None
    sku: str | None = None
    tax_class: str | None = None
    unit_price: Money | None = None

    # shipping
    method_id: str | None = None
    instance_id: str | None = None

    # tax
    rate_id: str | None = None
    rate_percent: Decimal | None = None
    compound: bool = False
    tax_total: Money = Field(default_factory=Money.zero)
    shipping_tax_total: Money = Field(default_factory=Money.zero)

    # coupon
    coupon_id: str | None = None
    coupon_code: str | None = None
    discount_type: str | None = None
    discount: Money = Field(default_factory=Money.zero)
    discount_tax: Money = Field(default_factory=Money.zero)

    meta: dict[str, str] = Field(default_factory=dict)

    @invariant.post
    def kind_specific_fields_are_present(self):
        if self.kind == OrderItemKind.LINE_ITEM and (not self.product_id or self.quantity < 1):
            raise ValidationError({"items": ["Line items need a product and a positive quantity"]})
        if self.kind == OrderItemKind.SHIPPING and not self.method_id:
            raise ValidationError({"items": ["Shipping items need a method id"]})
        if self.kind == OrderItemKind.TAX and not self.rate_id:
            raise ValidationError({"items": ["Tax items need a rate id"]})
        if self.kind == OrderItemKind.COUPON and not self.coupon_code:
            raise ValidationError({"items": ["Coupon items need a code"]})

    @property
    def refundable_total(self) -> Money:
        return self.total

    @property
    def refundable_tax(self) -> Money:
        return self.total_tax


@checkout.value_object(part_of="Order")
class OrderTotals:
    subtotal: Money
    discount_total: Money
    discount_tax: Money
    fee_total: Money
    shipping_total: Money
    shipping_tax: Money
    cart_tax: Money
    tax_total: Money
    total: Money


@checkout.value_object(part_of="Order")
class OrderNote:
    note: str
    is_customer_note: bool = False
    added_by: str = "system"
    added_at: datetime = Field(default_factory=utcnow)


@checkout.value_object(part_of="Order")
class StatusChange:
    from_status: OrderStatus | None = None
    to_status: OrderStatus
    changed_at: datetime = Field(default_factory=utcnow)


@checkout.value_object(part_of="Order")
class TenderRecord:
    """Ledger-funded part of the payment, with what was already given back.

    ``units`` is what the ledger was debited in its own unit: the amount for
    money ledgers, whole points for a points ledger. ``units_refunded`` is
    how much of that has been credited back.
    """

    kind: str
    account_id: str
    amount: Money
    refunded: Money = Field(default_factory=Money.zero)
    units: Decimal = Decimal(0)
    units_refunded: Decimal = Decimal(0)

    @property
    def remaining(self) -> Money:
        return self.amount - self.refunded


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@checkout.aggregate
class Order:
    order_number: int
    quote_id: str
    cart_hash: str
    status: OrderStatus = OrderStatus.CHECKOUT_DRAFT
    customer_id: str | None = None
    billing_email: str | None = None
    currency: str = "USD"
    prices_include_tax: bool = False
    items: tuple[OrderItem, ...] = ()

    # Cached totals, always re-derivable from items
    subtotal: Money = Field(default_factory=Money.zero)
    discount_total: Money = Field(default_factory=Money.zero)
    discount_tax: Money = Field(default_factory=Money.zero)
    fee_total: Money = Field(default_factory=Money.zero)
    shipping_total: Money = Field(default_factory=Money.zero)
    shipping_tax: Money = Field(default_factory=Money.zero)
    cart_tax: Money = Field(default_factory=Money.zero)
    total_tax: Money = Field(default_factory=Money.zero)
    total: Money = Field(default_factory=Money.zero)
    refunded_total: Money = Field(default_factory=Money.zero)

    # Payment
    payment_method: str | None = None
    payment_method_title: str | None = None
    transaction_id: str | None = None
    tenders: tuple[TenderRecord, ...] = ()
    failure_code: str | None = None
    failure_message: str | None = None

    # Side-effect bookkeeping
    stock_reduced: bool = False
    customer_stats_recorded: bool = False
    points_earned: int = 0
    points_reversed: int = 0

    customer_note: str | None = None
    notes: list[OrderNote] = Field(default_factory=list)
    status_history: list[StatusChange] = Field(default_factory=list)
    date_created: datetime = Field(default_factory=utcnow)
    date_paid: datetime | None = None
    date_completed: datetime | None = None

    @invariant.post
    def refunds_never_exceed_total(self):
        if self.refunded_total > self.total:
            raise ValidationError({"refunded_total": ["Refunds cannot exceed the order total"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create_from_quote(cls, quote, order_number, order_id=None, backorders=None, customer_note=None):
        """Freeze a Quote into an order in ``checkout_draft``."""
        backorders = backorders or {}
        items = []

        for line in quote.lines:
            meta = {}
            if backorders.get(line.key):
                meta["backordered"] = str(backorders[line.key])
            items.append(
                OrderItem(
                    kind=OrderItemKind.LINE_ITEM,
                    name=line.name,
                    quantity=line.quantity,
                    subtotal=line.subtotal,
                    subtotal_tax=line.subtotal_tax,
                    total=line.total,
                    total_tax=line.total_tax,
                    taxes=line.taxes,
                    product_id=line.product_id,
                    variation_id=line.variation_id,
                    inventory_id=line.inventory_id,
                    sku=line.sku,
                    tax_class=line.tax_class,
                    unit_price=line.unit_price,
                    meta=meta,
                )
            )

        for fee in quote.fees:
            items.append(
                OrderItem(
                    kind=OrderItemKind.FEE,
                    name=fee.name,
                    subtotal=fee.total,
                    total=fee.total,
                    total_tax=fee.total_tax,
                    taxes=fee.taxes,
                    tax_class=fee.tax_class,
                )
            )

        if quote.shipping is not None:
            items.append(
                OrderItem(
                    kind=OrderItemKind.SHIPPING,
                    name=quote.shipping.title,
                    subtotal=quote.shipping.total,
                    total=quote.shipping.total,
                    total_tax=quote.shipping.total_tax,
                    taxes=quote.shipping.taxes,
                    method_id=quote.shipping.method_id,
                    instance_id=quote.shipping.instance_id,
                )
            )

        for coupon in quote.coupons:
            items.append(
                OrderItem(
                    kind=OrderItemKind.COUPON,
                    name=coupon.code,
                    coupon_id=coupon.coupon_id,
                    coupon_code=coupon.code,
                    discount_type=coupon.discount_type,
                    discount=coupon.discount,
                    discount_tax=coupon.discount_tax,
                )
            )

        for tax in quote.taxes:
            items.append(
                OrderItem(
                    kind=OrderItemKind.TAX,
                    name=tax.label,
                    rate_id=tax.rate_id,
                    rate_percent=tax.rate,
                    compound=tax.compound,
                    tax_total=tax.cart_tax,
                    shipping_tax_total=tax.shipping_tax,
                )
            )

        kwargs = {"id": order_id} if order_id else {}
        order = cls(
            order_number=order_number,
            quote_id=quote.id,
            cart_hash=quote.cart_hash,
            customer_id=quote.customer.customer_id,
            billing_email=quote.customer.email,
            currency=quote.currency,
            prices_include_tax=quote.prices_include_tax,
            items=tuple(items),
            customer_note=customer_note,
            **kwargs,
        )
        order._cache_totals()

        if order.total != quote.totals.total:
            raise IntegrityViolation(
                {"total": [f"Items derive {order.total}, quote says {quote.totals.total}"]},
                reason="total_mismatch",
            )
        return order

    # -------------------------------------------------------------------
    # Items and totals
    # -------------------------------------------------------------------
    def items_of(self, kind: OrderItemKind) -> list[OrderItem]:
        return [item for item in self.items if item.kind == kind]

    @property
    def line_items(self) -> list[OrderItem]:
        return self.items_of(OrderItemKind.LINE_ITEM)

    def item(self, order_item_id) -> OrderItem | None:
        return next((item for item in self.items if item.id == order_item_id), None)

    def derive_totals(self) -> OrderTotals:
        """Recompute every total from the items alone."""
        lines = self.items_of(OrderItemKind.LINE_ITEM)
        fees = self.items_of(OrderItemKind.FEE)
        shipping = self.items_of(OrderItemKind.SHIPPING)
        coupons = self.items_of(OrderItemKind.COUPON)
        taxes = self.items_of(OrderItemKind.TAX)

        subtotal = Money.total(i.subtotal for i in lines)
        discount_total = Money.total(i.discount for i in coupons)
        fee_total = Money.total(i.total for i in fees)
        shipping_total = Money.total(i.total for i in shipping)
        cart_tax = Money.total(i.tax_total for i in taxes)
        shipping_tax = Money.total(i.shipping_tax_total for i in taxes)
        tax_total = cart_tax + shipping_tax

        return OrderTotals(
            subtotal=subtotal,
            discount_total=discount_total,
            discount_tax=Money.total(i.discount_tax for i in coupons),
            fee_total=fee_total,
            shipping_total=shipping_total,
            shipping_tax=shipping_tax,
            cart_tax=cart_tax,
            tax_total=tax_total,
            total=subtotal + fee_total - discount_total + shipping_total + tax_total,
        )

    def _cache_totals(self) -> None:
        totals = self.derive_totals()
        with atomic_change(self):
            self.subtotal = totals.subtotal
            self.discount_total = totals.discount_total
            self.discount_tax = totals.discount_tax
            self.fee_total = totals.fee_total
            self.shipping_total = totals.shipping_total
            self.shipping_tax = totals.shipping_tax
            self.cart_tax = totals.cart_tax
            self.total_tax = totals.tax_total
            self.total = totals.total

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in _VALID_TRANSITIONS.get(self.status, set())

    def _assert_can_transition(self, target_status):
        """Validate that the current state allows transition to target."""
        current = self.status
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                {"status": [f"Cannot transition from {current.value} to {target_status.value}"]},
                from_status=current.value,
                to_status=target_status.value,
            )

    def transition_to(self, target: OrderStatus, note: str | None = None) -> OrderStatus:
        self._assert_can_transition(target)
        previous = self.status
        now = utcnow()

        with atomic_change(self):
            self.status = target
            self.status_history = [*self.status_history, StatusChange(from_status=previous, to_status=target)]
            if target == OrderStatus.PROCESSING and self.date_paid is None:
                self.date_paid = now
            if note:
                self.add_note(note)

        self.raise_(
            OrderStatusChanged(
                order_id=self.id,
                order_number=self.order_number,
                customer_id=self.customer_id,
                from_status=previous.value,
                to_status=target.value,
                total=self.total.amount,
                note=note,
            )
        )
        return previous

    def submit(self) -> None:
        self.transition_to(OrderStatus.PENDING)

    def record_payment(self, outcome, debited_units=None) -> None:
        """Apply a successful or pending payment outcome to a pending order.

        ``debited_units`` maps ledger account ids to what each tender took
        from its ledger. Money tenders default to their amount.
        """
        debited_units = debited_units or {}
        with atomic_change(self):
            self.payment_method = outcome.method or None
            self.payment_method_title = outcome.method_title or outcome.method or None
            self.transaction_id = outcome.gateway_transaction_id
            self.tenders = tuple(
                TenderRecord(
                    kind=t.kind,
                    account_id=t.account_id,
                    amount=t.amount,
                    units=debited_units.get(t.account_id, t.amount.amount),
                )
                for t in outcome.tenders
            )
        if outcome.status == PaymentStatus.PENDING:
            self.transition_to(OrderStatus.ON_HOLD, note="Awaiting payment confirmation")
        else:
            self.transition_to(OrderStatus.PROCESSING)

    def fail(self, code=None, message=None) -> None:
        with atomic_change(self):
            self.failure_code = code
            self.failure_message = message
        self.transition_to(OrderStatus.FAILED, note=f"Payment failed: {message or code or 'unknown'}")

    def complete(self) -> bool:
        """Move to completed. Returns True only the first time the order completes."""
        self.transition_to(OrderStatus.COMPLETED)
        first_time = self.date_completed is None
        if first_time:
            self.date_completed = utcnow()
        return first_time and not self.customer_stats_recorded

    def hold(self, reason=None) -> None:
        self.transition_to(OrderStatus.ON_HOLD, note=reason)

    def resume(self) -> None:
        if self.status != OrderStatus.ON_HOLD:
            raise InvalidTransition({"status": ["Only orders on hold can be resumed"]})
        self.transition_to(OrderStatus.PROCESSING)

    def cancel(self, reason=None) -> None:
        if self.is_terminal:
            raise InvalidTransition(
                {"status": [f"Cannot cancel an order in {self.status.value} state"]},
                from_status=self.status.value,
                to_status=OrderStatus.CANCELLED.value,
            )
        self.transition_to(OrderStatus.CANCELLED, note=f"Cancelled: {reason}" if reason else None)

    # -------------------------------------------------------------------
    # Refund bookkeeping
    # -------------------------------------------------------------------
    @property
    def remaining_refundable(self) -> Money:
        return self.total - self.refunded_total

    def record_refund(self, amount: Money) -> bool:
        """Add a refund to the running total. Returns True once fully refunded."""
        new_total = self.refunded_total + amount
        if new_total > self.total:
            raise RefundExceedsRemaining(
                {"refund": [f"Refunds of {new_total} would exceed order total {self.total}"]},
            )
        self.refunded_total = new_total
        if new_total == self.total:
            self.transition_to(OrderStatus.REFUNDED, note="Order fully refunded")
            return True
        return False

    def record_tender_refund(self, account_id, amount: Money, units=Decimal(0)) -> None:
        """Note ``amount`` of a tender as refunded and ``units`` as credited back."""
        self.tenders = tuple(
            t.replace(refunded=t.refunded + amount, units_refunded=t.units_refunded + units)
            if t.account_id == account_id
            else t
            for t in self.tenders
        )

    # -------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------
    def add_note(self, note, is_customer_note=False, added_by="system") -> OrderNote:
        if not note or not note.strip():
            raise ValidationError({"note": ["Note cannot be empty"]})
        order_note = OrderNote(note=note, is_customer_note=is_customer_note, added_by=added_by)
        self.notes = [*self.notes, order_note]
        return order_note
