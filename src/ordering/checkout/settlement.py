"""Order settlement: the single atomic step from Quote to Order.

``settle(quote, outcome)``:

1. Rejects a quote that already has a live order (DuplicateSettlement).
2. Draws the next order number. Numbers are never reused, so an aborted
   settlement leaves a gap.
3. A failed payment is recorded as a ``failed`` order, and nothing else is
   touched.
4. Otherwise takes the row locks for every stock record, coupon, customer
   and ledger account involved, in sorted order with one deadline, and opens
   a unit of work.
5. Rechecks coupon limits against the locked rows (CouponExhausted), turns
   stock reservations into decrements (InsufficientStock), debits ledger
   tenders (InsufficientBalance), and writes the order with its items.
6. On completion, updates the customer statistics and awards points once.
7. Commits. Raised events reach the event store with the same commit.

Any error before the commit rolls the unit of work back: no stock, coupon
use or ledger entry survives. A CancellationToken lets the caller abort at
any checkpoint up to the commit.
"""

import dataclasses
import threading

import structlog
from protean import UnitOfWork, current_domain

from identity.customer.customer import lock_key as customer_lock_key
from identity.customer.statistics import record_completed_order
from inventory.stock.ledger import InventoryLedger
from inventory.stock.ledger import lock_key as inventory_lock_key
from inventory.stock.stock import StockChangeType
from ordering.cart.quote import Quote
from ordering.coupon.coupon import Coupon, CouponStatus, CouponUsage
from ordering.coupon.coupon import lock_key as coupon_lock_key
from ordering.domain import logger
from ordering.order.order import Order, OrderStatus
from ordering.order.order import lock_key as order_lock_key
from payments.gateway import get_gateway
from payments.gateway.port import PaymentGateway, PaymentOutcome, PaymentStatus
from payments.ledger.service import BalanceLedgers, points_account_id
from payments.ledger.service import lock_key as ledger_lock_key
from shared.config import EngineSettings, load_settings
from shared.errors import (
    CheckoutError,
    CouponExhausted,
    CouponRejected,
    DuplicateSettlement,
    ErrorCategory,
    SettlementCancelled,
    ValidationError,
)
from shared.money import Money
from shared.persistence import RowLocks, Sequences, find_all, load
from shared.utils import new_id, utcnow


def quote_lock_key(quote_id) -> str:
    return f"quote:{quote_id}"


class CancellationToken:
    """Lets a caller abort an in-flight settlement before it commits."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def checkpoint(self, stage: str) -> None:
        if self.cancelled:
            raise SettlementCancelled(
                {"_entity": [f"Settlement aborted before {stage}: {self.reason}"]},
                stage=stage,
            )


class SettlementService:
    def __init__(
        self,
        locks: RowLocks,
        sequences: Sequences,
        settings: EngineSettings | None = None,
        inventory: InventoryLedger | None = None,
        ledgers: BalanceLedgers | None = None,
        clock=utcnow,
    ) -> None:
        self.locks = locks
        self.sequences = sequences
        self.settings = settings or load_settings()
        self.inventory = inventory or InventoryLedger(locks, self.settings)
        self.ledgers = ledgers or BalanceLedgers(locks, self.settings)
        self.clock = clock

    @property
    def orders(self):
        return current_domain.repository_for(Order)

    # -------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------
    def settle(
        self,
        quote: Quote,
        outcome: PaymentOutcome,
        cancel_token: CancellationToken | None = None,
        customer_note: str | None = None,
    ) -> Order:
        token = cancel_token or CancellationToken()

        with structlog.contextvars.bound_contextvars(quote_id=quote.id):
            self._guard_duplicate(quote)
            order_number = self.sequences.next_value("order_number", self.settings.order_number_start)
            logger.info(
                "settlement_started",
                order_number=order_number,
                payment_status=outcome.status.value,
                total=str(quote.totals.total),
            )

            if not outcome.success:
                return self._record_failed_payment(quote, order_number, outcome, customer_note)

            self._check_tenders(quote, outcome)
            try:
                order = self._settle(quote, order_number, outcome, token, customer_note)
            except CheckoutError as exc:
                log = logger.error if exc.category == ErrorCategory.FATAL else logger.warning
                log(
                    "settlement_aborted",
                    order_number=order_number,
                    reason=exc.reason,
                    category=exc.category.value,
                )
                raise

            logger.info(
                "settlement_committed",
                order_id=order.id,
                order_number=order.order_number,
                status=order.status.value,
            )
            return order

    def checkout(
        self,
        quote: Quote,
        method: str,
        gateway: PaymentGateway | None = None,
        tenders=(),
        cancel_token: CancellationToken | None = None,
    ) -> Order:
        """Charge the outstanding amount through the gateway, then settle."""
        gateway = gateway or get_gateway()
        due = quote.totals.total - Money.total(t.amount for t in tenders)

        if due > 0:
            outcome = gateway.charge(order_ref=quote.id, amount=due, currency=quote.currency, method=method)
        else:
            outcome = PaymentOutcome.succeeded(method=method)
        if tenders and outcome.success:
            outcome = dataclasses.replace(outcome, tenders=tuple(tenders))

        return self.settle(quote, outcome, cancel_token=cancel_token)

    def _settle(self, quote, order_number, outcome, token, customer_note) -> Order:
        completing = outcome.status == PaymentStatus.SUCCEEDED and self.settings.complete_on_payment
        keys = self._lock_keys(quote, outcome, completing)

        with self.locks.hold(keys, self.settings.lock_timeout_seconds):
            self._guard_duplicate(quote)
            with UnitOfWork():
                order_id = new_id()

                token.checkpoint("coupons")
                self._consume_coupons(quote, order_id)

                token.checkpoint("inventory")
                backorders = self._reserve_stock(quote, order_id)

                token.checkpoint("payment")
                debited_units = {}
                for tender in outcome.tenders:
                    entry = self.ledgers.redeem(tender, order_id=order_id)
                    debited_units[tender.account_id] = -entry.amount

                order = Order.create_from_quote(
                    quote,
                    order_number,
                    order_id=order_id,
                    backorders=backorders,
                    customer_note=customer_note,
                )
                order.stock_reduced = True
                order.submit()
                order.record_payment(outcome, debited_units)
                if completing:
                    self._complete(order)

                token.checkpoint("commit")
                self.orders.add(order)

        return order

    def _lock_keys(self, quote, outcome, completing) -> list[str]:
        keys = {quote_lock_key(quote.id)}
        keys.update(inventory_lock_key(line.inventory_id) for line in quote.lines)
        keys.update(coupon_lock_key(coupon.coupon_id) for coupon in quote.coupons)
        keys.update(ledger_lock_key(tender.account_id) for tender in outcome.tenders)
        if completing and quote.customer.customer_id:
            keys.add(customer_lock_key(quote.customer.customer_id))
            keys.add(ledger_lock_key(points_account_id(quote.customer.customer_id)))
        return sorted(keys)

    def _guard_duplicate(self, quote) -> None:
        for order in find_all(Order, quote_id=quote.id):
            if order.status != OrderStatus.FAILED:
                logger.warning(
                    "duplicate_settlement_rejected",
                    order_id=order.id,
                    order_number=order.order_number,
                    status=order.status.value,
                )
                raise DuplicateSettlement(
                    {"quote": [f"Quote already settled as order {order.order_number}"]},
                    order_id=order.id,
                )

    @staticmethod
    def _check_tenders(quote, outcome) -> None:
        tendered = Money.total(t.amount for t in outcome.tenders)
        if any(t.amount <= 0 for t in outcome.tenders):
            raise ValidationError({"tenders": ["Tender amounts must be positive"]}, reason="invalid_tender")
        if tendered > quote.totals.total:
            raise ValidationError(
                {"tenders": [f"Tenders of {tendered} exceed the order total {quote.totals.total}"]},
                reason="tenders_exceed_total",
            )

    def _record_failed_payment(self, quote, order_number, outcome, customer_note) -> Order:
        with self.locks.hold([quote_lock_key(quote.id)], self.settings.lock_timeout_seconds):
            with UnitOfWork():
                order = Order.create_from_quote(quote, order_number, customer_note=customer_note)
                order.payment_method = outcome.method or None
                order.submit()
                order.fail(outcome.failure_code, outcome.failure_message)
                self.orders.add(order)

        logger.info(
            "settlement_payment_failed",
            order_id=order.id,
            order_number=order_number,
            failure_code=outcome.failure_code,
        )
        return order

    # -------------------------------------------------------------------
    # Steps inside the unit of work
    # -------------------------------------------------------------------
    def _consume_coupons(self, quote, order_id) -> None:
        coupons = current_domain.repository_for(Coupon)
        usages = current_domain.repository_for(CouponUsage)
        customer = quote.customer

        for line in quote.coupons:
            coupon = load(Coupon, line.coupon_id)

            if coupon.is_expired(self.clock()):
                raise CouponRejected(coupon.code, "expired", f"Coupon {coupon.code!r} has expired")
            if coupon.status != CouponStatus.PUBLISH:
                raise CouponRejected(coupon.code, "not_yet_usable", f"Coupon {coupon.code!r} is not active")

            if coupon.is_exhausted():
                raise CouponExhausted(
                    {"coupon": [f"Coupon {coupon.code!r} was used up by another order"]},
                    code=coupon.code,
                )
            if coupon.usage_limit_per_user is not None:
                used = sum(
                    1
                    for usage in find_all(CouponUsage, coupon_id=coupon.id)
                    if usage.belongs_to(customer.customer_id, customer.email)
                )
                if coupon.is_exhausted_for(used):
                    raise CouponExhausted(
                        {"coupon": [f"Coupon {coupon.code!r} usage limit reached for this customer"]},
                        reason="coupon_exhausted_for_customer",
                        code=coupon.code,
                    )

            usage = coupon.record_usage(
                order_id,
                line.discount,
                customer_id=customer.customer_id,
                email=customer.email,
            )
            coupons.add(coupon)
            usages.add(usage)

    def _reserve_stock(self, quote, order_id) -> dict[str, int]:
        backorders = {}
        for line in quote.lines:
            reservation = self.inventory.reserve(line.inventory_id, line.quantity, order_id=order_id)
            if reservation.backordered:
                backorders[line.key] = reservation.backordered
        return backorders

    def _complete(self, order: Order) -> None:
        if not order.complete():
            return

        if order.customer_id:
            record_completed_order(
                order.customer_id,
                order.id,
                order.total,
                completed_at=order.date_completed,
                email=order.billing_email,
            )

            points = self.ledgers.points_earned_for(order.total)
            if points > 0:
                self.ledgers.award_points(order.customer_id, points, order_id=order.id)
                order.points_earned = points

        order.customer_stats_recorded = True
        logger.info("order_completed", order_id=order.id, customer_id=order.customer_id)

    # -------------------------------------------------------------------
    # Later transitions
    # -------------------------------------------------------------------
    def _transition(self, order_id, keys, change) -> Order:
        keys = [order_lock_key(order_id), *keys]
        with self.locks.hold(keys, self.settings.lock_timeout_seconds):
            with UnitOfWork():
                order = load(Order, order_id)
                change(order)
                self.orders.add(order)
        return order

    def complete(self, order_id) -> Order:
        order = self.orders.get(order_id)
        keys = []
        if order.customer_id:
            keys = [customer_lock_key(order.customer_id), ledger_lock_key(points_account_id(order.customer_id))]
        return self._transition(order_id, keys, self._complete)

    def hold(self, order_id, reason=None) -> Order:
        return self._transition(order_id, [], lambda order: order.hold(reason))

    def resume(self, order_id) -> Order:
        return self._transition(order_id, [], lambda order: order.resume())

    def cancel(self, order_id, reason=None) -> Order:
        """Cancel a non-terminal order, returning its stock and ledger tenders.

        Coupon usage stays consumed: usage counts never go down.
        """
        order = self.orders.get(order_id)
        keys = [inventory_lock_key(item.inventory_id) for item in order.line_items if item.inventory_id]
        keys += [ledger_lock_key(tender.account_id) for tender in order.tenders]

        def change(order):
            order.cancel(reason)
            if order.stock_reduced:
                for item in order.line_items:
                    self.inventory.restock(
                        item.inventory_id,
                        item.quantity,
                        change_type=StockChangeType.CANCELLATION,
                        order_id=order.id,
                    )
                order.stock_reduced = False
            for tender in order.tenders:
                if tender.remaining > 0:
                    entry = self.ledgers.reverse(tender, tender.remaining, order_id=order.id, reason="Order cancelled")
                    order.record_tender_refund(tender.account_id, tender.remaining, entry.amount if entry else 0)

        order = self._transition(order_id, keys, change)
        logger.info("order_cancelled", order_id=order.id, reason=reason)
        return order
