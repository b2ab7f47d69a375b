"""Refund processing against completed orders.

A refund is checked, per order item and for the order as a whole, against
everything refunded before it. The check and the write happen under the
order's row lock inside one unit of work, so two concurrent refunds on the
same order can never both pass a stale check.

Ledger tenders (store credit, gift cards, points) are given back first, in
the order they were tendered. Whatever remains goes back through the payment
gateway when one is supplied. Points earned by the order are clawed back in
proportion to the refunded share of the total.

The gateway refund is the last step that can fail before the commit. Every
ledger and stock write before it belongs to the same unit of work, so a
refused gateway refund leaves them unwritten, and nothing after it can undo
money that already left through the gateway.
"""

from collections import defaultdict
from decimal import ROUND_FLOOR, Decimal

import structlog
from protean import UnitOfWork, current_domain

from inventory.stock.ledger import InventoryLedger
from inventory.stock.ledger import lock_key as inventory_lock_key
from inventory.stock.stock import StockChangeType
from ordering.domain import logger
from ordering.order.order import Order, OrderItemKind, OrderStatus
from ordering.order.order import lock_key as order_lock_key
from ordering.order.refund import Refund, reject_negative_lines
from payments.gateway.port import PaymentGateway
from payments.ledger.service import BalanceLedgers, points_account_id
from payments.ledger.service import lock_key as ledger_lock_key
from shared.config import EngineSettings, load_settings
from shared.errors import RefundExceedsRemaining, RefundNotAllowed, ValidationError
from shared.money import Money
from shared.persistence import RowLocks, find_all, load

REFUNDABLE_KINDS = {OrderItemKind.LINE_ITEM, OrderItemKind.SHIPPING, OrderItemKind.FEE}


class RefundProcessor:
    def __init__(
        self,
        locks: RowLocks,
        settings: EngineSettings | None = None,
        inventory: InventoryLedger | None = None,
        ledgers: BalanceLedgers | None = None,
    ) -> None:
        self.locks = locks
        self.settings = settings or load_settings()
        self.inventory = inventory or InventoryLedger(locks, self.settings)
        self.ledgers = ledgers or BalanceLedgers(locks, self.settings)

    @property
    def orders(self):
        return current_domain.repository_for(Order)

    @property
    def refunds(self):
        return current_domain.repository_for(Refund)

    def refund(
        self,
        order_id,
        lines,
        restock: bool = False,
        reason: str | None = None,
        gateway: PaymentGateway | None = None,
    ) -> Refund:
        lines = tuple(lines)
        if not lines:
            raise ValidationError({"lines": ["A refund needs at least one line"]}, reason="empty_refund")

        with structlog.contextvars.bound_contextvars(order_id=order_id):
            keys = self._lock_keys(self.orders.get(order_id), lines, restock)
            with self.locks.hold(keys, self.settings.lock_timeout_seconds):
                with UnitOfWork():
                    order = load(Order, order_id)
                    if order.status != OrderStatus.COMPLETED:
                        raise RefundNotAllowed(
                            {"status": [f"Cannot refund an order in {order.status.value} state"]},
                            status=order.status.value,
                        )

                    self._check_lines(order, lines)
                    refund = Refund.create(order.id, lines, reason=reason, restock=restock)
                    if refund.amount > order.remaining_refundable:
                        raise RefundExceedsRemaining(
                            {"amount": [f"Refund of {refund.amount} exceeds remaining {order.remaining_refundable}"]},
                            requested=refund.amount,
                            remaining=order.remaining_refundable,
                        )

                    if restock:
                        self._restock(order, refund)
                    outstanding = self._reverse_tenders(order, refund)
                    self._claw_back_points(order, refund)
                    fully_refunded = order.record_refund(refund.amount)

                    if gateway is not None and outstanding > 0 and order.transaction_id:
                        self._refund_payment(order, refund, outstanding, gateway)
                    refund.issued(order, fully_refunded)
                    self.refunds.add(refund)
                    self.orders.add(order)

            logger.info(
                "refund_issued",
                refund_id=refund.id,
                amount=str(refund.amount),
                refunded_total=str(order.refunded_total),
                fully_refunded=fully_refunded,
            )
            return refund

    def _lock_keys(self, order, lines, restock) -> list[str]:
        keys = {order_lock_key(order.id)}
        if restock:
            for line in lines:
                item = order.item(line.order_item_id)
                if item is not None and item.inventory_id and line.quantity:
                    keys.add(inventory_lock_key(item.inventory_id))
        keys.update(ledger_lock_key(tender.account_id) for tender in order.tenders)
        if order.points_earned and order.customer_id:
            keys.add(ledger_lock_key(points_account_id(order.customer_id)))
        return sorted(keys)

    # -------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------
    def _already_refunded(self, order_id):
        quantity = defaultdict(int)
        total = defaultdict(Money.zero)
        tax = defaultdict(Money.zero)
        for previous in find_all(Refund, order_id=order_id):
            for item in previous.items:
                quantity[item.order_item_id] += item.quantity
                total[item.order_item_id] += item.refund_total
                tax[item.order_item_id] += item.refund_tax
        return quantity, total, tax

    def _check_lines(self, order, lines) -> None:
        reject_negative_lines(lines)
        quantity, total, tax = self._already_refunded(order.id)
        seen = set()

        for line in lines:
            item = order.item(line.order_item_id)
            if item is None:
                raise ValidationError(
                    {"lines": [f"Order item {line.order_item_id} does not belong to this order"]},
                    reason="unknown_order_item",
                )
            if item.kind not in REFUNDABLE_KINDS:
                raise ValidationError(
                    {"lines": [f"{item.kind.value} items cannot be refunded directly"]},
                    reason="item_not_refundable",
                )
            if line.order_item_id in seen:
                raise ValidationError(
                    {"lines": [f"Order item {line.order_item_id} appears twice"]},
                    reason="duplicate_refund_line",
                )
            seen.add(line.order_item_id)

            if line.quantity and item.kind != OrderItemKind.LINE_ITEM:
                raise ValidationError(
                    {"lines": ["Only line items can refund a quantity"]},
                    reason="quantity_not_refundable",
                )
            if quantity[item.id] + line.quantity > item.quantity and item.kind == OrderItemKind.LINE_ITEM:
                raise RefundExceedsRemaining(
                    {"quantity": [f"Only {item.quantity - quantity[item.id]} of {item.name} left to refund"]},
                    order_item_id=item.id,
                )
            if total[item.id] + line.amount > item.refundable_total:
                raise RefundExceedsRemaining(
                    {"amount": [f"Only {item.refundable_total - total[item.id]} of {item.name} left to refund"]},
                    order_item_id=item.id,
                )
            if tax[item.id] + line.tax > item.refundable_tax:
                raise RefundExceedsRemaining(
                    {"tax": [f"Only {item.refundable_tax - tax[item.id]} tax of {item.name} left to refund"]},
                    order_item_id=item.id,
                )

    # -------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------
    def _restock(self, order, refund) -> None:
        for refund_item in refund.items:
            item = order.item(refund_item.order_item_id)
            if item.kind == OrderItemKind.LINE_ITEM and refund_item.quantity:
                self.inventory.restock(
                    item.inventory_id,
                    refund_item.quantity,
                    change_type=StockChangeType.REFUND,
                    order_id=order.id,
                    note=f"Refund {refund.id}",
                )

    def _reverse_tenders(self, order, refund) -> Money:
        """Give ledger tenders back in tender order. Returns what is still owed."""
        outstanding = refund.amount
        for tender in order.tenders:
            if outstanding <= 0:
                break
            portion = min(tender.remaining, outstanding)
            if portion <= 0:
                continue
            entry = self.ledgers.reverse(tender, portion, order_id=order.id, refund_id=refund.id)
            order.record_tender_refund(tender.account_id, portion, entry.amount if entry else Decimal(0))
            outstanding -= portion
        return outstanding

    def _refund_payment(self, order, refund, amount, gateway) -> None:
        result = gateway.refund(order.transaction_id, amount, refund.reason or "")
        if not result.success:
            logger.warning("gateway_refund_failed", refund_id=refund.id, failure_reason=result.failure_reason)
            raise RefundNotAllowed(
                {"payment": [result.failure_reason or "Gateway refused the refund"]},
                reason="gateway_refund_failed",
            )
        refund.refunded_payment = True
        refund.gateway_refund_id = result.gateway_refund_id

    def _claw_back_points(self, order, refund) -> None:
        if not order.points_earned or not order.customer_id:
            return
        refunded = order.refunded_total + refund.amount
        share = refunded.amount / order.total.amount if order.total else Decimal(1)
        owed = int((Decimal(order.points_earned) * share).to_integral_value(rounding=ROUND_FLOOR))
        points = owed - order.points_reversed
        if points <= 0:
            return
        self.ledgers.claw_back_points(order.customer_id, points, order_id=order.id, refund_id=refund.id)
        order.points_reversed = owed
