"""CheckoutEngine: one entry point wiring every checkout context together.

Importing this module registers every aggregate, value object and event of
the checkout domain, so callers initialise the domain right after it:

    from shared.domain import checkout
    checkout.init(traverse=False)

    with checkout.domain_context():
        engine = CheckoutEngine(catalog)
        quote = engine.quote([CartLine(product_id="tee", quantity=2)], tax_context=ctx)
        order = engine.settle(quote, PaymentOutcome.succeeded(method="card"))
        engine.refund(order.id, [RefundLine(order_item_id=..., amount=Money("5"))])
"""

from protean import UnitOfWork, current_domain

from identity.customer.customer import Customer
from inventory.stock.ledger import InventoryLedger
from inventory.stock.stock import BackorderPolicy, InventoryRecord, StockStatus
from ordering.cart.aggregator import CartAggregator
from ordering.catalog.snapshot import CatalogSnapshot
from ordering.checkout.refunds import RefundProcessor
from ordering.checkout.settlement import CancellationToken, SettlementService
from ordering.coupon.coupon import Coupon
from ordering.domain import logger
from ordering.order.order import Order
from ordering.order.refund import Refund
from payments.gateway import get_gateway
from payments.ledger.service import BalanceLedgers
from shared.config import EngineSettings, load_settings
from shared.errors import ValidationError
from shared.persistence import RowLocks, Sequences, find_all, load
from shared.utils import utcnow


class CheckoutEngine:
    def __init__(
        self,
        catalog: CatalogSnapshot | None = None,
        settings: EngineSettings | None = None,
        locks: RowLocks | None = None,
        sequences: Sequences | None = None,
        gateway=None,
        clock=utcnow,
    ) -> None:
        self.settings = settings or load_settings()
        self.locks = locks or RowLocks()
        self.sequences = sequences or Sequences()
        self.gateway = gateway
        self.clock = clock

        self.inventory = InventoryLedger(self.locks, self.settings)
        self.ledgers = BalanceLedgers(self.locks, self.settings)
        self.aggregator = CartAggregator(CatalogSnapshot(), self.settings, clock=clock)
        self.settlement = SettlementService(
            self.locks, self.sequences, self.settings, self.inventory, self.ledgers, clock=clock
        )
        self.refunds = RefundProcessor(self.locks, self.settings, self.inventory, self.ledgers)

        if catalog is not None:
            self.load_catalog(catalog)

    # -------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------
    def load_catalog(self, catalog: CatalogSnapshot) -> None:
        """Swap in a catalog snapshot and open stock rows for new items."""
        self.aggregator.catalog = catalog
        records = current_domain.repository_for(InventoryRecord)

        seeded = 0
        with UnitOfWork():
            for product in catalog.products.values():
                if load(InventoryRecord, product.id) is None:
                    records.add(
                        InventoryRecord.create(
                            product.id,
                            quantity=product.stock_quantity or 0,
                            manage_stock=product.manage_stock,
                            backorders=BackorderPolicy(product.backorders),
                            low_stock_amount=product.low_stock_amount,
                            sku=product.sku,
                            stock_status=StockStatus(product.stock_status),
                        )
                    )
                    seeded += 1
            for variation in catalog.variations.values():
                if variation.manage_stock and load(InventoryRecord, variation.id) is None:
                    records.add(
                        InventoryRecord.create(
                            variation.parent_id,
                            variation_id=variation.id,
                            quantity=variation.stock_quantity or 0,
                            backorders=BackorderPolicy(variation.backorders or "no"),
                            low_stock_amount=variation.low_stock_amount,
                            sku=variation.sku,
                        )
                    )
                    seeded += 1

        logger.info("catalog_loaded", products=len(catalog.products), stock_rows_opened=seeded)

    def add_coupon(self, coupon: Coupon) -> Coupon:
        if self.aggregator.find_coupon(coupon.code) is not None:
            raise ValidationError({"code": [f"Coupon {coupon.code!r} already exists"]}, reason="duplicate_coupon")
        return current_domain.repository_for(Coupon).add(coupon)

    def add_customer(self, customer: Customer) -> Customer:
        return current_domain.repository_for(Customer).add(customer)

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    def quote(self, line_items, **kwargs):
        return self.aggregator.quote(line_items, **kwargs)

    def settle(self, quote, outcome, cancel_token: CancellationToken | None = None, customer_note=None) -> Order:
        return self.settlement.settle(quote, outcome, cancel_token=cancel_token, customer_note=customer_note)

    def checkout(self, quote, method, tenders=(), cancel_token: CancellationToken | None = None) -> Order:
        gateway = self.gateway or get_gateway()
        return self.settlement.checkout(quote, method, gateway=gateway, tenders=tenders, cancel_token=cancel_token)

    def refund(self, order_id, lines, restock=False, reason=None, refund_payment=False) -> Refund:
        gateway = (self.gateway or get_gateway()) if refund_payment else None
        return self.refunds.refund(order_id, lines, restock=restock, reason=reason, gateway=gateway)

    def complete(self, order_id) -> Order:
        return self.settlement.complete(order_id)

    def hold(self, order_id, reason=None) -> Order:
        return self.settlement.hold(order_id, reason)

    def resume(self, order_id) -> Order:
        return self.settlement.resume(order_id)

    def cancel(self, order_id, reason=None) -> Order:
        return self.settlement.cancel(order_id, reason)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def order(self, order_id) -> Order:
        return current_domain.repository_for(Order).get(order_id)

    def refunds_for(self, order_id) -> list[Refund]:
        return find_all(Refund, order_id=order_id)

    def customer(self, customer_id) -> Customer:
        return current_domain.repository_for(Customer).get(customer_id)

    def stock(self, inventory_id) -> InventoryRecord:
        return self.inventory.get(inventory_id)
