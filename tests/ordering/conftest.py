from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from ordering.cart.quote import CartLine, CustomerContext, ShippingSelection, TaxContext
from ordering.catalog.snapshot import CatalogSnapshot, ProductSnapshot, TaxStatus, VariationSnapshot
from ordering.checkout.engine import CheckoutEngine
from ordering.coupon.coupon import Coupon, DiscountType
from ordering.tax.calculator import Jurisdiction, TaxRate
from shared.money import Money


@pytest.fixture
def catalog():
    now = datetime.now(UTC)
    products = [
        ProductSnapshot(
            id="tee",
            name="Cotton Tee",
            sku="TEE-01",
            regular_price=Money("10.00"),
            manage_stock=True,
            stock_quantity=10,
            category_ids=("apparel",),
        ),
        ProductSnapshot(
            id="mug",
            name="Enamel Mug",
            sku="MUG-01",
            regular_price=Money("10.00"),
            manage_stock=True,
            stock_quantity=1,
            category_ids=("kitchen",),
        ),
        ProductSnapshot(
            id="ebook",
            name="Field Guide (PDF)",
            regular_price=Money("15.00"),
            virtual=True,
            tax_status=TaxStatus.NONE,
        ),
        ProductSnapshot(
            id="cap",
            name="Trucker Cap",
            regular_price=Money("20.00"),
            sale_price=Money("15.00"),
            date_on_sale_from=now - timedelta(days=1),
            date_on_sale_to=now + timedelta(days=1),
            manage_stock=True,
            stock_quantity=20,
            category_ids=("apparel",),
        ),
        ProductSnapshot(
            id="lamp",
            name="Desk Lamp",
            regular_price=Money("30.00"),
            manage_stock=True,
            stock_quantity=0,
            backorders="notify",
        ),
        ProductSnapshot(
            id="hoodie",
            name="Hoodie",
            regular_price=Money("40.00"),
            manage_stock=True,
            stock_quantity=5,
            category_ids=("apparel",),
        ),
    ]
    variations = [
        VariationSnapshot(id="hoodie-s", parent_id="hoodie", name="Small", manage_stock=True, stock_quantity=2),
        VariationSnapshot(id="hoodie-xl", parent_id="hoodie", name="XL", regular_price=Money("45.00")),
    ]
    return CatalogSnapshot.of(products, variations)


@pytest.fixture
def engine(catalog, settings, locks, sequences):
    return CheckoutEngine(catalog, settings=settings, locks=locks, sequences=sequences)


@pytest.fixture
def sales_tax():
    return TaxRate(id="us-sales", rate=Decimal("8"), name="Sales Tax", country="US")


@pytest.fixture
def tax_context(sales_tax):
    return TaxContext(jurisdiction=Jurisdiction(country="US", state="CA", postcode="90210"), rates=(sales_tax,))


@pytest.fixture
def flat_rate():
    return ShippingSelection(method_id="flat_rate", title="Flat rate", cost=Money("5.00"))


@pytest.fixture
def customer():
    return CustomerContext(customer_id="cust-001", email="ada@example.com")


@pytest.fixture
def two_tees():
    return [CartLine(product_id="tee", quantity=2)]


@pytest.fixture
def five_off(engine):
    return engine.add_coupon(Coupon.create("FIVEOFF", DiscountType.FIXED_CART, "5.00"))
