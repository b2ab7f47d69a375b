"""Catalog snapshot handed to the engine by the catalog collaborator.

Variations carry optional overrides. Their effective attributes come from a
small resolution function per field group: the variation's value when set,
else the parent product's. Inventory resolves as a whole group, so a
variation that does not manage its own stock sells from the parent's record.
"""

from datetime import datetime
from enum import Enum

from pydantic import Field

from ordering.domain import checkout
from shared.errors import ItemUnavailable
from shared.money import Money
from shared.utils import utcnow


class ProductStatus(Enum):
    PUBLISH = "publish"
    DRAFT = "draft"
    PENDING = "pending"
    PRIVATE = "private"
    TRASH = "trash"


class TaxStatus(Enum):
    TAXABLE = "taxable"
    SHIPPING = "shipping"
    NONE = "none"


@checkout.value_object
class ProductSnapshot:
    id: str
    name: str
    sku: str | None = None
    status: ProductStatus = ProductStatus.PUBLISH
    purchasable: bool = True

    # Pricing
    regular_price: Money | None = None
    sale_price: Money | None = None
    date_on_sale_from: datetime | None = None
    date_on_sale_to: datetime | None = None

    # Tax
    tax_status: TaxStatus = TaxStatus.TAXABLE
    tax_class: str = "standard"

    # Flags
    virtual: bool = False
    sold_individually: bool = False

    # Inventory
    manage_stock: bool = False
    stock_quantity: int | None = None
    backorders: str = "no"
    low_stock_amount: int | None = None
    stock_status: str = "instock"

    category_ids: tuple[str, ...] = ()


@checkout.value_object
class VariationSnapshot:
    id: str
    parent_id: str
    name: str | None = None
    sku: str | None = None
    status: ProductStatus = ProductStatus.PUBLISH
    purchasable: bool = True

    regular_price: Money | None = None
    sale_price: Money | None = None
    date_on_sale_from: datetime | None = None
    date_on_sale_to: datetime | None = None

    tax_status: TaxStatus | None = None
    tax_class: str | None = None

    virtual: bool | None = None

    manage_stock: bool | None = None
    stock_quantity: int | None = None
    backorders: str | None = None
    low_stock_amount: int | None = None
    stock_status: str | None = None


@checkout.value_object
class ResolvedItem:
    """Effective attributes of one purchasable product or variation."""

    product_id: str
    variation_id: str | None = None
    name: str
    sku: str | None = None
    unit_price: Money
    on_sale: bool = False
    tax_status: TaxStatus
    tax_class: str
    virtual: bool
    sold_individually: bool
    category_ids: tuple[str, ...] = ()
    inventory_id: str
    manage_stock: bool
    stock_quantity: int | None = None
    backorders: str = "no"
    stock_status: str = "instock"


# ---------------------------------------------------------------------------
# Layered resolution
# ---------------------------------------------------------------------------
PRICING_FIELDS = ("regular_price", "sale_price", "date_on_sale_from", "date_on_sale_to")
TAX_FIELDS = ("tax_status", "tax_class")
FLAG_FIELDS = ("virtual", "sku")
INVENTORY_FIELDS = ("manage_stock", "stock_quantity", "backorders", "low_stock_amount", "stock_status")


def resolve_fields(product: ProductSnapshot, variation: VariationSnapshot | None, fields) -> dict:
    """Variation value when set, else the parent value, field by field."""
    resolved = {}
    for field in fields:
        value = getattr(variation, field, None) if variation is not None else None
        resolved[field] = value if value is not None else getattr(product, field)
    return resolved


def resolve_pricing(product, variation) -> dict:
    # A variation with its own regular price owns the whole pricing group
    if variation is not None and variation.regular_price is not None:
        return {field: getattr(variation, field) for field in PRICING_FIELDS}
    return resolve_fields(product, None, PRICING_FIELDS)


def resolve_inventory(product, variation) -> tuple[str, dict]:
    """Return the inventory record id and the inventory group it resolves to."""
    if variation is not None and variation.manage_stock:
        return variation.id, {field: getattr(variation, field) for field in INVENTORY_FIELDS}
    fields = {field: getattr(product, field) for field in INVENTORY_FIELDS}
    if variation is not None and not product.manage_stock and variation.stock_status is not None:
        fields["stock_status"] = variation.stock_status
    return product.id, fields


def effective_price(pricing: dict, at: datetime) -> tuple[Money | None, bool]:
    """Sale price inside its window, else regular price."""
    sale_price = pricing["sale_price"]
    starts, ends = pricing["date_on_sale_from"], pricing["date_on_sale_to"]
    on_sale = (
        sale_price is not None
        and (starts is None or starts <= at)
        and (ends is None or at <= ends)
    )
    if on_sale:
        return sale_price, True
    return pricing["regular_price"], False


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------
@checkout.value_object
class CatalogSnapshot:
    products: dict[str, ProductSnapshot] = Field(default_factory=dict)
    variations: dict[str, VariationSnapshot] = Field(default_factory=dict)

    @classmethod
    def of(cls, products=(), variations=()):
        return cls(
            products={p.id: p for p in products},
            variations={v.id: v for v in variations},
        )

    def resolve(self, product_id, variation_id=None, at: datetime | None = None) -> ResolvedItem:
        at = at or utcnow()
        product = self.products.get(str(product_id))
        if product is None:
            raise ItemUnavailable(
                {"line_items": [f"Product {product_id} does not exist"]},
                reason="not_found",
                product_id=product_id,
            )

        variation = None
        if variation_id is not None:
            variation = self.variations.get(str(variation_id))
            if variation is None or variation.parent_id != product.id:
                raise ItemUnavailable(
                    {"line_items": [f"Variation {variation_id} does not exist"]},
                    reason="not_found",
                    product_id=product_id,
                    variation_id=variation_id,
                )

        pricing = resolve_pricing(product, variation)
        tax = resolve_fields(product, variation, TAX_FIELDS)
        flags = resolve_fields(product, variation, FLAG_FIELDS)
        inventory_id, inventory = resolve_inventory(product, variation)
        unit_price, on_sale = effective_price(pricing, at)

        if not self._is_purchasable(product, variation, unit_price):
            raise ItemUnavailable(
                {"line_items": [f"{product.name} cannot be purchased"]},
                reason="not_purchasable",
                product_id=product_id,
                variation_id=variation_id,
            )

        name = product.name
        if variation is not None and variation.name:
            name = f"{product.name} - {variation.name}"

        return ResolvedItem(
            product_id=product.id,
            variation_id=variation.id if variation is not None else None,
            name=name,
            sku=flags["sku"],
            unit_price=unit_price,
            on_sale=on_sale,
            tax_status=tax["tax_status"],
            tax_class=tax["tax_class"],
            virtual=flags["virtual"],
            sold_individually=product.sold_individually,
            category_ids=product.category_ids,
            inventory_id=inventory_id,
            manage_stock=bool(inventory["manage_stock"]),
            stock_quantity=inventory["stock_quantity"],
            backorders=inventory["backorders"] or "no",
            stock_status=inventory["stock_status"] or "instock",
        )

    @staticmethod
    def _is_purchasable(product, variation, unit_price) -> bool:
        if product.status != ProductStatus.PUBLISH or not product.purchasable:
            return False
        if variation is not None and (variation.status != ProductStatus.PUBLISH or not variation.purchasable):
            return False
        return unit_price is not None
