"""Engine configuration.

Settings live in the ``[custom]`` table of the checkout domain's
``domain.toml``. Protean overlays the section named after ``PROTEAN_ENV`` and
expands ``${VAR|default}`` references before the values reach us::

    [custom]
    currency = "USD"
    lock_timeout_seconds = "${CHECKOUT_LOCK_TIMEOUT_SECONDS|5.0}"

    [test.custom]
    lock_timeout_seconds = 1.0

``EngineSettings`` validates and freezes the result.
"""

from decimal import Decimal

from protean.utils.globals import current_domain
from pydantic import BaseModel, ConfigDict, Field


class EngineSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    currency: str = Field(default="USD", min_length=3, max_length=3)

    # Tax
    tax_decimals: int = Field(default=2, ge=0, le=4)
    prices_include_tax: bool = False
    tax_round_at_subtotal: bool = False

    # Inventory
    low_stock_threshold: int = 5
    hold_stock_minutes: int = 60

    # Settlement
    order_number_start: int = Field(default=1000, ge=1)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    complete_on_payment: bool = True

    # Loyalty points
    points_earn_ratio: Decimal = Decimal("1")
    points_value: Decimal = Decimal("0.01")
    min_points_to_redeem: int = 100


def load_settings(config=None) -> EngineSettings:
    """Build settings from the ``custom`` table of a loaded domain config.

    Defaults to the active domain's config.
    """
    if config is None:
        config = current_domain.config
    return EngineSettings.model_validate(dict(config.get("custom") or {}))
