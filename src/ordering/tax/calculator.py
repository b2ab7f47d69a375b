"""Tax calculator over a rate table snapshot.

Rate resolution for a jurisdiction and tax class:

- A rate matches when every non-empty location field matches. Postcodes may
  be exact, ``*``-suffixed prefixes (``SW1*``) or numeric ranges
  (``90001...90099``). Cities compare case-insensitively.
- Within one priority only the most specific tier survives: postcode or
  city match, then state, then country, then global. Rates left in the tier
  are summed as separate lines.
- Non-compound rates tax the amount. Compound rates then apply in ascending
  priority to the amount plus every tax computed before them.

Each tax line is rounded half-up to the configured number of decimals.
"""

from decimal import Decimal
from itertools import groupby

from pydantic import Field, field_validator

from ordering.domain import checkout
from shared.money import Money

STANDARD = "standard"
REDUCED_RATE = "reduced-rate"
ZERO_RATE = "zero-rate"

_HUNDRED = Decimal(100)


@checkout.value_object
class Jurisdiction:
    country: str = ""
    state: str = ""
    postcode: str = ""
    city: str = ""


@checkout.value_object
class TaxRate:
    id: str
    rate: Decimal = Field(ge=0)
    name: str = "Tax"
    country: str = ""
    state: str = ""
    postcodes: tuple[str, ...] = ()
    cities: tuple[str, ...] = ()
    priority: int = 1
    compound: bool = False
    shipping: bool = True
    tax_order: int = 0
    tax_class: str = STANDARD

    @field_validator("country", "state")
    @classmethod
    def _upper(cls, value):
        return value.strip().upper()

    # -------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------
    def matches(self, jurisdiction: Jurisdiction) -> bool:
        if self.country and self.country != jurisdiction.country.strip().upper():
            return False
        if self.state and self.state != jurisdiction.state.strip().upper():
            return False
        if self.postcodes and not any(postcode_matches(p, jurisdiction.postcode) for p in self.postcodes):
            return False
        if self.cities and jurisdiction.city.strip().lower() not in {c.strip().lower() for c in self.cities}:
            return False
        return True

    @property
    def specificity(self) -> int:
        if self.postcodes or self.cities:
            return 3
        if self.state:
            return 2
        if self.country:
            return 1
        return 0


@checkout.value_object
class TaxLine:
    rate_id: str
    label: str
    rate: Decimal
    compound: bool = False
    amount: Money


def _normalise_postcode(value: str) -> str:
    return value.replace(" ", "").upper()


def postcode_matches(pattern: str, postcode: str) -> bool:
    pattern, postcode = _normalise_postcode(pattern), _normalise_postcode(postcode)
    if not postcode:
        return False
    if "..." in pattern:
        low, high = pattern.split("...", 1)
        if low.isdigit() and high.isdigit() and postcode.isdigit():
            return int(low) <= int(postcode) <= int(high)
        return low <= postcode <= high
    if pattern.endswith("*"):
        return postcode.startswith(pattern[:-1])
    return pattern == postcode


class TaxCalculator:
    def __init__(self, rates=(), decimals: int = 2) -> None:
        self.table = tuple(rates)
        self.decimals = decimals

    def rates(self, jurisdiction: Jurisdiction, tax_class: str = STANDARD) -> list[TaxRate]:
        """Applicable rates, ordered by priority then tax order."""
        matching = [r for r in self.table if r.tax_class == tax_class and r.matches(jurisdiction)]
        matching.sort(key=lambda r: (r.priority, r.tax_order, r.id))

        selected = []
        for _, group in groupby(matching, key=lambda r: r.priority):
            group = list(group)
            tier = max(r.specificity for r in group)
            selected.extend(r for r in group if r.specificity == tier)
        return selected

    def shipping_rates(self, jurisdiction: Jurisdiction, tax_class: str = STANDARD) -> list[TaxRate]:
        return [r for r in self.rates(jurisdiction, tax_class) if r.shipping]

    # -------------------------------------------------------------------
    # Calculation
    # -------------------------------------------------------------------
    def calculate(self, amount: Money, rates, inclusive: bool = False, decimals: int | None = None) -> list[TaxLine]:
        decimals = self.decimals if decimals is None else decimals
        if not rates or not amount:
            return []
        if inclusive:
            raw = self._inclusive(amount.amount, rates)
        else:
            raw = self._exclusive(amount.amount, rates)

        return [
            TaxLine(
                rate_id=rate.id,
                label=rate.name,
                rate=rate.rate,
                compound=rate.compound,
                amount=Money.round(value, decimals),
            )
            for rate, value in raw
        ]

    @staticmethod
    def _exclusive(amount: Decimal, rates) -> list[tuple[TaxRate, Decimal]]:
        taxes = {}
        for rate in rates:
            if not rate.compound:
                taxes[rate.id] = amount * rate.rate / _HUNDRED

        running = sum(taxes.values(), Decimal(0))
        for rate in rates:
            if rate.compound:
                tax = (amount + running) * rate.rate / _HUNDRED
                taxes[rate.id] = tax
                running += tax

        return [(rate, taxes[rate.id]) for rate in rates]

    @staticmethod
    def _inclusive(amount: Decimal, rates) -> list[tuple[TaxRate, Decimal]]:
        """Extract compound taxes from the top first, then split the rest."""
        taxes = {}
        non_compound_price = amount
        for rate in reversed([r for r in rates if r.compound]):
            tax = non_compound_price - non_compound_price / (1 + rate.rate / _HUNDRED)
            taxes[rate.id] = tax
            non_compound_price -= tax

        regular = [r for r in rates if not r.compound]
        regular_total = 1 + sum((r.rate for r in regular), Decimal(0)) / _HUNDRED
        for rate in regular:
            taxes[rate.id] = (rate.rate / _HUNDRED) / regular_total * non_compound_price

        return [(rate, taxes[rate.id]) for rate in rates]

    @staticmethod
    def total(lines) -> Money:
        return Money.total(line.amount for line in lines)
