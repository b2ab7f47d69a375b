"""Money: fixed-point decimal amount with scale 4.

Money never holds a float and never rounds implicitly. Building a Money from
a value with more than four decimal places raises; callers that need to
round (tax lines, proportional splits) do so explicitly through
``Money.round()``.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

from pydantic_core import core_schema

from shared.errors import ValidationError

SCALE = 4
QUANTUM = Decimal(1).scaleb(-SCALE)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, float):
        raise ValidationError({"amount": ["Money cannot be built from a float"]})
    if isinstance(value, bool):
        raise ValidationError({"amount": ["Money cannot be built from a bool"]})
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({"amount": [f"Invalid monetary amount: {value!r}"]}) from None


def quantize(value: Decimal, places: int = SCALE, rounding=ROUND_HALF_UP) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=rounding)


class Money:
    """Immutable signed amount at scale 4."""

    __slots__ = ("_amount",)

    def __init__(self, amount=0):
        value = _to_decimal(amount)
        if not value.is_finite():
            raise ValidationError({"amount": [f"Invalid monetary amount: {amount!r}"]})
        scaled = value.quantize(QUANTUM)
        if scaled != value:
            raise ValidationError({"amount": [f"{amount} has more than {SCALE} decimal places"]})
        self._amount = scaled

    # -------------------------------------------------------------------
    # Explicit rounding points
    # -------------------------------------------------------------------
    @classmethod
    def round(cls, value, places: int = SCALE, rounding=ROUND_HALF_UP) -> "Money":
        """Round half-up to ``places`` (never more than the money scale)."""
        places = min(places, SCALE)
        return cls(quantize(_to_decimal(value), places, rounding))

    @classmethod
    def floor(cls, value, places: int = SCALE) -> "Money":
        return cls.round(value, places, rounding=ROUND_DOWN)

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @classmethod
    def total(cls, amounts) -> "Money":
        return sum(amounts, cls.zero())

    @property
    def amount(self) -> Decimal:
        return self._amount

    def allocate(self, weights) -> list["Money"]:
        """Split this amount in proportion to ``weights``.

        Each share is rounded to scale 4 and the last non-zero weight takes
        the remainder, so the shares always sum back to this amount exactly.
        """
        weights = [_to_decimal(w) for w in weights]
        total_weight = sum(weights, Decimal(0))
        if total_weight == 0:
            return [Money.zero() for _ in weights]

        last = max(i for i, w in enumerate(weights) if w != 0)
        shares = [Money.round(self._amount * weight / total_weight) for weight in weights]
        shares[last] = self - Money.total(s for i, s in enumerate(shares) if i != last)
        return shares

    # -------------------------------------------------------------------
    # Arithmetic
    # -------------------------------------------------------------------
    def __add__(self, other):
        if isinstance(other, Money):
            return Money(self._amount + other._amount)
        if isinstance(other, int) and other == 0:
            return self
        return NotImplemented

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, Money):
            return Money(self._amount - other._amount)
        return NotImplemented

    def __mul__(self, other):
        if isinstance(other, (int, Decimal)) and not isinstance(other, bool):
            return Money(self._amount * other)
        return NotImplemented

    __rmul__ = __mul__

    def __neg__(self):
        return Money(-self._amount)

    def __abs__(self):
        return Money(abs(self._amount))

    # -------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------
    def _cmp_value(self, other):
        if isinstance(other, Money):
            return other._amount
        if isinstance(other, (int, Decimal)) and not isinstance(other, bool):
            return Decimal(other)
        return None

    def __eq__(self, other):
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount == value

    def __lt__(self, other):
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount < value

    def __le__(self, other):
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount <= value

    def __gt__(self, other):
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount > value

    def __ge__(self, other):
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount >= value

    def __hash__(self):
        return hash(self._amount)

    def __bool__(self):
        return self._amount != 0

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (Money, (str(self._amount),))

    def __str__(self):
        return str(self._amount)

    def __repr__(self):
        return f"Money('{self._amount}')"

    def display(self, places: int = 2) -> str:
        return str(quantize(self._amount, places))

    # -------------------------------------------------------------------
    # pydantic integration
    # -------------------------------------------------------------------
    @classmethod
    def _coerce(cls, value):
        if isinstance(value, Money):
            return value
        return cls(value)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.no_info_plain_validator_function(
            cls._coerce,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )
