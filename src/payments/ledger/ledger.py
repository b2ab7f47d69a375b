"""LedgerAccount aggregate: append-only balance log.

One account per store-credit holder, gift card, or loyalty-points holder.
The balance is never written on its own: it only moves by appending an entry,
and each entry records the balance after it, chained to the one before::

    entries[n].balance_after == entries[n - 1].balance_after + entries[n].amount
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from protean import atomic_change, invariant
from pydantic import Field

from payments.domain import checkout
from payments.ledger.events import LedgerEntryAppended
from shared.errors import InsufficientBalance, LedgerChainBroken, ValidationError
from shared.money import Money
from shared.utils import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class LedgerKind(Enum):
    STORE_CREDIT = "store_credit"
    GIFT_CARD = "gift_card"
    POINTS = "points"


class EntryType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    REFUND = "refund"
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    ADJUSTED = "adjusted"


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@checkout.value_object(part_of="LedgerAccount")
class LedgerEntry:
    sequence: int
    amount: Decimal
    entry_type: EntryType
    balance_after: Decimal
    reason: str | None = None
    order_id: str | None = None
    refund_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@checkout.aggregate
class LedgerAccount:
    kind: LedgerKind
    owner_id: str | None = None
    code: str | None = None
    balance: Decimal = Decimal(0)
    initial_balance: Decimal = Decimal(0)
    is_active: bool = True
    expires_at: datetime | None = None
    entries: list[LedgerEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @invariant.post
    def balance_is_never_negative(self):
        if self.balance < 0:
            raise ValidationError({"balance": ["Balance cannot go below zero"]})

    # -------------------------------------------------------------------
    # Factory methods
    # -------------------------------------------------------------------
    @classmethod
    def open(cls, kind, owner_id=None, code=None, expires_at=None):
        return cls(kind=LedgerKind(kind), owner_id=owner_id, code=code, expires_at=expires_at)

    @classmethod
    def issue_gift_card(cls, code, amount, owner_id=None, expires_at=None):
        """Create a gift card loaded with its initial balance."""
        if not code:
            raise ValidationError({"code": ["Gift card code is required"]})
        card = cls.open(LedgerKind.GIFT_CARD, owner_id=owner_id, code=code.upper(), expires_at=expires_at)
        card.initial_balance = Money(amount).amount
        card.append(amount, EntryType.PURCHASE, reason="Gift card issued")
        return card

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    @property
    def is_points(self) -> bool:
        return self.kind == LedgerKind.POINTS

    def _normalise(self, amount) -> Decimal:
        if self.is_points:
            value = Decimal(amount)
            if value != value.to_integral_value():
                raise ValidationError({"amount": ["Points must be whole numbers"]})
            return value.quantize(Decimal(1))
        return Money(amount).amount

    def _assert_usable(self, now=None) -> None:
        if not self.is_active:
            raise ValidationError({"account": ["Account is not active"]}, reason="ledger_inactive")
        if self.expires_at is not None and (now or utcnow()) >= self.expires_at:
            raise ValidationError({"account": ["Account has expired"]}, reason="ledger_expired")

    # -------------------------------------------------------------------
    # Appending
    # -------------------------------------------------------------------
    def append(self, amount, entry_type, reason=None, order_id=None, refund_id=None) -> LedgerEntry:
        """Append a signed entry and move the balance with it."""
        amount = self._normalise(amount)
        if amount == 0:
            raise ValidationError({"amount": ["Ledger entries cannot be zero"]})

        new_balance = self.balance + amount
        if new_balance < 0:
            raise InsufficientBalance(
                {"amount": [f"Balance {self.balance} cannot cover {-amount}"]},
                account_id=self.id,
                balance=self.balance,
                requested=-amount,
            )

        entry = LedgerEntry(
            sequence=len(self.entries) + 1,
            amount=amount,
            entry_type=EntryType(entry_type),
            balance_after=new_balance,
            reason=reason,
            order_id=order_id,
            refund_id=refund_id,
        )
        with atomic_change(self):
            self.entries = [*self.entries, entry]
            self.balance = new_balance

        self.raise_(
            LedgerEntryAppended(
                account_id=self.id,
                kind=self.kind.value,
                owner_id=self.owner_id,
                sequence=entry.sequence,
                entry_type=entry.entry_type.value,
                amount=amount,
                balance_after=new_balance,
                order_id=order_id,
            )
        )
        return entry

    def credit(self, amount, entry_type=EntryType.CREDIT, **kwargs) -> LedgerEntry:
        if Decimal(str(amount)) <= 0:
            raise ValidationError({"amount": ["Credit must be positive"]})
        return self.append(amount, entry_type, **kwargs)

    def debit(self, amount, entry_type=EntryType.DEBIT, **kwargs) -> LedgerEntry:
        if Decimal(str(amount)) <= 0:
            raise ValidationError({"amount": ["Debit must be positive"]})
        self._assert_usable()
        return self.append(-self._normalise(amount), entry_type, **kwargs)

    # -------------------------------------------------------------------
    # Chain verification
    # -------------------------------------------------------------------
    def replay(self) -> Decimal:
        """Rebuild the balance from the entries alone."""
        return sum((entry.amount for entry in self.entries), Decimal(0))

    def verify(self) -> Decimal:
        running = Decimal(0)
        for position, entry in enumerate(self.entries, start=1):
            running += entry.amount
            if entry.sequence != position or entry.balance_after != running:
                raise LedgerChainBroken(
                    {"ledger": [f"Entry {entry.sequence} does not chain: expected {running}, found {entry.balance_after}"]},
                    account_id=self.id,
                    sequence=entry.sequence,
                )
        if running != self.balance:
            raise LedgerChainBroken(
                {"ledger": [f"Balance {self.balance} does not match replayed {running}"]},
                account_id=self.id,
            )
        return running
