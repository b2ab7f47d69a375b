"""Balance ledger operations used by settlement and refunds.

Each operation runs under the account's row lock and joins the caller's unit
of work when there is one, so a settlement's debit commits or rolls back
together with the order.
"""

from contextlib import contextmanager
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from protean import UnitOfWork, current_domain
from protean.exceptions import ObjectNotFoundError

from payments.domain import logger
from payments.gateway.port import LedgerTender
from payments.ledger.ledger import EntryType, LedgerAccount, LedgerKind
from shared.config import EngineSettings, load_settings
from shared.errors import LedgerChainBroken, ValidationError
from shared.money import Money
from shared.persistence import RowLocks, find_all, load

_DEBIT_TYPES = {
    LedgerKind.STORE_CREDIT: EntryType.DEBIT,
    LedgerKind.GIFT_CARD: EntryType.REDEMPTION,
    LedgerKind.POINTS: EntryType.REDEEMED,
}


def lock_key(account_id) -> str:
    return f"ledger:{account_id}"


def points_account_id(customer_id) -> str:
    return f"points-{customer_id}"


def store_credit_account_id(customer_id) -> str:
    return f"credit-{customer_id}"


class BalanceLedgers:
    def __init__(self, locks: RowLocks, settings: EngineSettings | None = None) -> None:
        self.locks = locks
        self.settings = settings or load_settings()

    @property
    def repository(self):
        return current_domain.repository_for(LedgerAccount)

    @contextmanager
    def _exclusive(self, account_id):
        with self.locks.hold([lock_key(account_id)], self.settings.lock_timeout_seconds):
            with UnitOfWork():
                yield

    def _load(self, account_id) -> LedgerAccount:
        account = load(LedgerAccount, account_id)
        if account is None:
            raise ObjectNotFoundError(f"`LedgerAccount` object with identifier {account_id} does not exist.")
        return account

    # -------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------
    def open_store_credit(self, customer_id) -> LedgerAccount:
        account = LedgerAccount(
            id=store_credit_account_id(customer_id),
            kind=LedgerKind.STORE_CREDIT,
            owner_id=customer_id,
        )
        return self.repository.add(account)

    def open_points(self, customer_id) -> LedgerAccount:
        account = LedgerAccount(id=points_account_id(customer_id), kind=LedgerKind.POINTS, owner_id=customer_id)
        return self.repository.add(account)

    def issue_gift_card(self, code, amount, owner_id=None, expires_at=None) -> LedgerAccount:
        if self.find_gift_card(code) is not None:
            raise ValidationError({"code": [f"Gift card {code} already exists"]}, reason="duplicate_gift_card")
        card = LedgerAccount.issue_gift_card(code, amount, owner_id=owner_id, expires_at=expires_at)
        return self.repository.add(card)

    def find_gift_card(self, code) -> LedgerAccount | None:
        matches = find_all(LedgerAccount, kind=LedgerKind.GIFT_CARD, code=code.upper())
        return matches[0] if matches else None

    def get(self, account_id) -> LedgerAccount:
        return self._load(account_id)

    # -------------------------------------------------------------------
    # Points conversion
    # -------------------------------------------------------------------
    def points_for_amount(self, amount: Money) -> int:
        """Points needed to cover ``amount`` (rounded up)."""
        return int((amount.amount / self.settings.points_value).to_integral_value(rounding=ROUND_CEILING))

    def amount_for_points(self, points: int) -> Money:
        return Money(Decimal(points) * self.settings.points_value)

    def points_earned_for(self, total: Money) -> int:
        return int((total.amount * self.settings.points_earn_ratio).to_integral_value(rounding=ROUND_FLOOR))

    # -------------------------------------------------------------------
    # Movements
    # -------------------------------------------------------------------
    def _tender_units(self, account: LedgerAccount, amount: Money):
        if account.is_points:
            return self.points_for_amount(amount)
        return amount

    def redeem(self, tender: LedgerTender, order_id=None):
        """Debit a settlement tender from its ledger."""
        with self._exclusive(tender.account_id):
            account = self._load(tender.account_id)
            if account.kind != LedgerKind(tender.kind):
                raise ValidationError(
                    {"tenders": [f"Account {account.id} is a {account.kind.value} ledger"]},
                    reason="tender_kind_mismatch",
                )
            units = self._tender_units(account, tender.amount)
            if account.is_points and units < self.settings.min_points_to_redeem:
                raise ValidationError(
                    {"tenders": [f"At least {self.settings.min_points_to_redeem} points must be redeemed"]},
                    reason="points_below_minimum",
                )
            entry = account.debit(units, _DEBIT_TYPES[account.kind], reason="Order payment", order_id=order_id)
            self.repository.add(account)

        logger.info(
            "ledger_debited",
            account_id=account.id,
            kind=account.kind.value,
            amount=str(entry.amount),
            balance_after=str(entry.balance_after),
            order_id=order_id,
        )
        return entry

    def reversal_units(self, account: LedgerAccount, tender, amount: Money) -> Decimal:
        """Units to credit back when ``amount`` more of ``tender`` is refunded.

        ``tender`` is the order's record of the original debit. Points are
        converted on the cumulative refunded amount and capped at what the
        tender debited, so a run of partial refunds never returns more points
        than were taken.
        """
        if not account.is_points:
            return amount.amount
        owed = min(Decimal(self.points_for_amount(tender.refunded + amount)), tender.units)
        return max(owed - tender.units_refunded, Decimal(0))

    def reverse(self, tender, amount: Money, order_id=None, refund_id=None, reason="Order refund"):
        """Credit ``amount`` of a tender back to its ledger.

        Returns the appended entry, or ``None`` when the refund is too small
        to give back another whole point.
        """
        with self._exclusive(tender.account_id):
            account = self._load(tender.account_id)
            units = self.reversal_units(account, tender, amount)
            if units <= 0:
                return None
            entry = account.credit(
                units,
                EntryType.REFUND,
                reason=reason,
                order_id=order_id,
                refund_id=refund_id,
            )
            self.repository.add(account)

        logger.info(
            "ledger_reversed",
            account_id=account.id,
            kind=account.kind.value,
            amount=str(entry.amount),
            order_id=order_id,
            refund_id=refund_id,
        )
        return entry

    def award_points(self, customer_id, points: int, order_id=None):
        if points <= 0:
            return None
        account_id = points_account_id(customer_id)
        with self._exclusive(account_id):
            account = load(LedgerAccount, account_id) or LedgerAccount(
                id=account_id, kind=LedgerKind.POINTS, owner_id=customer_id
            )
            entry = account.credit(points, EntryType.EARNED, reason="Points earned", order_id=order_id)
            self.repository.add(account)
        return entry

    def claw_back_points(self, customer_id, points: int, order_id=None, refund_id=None):
        """Remove earned points, never taking the balance below zero."""
        account_id = points_account_id(customer_id)
        with self._exclusive(account_id):
            account = load(LedgerAccount, account_id)
            if account is None:
                return None
            points = min(points, int(account.balance))
            if points <= 0:
                return None
            entry = account.append(
                -points,
                EntryType.ADJUSTED,
                reason="Points reversed by refund",
                order_id=order_id,
                refund_id=refund_id,
            )
            self.repository.add(account)
        return entry

    def verify(self, account_id) -> Decimal:
        account = self._load(account_id)
        try:
            return account.verify()
        except LedgerChainBroken:
            logger.critical("ledger_chain_broken", account_id=account_id)
            raise
