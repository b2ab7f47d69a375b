"""Domain events for balance ledgers."""

from protean.fields import Decimal, Identifier, Integer, String

from payments.domain import checkout


@checkout.event(part_of="LedgerAccount")
class LedgerEntryAppended:
    """A store credit, gift card or points ledger moved."""

    account_id = Identifier(required=True)
    kind = String(required=True)
    owner_id = Identifier()
    sequence = Integer(required=True)
    entry_type = String(required=True)
    amount = Decimal(required=True)
    balance_after = Decimal(required=True)
    order_id = Identifier()
