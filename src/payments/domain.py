"""Payments bounded context: payment collaborator port and balance ledgers.

The engine never talks to a gateway on its own account: it records the
PaymentOutcome it is handed. Store credit, gift cards and loyalty points are
append-only ledgers debited at settlement and credited back by refunds.
"""

from shared.domain import checkout
from shared.logging import get_logger

__all__ = ["checkout", "logger"]

logger = get_logger(__name__)
