"""Ordering bounded context: quotes, coupons, tax, settlement and refunds.

Turns a shopping cart into a priced Quote, settles the Quote into an
immutable Order under concurrent access, and reverses settled orders
through refunds.
"""

from shared.domain import checkout
from shared.logging import get_logger

__all__ = ["checkout", "logger"]

logger = get_logger(__name__)
