"""Identity bounded context: customers and their purchase statistics.

Customers are referenced by orders, never owned by them. Their aggregate
statistics are updated by settlement when an order completes.
"""

from shared.domain import checkout
from shared.logging import get_logger

__all__ = ["checkout", "logger"]

logger = get_logger(__name__)
