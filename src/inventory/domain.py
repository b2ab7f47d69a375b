"""Inventory bounded context: stock records for products and variations.

Tracks stock quantity per product or variation, performs atomic reservations
against the backorder policy, and signals low-stock crossings.
"""

from shared.domain import checkout
from shared.logging import get_logger

__all__ = ["checkout", "logger"]

logger = get_logger(__name__)
