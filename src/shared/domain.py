"""Domain initialization and configuration.

Settlement touches orders, stock, balance ledgers and customers in a single
transaction, so every checkout context registers its elements with this one
domain and shares its providers and event store.
"""

from protean.domain import Domain

from shared.logging import configure_logging, get_logger

# Configure logging for the application
configure_logging()

# Get logger for this module
logger = get_logger(__name__)

# Domain Composition Root
checkout = Domain(name="checkout")
