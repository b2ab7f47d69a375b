"""Inventory ledger: serialised reservations and restocks against stock rows.

Every read-check-write on an InventoryRecord runs under that record's row
lock. When called inside a settlement, the settlement already holds the lock
(the locks are re-entrant) and the change joins the settlement's unit of
work. Outside one, the ledger takes the lock and commits on its own.
"""

from contextlib import contextmanager

from protean import UnitOfWork, current_domain

from inventory.domain import logger
from inventory.stock.stock import InventoryRecord, Reservation, StockChangeType
from shared.config import EngineSettings, load_settings
from shared.errors import ItemUnavailable
from shared.persistence import RowLocks, load


def lock_key(inventory_id) -> str:
    return f"inventory:{inventory_id}"


class InventoryLedger:
    def __init__(self, locks: RowLocks, settings: EngineSettings | None = None) -> None:
        self.locks = locks
        self.settings = settings or load_settings()

    @property
    def repository(self):
        return current_domain.repository_for(InventoryRecord)

    @contextmanager
    def _exclusive(self, inventory_id):
        with self.locks.hold([lock_key(inventory_id)], self.settings.lock_timeout_seconds):
            with UnitOfWork():
                yield

    def _load(self, inventory_id) -> InventoryRecord:
        record = load(InventoryRecord, str(inventory_id))
        if record is None:
            raise ItemUnavailable(
                {"line_items": [f"No stock record for {inventory_id}"]},
                reason="unknown_inventory",
                inventory_id=inventory_id,
            )
        return record

    def get(self, inventory_id) -> InventoryRecord:
        return self._load(inventory_id)

    def reserve(self, inventory_id, quantity, order_id=None) -> Reservation:
        """Reserve stock atomically. Raises InsufficientStock under ``backorders = no``."""
        with self._exclusive(inventory_id):
            record = self._load(inventory_id)
            reservation = record.reserve(
                quantity,
                order_id=order_id,
                default_low_stock=self.settings.low_stock_threshold,
            )
            self.repository.add(record)

        logger.debug(
            "stock_reserved",
            inventory_id=str(inventory_id),
            quantity=quantity,
            backordered=reservation.backordered,
            untracked=reservation.untracked,
        )
        return reservation

    def release(self, reservation: Reservation) -> None:
        with self._exclusive(reservation.inventory_id):
            record = self._load(reservation.inventory_id)
            record.release(reservation)
            self.repository.add(record)

    def restock(self, inventory_id, quantity, change_type=StockChangeType.RESTOCK, order_id=None, note=None):
        with self._exclusive(inventory_id):
            record = self._load(inventory_id)
            record.restock(quantity, change_type=change_type, order_id=order_id, note=note)
            self.repository.add(record)

        logger.info(
            "stock_restored",
            inventory_id=str(inventory_id),
            quantity=quantity,
            change_type=StockChangeType(change_type).value,
            order_id=order_id,
        )
        return record

    def adjust(self, inventory_id, quantity_change, reason):
        with self._exclusive(inventory_id):
            record = self._load(inventory_id)
            record.adjust(quantity_change, reason, default_low_stock=self.settings.low_stock_threshold)
            self.repository.add(record)
        return record
