"""
Inventory reservation across order line items.

Each line is reserved with a single atomic ledger call. When one line fails,
the lines already reserved are restored before the error propagates, so a
failed checkout never leaves stock decremented.
"""
import logging
from typing import Iterable, List, Sequence

from .repository import InventoryLedger
from .schemas import OrderItem

logger = logging.getLogger(__name__)


async def reserve_items(ledger: InventoryLedger, items: Sequence[OrderItem]) -> List[OrderItem]:
    """
    Reserve stock for every line item.

    Args:
        ledger: Inventory ledger
        items: Line items to reserve

    Returns:
        The reserved items (all of them)

    Raises:
        InsufficientInventory: a line could not be reserved; earlier lines are rolled back
        NotFound: a product does not exist; earlier lines are rolled back
    """
    reserved: List[OrderItem] = []
    try:
        for item in items:
            remaining = await ledger.reserve_inventory(item.product_id, item.quantity)
            logger.info(f"Reserved {item.quantity} units of product '{item.product_id}' ({remaining} left)")
            reserved.append(item)
    except Exception as e:
        logger.error(f"Inventory reservation failed: {e}")
        if reserved:
            logger.info(f"Rolling back inventory reservations for {len(reserved)} items")
            await rollback_reservations(ledger, reserved)
        raise
    return reserved


async def rollback_reservations(ledger: InventoryLedger, reserved: Iterable[OrderItem]) -> None:
    """
    Rollback reservations for items that were successfully reserved.

    Args:
        ledger: Inventory ledger
        reserved: Items whose reservation succeeded
    """
    for item in reserved:
        try:
            await ledger.restore_inventory(item.product_id, item.quantity)
            logger.info(f"Rollback: Restored {item.quantity} units of product '{item.product_id}'")
        except Exception as e:
            logger.error(f"Rollback failed for product '{item.product_id}': {e}")


async def restore_items(ledger: InventoryLedger, items: Iterable[OrderItem]) -> int:
    """
    Put every line item back into stock.

    Callers guarantee this runs once per order, after winning the guarded
    status transition. A failure on one line does not stop the others.

    Returns:
        Number of lines restored
    """
    restored = 0
    for item in items:
        try:
            await ledger.restore_inventory(item.product_id, item.quantity)
            logger.info(f"Restored {item.quantity} units of product '{item.product_id}'")
            restored += 1
        except Exception as e:
            logger.error(f"Failed to restore inventory for product '{item.product_id}': {e}")
    return restored
