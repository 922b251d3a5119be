"""
Sale transactions.

A sale always sells exactly one unit from one slot. The stock check happens before anything is changed, so a
rejected sale leaves the machine untouched; a successful one decrements the slot, bumps the per-product
total, adds the retail price to both revenue counters and appends a SaleRecord, all in one write.
"""

import logging
from datetime import datetime
from typing import Optional

from database import MachineStore
from errors import NotFoundError, OutOfStockError
from schemas import Machine, SaleReceipt, SaleRecord, utcnow

logger = logging.getLogger(__name__)


def apply_sale(machine: Machine, slot_key: str, now: Optional[datetime] = None) -> SaleReceipt:
    """Sell one unit from `slot_key` on an in-memory machine. Raises before mutating anything."""
    slot = machine.find_slot(slot_key)
    if slot is None:
        raise NotFoundError("slot")
    if slot.amount <= 0:
        raise OutOfStockError(machine.id, slot_key)

    slot.amount -= 1
    machine.total_sales[slot.name] = machine.total_sales.get(slot.name, 0) + 1
    machine.total_revenue += slot.retail_price
    machine.active_revenue += slot.retail_price

    sale = SaleRecord(
        name=slot.name,
        original_price=slot.original_price,
        retail_price=slot.retail_price,
        date=now or utcnow(),
    )
    machine.sales_history.append(sale)

    return SaleReceipt(
        machine_id=machine.id,
        slot=slot.model_copy(),
        sale=sale,
        total_revenue=machine.total_revenue,
        active_revenue=machine.active_revenue,
        product_total=machine.total_sales[slot.name],
    )


def record_sale(machine_id: str, slot_key: str, store: Optional[MachineStore] = None) -> SaleReceipt:
    store = store or MachineStore()
    try:
        receipt = store.modify(machine_id, lambda machine: apply_sale(machine, slot_key))
    except OutOfStockError:
        logger.warning("Sale rejected: slot %s on machine %s is empty", slot_key, machine_id)
        raise
    logger.info(
        "Sold %s from %s/%s for %.2f (%s left)",
        receipt.sale.name, machine_id, slot_key, receipt.sale.retail_price, receipt.slot.amount,
    )
    return receipt
