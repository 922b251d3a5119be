"""
Machine registration and slot configuration.

Slots are created once, when a machine is first registered, one per supplied key. Afterwards only the fields
inside a slot change. Slot patches are presence based: a field is replaced when the caller sent it, so 0 and ""
are legitimate values.
"""

import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from database import MachineStore
from errors import ConflictError, NotFoundError, ValidationError
from fleet import owners_of
from schemas import MAX_SLOT_AMOUNT, Machine, Slot
from users import get_user, send_notification

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = {"name", "expiry_date", "original_price", "retail_price", "amount"}

LOCATION_UPDATED = "The machine already exists! We've updated the location!"


def register_machine(
    machine_id: str, keys: List[str], location: str, store: Optional[MachineStore] = None
) -> Tuple[Optional[Machine], str]:
    """
    Create a machine, or update the location of an existing one.

    Returns (machine, message); machine is None when the id was already registered.
    """
    store = store or MachineStore()
    if not location:
        raise ValidationError("Location is required!")
    if keys is None or not isinstance(keys, list) or not all(isinstance(k, str) and k for k in keys):
        raise ValidationError("Invalid keys!")
    if len(set(keys)) != len(keys):
        raise ValidationError("Invalid keys! Slot keys must be unique.")
    if not machine_id:
        raise ValidationError("Id is required!")

    if store.get(machine_id) is None:
        machine = Machine(id=machine_id, location=location, content=[Slot(key=key) for key in keys])
        try:
            store.insert(machine)
        except ConflictError:
            logger.info("Machine %s was registered concurrently", machine_id)
        else:
            logger.info("Registered machine %s at %s with %s slots", machine_id, location, len(keys))
            return machine, "Machine created!"

    store.set_fields(machine_id, {"location": location})
    logger.info("Machine %s moved to %s", machine_id, location)
    return None, LOCATION_UPDATED


def get_machine(machine_id: str, store: Optional[MachineStore] = None) -> Machine:
    store = store or MachineStore()
    if not machine_id:
        raise ValidationError("Id is required!")
    machine = store.get(machine_id)
    if machine is None:
        raise NotFoundError("machine")
    return machine


def set_slot_fields(machine_id: str, slot_key: str, patch: dict, store: Optional[MachineStore] = None) -> Slot:
    """Replace the fields present in `patch` (snake_case names) on one slot."""
    store = store or MachineStore()
    if not slot_key:
        raise ValidationError("Key is required!")
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown slot fields: {', '.join(sorted(unknown))}")

    patch = dict(patch)
    # no cost given alongside a price: assume break-even
    if "retail_price" in patch and patch.get("original_price") == 0:
        patch["original_price"] = patch["retail_price"]

    def _apply(machine: Machine) -> Slot:
        for index, slot in enumerate(machine.content):
            if slot.key == slot_key:
                try:
                    updated = Slot.model_validate({**slot.model_dump(), **patch})
                except PydanticValidationError as e:
                    raise ValidationError(f"Invalid slot fields: {e.errors()[0]['msg']}") from e
                machine.content[index] = updated
                return updated
        raise NotFoundError("slot")

    slot = store.modify(machine_id, _apply)
    logger.info("Updated slot %s/%s: %s", machine_id, slot_key, sorted(patch))
    return slot


def add_stock(machine_id: str, slot_key: str, amount, store: Optional[MachineStore] = None) -> Slot:
    store = store or MachineStore()
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount is required!")
    if not slot_key:
        raise ValidationError("Key is required!")

    def _apply(machine: Machine) -> Slot:
        slot = machine.find_slot(slot_key)
        if slot is None:
            raise NotFoundError("slot")
        if slot.amount + amount > MAX_SLOT_AMOUNT:
            raise ValidationError(f"A slot holds at most {MAX_SLOT_AMOUNT} items!")
        slot.amount += amount
        return slot.model_copy()

    slot = store.modify(machine_id, _apply)
    logger.info("Added %s units to %s/%s (now %s)", amount, machine_id, slot_key, slot.amount)
    return slot


def get_user_machines(email: str, store: Optional[MachineStore] = None) -> List[Machine]:
    store = store or MachineStore()
    user = get_user(email)
    return store.find_many(user.get("machines", []))


def mark_cash_full(machine_id: str, store: Optional[MachineStore] = None) -> Machine:
    store = store or MachineStore()
    if not machine_id:
        raise ValidationError("Id is required!")
    machine = store.set_fields(machine_id, {"isCashFull": True})
    if machine is None:
        raise NotFoundError("machine")
    logger.info("Machine %s flagged for cash collection", machine_id)
    for email in owners_of(machine_id):
        send_notification(email, f"Machine {machine_id} at {machine.location} needs cash collection.", "cash")
    return machine
