"""
Machine ownership: which users operate which machines.
"""

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from database import MachineStore, get_db
from errors import AlreadyAttachedError, NotFoundError, StorageError
from users import get_user

logger = logging.getLogger(__name__)


def attach_machine(email: str, machine_id: str, store: Optional[MachineStore] = None) -> dict:
    store = store or MachineStore()
    user = get_user(email)
    if store.get(machine_id) is None:
        raise NotFoundError("machine")
    if machine_id in user.get("machines", []):
        raise AlreadyAttachedError(machine_id)

    # the filter makes a concurrent duplicate attach match nothing
    try:
        result = get_db().user.update_one(
            {"email": user["email"], "machines": {"$ne": machine_id}},
            {"$push": {"machines": machine_id}},
        )
    except PyMongoError as e:
        logger.error("Attaching %s to %s failed: %s", machine_id, email, e)
        raise StorageError("Storage unavailable") from e
    if result.modified_count == 0:
        raise AlreadyAttachedError(machine_id)

    logger.info("Attached machine %s to %s", machine_id, email)
    return {"message": "Machine added to user!"}


def owners_of(machine_id: str) -> list:
    try:
        return [doc["email"] for doc in get_db().user.find({"machines": machine_id}, {"email": 1})]
    except PyMongoError as e:
        logger.error("Looking up owners of %s failed: %s", machine_id, e)
        raise StorageError("Storage unavailable") from e
