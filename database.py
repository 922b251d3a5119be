"""
MongoDB access for the Vending Fleet API.

The client is created lazily from config so that importing the app never opens a connection. Tests swap
the handle with set_db().
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, TypeVar, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from errors import ConflictError, NotFoundError, StorageError
from schemas import Machine

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = 5

_client: Optional[MongoClient] = None
db = None

_machine_locks: Dict[str, list] = {}
_machine_locks_guard = threading.Lock()


@contextmanager
def machine_lock(machine_id: str):
    """Serialize writers of one machine. The entry is dropped once nobody holds or waits for it."""
    with _machine_locks_guard:
        entry = _machine_locks.get(machine_id)
        if entry is None:
            entry = _machine_locks[machine_id] = [threading.Lock(), 0]
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _machine_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _machine_locks[machine_id]


def get_db():
    global _client, db
    if db is None:
        _client = MongoClient(config.DATABASE_URL)
        db = _client[config.DATABASE_NAME]
        logger.info("Connected to MongoDB database %s", config.DATABASE_NAME)
    return db


def set_db(database) -> None:
    """Replace the active database handle (any pymongo-compatible Database object)."""
    global db
    db = database


def ensure_indexes() -> None:
    database = get_db()
    database.machine.create_index([("id", ASCENDING)], unique=True)
    database.user.create_index([("email", ASCENDING)], unique=True)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = dict(data)
    if data_dict.get("created_at") is None and data_dict.get("createdAt") is None:
        data_dict["created_at"] = datetime.now(timezone.utc)
    try:
        result = get_db()[collection_name].insert_one(data_dict)
    except PyMongoError as e:
        logger.error("Insert into %s failed: %s", collection_name, e)
        raise StorageError("Storage unavailable") from e
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    try:
        cursor = get_db()[collection_name].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)
    except PyMongoError as e:
        logger.error("Query on %s failed: %s", collection_name, e)
        raise StorageError("Storage unavailable") from e


class MachineStore:
    """Machine documents keyed by their `id` field."""

    collection_name = "machine"

    @property
    def collection(self):
        return get_db()[self.collection_name]

    def get(self, machine_id: str) -> Optional[Machine]:
        try:
            doc = self.collection.find_one({"id": machine_id})
        except PyMongoError as e:
            logger.error("Loading machine %s failed: %s", machine_id, e)
            raise StorageError("Storage unavailable") from e
        if doc is None:
            return None
        return Machine.model_validate(doc)

    def find_many(self, machine_ids: Iterable[str]) -> List[Machine]:
        machine_ids = list(machine_ids)
        try:
            docs = list(self.collection.find({"id": {"$in": machine_ids}}))
        except PyMongoError as e:
            logger.error("Loading machines %s failed: %s", machine_ids, e)
            raise StorageError("Storage unavailable") from e
        by_id = {doc["id"]: Machine.model_validate(doc) for doc in docs}
        return [by_id[machine_id] for machine_id in machine_ids if machine_id in by_id]

    def insert(self, machine: Machine) -> Machine:
        now = datetime.now(timezone.utc)
        machine.created_at = now
        machine.updated_at = now
        try:
            self.collection.insert_one(machine.to_document())
        except DuplicateKeyError as e:
            raise ConflictError(f"Machine {machine.id} already exists") from e
        except PyMongoError as e:
            logger.error("Inserting machine %s failed: %s", machine.id, e)
            raise StorageError("Storage unavailable") from e
        return machine

    def set_fields(self, machine_id: str, fields: dict) -> Optional[Machine]:
        """Apply a plain $set to one machine and return the updated record (None when absent)."""
        try:
            doc = self.collection.find_one_and_update(
                {"id": machine_id},
                {"$set": {**fields, "updatedAt": datetime.now(timezone.utc)}, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error("Updating machine %s failed: %s", machine_id, e)
            raise StorageError("Storage unavailable") from e
        if doc is None:
            return None
        return Machine.model_validate(doc)

    def compare_and_swap(self, machine: Machine, expected_version: int) -> bool:
        """Replace the stored machine only if nobody wrote it since `expected_version` was read."""
        machine.version = expected_version + 1
        machine.updated_at = datetime.now(timezone.utc)
        document = machine.to_document()
        query = {"id": machine.id, "version": expected_version}
        if expected_version == 0:
            # documents written before versioning have no version field
            query = {"id": machine.id, "$or": [{"version": 0}, {"version": {"$exists": False}}]}
        try:
            result = self.collection.replace_one(query, document)
        except PyMongoError as e:
            machine.version = expected_version
            logger.error("Writing machine %s failed: %s", machine.id, e)
            raise StorageError("Storage unavailable") from e
        if result.matched_count == 0:
            machine.version = expected_version
            return False
        return True

    def modify(self, machine_id: str, mutate: Callable[[Machine], T], attempts: int = MAX_WRITE_ATTEMPTS) -> T:
        """
        Read-modify-write one machine without losing concurrent updates.

        `mutate` receives a freshly loaded Machine, changes it in place and returns a result. It may raise to
        abort, in which case nothing is written. Writers in this process are serialized per machine; writers in
        other processes are detected through the version field and the mutation is re-run on a fresh copy.
        """
        with machine_lock(machine_id):
            for attempt in range(1, attempts + 1):
                machine = self.get(machine_id)
                if machine is None:
                    raise NotFoundError("machine")
                expected_version = machine.version
                result = mutate(machine)
                if self.compare_and_swap(machine, expected_version):
                    return result
                logger.warning("Machine %s changed during update (attempt %s/%s)", machine_id, attempt, attempts)
        raise StorageError(f"Machine {machine_id} is busy, try again")
