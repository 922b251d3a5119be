import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app


@pytest.fixture
def db():
    database.set_db(mongomock.MongoClient()["vending_test"])
    database.ensure_indexes()
    yield database.get_db()
    database.set_db(None)


@pytest.fixture
def store(db):
    return database.MachineStore()


@pytest.fixture
def client(db):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def stocked_machine(store):
    """Machine M1 with slot A1 holding 5 sodas at 1.50 and an empty slot A2."""
    from inventory import register_machine, set_slot_fields

    register_machine("M1", ["A1", "A2"], "Lobby", store=store)
    set_slot_fields(
        "M1", "A1", {"name": "Soda", "retail_price": 1.5, "original_price": 1.0, "amount": 5}, store=store
    )
    return store.get("M1")
