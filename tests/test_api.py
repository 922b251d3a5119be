"""HTTP surface tests, including the full register -> configure -> sell scenario."""

import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

import config
import main
from recommendations import CompletionClient


def _fake_completion(reply):
    body = {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1751284800,
        "model": "test-model",
        "choices": [{"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": reply}}],
    }
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    return CompletionClient(
        api_key="sk-test", base_url="https://ai.local/v1", http_client=httpx.Client(transport=transport)
    )


@pytest.fixture
def machine_m1(client):
    response = client.post("/machine/createMachine", json={"keys": ["A1", "A2"], "id": "M1", "location": "Lobby"})
    assert response.status_code == 200
    return response.json()


class TestSaleScenario:

    def test_end_to_end(self, client, machine_m1):
        assert [slot["key"] for slot in machine_m1["content"]] == ["A1", "A2"]
        assert all(slot["amount"] == 0 and slot["name"] == "empty" for slot in machine_m1["content"])

        response = client.post("/machine/setMachineContent", json={
            "id": "M1", "key": "A1", "name": "Soda", "retailPrice": 1.5, "originalPrice": 1.0, "amount": 5,
        })
        assert response.status_code == 200

        for expected_left in (4, 3, 2, 1, 0):
            response = client.post("/machine/removeItemsFromContent", json={"id": "M1", "key": "A1"})
            assert response.status_code == 200
            assert response.json()["slot"]["amount"] == expected_left

        after_fifth = client.get("/machine/getMachineContent/M1").json()
        assert after_fifth["totalRevenue"] == pytest.approx(7.5)
        assert after_fifth["activeRevenue"] == pytest.approx(7.5)
        assert after_fifth["totalSales"] == [{"name": "Soda", "amount": 5}]
        assert len(after_fifth["salesHistory"]) == 5
        assert after_fifth["salesHistory"][0]["retailPrice"] == 1.5

        response = client.post("/machine/removeItemsFromContent", json={"id": "M1", "key": "A1"})
        assert response.status_code == 409
        assert response.json() == {"error": "There are no items to remove!"}

        after_sixth = client.get("/machine/getMachineContent/M1").json()
        for field in ("content", "totalRevenue", "activeRevenue", "totalSales", "salesHistory"):
            assert after_sixth[field] == after_fifth[field]

    def test_receipt_shape(self, client, machine_m1):
        client.post("/machine/addItemsToContent", json={"id": "M1", "key": "A2", "amount": 2})
        receipt = client.post("/machine/removeItemsFromContent", json={"id": "M1", "key": "A2", "quantity": 5}).json()
        assert receipt["machineId"] == "M1"
        assert receipt["slot"]["amount"] == 1
        assert receipt["sale"]["name"] == "empty"
        assert receipt["productTotal"] == 1
        assert set(receipt) == {"machineId", "slot", "sale", "totalRevenue", "activeRevenue", "productTotal"}

    def test_sale_errors(self, client, machine_m1):
        assert client.post("/machine/removeItemsFromContent", json={"id": "M9", "key": "A1"}).json() == {
            "error": "Machine does not exist!"
        }
        response = client.post("/machine/removeItemsFromContent", json={"id": "M1", "key": "Z1"})
        assert response.status_code == 404
        assert response.json() == {"error": "Slot does not exist!"}
        assert client.post("/machine/removeItemsFromContent", json={"id": "M1"}).status_code == 400


class TestMachineRoutes:

    def test_reregistration_updates_location(self, client, machine_m1):
        response = client.post("/machine/createMachine", json={"keys": ["Z1"], "id": "M1", "location": "Roof"})
        assert response.json() == {"message": "The machine already exists! We've updated the location!"}
        machine = client.get("/machine/getMachineContent/M1").json()
        assert machine["location"] == "Roof"
        assert [slot["key"] for slot in machine["content"]] == ["A1", "A2"]

    def test_create_requires_location(self, client):
        response = client.post("/machine/createMachine", json={"keys": ["A1"], "id": "M1"})
        assert response.status_code == 400
        assert response.json() == {"error": "Location is required!"}

    def test_add_items(self, client, machine_m1):
        response = client.post("/machine/addItemsToContent", json={"id": "M1", "key": "A1", "amount": 3})
        assert response.status_code == 200
        assert response.json()["slot"]["amount"] == 3
        assert client.post("/machine/addItemsToContent", json={"id": "M1", "key": "A1"}).status_code == 400

    def test_set_content_presence(self, client, machine_m1):
        client.post("/machine/setMachineContent", json={"id": "M1", "key": "A1", "name": "Gum", "amount": 4})
        response = client.post("/machine/setMachineContent", json={"id": "M1", "key": "A1", "amount": 0})
        slot = response.json()["slot"]
        assert slot["amount"] == 0
        assert slot["name"] == "Gum"

    def test_set_content_unknown_slot(self, client, machine_m1):
        response = client.post("/machine/setMachineContent", json={"id": "M1", "key": "Q9", "name": "Gum"})
        assert response.status_code == 404

    def test_set_content_rejects_negative_price(self, client, machine_m1):
        response = client.post("/machine/setMachineContent", json={"id": "M1", "key": "A1", "retailPrice": -1})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_ownership_and_cash_flag(self, client, machine_m1):
        client.post("/user/signup", json={"email": "ops@vendco.com", "password": "pw"})
        response = client.post("/machine/addMachineToUser", json={"email": "ops@vendco.com", "id": "M1"})
        assert response.json() == {"message": "Machine added to user!"}

        again = client.post("/machine/addMachineToUser", json={"email": "ops@vendco.com", "id": "M1"})
        assert again.status_code == 409

        machines = client.get("/machine/getUserMachines/ops@vendco.com").json()
        assert [m["id"] for m in machines] == ["M1"]

        response = client.post("/machine/updateMachineStockMoney", json={"id": "M1"})
        assert response.status_code == 200
        assert client.get("/machine/getMachineContent/M1").json()["isCashFull"] is True

        notifications = client.get("/user/getNotifications/ops@vendco.com").json()["notifications"]
        assert notifications[-1]["type"] == "cash"

    def test_dashboard_prefix(self, client, machine_m1):
        assert client.get("/api/machine/getMachineContent/M1").status_code == 200


class TestUserRoutes:

    def test_signup_signin_me(self, client):
        signup = client.post("/user/signup", json={"email": "Ops@VendCo.com", "password": "pw"})
        assert signup.status_code == 200
        assert signup.json()["username"] == "ops@vendco.com"

        signin = client.post("/user/signin", json={"email": "ops@vendco.com", "password": "pw"})
        token = signin.json()["token"]

        me = client.get("/user/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json() == {"email": "ops@vendco.com", "machines": [], "unread": 1}

    def test_signin_form_encoded(self, client):
        client.post("/user/signup", json={"email": "ops@vendco.com", "password": "pw"})
        response = client.post("/user/signin", data={"username": "ops@vendco.com", "password": "pw"})
        assert response.status_code == 200

    def test_bad_password(self, client):
        client.post("/user/signup", json={"email": "ops@vendco.com", "password": "pw"})
        response = client.post("/user/signin", json={"email": "ops@vendco.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid credentials"}

    def test_duplicate_signup(self, client):
        client.post("/user/signup", json={"email": "ops@vendco.com", "password": "pw"})
        response = client.post("/user/signup", json={"email": "ops@vendco.com", "password": "pw"})
        assert response.status_code == 409

    def test_me_requires_token(self, client):
        response = client.get("/user/me")
        assert response.status_code == 401
        assert "error" in response.json()


class TestErrorResponses:

    def test_oversized_amounts_rejected(self, client, machine_m1):
        response = client.post("/machine/addItemsToContent", json={"id": "M1", "key": "A1", "amount": 10**30})
        assert response.status_code == 400
        assert "error" in response.json()

        response = client.post("/machine/setMachineContent", json={"id": "M1", "key": "A1", "amount": 10**30})
        assert response.status_code == 400
        assert "error" in response.json()
        assert client.get("/machine/getMachineContent/M1").json()["content"][0]["amount"] == 0

    def test_storage_failure_is_503(self, client, machine_m1, monkeypatch):
        client.post("/machine/setMachineContent", json={"id": "M1", "key": "A1", "name": "Gum", "amount": 2})

        def lost_connection(self, *args, **kwargs):
            raise AutoReconnect("connection reset by peer")

        monkeypatch.setattr(mongomock.collection.Collection, "replace_one", lost_connection)
        response = client.post("/machine/removeItemsFromContent", json={"id": "M1", "key": "A1"})
        assert response.status_code == 503
        assert response.json() == {"error": "Storage unavailable"}
        monkeypatch.undo()
        assert client.get("/machine/getMachineContent/M1").json()["content"][0]["amount"] == 2

    def test_unexpected_error_is_json_500(self, db, monkeypatch):
        def broken(machine_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(main.inventory, "get_machine", broken)
        client = TestClient(main.app, raise_server_exceptions=False)
        response = client.get("/machine/getMachineContent/M1")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_database_check_hides_error_detail(self, client, monkeypatch):
        def unreachable():
            raise ServerSelectionTimeoutError("mongo-secret.internal:27017 timed out")

        monkeypatch.setattr(main.database, "get_db", unreachable)
        response = client.get("/test")
        assert response.status_code == 200
        assert response.json()["database"] == "⚠️ Error"
        assert "mongo-secret" not in response.text

    def test_mixed_case_owner_address(self, client, machine_m1):
        client.post("/user/signup", json={"email": "Ops@VendCo.com", "password": "pw"})
        response = client.post("/machine/addMachineToUser", json={"email": "OPS@vendco.com", "id": "M1"})
        assert response.status_code == 200

        machines = client.get("/machine/getUserMachines/Ops@VendCo.com").json()
        assert [m["id"] for m in machines] == ["M1"]
        notifications = client.get("/user/getNotifications/Ops@VendCo.com")
        assert notifications.status_code == 200


class TestAiRoutes:

    def test_missing_credential(self, client, machine_m1, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", None)
        response = client.get("/machine/getMachineRecommendations/M1")
        assert response.status_code == 503
        assert "OPENAI_API_KEY" in response.json()["error"]

    def test_recommendations(self, client, machine_m1):
        reply = json.dumps({"recommendations": [
            {"recommendation": "Fill A1", "reasoning": "Empty", "priority": 1, "category": "restock"},
        ]})
        main.app.dependency_overrides[main.completion_client] = lambda: _fake_completion(reply)
        try:
            body = client.get("/machine/getMachineRecommendations/M1").json()
        finally:
            main.app.dependency_overrides.clear()
        assert body["machineId"] == "M1"
        assert body["recommendations"][0]["category"] == "restock"

    def test_malformed_reply_returns_raw(self, client, machine_m1):
        main.app.dependency_overrides[main.completion_client] = lambda: _fake_completion("sorry, no")
        try:
            response = client.get("/machine/getMachineRecommendations/M1")
        finally:
            main.app.dependency_overrides.clear()
        assert response.status_code == 502
        assert response.json()["raw"] == "sorry, no"

    def test_performance_metrics(self, client, machine_m1):
        main.app.dependency_overrides[main.completion_client] = lambda: _fake_completion('{"insights": "Quiet."}')
        try:
            body = client.get("/machine/getPerformanceMetrics/M1/week").json()
            bad_range = client.get("/machine/getPerformanceMetrics/M1/decade")
        finally:
            main.app.dependency_overrides.clear()
        assert body["aiInsights"] == "Quiet."
        assert set(body["monthlyComparisons"]) == {"revenue", "sales", "averageTicket", "stockTurnover"}
        assert bad_range.status_code == 400
