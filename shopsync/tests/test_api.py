import pytest
from fastapi.testclient import TestClient

from shopsync.app.agent import SyncAgent
from shopsync.app.config import Settings
from shopsync.app.db import LocalStoreError
from shopsync.app.main import create_app


@pytest.fixture
def agent(store, remote, storage):
    async def unreachable():
        return False

    s = Settings()
    s.sync_debounce_s = 0.0
    return SyncAgent(s, store=store, remote=remote, storage=storage, probe=unreachable, client_id="client_api")


@pytest.fixture
def client(agent):
    with TestClient(create_app(agent, connect=False)) as c:
        yield c


def _create(client, **overrides):
    body = {"name": "Hair Cream", "category": "Hair", "buying_price": 200, "selling_price": 500, "quantity": 10}
    body.update(overrides)
    res = client.post("/api/products", json=body)
    assert res.status_code == 200, res.text
    return res.json()["product"]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["connectivity"] == "offline"
    assert body["sync_state"] == "idle"
    assert res.headers["X-Request-Id"]


def test_product_lifecycle(client):
    product = _create(client, quantity=8)
    assert product["stock_status"] == "in_stock"

    res = client.get("/api/products")
    assert [p["id"] for p in res.json()["products"]] == [product["id"]]

    res = client.post(f"/api/products/{product['id']}/restock", json={"amount": 2})
    assert res.json()["product"]["quantity"] == 10

    res = client.patch(f"/api/products/{product['id']}", json={"selling_price": 550})
    assert res.json()["product"]["selling_price"] == 550

    assert client.get("/api/products/local_missing").status_code == 404
    assert client.delete(f"/api/products/{product['id']}").json() == {"ok": True}
    assert client.get("/api/products").json()["products"] == []


def test_sale_and_report(client):
    product = _create(client)

    res = client.post("/api/sales", json={"items": [{"product_id": product["id"], "quantity": 10}]})
    assert res.status_code == 200
    assert res.json()["total"] == 5000
    assert client.get(f"/api/products/{product['id']}").json()["product"]["stock_status"] == "out_of_stock"

    report = client.get("/api/reports/summary", params={"period": "all"}).json()
    assert report["total_profit"] == 3000
    assert report["margin_pct"] == 60


def test_rejected_requests(client):
    product = _create(client, quantity=1)

    res = client.post("/api/sales", json={"items": [{"product_id": product["id"], "quantity": 2}]})
    assert res.status_code == 400
    assert "insufficient stock" in res.json()["detail"]

    res = client.post("/api/sales", json={"items": [{"product_id": "local_missing", "quantity": 1}]})
    assert res.status_code == 404

    assert client.post("/api/sales", json={"items": []}).status_code == 422
    assert client.post(f"/api/products/{product['id']}/restock", json={"amount": 0}).status_code == 422


def test_local_write_failure_is_unable_to_save(client, agent, monkeypatch):
    async def broken(_data):
        raise LocalStoreError("disk full")

    monkeypatch.setattr(agent.shop, "create_product", broken)
    res = client.post(
        "/api/products", json={"name": "Hair Cream", "buying_price": 200, "selling_price": 500, "quantity": 1}
    )
    assert res.status_code == 503
    assert res.json()["detail"] == "unable to save"


def test_outbox_and_sync_now(client, remote):
    product = _create(client)

    outbox = client.get("/api/outbox", params={"status": "pending"}).json()
    assert outbox["stats"]["pending"] == 1
    assert outbox["mutations"][0]["record_id"] == product["id"]

    assert client.post("/api/outbox/missing/retry").status_code == 404
    assert client.delete("/api/outbox/missing").status_code == 404

    report = client.post("/api/sync/now").json()
    assert report["ok"] is True
    assert report["push"]["synced"] == 1
    assert len(remote.tables["products"]) == 1

    status = client.get("/api/sync/status").json()
    assert status["pending"] == 0
    assert status["client_id"] == "client_api"
    assert status["last_synced_at"]
    assert status["connectivity"] == "offline"


def test_settings_and_notifications(client):
    assert client.get("/api/settings/currency").json() == {"key": "currency", "value": None}
    client.put("/api/settings/currency", json={"value": "KES"})
    assert client.get("/api/settings/currency").json()["value"] == "KES"

    assert client.post("/api/notifications/notif_missing/clear").status_code == 404
    assert client.post("/api/notifications/clear-all").json() == {"cleared": 0}
    assert client.get("/api/notifications").json() == {"notifications": []}


def test_going_offline(client):
    res = client.post("/api/connectivity", json={"online": False})
    assert res.json() == {"accepted": True, "state": "offline"}


def test_verify_and_force_resync(client):
    product = _create(client)

    report = client.get("/api/sync/verify").json()
    assert report["unsynced"]["products"]["ids"] == [product["id"]]
    assert report["stats"]["pending"] == 1

    assert client.post("/api/sync/now").json()["ok"] is True
    assert client.get("/api/sync/verify").json()["unsynced"]["products"]["count"] == 0

    res = client.post("/api/sync/resync").json()
    assert res["marked"]["products"] == 1
    assert res["enqueued"] == 1
    assert client.get("/api/sync/verify").json()["stats"]["pending"] == 1
