import pytest
from fastapi.testclient import TestClient

from _helper import ADMIN, CONSUMER, SHOPPER, VENDOR
from market_orders.errors import PersistenceUnavailable
from market_orders.main import app
from market_orders.manager import OrderLifecycleManager
from market_orders.routes.deps import get_manager
from market_orders.store import InMemoryOrderStore


def headers(actor) -> dict:
    return {"X-User-Id": actor.user_id, "X-User-Roles": ",".join(sorted(r.value for r in actor.roles))}


ORDER_BODY = {
    "vendor_id": VENDOR.user_id,
    "market_id": "makola",
    "items": [
        {"product_id": "prod-tomato", "product_name": "Tomatoes (1kg)", "quantity": 2, "unit_price": "5.00"},
        {"product_id": "prod-pepper", "product_name": "Scotch bonnet", "quantity": 1, "unit_price": "3.50"},
    ],
}


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def order_id(client) -> str:
    resp = client.post("/orders", json=ORDER_BODY, headers=headers(CONSUMER))
    assert resp.status_code == 201
    return resp.json()["id"]


def move(client, order_id, actor, to_status, observed):
    return client.post(
        f"/orders/{order_id}/transitions",
        json={"to_status": to_status, "observed_status": observed},
        headers=headers(actor),
    )


def test_create_order(client):
    resp = client.post("/orders", json=ORDER_BODY, headers=headers(CONSUMER))
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["total"] == "14.85"
    assert body["items"][0]["total_price"] == "10.00"


def test_get_order_lists_actions(client, order_id):
    resp = client.get(f"/orders/{order_id}", headers=headers(VENDOR))
    assert resp.status_code == 200
    body = resp.json()
    assert body["available_actions"] == ["accepted", "cancelled"]
    assert body["can_pay"] is False
    assert body["payment_blocked_reason"]


def test_actions_endpoint_for_consumer(client, order_id):
    resp = client.get(f"/orders/{order_id}/actions", headers=headers(CONSUMER))
    assert resp.json() == {"order_id": order_id, "available_actions": []}


def test_transition_applied(client, order_id):
    resp = move(client, order_id, VENDOR, "accepted", "pending")
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"


@pytest.mark.parametrize("actor,to_status,observed,code,reason", [
    (SHOPPER, "accepted", "pending", 403, "invalid_actor_for_transition"),
    (VENDOR, "ready", "pending", 409, "invalid_from_state"),
    (VENDOR, "accepted", "ready", 409, "stale_state"),
    (ADMIN, "completed", "pending", 422, "precondition_not_met"),
])
def test_rejections_map_to_status_codes(client, order_id, actor, to_status, observed, code, reason):
    resp = move(client, order_id, actor, to_status, observed)
    assert resp.status_code == code
    body = resp.json()
    assert body["reason"] == reason
    assert body["current_status"] == "pending"
    assert body["detail"].endswith(".")


def test_terminal_rejection(client, order_id):
    move(client, order_id, VENDOR, "cancelled", "pending")
    resp = move(client, order_id, VENDOR, "accepted", "cancelled")
    assert resp.status_code == 409
    assert resp.json()["reason"] == "terminal_state"


def test_admin_override(client, order_id):
    resp = client.post(
        f"/admin/orders/{order_id}/override",
        json={"to_status": "completed", "observed_status": "pending"},
        headers=headers(ADMIN),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"


def test_dispute_and_resolution(client, order_id):
    resp = client.post(
        f"/orders/{order_id}/disputes",
        json={"category": "quality", "description": "Tomatoes were soft"},
        headers=headers(CONSUMER),
    )
    assert resp.status_code == 201
    dispute_id = resp.json()["id"]

    resp = client.patch(
        f"/admin/disputes/{dispute_id}",
        json={"status": "resolved", "resolution": "Partial refund"},
        headers=headers(ADMIN),
    )
    assert resp.status_code == 200
    assert resp.json()["resolved_by"] == ADMIN.user_id
    assert client.get(f"/orders/{order_id}", headers=headers(ADMIN)).json()["order"]["status"] == "disputed"


def test_available_jobs_hide_commission(client, order_id):
    jobs = client.get("/jobs/available").json()
    assert [job["order_id"] for job in jobs] == [order_id]
    assert "commission_amount" not in jobs[0]

    resp = client.post(f"/jobs/{order_id}/accept", headers=headers(SHOPPER))
    assert resp.status_code == 200
    assert resp.json()["commission_amount"] == "1.35"
    assert client.get("/jobs/available").json() == []


def test_payment_gate_endpoint(client, order_id):
    resp = client.get(f"/orders/{order_id}/payment-gate")
    assert resp.json()["can_pay"] is False


def test_invalid_payment_request(client, order_id):
    resp = client.post(
        f"/orders/{order_id}/payments",
        json={"amount": "14.85", "momo_phone": "0241234567", "momo_network": "mtn"},
        headers=headers(CONSUMER),
    )
    assert resp.status_code == 422
    assert resp.json()["reason"] == "precondition_not_met"


def test_unknown_order(client):
    resp = client.get("/orders/does-not-exist", headers=headers(ADMIN))
    assert resp.status_code == 404


def test_missing_identity(client, order_id):
    resp = client.get(f"/orders/{order_id}")
    assert resp.status_code == 422


def test_unknown_role(client, order_id):
    resp = client.get(f"/orders/{order_id}", headers={"X-User-Id": "u", "X-User-Roles": "superuser"})
    assert resp.status_code == 400


class _DownStore(InMemoryOrderStore):
    async def load_order(self, order_id: str):
        raise PersistenceUnavailable("connection refused")


def test_store_down_returns_503():
    app.dependency_overrides[get_manager] = lambda: OrderLifecycleManager(_DownStore())
    try:
        resp = TestClient(app).get("/orders/any", headers=headers(ADMIN))
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "2"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
