"""API tests for the dispatch HTTP surface.

These tests exercise the endpoints for the main scenarios: listing,
stock checks, successful dispatch, insufficient stock, state conflicts,
busy agents and request-id propagation. They run on the in-process store
selected by the autouse ``use_memory_store`` fixture.
"""

import pytest
from fastapi.testclient import TestClient

from vandispatch import providers
from vandispatch.main import app
from vandispatch.tests.factories import AGENT_A, AGENT_B, BOB, GADGET, WIDGET, load, make_order


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def api_store():
    store = providers.get_store()
    store.add_agent(AGENT_A)
    store.ledger.append([load(AGENT_A, WIDGET, 5)])
    return store


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_dispatch_ok(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 3), order_id="O1"))
    r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": AGENT_A.id})
    assert r.status_code == 200
    body = r.json()
    assert body["order"]["status"] == "completed"
    assert body["movements"][0]["quantity"] == -3
    assert body["movements"][0]["kind"] == "sale"
    assert body["movements"][0]["order_id"] == "O1"

    r = client.get(f"/agents/{AGENT_A.id}/balances")
    assert r.json()["balances"] == {WIDGET.id: 2}
    r = client.get(f"/agents/{AGENT_A.id}/movements")
    assert [m["kind"] for m in r.json()] == ["sale", "load"]


def test_dispatch_insufficient_stock_returns_422_with_shortfalls(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 4), (GADGET, 1)))
    r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": AGENT_A.id})
    assert r.status_code == 422
    body = r.json()
    assert body["detail"] == "INSUFFICIENT_STOCK"
    assert body["retryable"] is True
    assert body["shortfalls"] == [{"product_id": GADGET.id, "product_name": "Gadget", "needed": 1, "available": 0}]


def test_stock_status_endpoint(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 6)))
    r = client.get(f"/orders/{order.id}/stock/{AGENT_A.id}")
    assert r.status_code == 200
    assert r.json() == {
        "fulfillable": False,
        "shortfalls": [{"product_id": WIDGET.id, "product_name": "Widget", "needed": 6, "available": 5}],
    }


def test_refuse_then_conflict(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 1)))
    r = client.post(f"/orders/{order.id}/refuse")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    r = client.post(f"/orders/{order.id}/refuse")
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_ORDER_STATE"
    r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": AGENT_A.id})
    assert r.status_code == 409


def test_not_found(client, api_store):
    assert client.post("/orders/nope/refuse").status_code == 404
    order = api_store.add_order(make_order((WIDGET, 1)))
    r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": "ghost"})
    assert r.status_code == 404
    assert r.json()["detail"] == "AGENT_NOT_FOUND"
    assert client.get("/orders/nope").status_code == 404


def test_dispatch_validation_error(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 1)))
    r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": ""})
    assert r.status_code == 422
    assert api_store.get_order(order.id).status.value == "pending"


def test_busy_agent_returns_503(client, api_store):
    order = api_store.add_order(make_order((WIDGET, 1)))
    locks = providers.get_agent_locks()
    with locks.hold(AGENT_A.id):
        r = client.post(f"/orders/{order.id}/dispatch", json={"agent_id": AGENT_A.id})
    assert r.status_code == 503
    assert r.json() == {"detail": "DISPATCH_BUSY", "retryable": True}
    assert r.headers["Retry-After"] == "1"


def test_list_orders_filters(client, api_store):
    a = api_store.add_order(make_order((WIDGET, 1)))
    b = api_store.add_order(make_order((WIDGET, 1), customer=BOB))
    api_store.add_order(make_order((WIDGET, 1), status="cancelled"))

    r = client.get("/orders", params={"status": "pending"})
    assert r.status_code == 200
    assert [o["id"] for o in r.json()] == [b.id, a.id]

    r = client.get("/orders", params={"status": "PENDING", "q": "bob"})
    assert [o["id"] for o in r.json()] == [b.id]
    assert r.json()[0]["customer_email"] == "bob@shop.test"

    assert client.get("/orders", params={"status": "shipped"}).status_code == 400


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"
    generated = client.get("/health").headers["X-Request-ID"]
    assert len(generated) == 36


def test_list_orders_defaults_to_pending(client, api_store):
    pending = api_store.add_order(make_order((WIDGET, 1)))
    done = api_store.add_order(make_order((WIDGET, 1), status="completed"))

    assert [o["id"] for o in client.get("/orders").json()] == [pending.id]
    assert [o["id"] for o in client.get("/orders", params={"status": "all"}).json()] == [done.id, pending.id]


def test_agents_and_stock_matrix(client, api_store):
    api_store.add_agent(AGENT_B)
    api_store.ledger.append([load(AGENT_B, WIDGET, 1)])
    order = api_store.add_order(make_order((WIDGET, 2)))

    r = client.get("/agents")
    assert r.status_code == 200
    assert [a["id"] for a in r.json()] == [AGENT_A.id, AGENT_B.id]

    r = client.get(f"/orders/{order.id}/stock")
    assert r.status_code == 200
    assert r.json() == [
        {"agent": {"id": AGENT_A.id, "name": "Agent A", "email": None}, "fulfillable": True, "shortfalls": []},
        {
            "agent": {"id": AGENT_B.id, "name": "Agent B", "email": None},
            "fulfillable": False,
            "shortfalls": [{"product_id": WIDGET.id, "product_name": "Widget", "needed": 2, "available": 1}],
        },
    ]
    assert client.get("/orders/nope/stock").status_code == 404
