import asyncio
from contextlib import ExitStack

import pytest
from fastapi.testclient import TestClient

from services.orders_service.app.brokers import BrokerConnectError, BrokerPublishError
from services.orders_service.app.config import Settings
from services.orders_service.app.main import create_app


@pytest.fixture
def make_client(stub_broker):
    with ExitStack() as stack:

        def make(settings=None, **broker_kwargs):
            broker = stub_broker(**broker_kwargs)
            app = create_app(settings or Settings(publish_timeout=0.5), broker_client=broker)
            client = stack.enter_context(TestClient(app))
            client.app.state.publisher.wait_until_settled(5)
            return client, broker

        yield make


def test_root_endpoint(make_client):
    client, _ = make_client()
    r = client.get("/")
    assert r.status_code == 200
    assert r.text == "E-Cart Backend is running"


def test_health_endpoint_reports_broker_state(make_client):
    client, _ = make_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "broker": "CONNECTED"}


def test_health_is_ok_when_broker_is_down(make_client):
    client, _ = make_client(connect_error=BrokerConnectError("refused"))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "broker": "DISCONNECTED"}


def test_products_endpoint(make_client):
    client, _ = make_client()
    r = client.get("/products")
    assert r.status_code == 200
    assert [p["name"] for p in r.json()] == ["Laptop", "Phone", "Headphones"]


def test_mock_login(make_client):
    client, _ = make_client()
    r = client.post("/auth/login", json={"username": "alice"})
    assert r.status_code == 200
    assert r.json() == {"token": "mock-jwt-token-for-alice", "user": {"username": "alice"}}


def test_create_order_queued(make_client):
    client, broker = make_client()
    r = client.post("/orders", json={"productId": 1, "userId": "u1"})
    assert r.status_code == 201
    body = r.json()
    assert set(body) == {"id", "productId", "userId", "status", "deliveryMode"}
    assert body["productId"] == 1
    assert body["userId"] == "u1"
    assert body["status"] == "PENDING"
    assert body["deliveryMode"] == "QUEUED"
    assert len(broker.sent) == 1


def test_create_order_direct_when_broker_unreachable(make_client):
    client, broker = make_client(connect_error=BrokerConnectError("refused"))
    r = client.post("/orders", json={"productId": "p1", "userId": "u1"})
    assert r.status_code == 201
    assert r.json()["deliveryMode"] == "DIRECT"
    assert broker.send_calls == 0


def test_create_order_degraded_then_direct(make_client):
    client, _ = make_client(send_error=BrokerPublishError("connection reset"))
    r1 = client.post("/orders", json={"productId": "p1", "userId": "u1"})
    r2 = client.post("/orders", json={"productId": "p1", "userId": "u1"})
    assert (r1.status_code, r2.status_code) == (201, 201)
    assert r1.json()["deliveryMode"] == "DEGRADED"
    assert r2.json()["deliveryMode"] == "DIRECT"
    assert r1.json()["id"] != r2.json()["id"]


def test_disabled_backend_accepts_directly():
    app = create_app(Settings(message_backend="none"))
    with TestClient(app) as client:
        client.app.state.publisher.wait_until_settled(5)
        r = client.post("/orders", json={"productId": "p1", "userId": "u1"})
    assert r.status_code == 201
    assert r.json()["deliveryMode"] == "DIRECT"


def test_create_order_accepts_blank_ids(make_client):
    client, _ = make_client()
    r = client.post("/orders", json={"productId": "", "userId": "u1"})
    assert r.status_code == 201
    assert r.json()["productId"] == ""


def test_publisher_closed_when_app_stops_with_error(stub_broker):
    broker = stub_broker()
    app = create_app(Settings(), broker_client=broker)

    async def run():
        async with app.router.lifespan_context(app):
            raise RuntimeError("crashed while serving")

    with pytest.raises(RuntimeError):
        asyncio.run(run())
    assert broker.closed


@pytest.mark.parametrize("payload", [{"userId": "u1"}, {"productId": "p1"}, {"productId": None, "userId": "u1"}, {}])
def test_create_order_missing_fields_returns_400(make_client, payload):
    client, broker = make_client()
    r = client.post("/orders", json=payload)
    assert r.status_code == 400
    assert "required" in r.json()["detail"]
    assert broker.send_calls == 0
