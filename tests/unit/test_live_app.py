import pytest
from fastapi.testclient import TestClient

from fallhelp.live import app as app_module

pytestmark = [pytest.mark.unit]


class FakeDbPool:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


@pytest.fixture
def client(monkeypatch):
    pool = FakeDbPool()

    async def fake_create_pool(apply_schema=True):
        return pool

    monkeypatch.setattr(app_module, "create_pool", fake_create_pool)
    monkeypatch.setattr(app_module, "configure_logging", lambda *args, **kwargs: None)
    with TestClient(app_module.app) as test_client:
        yield test_client
    assert pool.closed


def test_health_reports_router_state(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "fallhelp-core"
    assert body["mqtt_connected"] is False
    assert "queue_depths" in body
    assert body["counters"]["messages_received"] == 0


def test_metrics_endpoint(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "fallhelp_ingest_messages_total" in response.text


def test_ws_authenticate_and_ping(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "authenticate", "data": {"userId": "user-a", "elderId": "elder-1"}})
        assert ws.receive_json() == {"event": "authenticated", "data": {"success": True}}
        assert app_module.manager.room_size("elder:elder-1") == 1

        ws.send_json({"event": "ping"})
        pong = ws.receive_json()
        assert pong["event"] == "pong"
        assert "timestamp" in pong["data"]


def test_ws_rejects_bad_messages(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("{nope")
        assert ws.receive_json()["data"]["message"] == "invalid JSON"

        ws.send_json([1, 2])
        assert ws.receive_json()["event"] == "error"

        ws.send_json({"event": "subscribe"})
        assert ws.receive_json()["data"]["message"] == "unknown event: subscribe"
