# tests/test_websocket.py — Change feed, health, and security tests
import logging

import pytest
from httpx import AsyncClient

from realtime import BoardChannelManager, change_message, TASKS_CHANGED


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.json()["name"] == "Taskboard"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-request-id" in {k.lower() for k in resp.headers}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Correlation-ID"] == "req-123"
    assert "x-response-time" in {k.lower() for k in resp.headers}


@pytest.mark.asyncio
async def test_ws_stats(client: AsyncClient):
    resp = await client.get("/ws/stats")
    assert resp.status_code == 200
    assert set(resp.json()) == {"boards", "listeners"}


@pytest.mark.asyncio
class TestBoardChannels:
    async def test_publish_reaches_only_that_board(self):
        manager = BoardChannelManager()
        got_a, got_b = [], []

        async def listener_a(message):
            got_a.append(message)

        async def listener_b(message):
            got_b.append(message)

        manager.subscribe("a", listener_a)
        manager.subscribe("b", listener_b)
        delivered = await manager.publish("a", change_message(TASKS_CHANGED, "a", "moved", "t1"))

        assert delivered == 1
        assert got_a[0]["type"] == "tasks.changed"
        assert got_a[0]["entity_id"] == "t1"
        assert got_b == []

    async def test_failing_listener_is_dropped(self, caplog):
        caplog.set_level(logging.WARNING, logger="taskboard.realtime")
        manager = BoardChannelManager()
        received = []

        async def broken(message):
            raise ConnectionError("socket closed")

        async def healthy(message):
            received.append(message)

        manager.subscribe("a", broken)
        manager.subscribe("a", healthy)

        delivered = await manager.publish("a", {"type": "board.changed"})
        assert delivered == 1
        assert manager.listener_count("a") == 1
        assert received == [{"type": "board.changed"}]
        assert "taskboard.realtime" in {r.name for r in caplog.records}

    async def test_unsubscribe_last_listener_closes_channel(self):
        manager = BoardChannelManager()

        async def listener(message):
            pass

        manager.subscribe("a", listener)
        manager.unsubscribe("a", listener)
        assert manager.get_stats() == {"boards": 0, "listeners": 0}
        assert await manager.publish("a", {"type": "board.changed"}) == 0
