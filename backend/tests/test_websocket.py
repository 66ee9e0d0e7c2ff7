"""
WebSocket integration tests.

Tests cover:
- Initial data message on connect
- Ping/pong handling
- Broadcast of tracker events
- Connection cleanup on failed sends
"""
import pytest
import json
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import server


@pytest.fixture
def client(tracker_config, fake_classifier):
    server.init_services(tracker_config, frame_classifier=fake_classifier)
    server.ws_clients.clear()
    return TestClient(server.app)


class TestWebSocketConnection:
    """Tests for WebSocket connection lifecycle."""

    def test_init_message(self, client):
        with client.websocket_connect("/ws") as ws:
            msg = ws.receive_json()
            assert msg["type"] == "init"
            assert msg["status"]["is_active"] is False
            assert msg["active_trades"] == []

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "ping"}))
            assert ws.receive_json() == {"type": "pong"}

    def test_get_status(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text(json.dumps({"type": "get_status"}))
            msg = ws.receive_json()
            assert msg["type"] == "status"
            assert "tick_count" in msg["data"]


class TestBroadcast:
    """Tests for the broadcast helpers."""

    @pytest.fixture(autouse=True)
    def clean_clients(self):
        server.ws_clients.clear()
        yield
        server.ws_clients.clear()

    @pytest.mark.asyncio
    async def test_broadcast_to_all_clients(self):
        clients = [AsyncMock(), AsyncMock()]
        server.ws_clients.update(clients)

        await server.broadcast({"type": "test", "data": {"value": 1}})

        for ws in clients:
            ws.send_text.assert_awaited_once_with(json.dumps({"type": "test", "data": {"value": 1}}))

    @pytest.mark.asyncio
    async def test_failed_client_is_removed(self):
        good, bad = AsyncMock(), AsyncMock()
        bad.send_text.side_effect = RuntimeError("closed")
        server.ws_clients.update([good, bad])

        await server.broadcast({"type": "test"})

        assert good in server.ws_clients
        assert bad not in server.ws_clients

    @pytest.mark.asyncio
    async def test_publish_wraps_payload(self):
        ws = AsyncMock()
        server.ws_clients.add(ws)

        await server.publish("trade_detected", {"id": "t-1"})

        message = json.loads(ws.send_text.await_args.args[0])
        assert message["type"] == "trade_detected"
        assert message["data"] == {"id": "t-1"}
        assert "timestamp" in message

    @pytest.mark.asyncio
    async def test_tracker_events_reach_clients(self, tracker_config, fake_classifier):
        server.init_services(tracker_config, frame_classifier=fake_classifier)
        ws = AsyncMock()
        server.ws_clients.add(ws)

        await server.tracker.run_tick()

        types = [json.loads(call.args[0])["type"] for call in ws.send_text.await_args_list]
        assert types[0] == "status_update"
        assert "trade_detected" in types
        assert "sample_collected" in types
