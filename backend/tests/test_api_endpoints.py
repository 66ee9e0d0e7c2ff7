"""
Tests for REST API Endpoints (server.py).

Tests cover:
- Health and trade history endpoints
- Analysis, stats and performance endpoints
- Monitoring session control
- Detection area configuration
"""
import pytest
import asyncio
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import server
from frame_classifier import ChartColor
from trade_registry import ColorSample


@pytest.fixture
def client(tracker_config, fake_classifier):
    """Server wired to a temp database and a fake classifier (startup hook not run)."""
    server.init_services(tracker_config, frame_classifier=fake_classifier)
    server.ws_clients.clear()
    return TestClient(server.app)


def seed_trades(count=3, timeframe="1m", green=2):
    ids = []
    for i in range(count):
        trade_id = server.store.register_trade(f"EURUSD_{i}", {
            "asset": "EUR/USD",
            "timeframe": timeframe,
            "start_time": 1_700_000_000.0 + i,
            "duration_sec": 60,
        })
        color = ChartColor.GREEN if i < green else ChartColor.RED
        server.store.store_sample(trade_id, ColorSample(30, color, 90.0, 1_700_000_030.0 + i))
        ids.append(trade_id)
    return ids


class TestHealthEndpoints:
    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestTradeEndpoints:
    """Tests for trade history endpoints."""

    def test_trades_empty(self, client):
        data = client.get("/api/trades").json()
        assert data["trades"] == []
        assert data["total"] == 0

    def test_trades_paged(self, client):
        seed_trades(3)
        data = client.get("/api/trades?limit=2&offset=0").json()
        assert data["total"] == 3
        assert [t["platform_trade_id"] for t in data["trades"]] == ["EURUSD_2", "EURUSD_1"]

    def test_trade_samples(self, client):
        trade_id = seed_trades(1)[0]
        data = client.get(f"/api/trades/{trade_id}/samples").json()
        assert data["trade"]["id"] == trade_id
        assert len(data["samples"]) == 1
        assert data["samples"][0]["chart_color"] == "green"

    def test_store_reads_run_off_event_loop(self, client):
        trade_id = seed_trades(1)[0]
        with patch.object(server.asyncio, "to_thread", wraps=asyncio.to_thread) as to_thread:
            client.get("/api/trades")
            client.get(f"/api/trades/{trade_id}/samples")
            client.get("/api/stats")
            client.get("/api/monitoring/status")
        called = [c.args[0] for c in to_thread.call_args_list]
        assert server.store.count_trades in called
        assert server.store.get_trade in called
        assert server.store.get_active_session in called

    def test_unknown_trade_samples(self, client):
        response = client.get("/api/trades/missing/samples")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_active_trades(self, client):
        await server.tracker.run_tick()
        trades = client.get("/api/trades/active").json()["trades"]
        assert len(trades) == 1
        assert trades[0]["asset"] == "EUR/USD OTC"


class TestAnalysisEndpoints:
    """Tests for analysis, stats and performance."""

    def test_recompute_single_bucket(self, client):
        seed_trades(3, green=2)
        response = client.post("/api/analysis/recompute", json={"timeframe": "1m", "expiration": 30})
        assert response.status_code == 200
        buckets = response.json()["buckets"]
        assert len(buckets) == 1
        assert buckets[0]["win_rate"] == 66.7

        analysis = client.get("/api/analysis").json()["buckets"]
        assert analysis[0]["expiration"] == 30

    def test_recompute_whole_timeframe(self, client):
        seed_trades(2)
        buckets = client.post("/api/analysis/recompute", json={"timeframe": "1m"}).json()["buckets"]
        assert [b["expiration"] for b in buckets] == [30]

    def test_recompute_validation(self, client):
        assert client.post("/api/analysis/recompute", json={}).status_code == 400
        assert client.post("/api/analysis/recompute", json={"timeframe": "1m", "expiration": 20}).status_code == 400
        assert client.post("/api/analysis/recompute", json={"timeframe": "1m", "expiration": "x"}).status_code == 400

    def test_stats(self, client):
        data = client.get("/api/stats").json()
        assert data["recommended_action"] == "Start Trading"

        seed_trades(12, green=12)
        client.post("/api/analysis/recompute", json={"timeframe": "1m", "expiration": 30})
        data = client.get("/api/stats").json()
        assert data["trades_analyzed"] == 12
        assert data["best_expiration"] == 30
        assert data["current_win_rate"] == 100.0

    def test_performance(self, client):
        seed_trades(4, green=3)
        client.post("/api/analysis/recompute", json={"timeframe": "1m", "expiration": 30})

        timeframes = client.get("/api/performance/timeframes").json()["timeframes"]
        assert [t["timeframe"] for t in timeframes] == ["30sec", "1m", "5m", "15m", "30m"]
        assert timeframes[1] == {"timeframe": "1m", "win_rate": 75.0, "samples": 4}

        expirations = client.get("/api/performance/expirations?timeframe=1m").json()
        assert expirations["timeframe"] == "1m"
        thirty = next(e for e in expirations["expirations"] if e["expiration"] == 30)
        assert thirty["win_rate"] == 75.0


class TestMonitoringEndpoints:
    """Tests for monitoring start/stop."""

    def test_status_when_idle(self, client):
        data = client.get("/api/monitoring/status").json()
        assert data["session"] is None
        assert data["tracker"]["is_active"] is False

    def test_start_and_stop(self, client):
        with patch.object(server.tracker, "start", MagicMock(return_value=True)) as start:
            data = client.post("/api/monitoring/start").json()
        assert data["status"] == "started"
        start.assert_called_once()
        session_id = data["session"]["id"]
        assert client.get("/api/monitoring/status").json()["session"]["id"] == session_id

        data = client.post("/api/monitoring/stop").json()
        assert data["status"] == "stopped"
        assert data["session_id"] == session_id
        assert server.store.get_active_session() is None

    def test_start_when_running(self, client):
        server.tracker._running = True
        try:
            data = client.post("/api/monitoring/start").json()
        finally:
            server.tracker._running = False
        assert data["status"] == "already_running"

    def test_start_while_stopping(self, client):
        with patch.object(server.tracker, "start", MagicMock(return_value=False)):
            response = client.post("/api/monitoring/start")
        assert response.status_code == 409
        assert server.store.get_active_session() is None


class TestDetectionAreaEndpoints:
    def test_get_area(self, client):
        data = client.get("/api/detection-area").json()
        assert data["area"] == {"x": 0, "y": 0, "width": 1920, "height": 100}
        assert "open_trades_panel" in data["presets"]

    def test_set_explicit_area(self, client):
        data = client.post("/api/detection-area", json={"x": 10, "y": 20, "width": 300, "height": 40}).json()
        assert data["area"] == {"x": 10, "y": 20, "width": 300, "height": 40}
        assert server.tracker.config.detection_area["width"] == 300

    def test_set_preset(self, client):
        data = client.post("/api/detection-area", json={"preset": "center"}).json()
        assert data["area"] == {"x": 400, "y": 200, "width": 800, "height": 200}

    def test_invalid_area(self, client):
        assert client.post("/api/detection-area", json={"preset": "nope"}).status_code == 400
        assert client.post("/api/detection-area", json={"width": "wide"}).status_code == 400
