"""
Tests for the TradeStore - SQLite persistence for trades and analysis.

Tests cover:
- Trade registration and durable ids
- Sample storage and bucket queries
- Analysis bucket upsert and ordering
- Monitoring sessions
"""
import pytest
import json
import sqlite3
from unittest.mock import patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from frame_classifier import ChartColor
from trade_registry import ColorSample
from trade_store import TradeStore


def descriptor(timeframe="1m", start_time=1_700_000_000.0, **extra):
    d = {
        "asset": "EUR/USD",
        "trade_type": "PUT",
        "timeframe": timeframe,
        "start_time": start_time,
        "duration_sec": 60,
        "amount": 25.0,
    }
    d.update(extra)
    return d


class TestTrades:
    """Tests for trade registration and queries."""

    def test_register_and_get(self, store):
        trade_id = store.register_trade("EURUSD_1_abc", descriptor(conditions={"dominant_color": "green"}))

        trade = store.get_trade(trade_id)
        assert trade.platform_trade_id == "EURUSD_1_abc"
        assert trade.asset == "EUR/USD"
        assert trade.trade_type == "PUT"
        assert trade.timeframe == "1m"
        assert trade.amount == 25.0
        assert trade.is_demo is True
        assert json.loads(trade.conditions) == {"dominant_color": "green"}

    def test_duplicate_platform_id_returns_existing(self, store):
        first = store.register_trade("EURUSD_1_abc", descriptor())
        second = store.register_trade("EURUSD_1_abc", descriptor())
        assert first == second
        assert store.count_trades() == 1

    def test_register_raises_on_db_error(self, store):
        with patch.object(store, "_get_connection", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(sqlite3.OperationalError):
                store.register_trade("EURUSD_1_abc", descriptor())

    def test_trades_newest_first_with_paging(self, store):
        for i in range(5):
            store.register_trade(f"EURUSD_{i}", descriptor(start_time=1_700_000_000.0 + i))

        trades = store.get_trades(limit=2)
        assert [t.platform_trade_id for t in trades] == ["EURUSD_4", "EURUSD_3"]

        page = store.get_trades(limit=2, offset=2)
        assert [t.platform_trade_id for t in page] == ["EURUSD_2", "EURUSD_1"]

    def test_unknown_trade(self, store):
        assert store.get_trade("missing") is None
        assert store.get_trade_by_platform_id("missing") is None

    def test_live_store_flag(self, tmp_path):
        live = TradeStore(db_path=str(tmp_path / "live.db"), is_demo=False)
        trade_id = live.register_trade("EURUSD_1", descriptor())
        assert live.get_trade(trade_id).is_demo is False


class TestSamples:
    """Tests for sample storage."""

    def test_store_and_get_samples(self, store):
        trade_id = store.register_trade("EURUSD_1", descriptor())
        for elapsed in (10, 0, 5):
            store.store_sample(trade_id, ColorSample(
                time_elapsed=elapsed,
                chart_color=ChartColor.RED,
                confidence=80.0,
                timestamp=1_700_000_000.0 + elapsed,
                profit_loss=-1.5,
            ))

        samples = store.get_trade_samples(trade_id)
        assert [s.time_elapsed for s in samples] == [0, 5, 10]
        assert samples[0].chart_color == "red"
        assert samples[0].profit_loss == -1.5

    def test_samples_for_bucket(self, store):
        one_min = store.register_trade("EURUSD_1", descriptor("1m"))
        five_min = store.register_trade("EURUSD_2", descriptor("5m"))
        for trade_id in (one_min, five_min):
            for elapsed in (27, 28, 30, 32, 33):
                store.store_sample(trade_id, ColorSample(elapsed, ChartColor.GREEN, 90.0, 1_700_000_000.0))

        samples = store.get_samples_for_bucket("1m", 30, tolerance=2)
        assert sorted(s.time_elapsed for s in samples) == [28, 30, 32]
        assert all(s.trade_id == one_min for s in samples)


class TestBuckets:
    """Tests for analysis bucket persistence."""

    def fields(self, win_rate, total=10):
        return {"win_rate": win_rate, "total_samples": total, "confidence_tier": "low", "status": "avoid"}

    def test_upsert_replaces(self, store):
        store.upsert_bucket("1m", 30, self.fields(50.0))
        store.upsert_bucket("1m", 30, self.fields(70.0, 12))

        bucket = store.get_bucket("1m", 30)
        assert bucket.win_rate == 70.0
        assert bucket.total_samples == 12
        assert len(store.get_buckets()) == 1

    def test_buckets_best_first(self, store):
        store.upsert_bucket("1m", 15, self.fields(60.0))
        store.upsert_bucket("1m", 30, self.fields(90.0))
        store.upsert_bucket("5m", 30, self.fields(75.0))

        assert [b.win_rate for b in store.get_buckets()] == [90.0, 75.0, 60.0]
        assert [b.expiration for b in store.get_buckets("1m")] == [30, 15]

    def test_missing_bucket(self, store):
        assert store.get_bucket("1m", 45) is None


class TestSessions:
    """Tests for monitoring sessions."""

    def test_session_lifecycle(self, store):
        session = store.create_session({"idle_interval_sec": 5.0})
        active = store.get_active_session()
        assert active.id == session.id
        assert json.loads(active.capture_config) == {"idle_interval_sec": 5.0}

        assert store.end_session(session.id, {"active_trades": 0}) is True
        assert store.get_active_session() is None

    def test_end_unknown_session(self, store):
        assert store.end_session("missing") is False
