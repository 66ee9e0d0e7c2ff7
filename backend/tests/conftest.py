"""
Pytest fixtures for the test suite.
"""
import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import TrackerConfig
from frame_classifier import (
    ChartColor,
    ClassificationResult,
    FrameClassifier,
    parse_extracted_text,
)
from trade_registry import ActiveTradeRegistry
from trade_store import TradeStore
from trade_tracker import TradeLifecycleController


class FakeClock:
    """Manually advanced clock for the tracker."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeClassifier(FrameClassifier):
    """Returns a fixed reading built from panel text; tests mutate the attributes."""

    def __init__(self, text: str = "EUR/USD OTC 1m 00:58 $10 CALL",
                 color: ChartColor = ChartColor.GREEN, confidence: float = 90.0):
        self.text = text
        self.color = color
        self.confidence = confidence
        self.calls = 0

    async def classify(self, area=None) -> ClassificationResult:
        self.calls += 1
        return ClassificationResult(
            ok=True,
            dominant_color=self.color,
            confidence=self.confidence,
            extracted_text=self.text,
            fields=parse_extracted_text(self.text),
        )


@pytest.fixture
def tracker_config(tmp_path):
    """Tracker config with distinct intervals so scheduling is observable."""
    return TrackerConfig(
        active_interval_sec=1.5,
        idle_interval_sec=5.0,
        error_interval_sec=7.0,
        new_trade_debounce_sec=10.0,
        db_path=str(tmp_path / "test_trades.db"),
    )


@pytest.fixture
def store(tracker_config):
    """Fresh SQLite store per test."""
    return TradeStore(db_path=tracker_config.db_path)


@pytest.fixture
def registry():
    return ActiveTradeRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_classifier():
    return FakeClassifier()


@pytest.fixture
def events():
    """Captured (kind, payload) notifications."""
    return []


@pytest.fixture
def tracker(fake_classifier, store, registry, tracker_config, clock, events):
    """Lifecycle controller wired to fakes, recording every event."""
    controller = TradeLifecycleController(
        classifier=fake_classifier,
        store=store,
        registry=registry,
        config=tracker_config,
        clock=clock,
    )

    async def record(kind, payload):
        events.append((kind, payload))

    controller.set_callbacks(on_event=record)
    return controller
