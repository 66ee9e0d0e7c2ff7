"""
Configuration for the Trade Monitor.
Contains timeframe tables, sampling intervals, and detection settings.
"""

import os
from dataclasses import dataclass, asdict, field
from typing import Optional

# ============================================================================
# TIMEFRAME / DURATION TABLE
# ============================================================================

# Nominal timeframe labels as read off the trading platform, mapped to
# trade duration in seconds. Both the short ("1m") and long ("1min") spellings
# show up depending on the platform skin.
DURATION_SECONDS = {
    "5sec": 5,
    "5s": 5,
    "10sec": 10,
    "10s": 10,
    "15sec": 15,
    "15s": 15,
    "30sec": 30,
    "30s": 30,
    "1m": 60,
    "1min": 60,
    "2m": 120,
    "2min": 120,
    "3m": 180,
    "3min": 180,
    "5m": 300,
    "5min": 300,
    "10m": 600,
    "10min": 600,
    "15m": 900,
    "15min": 900,
    "30m": 1800,
    "30min": 1800,
    "1h": 3600,
}

DEFAULT_DURATION_SEC = 60

# Timeframes shown on the dashboard performance chart
DASHBOARD_TIMEFRAMES = ["30sec", "1m", "5m", "15m", "30m"]


def duration_in_seconds(label: Optional[str]) -> int:
    """Map a timeframe label to seconds. Unknown labels fall back to 60s."""
    if not label:
        return DEFAULT_DURATION_SEC
    return DURATION_SECONDS.get(label.strip().lower(), DEFAULT_DURATION_SEC)


# ============================================================================
# ANALYSIS CHECKPOINTS
# ============================================================================

# Expiration offsets (seconds since trade start) at which buckets are recomputed
CANONICAL_OFFSETS = (5, 10, 15, 30, 45, 60)

# Tick jitter tolerance when matching a sample to an offset
OFFSET_TOLERANCE_SEC = 2

# Confidence tier thresholds: (min samples, min win rate %)
TIER_HIGH = (50, 80.0)
TIER_MEDIUM = (20, 70.0)

# Status thresholds on win rate %
STATUS_RECOMMENDED_WIN_RATE = 85.0
STATUS_GOOD_WIN_RATE = 75.0
STATUS_TESTING_WIN_RATE = 65.0

# Buckets need at least this many samples to be picked as "best"
MIN_SAMPLES_FOR_BEST = 10


# ============================================================================
# DETECTION AREA PRESETS
# ============================================================================

# Screen reference size the presets are expressed in
REFERENCE_SCREEN = (1920, 1080)

# Default region of interest: full width, top strip of the screen
DEFAULT_DETECTION_AREA = {"x": 0, "y": 0, "width": 1920, "height": 100}

DETECTION_AREA_PRESETS = {
    "open_trades_panel": {"x": 600, "y": 150, "width": 300, "height": 400},
    "top_bar": {"x": 0, "y": 0, "width": 1920, "height": 100},
    "header": {"x": 0, "y": 0, "width": 1920, "height": 120},
    "center": {"x": 400, "y": 200, "width": 800, "height": 200},
    "full_screen": {"x": 0, "y": 0, "width": 1920, "height": 1080},
}


# ============================================================================
# TRACKER PARAMETERS
# ============================================================================

@dataclass
class TrackerConfig:
    # Tick scheduling
    active_interval_sec: float = 1.5   # At least one trade in flight
    idle_interval_sec: float = 5.0     # Nothing in flight
    error_interval_sec: float = 5.0    # After a failed tick

    # New-trade detection
    new_trade_debounce_sec: float = 10.0
    debounce_scope: str = "global"     # "global" or "pair" (per asset+timeframe)

    # Color classification
    detection_area: dict = field(default_factory=lambda: dict(DEFAULT_DETECTION_AREA))

    # Sample persistence retry
    sample_max_retries: int = 2
    sample_retry_base_delay: float = 0.1
    sample_retry_max_delay: float = 0.5

    # Storage
    db_path: str = "trade_monitor.db"
    is_demo: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TrackerConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        """Build config from TRACKER_* environment variables."""
        config = cls()
        config.active_interval_sec = float(os.getenv("TRACKER_ACTIVE_INTERVAL_SEC", config.active_interval_sec))
        config.idle_interval_sec = float(os.getenv("TRACKER_IDLE_INTERVAL_SEC", config.idle_interval_sec))
        config.error_interval_sec = float(os.getenv("TRACKER_ERROR_INTERVAL_SEC", config.error_interval_sec))
        config.new_trade_debounce_sec = float(os.getenv("TRACKER_DEBOUNCE_SEC", config.new_trade_debounce_sec))
        config.debounce_scope = os.getenv("TRACKER_DEBOUNCE_SCOPE", config.debounce_scope).lower()
        config.sample_max_retries = int(os.getenv("TRACKER_SAMPLE_MAX_RETRIES", config.sample_max_retries))
        config.db_path = os.getenv("TRACKER_DB_PATH", config.db_path)
        config.is_demo = os.getenv("TRACKER_IS_DEMO", "true").lower() in ("1", "true", "yes")
        return config


DEFAULT_CONFIG = TrackerConfig()
