"""
Active Trade Registry - in-memory set of trades currently in flight.

Keyed by platform trade id. The registry is a plain mapping: it does not
enforce uniqueness of (asset, timeframe) pairs, the lifecycle controller does.
"""

import random
import string
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional

from config import duration_in_seconds
from frame_classifier import ChartColor


@dataclass
class ColorSample:
    """One indicator-color observation for an active trade."""
    time_elapsed: int          # Whole seconds since trade start
    chart_color: ChartColor
    confidence: float          # 0-100
    timestamp: float           # Capture time (unix seconds)
    profit_loss: Optional[float] = None  # OCR'd +$1.70 / -$2.00 if readable

    def to_dict(self) -> dict:
        return {
            "time_elapsed": self.time_elapsed,
            "chart_color": self.chart_color.value,
            "confidence": round(self.confidence, 2),
            "timestamp": self.timestamp,
            "profit_loss": self.profit_loss,
        }


def make_platform_trade_id(asset: str, detected_at: Optional[float] = None) -> str:
    """
    Natural key for a detected trade: ASSET_<ms>_<random>.

    The random suffix keeps two trades on the same asset detected in the same
    millisecond apart.
    """
    detected_at = detected_at if detected_at is not None else time.time()
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    asset_key = asset.replace("/", "").replace(" ", "")
    return f"{asset_key}_{int(detected_at * 1000)}_{suffix}"


@dataclass
class ActiveTrade:
    """A trade whose declared duration has not yet elapsed."""
    platform_trade_id: str
    start_time: float          # Unix seconds when first detected
    duration_label: str        # Timeframe bucket, e.g. "1m"
    asset: str
    trade_type: str = "CALL"   # "CALL" or "PUT"
    amount: Optional[float] = None
    id: str = ""               # Durable id, set once the store has recorded the trade
    samples: list[ColorSample] = field(default_factory=list)

    @property
    def duration_sec(self) -> int:
        return duration_in_seconds(self.duration_label)

    def elapsed_seconds(self, now: float) -> int:
        return max(0, int(now - self.start_time))

    def is_expired(self, now: float) -> bool:
        return self.elapsed_seconds(now) >= self.duration_sec

    def add_sample(self, sample: ColorSample):
        """Append a sample. Only valid while the trade is active."""
        if sample.time_elapsed >= self.duration_sec:
            raise ValueError(
                f"Sample at {sample.time_elapsed}s is past duration {self.duration_sec}s "
                f"for {self.platform_trade_id}"
            )
        self.samples.append(sample)

    def to_dict(self, include_samples: bool = False) -> dict:
        d = {
            "id": self.id,
            "platform_trade_id": self.platform_trade_id,
            "start_time": self.start_time,
            "duration_label": self.duration_label,
            "duration_sec": self.duration_sec,
            "asset": self.asset,
            "trade_type": self.trade_type,
            "amount": self.amount,
            "sample_count": len(self.samples),
        }
        if include_samples:
            d["samples"] = [s.to_dict() for s in self.samples]
        return d


class ActiveTradeRegistry:
    """Mapping of platform_trade_id -> ActiveTrade."""

    def __init__(self):
        self._trades: dict[str, ActiveTrade] = {}

    def insert(self, trade: ActiveTrade):
        """Insert a trade. An existing entry with the same key is overwritten."""
        self._trades[trade.platform_trade_id] = trade

    def remove(self, platform_trade_id: str) -> Optional[ActiveTrade]:
        return self._trades.pop(platform_trade_id, None)

    def get(self, platform_trade_id: str) -> Optional[ActiveTrade]:
        return self._trades.get(platform_trade_id)

    def trades(self) -> list[ActiveTrade]:
        """Snapshot of all active trades, safe to iterate while mutating."""
        return list(self._trades.values())

    def find_by_pair(self, asset: str, timeframe: str) -> Optional[ActiveTrade]:
        for trade in self._trades.values():
            if trade.asset == asset and trade.duration_label == timeframe:
                return trade
        return None

    def clear(self):
        self._trades.clear()

    def __len__(self) -> int:
        return len(self._trades)

    def __contains__(self, platform_trade_id: str) -> bool:
        return platform_trade_id in self._trades

    def __iter__(self) -> Iterator[ActiveTrade]:
        return iter(self.trades())

    def to_list(self) -> list[dict]:
        return [t.to_dict() for t in self._trades.values()]
