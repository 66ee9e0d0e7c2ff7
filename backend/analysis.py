"""
Analysis Aggregator - win-rate buckets by chart timeframe and expiration.

A bucket answers: "if I had exited trades on this timeframe N seconds after
entry, how often would the panel have been green?" Buckets are always
recomputed from the full sample population for their key, never merged
incrementally, so recomputing twice without new samples gives the same
numbers.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Optional

from config import (
    CANONICAL_OFFSETS,
    DASHBOARD_TIMEFRAMES,
    MIN_SAMPLES_FOR_BEST,
    OFFSET_TOLERANCE_SEC,
    STATUS_GOOD_WIN_RATE,
    STATUS_RECOMMENDED_WIN_RATE,
    STATUS_TESTING_WIN_RATE,
    TIER_HIGH,
    TIER_MEDIUM,
)
from trade_store import AnalysisBucket, TradeStore

logger = logging.getLogger(__name__)


def confidence_tier(total_samples: int, win_rate: float) -> str:
    """Coarse reliability label from sample count and win rate."""
    if total_samples >= TIER_HIGH[0] and win_rate >= TIER_HIGH[1]:
        return "high"
    elif total_samples >= TIER_MEDIUM[0] and win_rate >= TIER_MEDIUM[1]:
        return "medium"
    return "low"


def bucket_status(win_rate: float, tier: str) -> str:
    if win_rate >= STATUS_RECOMMENDED_WIN_RATE and tier == "high":
        return "recommended"
    elif win_rate >= STATUS_GOOD_WIN_RATE:
        return "good"
    elif win_rate >= STATUS_TESTING_WIN_RATE:
        return "testing"
    return "avoid"


def is_checkpoint(time_elapsed: int) -> bool:
    """Buckets are only recomputed when a sample lands exactly on a canonical offset."""
    return time_elapsed in CANONICAL_OFFSETS


@dataclass
class TradingStats:
    """Dashboard headline numbers"""
    current_win_rate: float
    best_timeframe: str
    best_expiration: int
    trades_analyzed: int
    recommended_action: str
    confidence: int

    def to_dict(self) -> dict:
        return asdict(self)


class AnalysisAggregator:
    """Recomputes analysis buckets from stored samples."""

    def __init__(self, store: TradeStore, tolerance_sec: int = OFFSET_TOLERANCE_SEC):
        self.store = store
        self.tolerance_sec = tolerance_sec

    def recompute_bucket(self, timeframe: str, expiration: int) -> Optional[AnalysisBucket]:
        """
        Recompute the (timeframe, expiration) bucket from every stored sample
        within the tolerance window. No samples -> no-op, returns None.
        """
        samples = self.store.get_samples_for_bucket(timeframe, expiration, self.tolerance_sec)
        if not samples:
            return None

        wins = sum(1 for s in samples if s.chart_color == "green")
        total = len(samples)
        win_rate = wins / total * 100
        tier = confidence_tier(total, win_rate)
        status = bucket_status(win_rate, tier)

        bucket = self.store.upsert_bucket(timeframe, expiration, {
            "win_rate": round(win_rate, 1),
            "total_samples": total,
            "confidence_tier": tier,
            "status": status,
        })
        logger.debug(
            f"[Analysis] {timeframe}@{expiration}s: {bucket.win_rate:.1f}% "
            f"({wins}/{total}) tier={tier} status={status}"
        )
        return bucket

    def recompute_all(self, timeframe: str) -> list[AnalysisBucket]:
        """Recompute every canonical offset for a timeframe."""
        buckets = []
        for offset in CANONICAL_OFFSETS:
            bucket = self.recompute_bucket(timeframe, offset)
            if bucket:
                buckets.append(bucket)
        return buckets

    # -------------------------------------------------------------------------
    # DASHBOARD SUMMARIES
    # -------------------------------------------------------------------------

    def calculate_stats(self, trades_analyzed: int, buckets: list[AnalysisBucket]) -> TradingStats:
        """
        Headline stats: sample-weighted win rate across buckets, best bucket,
        and what to do next.
        """
        if trades_analyzed == 0:
            return TradingStats(
                current_win_rate=0.0,
                best_timeframe="1m",
                best_expiration=15,
                trades_analyzed=0,
                recommended_action="Start Trading",
                confidence=0,
            )

        total_samples = sum(b.total_samples for b in buckets)
        weighted = sum(b.win_rate * b.total_samples for b in buckets) / (total_samples or 1)

        candidates = [b for b in buckets if b.total_samples >= MIN_SAMPLES_FOR_BEST]
        best = max(candidates, key=lambda b: b.win_rate) if candidates else None

        action = "Start Trading"
        confidence = 0
        if best:
            if best.win_rate >= STATUS_RECOMMENDED_WIN_RATE and best.confidence_tier == "high":
                action, confidence = "Go Live", 94
            elif best.win_rate >= STATUS_GOOD_WIN_RATE and best.total_samples >= TIER_MEDIUM[0]:
                action, confidence = "Continue Testing", 78
            elif best.win_rate >= STATUS_TESTING_WIN_RATE:
                action, confidence = "Test More", 62
            else:
                action, confidence = "Adjust Strategy", 45

        return TradingStats(
            current_win_rate=round(weighted, 1),
            best_timeframe=best.timeframe if best else "1m",
            best_expiration=best.expiration if best else 15,
            trades_analyzed=trades_analyzed,
            recommended_action=action,
            confidence=confidence,
        )

    def timeframe_performance(self, buckets: list[AnalysisBucket]) -> list[dict]:
        """Sample-weighted win rate per dashboard timeframe"""
        results = []
        for timeframe in DASHBOARD_TIMEFRAMES:
            tf_buckets = [b for b in buckets if b.timeframe == timeframe]
            samples = sum(b.total_samples for b in tf_buckets)
            win_rate = sum(b.win_rate * b.total_samples for b in tf_buckets) / samples if samples else 0.0
            results.append({
                "timeframe": timeframe,
                "win_rate": round(win_rate, 1),
                "samples": samples,
            })
        return results

    def expiration_performance(self, buckets: list[AnalysisBucket], timeframe: str) -> list[dict]:
        """Win rate at each canonical offset for one timeframe"""
        by_offset = {b.expiration: b for b in buckets if b.timeframe == timeframe}
        results = []
        for offset in CANONICAL_OFFSETS:
            bucket = by_offset.get(offset)
            results.append({
                "expiration": offset,
                "win_rate": bucket.win_rate if bucket else 0.0,
                "samples": bucket.total_samples if bucket else 0,
                "status": bucket.status if bucket else None,
            })
        return results
