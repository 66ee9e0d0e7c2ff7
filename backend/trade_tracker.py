"""
Trade Tracker - the capture/classify/update loop.

Each tick:
1. Classifies the detection area once
2. Decides whether a new trade has started (debounced)
3. Appends a color sample to every active trade, or retires it once its
   duration has elapsed
4. Recomputes analysis buckets when a sample lands on a canonical offset

Ticks never overlap: the next one is scheduled only after the current one
has fully finished, 1.5s later while trades are in flight and 5s later when
idle or after a failed tick.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Callable, Awaitable

from analysis import AnalysisAggregator, is_checkpoint
from config import TrackerConfig
from frame_classifier import ClassificationResult, DetectionArea, FrameClassifier
from retry import RetryConfig, SampleWriter
from trade_registry import ActiveTrade, ActiveTradeRegistry, ColorSample, make_platform_trade_id
from trade_store import TradeStore

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], Awaitable[None]]


class TradeLifecycleController:
    """
    Drives active trades from detection to retirement.

    Collaborators are injected so tests can run the controller against a fake
    classifier, a temp-file store and a fake clock.
    """

    def __init__(
        self,
        classifier: FrameClassifier,
        store: TradeStore,
        registry: Optional[ActiveTradeRegistry] = None,
        aggregator: Optional[AnalysisAggregator] = None,
        config: Optional[TrackerConfig] = None,
        sample_writer: Optional[SampleWriter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.classifier = classifier
        self.store = store
        self.registry = registry if registry is not None else ActiveTradeRegistry()
        self.aggregator = aggregator or AnalysisAggregator(store)
        self.config = config or TrackerConfig()
        self.sample_writer = sample_writer or SampleWriter(store, RetryConfig(
            max_retries=self.config.sample_max_retries,
            base_delay=self.config.sample_retry_base_delay,
            max_delay=self.config.sample_retry_max_delay,
            retryable_exceptions=(Exception,),
        ))
        self._clock = clock
        self._on_event: Optional[EventCallback] = None

        # New-trade debounce: one global timestamp, or one per (asset, timeframe)
        self._last_trade_check: Optional[float] = None
        self._pair_last_check: dict[tuple[str, str], float] = {}

        # Loop state
        self._running = False
        self._in_tick = False
        self._task: Optional[asyncio.Task] = None
        self.next_interval = self.config.idle_interval_sec

        # Counters for status
        self.tick_count = 0
        self.failed_ticks = 0
        self.trades_detected = 0
        self.trades_completed = 0
        self.registration_failures = 0
        self.last_result: Optional[ClassificationResult] = None
        self.last_capture: Optional[float] = None

    def set_callbacks(self, on_event: Optional[EventCallback] = None) -> None:
        """Set the notification sink. Receives (event_kind, payload)."""
        self._on_event = on_event

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # LOOP CONTROL
    # -------------------------------------------------------------------------

    @property
    def is_stopping(self) -> bool:
        """Stop requested but the previous loop task has not finished yet."""
        return not self._running and self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Start the tick loop as a background task.

        Returns False if a loop task is still alive, either running or
        finishing its last tick after stop().
        """
        if self._task is not None and not self._task.done():
            if self.is_stopping:
                logger.warning("[Tracker] Start refused, previous loop is still stopping")
            return False
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("[Tracker] Started")
        return True

    async def stop(self) -> None:
        """
        Stop scheduling ticks. A tick already in progress runs to completion;
        a pending sleep is cancelled.
        """
        self._running = False

        # Keep the task reference until it has finished so start() can't overlap it
        task = self._task
        if task is None:
            return
        if not task.done() and not self._in_tick:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if self._task is task:
            self._task = None
        logger.info("[Tracker] Stopped")

    async def _run_loop(self):
        while self._running:
            await self.run_tick()
            if not self._running:
                break
            await asyncio.sleep(self.next_interval)

    # -------------------------------------------------------------------------
    # TICK
    # -------------------------------------------------------------------------

    async def run_tick(self) -> None:
        """Run one tick. Never raises; failures are logged and back off to the error interval."""
        self._in_tick = True
        self.tick_count += 1
        try:
            await self._tick()
            if len(self.registry) > 0:
                self.next_interval = self.config.active_interval_sec
            else:
                self.next_interval = self.config.idle_interval_sec
        except Exception as e:
            self.failed_ticks += 1
            self.next_interval = self.config.error_interval_sec
            logger.error(f"[Tracker] Tick {self.tick_count} failed: {type(e).__name__}: {e}", exc_info=True)
        finally:
            self._in_tick = False

    async def _tick(self):
        result = await self._classify()
        self.last_result = result
        self.last_capture = self._clock()

        await self._publish("status_update", {
            "colors": {
                "dominant_color": result.dominant_color.value,
                "confidence": round(result.confidence, 2),
            },
            "ok": result.ok,
            "fields": result.fields.to_dict(),
            "active_trades": len(self.registry),
        })

        await self._check_new_trade(result)
        await self._update_active_trades(result)

    async def _classify(self) -> ClassificationResult:
        area = DetectionArea.from_dict(self.config.detection_area)
        try:
            result = await self.classifier.classify(area)
        except Exception as e:
            logger.warning(f"[Tracker] Classification failed: {type(e).__name__}: {e}")
            return ClassificationResult.failed(str(e))

        if result is None:
            logger.warning("[Tracker] Classifier returned no result")
            return ClassificationResult.failed("no_result")
        return result

    # -------------------------------------------------------------------------
    # NEW-TRADE DETECTION
    # -------------------------------------------------------------------------

    def _debounce_passed(self, now: float, asset: str, timeframe: str) -> bool:
        """Check and arm the debounce window for a new-trade check."""
        window = self.config.new_trade_debounce_sec

        if self.config.debounce_scope == "pair":
            key = (asset, timeframe)
            last = self._pair_last_check.get(key)
            if last is not None and now - last < window:
                return False
            self._pair_last_check[key] = now
            return True

        if self._last_trade_check is not None and now - self._last_trade_check < window:
            return False
        self._last_trade_check = now
        return True

    async def _check_new_trade(self, result: ClassificationResult):
        if not result.ok:
            return

        fields = result.fields
        now = self._clock()

        if self.config.debounce_scope == "pair" and not (fields.asset and fields.timeframe):
            return
        if not self._debounce_passed(now, fields.asset, fields.timeframe):
            return

        if not fields.timer_visible or not fields.timeframe or not fields.asset:
            return

        existing = self.registry.find_by_pair(fields.asset, fields.timeframe)
        if existing:
            logger.debug(f"[Tracker] {fields.asset} {fields.timeframe} already tracked as {existing.platform_trade_id}")
            return

        trade = ActiveTrade(
            platform_trade_id=make_platform_trade_id(fields.asset, now),
            start_time=now,
            duration_label=fields.timeframe,
            asset=fields.asset,
            trade_type=fields.trade_type or "CALL",
            amount=fields.amount,
        )
        descriptor = {
            "asset": trade.asset,
            "trade_type": trade.trade_type,
            "timeframe": trade.duration_label,
            "start_time": trade.start_time,
            "duration_sec": trade.duration_sec,
            "amount": trade.amount,
            "conditions": {
                "dominant_color": result.dominant_color.value,
                "confidence": result.confidence,
                "time_remaining": fields.time_remaining,
            },
        }

        # The trade only becomes active once it has a durable id
        try:
            trade.id = await asyncio.to_thread(self.store.register_trade, trade.platform_trade_id, descriptor)
        except Exception as e:
            self.registration_failures += 1
            logger.error(f"[Tracker] Could not register {trade.platform_trade_id}: {type(e).__name__}: {e}")
            return

        if not trade.id:
            self.registration_failures += 1
            logger.error(f"[Tracker] Store returned no id for {trade.platform_trade_id}")
            return

        self.registry.insert(trade)
        self.trades_detected += 1
        logger.info(
            f"[Tracker] New trade {trade.platform_trade_id}: {trade.asset} {trade.trade_type} "
            f"{trade.duration_label} ({trade.duration_sec}s)"
        )
        await self._publish("trade_detected", trade.to_dict())

    # -------------------------------------------------------------------------
    # SAMPLE PROPAGATION / RETIREMENT
    # -------------------------------------------------------------------------

    async def _update_active_trades(self, result: ClassificationResult):
        now = self._clock()

        for trade in self.registry.trades():
            elapsed = trade.elapsed_seconds(now)

            if elapsed >= trade.duration_sec:
                await self._retire(trade, elapsed)
                continue

            sample = ColorSample(
                time_elapsed=elapsed,
                chart_color=result.dominant_color,
                confidence=result.confidence,
                timestamp=now,
                profit_loss=result.fields.profit_loss,
            )
            trade.add_sample(sample)

            await self.sample_writer.write(trade.id, sample)
            await self._publish("sample_collected", {
                "id": trade.id,
                "platform_trade_id": trade.platform_trade_id,
                "sample": sample.to_dict(),
            })

            if is_checkpoint(elapsed):
                await self._recompute(trade.duration_label, elapsed)

    async def _retire(self, trade: ActiveTrade, elapsed: int):
        self.registry.remove(trade.platform_trade_id)
        self.trades_completed += 1

        greens = sum(1 for s in trade.samples if s.chart_color.value == "green")
        logger.info(
            f"[Tracker] Trade completed {trade.platform_trade_id} after {elapsed}s | "
            f"{len(trade.samples)} samples, {greens} green"
        )
        await self._publish("trade_completed", {
            **trade.to_dict(),
            "elapsed_sec": elapsed,
            "green_samples": greens,
        })

    async def _recompute(self, timeframe: str, offset: int):
        try:
            bucket = await asyncio.to_thread(self.aggregator.recompute_bucket, timeframe, offset)
        except Exception as e:
            logger.error(f"[Tracker] Analysis recompute failed for {timeframe}@{offset}s: {e}")
            return
        if bucket:
            await self._publish("analysis_updated", bucket.to_dict())

    # -------------------------------------------------------------------------
    # NOTIFICATIONS
    # -------------------------------------------------------------------------

    async def _publish(self, kind: str, payload: dict):
        if not self._on_event:
            return
        try:
            await self._on_event(kind, payload)
        except Exception as e:
            logger.error(f"[Tracker] Error publishing {kind}: {e}")

    # -------------------------------------------------------------------------
    # CONFIGURATION / STATUS
    # -------------------------------------------------------------------------

    def update_config(self, **kwargs):
        """Update configuration settings"""
        for key, value in kwargs.items():
            if hasattr(self.config, key):
                setattr(self.config, key, value)

    def set_detection_area(self, area: dict) -> DetectionArea:
        detection_area = DetectionArea.from_dict(area)
        self.config.detection_area = detection_area.to_dict()
        logger.info(f"[Tracker] Detection area set to {self.config.detection_area}")
        return detection_area

    def get_active_trades(self) -> list[dict]:
        return self.registry.to_list()

    def get_status(self) -> dict:
        result = self.last_result
        fields = result.fields if result else None
        return {
            "is_active": self._running,
            "chart_detection": bool(result and result.ok and result.dominant_color.value != "neutral"),
            "trade_detection": bool(fields and fields.asset and fields.timeframe),
            "timer_detection": bool(fields and fields.timer_visible),
            "result_detection": bool(result and result.ok and result.confidence > 0),
            "last_capture": (
                datetime.fromtimestamp(self.last_capture, tz=timezone.utc).isoformat()
                if self.last_capture else None
            ),
            "active_trades": len(self.registry),
            "tick_count": self.tick_count,
            "failed_ticks": self.failed_ticks,
            "next_interval_sec": self.next_interval,
            "trades_detected": self.trades_detected,
            "trades_completed": self.trades_completed,
            "registration_failures": self.registration_failures,
            "last_classification": result.to_dict() if result else None,
            "sample_writer": self.sample_writer.get_stats(),
            "detection_area": dict(self.config.detection_area),
        }
