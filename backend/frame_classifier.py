"""
Frame Classifier - turns a screen frame into a win/loss color verdict.

Given a region of interest, a classifier returns the dominant indicator
color (green / red / neutral) with a 0-100 confidence, plus whatever text it
could read from the region (asset, timeframe, countdown timer, amount).

Classifiers never raise: any capture or analysis error becomes a
ClassificationResult with ok=False, a neutral color and zero confidence.
"""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Optional

import aiohttp
import numpy as np

from config import DEFAULT_DETECTION_AREA, REFERENCE_SCREEN
from retry import RetryConfig, retry_http_request

logger = logging.getLogger(__name__)


class ChartColor(Enum):
    """Panel indicator color"""
    GREEN = "green"    # Trade currently in the money
    RED = "red"        # Trade currently out of the money
    NEUTRAL = "neutral"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ChartColor":
        value = (value or "").lower().strip()
        if value == "green":
            return cls.GREEN
        elif value == "red":
            return cls.RED
        return cls.NEUTRAL


@dataclass
class DetectionArea:
    """Rectangular region of interest in screen pixels."""
    x: int = DEFAULT_DETECTION_AREA["x"]
    y: int = DEFAULT_DETECTION_AREA["y"]
    width: int = DEFAULT_DETECTION_AREA["width"]
    height: int = DEFAULT_DETECTION_AREA["height"]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DetectionArea":
        if not data:
            return cls()
        return cls(
            x=max(0, int(data.get("x", 0))),
            y=max(0, int(data.get("y", 0))),
            width=max(1, int(data.get("width", DEFAULT_DETECTION_AREA["width"]))),
            height=max(1, int(data.get("height", DEFAULT_DETECTION_AREA["height"]))),
        )

    def crop(self, frame: np.ndarray) -> np.ndarray:
        """Crop a frame to this area, clipped to the frame bounds."""
        h, w = frame.shape[:2]
        x0 = min(self.x, w)
        y0 = min(self.y, h)
        x1 = min(self.x + self.width, w)
        y1 = min(self.y + self.height, h)
        return frame[y0:y1, x0:x1]


@dataclass
class ExtractedFields:
    """Best-effort fields parsed out of the OCR'd panel text."""
    asset: str = ""
    timeframe: str = ""
    timer_visible: bool = False
    time_remaining: Optional[str] = None
    amount: Optional[float] = None
    trade_type: Optional[str] = None  # "CALL" or "PUT"
    profit_loss: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ClassificationResult:
    """
    Outcome of one classification call.

    ok=False means capture or analysis failed; the color is then NEUTRAL, the
    confidence 0 and the fields empty, so downstream code cannot mistake a
    failure for a real reading.
    """
    ok: bool
    dominant_color: ChartColor
    confidence: float
    extracted_text: str = ""
    fields: ExtractedFields = field(default_factory=ExtractedFields)
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def failed(cls, error: str) -> "ClassificationResult":
        return cls(
            ok=False,
            dominant_color=ChartColor.NEUTRAL,
            confidence=0.0,
            error=error,
        )

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "dominant_color": self.dominant_color.value,
            "confidence": round(self.confidence, 2),
            "extracted_text": self.extracted_text,
            "fields": self.fields.to_dict(),
            "error": self.error,
            "timestamp": self.timestamp,
        }


# ============================================================================
# TEXT PARSING
# ============================================================================

ASSET_PATTERN = re.compile(r"\b([A-Z]{3,5}/[A-Z]{3,5})(\s+OTC)?\b")
TIMER_PATTERN = re.compile(r"(?<![\d:])(\d{1,2}:\d{2}(?::\d{2})?)(?![\d:])")
TIMEFRAME_PATTERN = re.compile(r"(?<![\d:.$])(\d{1,2})\s?(sec|min|s|m|h)\b", re.IGNORECASE)
PROFIT_PATTERN = re.compile(r"([+-])\s?\$\s?(\d+(?:\.\d+)?)")
AMOUNT_PATTERN = re.compile(r"(?<![+-])\$\s?(\d+(?:\.\d+)?)")
TRADE_TYPE_PATTERN = re.compile(r"\b(CALL|PUT|BUY|SELL|HIGHER|LOWER|UP|DOWN)\b", re.IGNORECASE)

TRADE_TYPE_ALIASES = {
    "CALL": "CALL", "BUY": "CALL", "HIGHER": "CALL", "UP": "CALL",
    "PUT": "PUT", "SELL": "PUT", "LOWER": "PUT", "DOWN": "PUT",
}


def normalize_timeframe(value: str, unit: str) -> str:
    """'30 s' -> '30sec', '1 min' -> '1m', '1H' -> '1h'"""
    unit = unit.lower()
    if unit in ("s", "sec"):
        return f"{int(value)}sec"
    if unit in ("m", "min"):
        return f"{int(value)}m"
    return f"{int(value)}h"


def parse_extracted_text(text: Optional[str]) -> ExtractedFields:
    """Pull asset / timeframe / timer / amount out of raw OCR text."""
    fields = ExtractedFields()
    if not text:
        return fields

    match = ASSET_PATTERN.search(text)
    if match:
        fields.asset = match.group(1) + (" OTC" if match.group(2) else "")

    match = TIMER_PATTERN.search(text)
    if match:
        fields.timer_visible = True
        fields.time_remaining = match.group(1)

    match = TIMEFRAME_PATTERN.search(text)
    if match:
        fields.timeframe = normalize_timeframe(match.group(1), match.group(2))

    match = PROFIT_PATTERN.search(text)
    if match:
        sign = -1.0 if match.group(1) == "-" else 1.0
        fields.profit_loss = sign * float(match.group(2))

    match = AMOUNT_PATTERN.search(text)
    if match:
        fields.amount = float(match.group(1))

    match = TRADE_TYPE_PATTERN.search(text)
    if match:
        fields.trade_type = TRADE_TYPE_ALIASES[match.group(1).upper()]

    return fields


# ============================================================================
# COLOR CLASSIFICATION
# ============================================================================

# A pixel counts as green/red when its channel beats both others by this margin
CHANNEL_MARGIN = 40
MIN_CHANNEL_VALUE = 100

# Below this share of colored pixels the region is considered neutral
MIN_COLOR_COVERAGE = 0.02


def classify_colors(region: np.ndarray) -> tuple[ChartColor, float]:
    """
    Classify an RGB region by its dominant indicator color.

    Returns (color, confidence). For green/red the confidence is the share of
    colored pixels agreeing with the verdict; for neutral it is how far the
    colored coverage sits below MIN_COLOR_COVERAGE.
    """
    if region.size == 0:
        return ChartColor.NEUTRAL, 0.0

    rgb = region[..., :3].astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]

    green_mask = (g >= MIN_CHANNEL_VALUE) & (g - r >= CHANNEL_MARGIN) & (g - b >= CHANNEL_MARGIN)
    red_mask = (r >= MIN_CHANNEL_VALUE) & (r - g >= CHANNEL_MARGIN) & (r - b >= CHANNEL_MARGIN)

    total = r.size
    green = int(np.count_nonzero(green_mask))
    red = int(np.count_nonzero(red_mask))
    colored = green + red
    coverage = colored / total

    if coverage < MIN_COLOR_COVERAGE:
        confidence = 100.0 * (1.0 - coverage / MIN_COLOR_COVERAGE)
        return ChartColor.NEUTRAL, round(confidence, 2)

    if green >= red:
        return ChartColor.GREEN, round(100.0 * green / colored, 2)
    return ChartColor.RED, round(100.0 * red / colored, 2)


class MockFrameSource:
    """
    Random frame generator used when no screen is available (headless hosts).

    Paints a green or red indicator block on a dark background so the color
    classifier has something to chew on.
    """

    def __init__(self, width: int = REFERENCE_SCREEN[0], height: int = REFERENCE_SCREEN[1], seed: Optional[int] = None):
        self.width = width
        self.height = height
        self._rng = np.random.default_rng(seed)

    def __call__(self) -> np.ndarray:
        frame = self._rng.integers(0, 60, size=(self.height, self.width, 3), dtype=np.uint8)
        block_h = max(1, self.height // 20)
        block_w = max(1, self.width // 4)
        y0 = int(self._rng.integers(0, max(1, self.height // 10 - block_h + 1)))
        x0 = int(self._rng.integers(0, self.width - block_w + 1))
        if self._rng.random() < 0.7:
            frame[y0:y0 + block_h, x0:x0 + block_w] = (30, 200, 60)
        else:
            frame[y0:y0 + block_h, x0:x0 + block_w] = (210, 40, 40)
        return frame


# ============================================================================
# CLASSIFIERS
# ============================================================================

class FrameClassifier(ABC):
    """Base class for frame classifiers."""

    @abstractmethod
    async def classify(self, area: Optional[DetectionArea] = None) -> ClassificationResult:
        """Classify the given region. Never raises."""
        pass

    async def close(self) -> None:
        pass


class ColorFrameClassifier(FrameClassifier):
    """
    Local classifier: grabs a frame, crops it, counts green/red pixels.

    Args:
        frame_source: callable returning an HxWx3 RGB uint8 array
        text_reader: optional OCR hook, called with the cropped region
    """

    def __init__(
        self,
        frame_source: Callable[[], np.ndarray],
        text_reader: Optional[Callable[[np.ndarray], str]] = None,
    ):
        self.frame_source = frame_source
        self.text_reader = text_reader

    def _classify_sync(self, area: DetectionArea) -> ClassificationResult:
        frame = self.frame_source()
        if frame is None or frame.ndim != 3 or frame.shape[2] < 3:
            return ClassificationResult.failed("invalid_frame")

        region = area.crop(frame)
        color, confidence = classify_colors(region)

        text = self.text_reader(region) if self.text_reader else ""
        return ClassificationResult(
            ok=True,
            dominant_color=color,
            confidence=confidence,
            extracted_text=text or "",
            fields=parse_extracted_text(text),
        )

    async def classify(self, area: Optional[DetectionArea] = None) -> ClassificationResult:
        area = area or DetectionArea()
        try:
            return await asyncio.to_thread(self._classify_sync, area)
        except Exception as e:
            logger.warning(f"[Classifier] Capture/analysis failed: {type(e).__name__}: {e}")
            return ClassificationResult.failed(str(e))


# Remote vision service calls are retried briefly; the tick loop is the outer retry
VISION_RETRY_CONFIG = RetryConfig(
    max_retries=1,
    base_delay=0.25,
    max_delay=1.0,
)


class RemoteFrameClassifier(FrameClassifier):
    """
    Delegates capture + CV + OCR to an HTTP vision service.

    POST {url} with {"area": {...}} and expects
    {"dominantColor": "green|red|neutral", "confidence": 0-100, "extractedText": "..."}.
    """

    def __init__(self, url: str, timeout_sec: float = 3.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def classify(self, area: Optional[DetectionArea] = None) -> ClassificationResult:
        area = area or DetectionArea()
        try:
            session = await self._get_session()
            resp = await retry_http_request(
                session, "POST", self.url,
                config=VISION_RETRY_CONFIG,
                json={"area": area.to_dict()},
            )
            try:
                if resp.status != 200:
                    return ClassificationResult.failed(f"http_{resp.status}")
                data = await resp.json()
            finally:
                resp.release()

            text = data.get("extractedText") or ""
            return ClassificationResult(
                ok=True,
                dominant_color=ChartColor.from_string(data.get("dominantColor")),
                confidence=max(0.0, min(100.0, float(data.get("confidence", 0) or 0))),
                extracted_text=text,
                fields=parse_extracted_text(text),
            )
        except Exception as e:
            logger.warning(f"[Classifier] Vision service error: {type(e).__name__}: {e}")
            return ClassificationResult.failed(str(e))

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
