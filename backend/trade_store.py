"""
Trade Store - SQLite-based persistent storage for detected trades.

Holds the durable side of the tracker:
- trades (one row per detected trade, durable id assignment)
- trade_samples (color observations, the raw material for analysis)
- analysis_results (one bucket per timeframe + expiration offset)
- monitoring_sessions (start/stop history of the capture loop)
"""

import sqlite3
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from trade_registry import ColorSample


logger = logging.getLogger("trade_store")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class TradeRecord:
    """A detected trade as stored."""
    id: str
    platform_trade_id: str
    asset: str
    trade_type: str                 # "CALL" or "PUT"
    timeframe: str                  # Chart timeframe label, e.g. "1m"
    start_time: float               # Unix seconds
    duration_sec: int
    is_demo: bool
    created_at: str                 # ISO timestamp
    amount: Optional[float] = None
    conditions: Optional[str] = None  # JSON blob of detection context

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SampleRecord:
    """A stored color sample."""
    id: str
    trade_id: str
    time_elapsed: int
    chart_color: str                # "green", "red", "neutral"
    confidence: float
    timestamp: float
    profit_loss: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisBucket:
    """Win-rate statistic for one (timeframe, expiration offset) pair."""
    timeframe: str
    expiration: int                 # Offset in seconds since trade start
    win_rate: float                 # Percent, one decimal
    total_samples: int
    confidence_tier: str            # "high", "medium", "low"
    status: str                     # "recommended", "good", "testing", "avoid"
    last_updated: str
    is_demo: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MonitoringSession:
    """One start/stop span of the capture loop."""
    id: str
    start_time: str
    is_active: bool
    end_time: Optional[str] = None
    capture_config: Optional[str] = None   # JSON
    detection_status: Optional[str] = None  # JSON

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# TRADE STORE
# ============================================================================

class TradeStore:
    """
    SQLite store for trades, samples and analysis buckets.

    register_trade and store_sample raise on failure so the tracker can apply
    its own policy; query helpers log and return empty results instead.
    """

    def __init__(self, db_path: str = "trade_monitor.db", is_demo: bool = True):
        """
        Initialize the trade store.

        Args:
            db_path: Path to SQLite database file
            is_demo: Flag stamped on trades and buckets written by this store
        """
        self.db_path = db_path
        self.is_demo = is_demo
        self._init_database()
        logger.info(f"TradeStore initialized: {db_path}")

    def _init_database(self):
        """Create tables if they don't exist"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    platform_trade_id TEXT NOT NULL UNIQUE,
                    asset TEXT NOT NULL,
                    trade_type TEXT NOT NULL,
                    timeframe TEXT NOT NULL,
                    start_time REAL NOT NULL,
                    duration_sec INTEGER NOT NULL,
                    is_demo INTEGER NOT NULL DEFAULT 1,
                    amount REAL,
                    conditions TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_timeframe ON trades(timeframe)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_start_time ON trades(start_time)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS trade_samples (
                    id TEXT PRIMARY KEY,
                    trade_id TEXT NOT NULL,
                    time_elapsed INTEGER NOT NULL,
                    chart_color TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    profit_loss REAL,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_trade_id ON trade_samples(trade_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_time_elapsed ON trade_samples(time_elapsed)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis_results (
                    timeframe TEXT NOT NULL,
                    expiration INTEGER NOT NULL,
                    win_rate REAL NOT NULL,
                    total_samples INTEGER NOT NULL,
                    confidence_tier TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_demo INTEGER NOT NULL DEFAULT 1,
                    last_updated TEXT NOT NULL,
                    PRIMARY KEY (timeframe, expiration)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS monitoring_sessions (
                    id TEXT PRIMARY KEY,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    capture_config TEXT,
                    detection_status TEXT
                )
            """)

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable dict-like access
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # TRADES
    # -------------------------------------------------------------------------

    def register_trade(self, platform_trade_id: str, descriptor: Dict[str, Any]) -> str:
        """
        Durably record a newly detected trade and return its id.

        A second registration of the same platform_trade_id returns the id
        already on file.

        Raises:
            sqlite3.Error: if the row cannot be written
        """
        trade_id = str(uuid.uuid4())
        conditions = descriptor.get("conditions")
        if conditions is not None and not isinstance(conditions, str):
            conditions = json.dumps(conditions)

        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO trades (
                        id, platform_trade_id, asset, trade_type, timeframe,
                        start_time, duration_sec, is_demo, amount, conditions, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    trade_id, platform_trade_id,
                    descriptor.get("asset", ""),
                    descriptor.get("trade_type", "CALL"),
                    descriptor.get("timeframe", ""),
                    float(descriptor.get("start_time", 0.0)),
                    int(descriptor.get("duration_sec", 60)),
                    1 if self.is_demo else 0,
                    descriptor.get("amount"),
                    conditions,
                    _now_iso(),
                ))
                conn.commit()
        except sqlite3.IntegrityError:
            existing = self.get_trade_by_platform_id(platform_trade_id)
            if existing is None:
                raise
            logger.warning(f"Trade already registered: {platform_trade_id}")
            return existing.id

        logger.info(f"Registered trade: {trade_id} | {platform_trade_id} | {descriptor.get('timeframe')}")
        return trade_id

    def get_trades(self, limit: int = 100, offset: int = 0) -> List[TradeRecord]:
        """Trades newest first"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM trades ORDER BY start_time DESC LIMIT ? OFFSET ?",
                (limit, offset)
            )
            return [self._row_to_trade(row) for row in cursor.fetchall()]

    def get_trade(self, trade_id: str) -> Optional[TradeRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
            return self._row_to_trade(row) if row else None

    def get_trade_by_platform_id(self, platform_trade_id: str) -> Optional[TradeRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM trades WHERE platform_trade_id = ?", (platform_trade_id,)
            ).fetchone()
            return self._row_to_trade(row) if row else None

    def count_trades(self) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM trades").fetchone()
            return row["n"]

    def _row_to_trade(self, row: sqlite3.Row) -> TradeRecord:
        return TradeRecord(
            id=row["id"],
            platform_trade_id=row["platform_trade_id"],
            asset=row["asset"],
            trade_type=row["trade_type"],
            timeframe=row["timeframe"],
            start_time=row["start_time"],
            duration_sec=row["duration_sec"],
            is_demo=bool(row["is_demo"]),
            created_at=row["created_at"],
            amount=row["amount"],
            conditions=row["conditions"],
        )

    # -------------------------------------------------------------------------
    # SAMPLES
    # -------------------------------------------------------------------------

    def store_sample(self, trade_id: str, sample: "ColorSample") -> str:
        """
        Persist one color sample for a trade.

        Raises:
            sqlite3.Error: if the row cannot be written
        """
        sample_id = str(uuid.uuid4())
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO trade_samples (
                    id, trade_id, time_elapsed, chart_color, confidence, profit_loss, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                sample_id, trade_id, sample.time_elapsed, sample.chart_color.value,
                sample.confidence, sample.profit_loss, sample.timestamp,
            ))
            conn.commit()
        return sample_id

    def get_trade_samples(self, trade_id: str) -> List[SampleRecord]:
        """Samples of one trade in elapsed-time order"""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM trade_samples WHERE trade_id = ? ORDER BY time_elapsed, timestamp",
                (trade_id,)
            )
            return [self._row_to_sample(row) for row in cursor.fetchall()]

    def get_samples_for_bucket(self, timeframe: str, expiration: int, tolerance: int = 2) -> List[SampleRecord]:
        """
        Every sample of every trade on this timeframe whose elapsed time is
        within +/- tolerance seconds of the expiration offset.
        """
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT s.* FROM trade_samples s
                JOIN trades t ON t.id = s.trade_id
                WHERE t.timeframe = ?
                  AND s.time_elapsed BETWEEN ? AND ?
                ORDER BY s.timestamp
            """, (timeframe, expiration - tolerance, expiration + tolerance))
            return [self._row_to_sample(row) for row in cursor.fetchall()]

    def _row_to_sample(self, row: sqlite3.Row) -> SampleRecord:
        return SampleRecord(
            id=row["id"],
            trade_id=row["trade_id"],
            time_elapsed=row["time_elapsed"],
            chart_color=row["chart_color"],
            confidence=row["confidence"],
            timestamp=row["timestamp"],
            profit_loss=row["profit_loss"],
        )

    # -------------------------------------------------------------------------
    # ANALYSIS BUCKETS
    # -------------------------------------------------------------------------

    def get_bucket(self, timeframe: str, expiration: int) -> Optional[AnalysisBucket]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_results WHERE timeframe = ? AND expiration = ?",
                (timeframe, expiration)
            ).fetchone()
            return self._row_to_bucket(row) if row else None

    def upsert_bucket(self, timeframe: str, expiration: int, fields: Dict[str, Any]) -> AnalysisBucket:
        """Create or replace the bucket for (timeframe, expiration)."""
        now = _now_iso()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO analysis_results (
                    timeframe, expiration, win_rate, total_samples,
                    confidence_tier, status, is_demo, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(timeframe, expiration) DO UPDATE SET
                    win_rate = excluded.win_rate,
                    total_samples = excluded.total_samples,
                    confidence_tier = excluded.confidence_tier,
                    status = excluded.status,
                    is_demo = excluded.is_demo,
                    last_updated = excluded.last_updated
            """, (
                timeframe, expiration,
                fields["win_rate"], fields["total_samples"],
                fields["confidence_tier"], fields["status"],
                1 if fields.get("is_demo", self.is_demo) else 0,
                now,
            ))
            conn.commit()

        return AnalysisBucket(
            timeframe=timeframe,
            expiration=expiration,
            win_rate=fields["win_rate"],
            total_samples=fields["total_samples"],
            confidence_tier=fields["confidence_tier"],
            status=fields["status"],
            last_updated=now,
            is_demo=bool(fields.get("is_demo", self.is_demo)),
        )

    def get_buckets(self, timeframe: Optional[str] = None) -> List[AnalysisBucket]:
        """All buckets, best win rate first"""
        query = "SELECT * FROM analysis_results"
        params: list = []
        if timeframe:
            query += " WHERE timeframe = ?"
            params.append(timeframe)
        query += " ORDER BY win_rate DESC, total_samples DESC"

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_bucket(row) for row in cursor.fetchall()]

    def _row_to_bucket(self, row: sqlite3.Row) -> AnalysisBucket:
        return AnalysisBucket(
            timeframe=row["timeframe"],
            expiration=row["expiration"],
            win_rate=row["win_rate"],
            total_samples=row["total_samples"],
            confidence_tier=row["confidence_tier"],
            status=row["status"],
            last_updated=row["last_updated"],
            is_demo=bool(row["is_demo"]),
        )

    # -------------------------------------------------------------------------
    # MONITORING SESSIONS
    # -------------------------------------------------------------------------

    def create_session(self, capture_config: Optional[Dict[str, Any]] = None) -> MonitoringSession:
        session = MonitoringSession(
            id=str(uuid.uuid4()),
            start_time=_now_iso(),
            is_active=True,
            capture_config=json.dumps(capture_config) if capture_config is not None else None,
        )
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO monitoring_sessions (id, start_time, end_time, is_active, capture_config, detection_status)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (session.id, session.start_time, None, 1, session.capture_config, None))
            conn.commit()
        logger.info(f"Monitoring session started: {session.id}")
        return session

    def get_active_session(self) -> Optional[MonitoringSession]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM monitoring_sessions WHERE is_active = 1 ORDER BY start_time DESC LIMIT 1"
            ).fetchone()
            return self._row_to_session(row) if row else None

    def end_session(self, session_id: str, detection_status: Optional[Dict[str, Any]] = None) -> bool:
        try:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    UPDATE monitoring_sessions
                    SET is_active = 0, end_time = ?, detection_status = ?
                    WHERE id = ?
                """, (
                    _now_iso(),
                    json.dumps(detection_status) if detection_status is not None else None,
                    session_id,
                ))
                conn.commit()
                updated = cursor.rowcount > 0
            if updated:
                logger.info(f"Monitoring session ended: {session_id}")
            return updated
        except sqlite3.Error as e:
            logger.error(f"Failed to end session {session_id}: {e}")
            return False

    def _row_to_session(self, row: sqlite3.Row) -> MonitoringSession:
        return MonitoringSession(
            id=row["id"],
            start_time=row["start_time"],
            is_active=bool(row["is_active"]),
            end_time=row["end_time"],
            capture_config=row["capture_config"],
            detection_status=row["detection_status"],
        )
