#!/usr/bin/env python3
"""
HTTP + WebSocket server for the Trade Color Monitor.
Exposes trade history, analysis buckets and monitoring controls, and pushes
tracker events to the dashboard in real time.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from analysis import AnalysisAggregator
from config import CANONICAL_OFFSETS, DETECTION_AREA_PRESETS, TrackerConfig
from frame_classifier import ColorFrameClassifier, FrameClassifier, MockFrameSource, RemoteFrameClassifier
from trade_registry import ActiveTradeRegistry
from trade_store import TradeStore
from trade_tracker import TradeLifecycleController

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Trade Color Monitor API",
    description="Trade detection, color sampling and win-rate analysis",
    version="1.0.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

store: TradeStore = None
registry: ActiveTradeRegistry = None
aggregator: AnalysisAggregator = None
classifier: FrameClassifier = None
tracker: TradeLifecycleController = None

# WebSocket clients
ws_clients: Set[WebSocket] = set()


def init_services(config: TrackerConfig, frame_classifier: Optional[FrameClassifier] = None):
    """Wire store, registry, aggregator, classifier and tracker together."""
    global store, registry, aggregator, classifier, tracker

    store = TradeStore(db_path=config.db_path, is_demo=config.is_demo)
    registry = ActiveTradeRegistry()
    aggregator = AnalysisAggregator(store)

    if frame_classifier is None:
        classifier_url = os.getenv("CLASSIFIER_URL")
        if classifier_url:
            frame_classifier = RemoteFrameClassifier(classifier_url)
            logger.info(f"[Server] Using vision service at {classifier_url}")
        else:
            frame_classifier = ColorFrameClassifier(MockFrameSource())
            logger.info("[Server] No CLASSIFIER_URL set, using mock frame source")
    classifier = frame_classifier

    tracker = TradeLifecycleController(
        classifier=classifier,
        store=store,
        registry=registry,
        aggregator=aggregator,
        config=config,
    )
    tracker.set_callbacks(on_event=publish)


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup():
    """Initialize services on startup"""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_services(TrackerConfig.from_env())

    # A session left open by a crash is closed, monitoring restarts on request
    stale = await asyncio.to_thread(store.get_active_session)
    if stale:
        await asyncio.to_thread(store.end_session, stale.id, {"reason": "server_restart"})

    logger.info("[Server] Started")


@app.on_event("shutdown")
async def shutdown():
    """Clean up on shutdown"""
    if tracker:
        await tracker.stop()
        session = await asyncio.to_thread(store.get_active_session)
        if session:
            await asyncio.to_thread(store.end_session, session.id, tracker.get_status())
    if classifier:
        await classifier.close()

    logger.info("[Server] Shutdown complete")


# ============================================================================
# BROADCAST HELPERS
# ============================================================================

async def broadcast(message: dict):
    """Broadcast message to all connected WebSocket clients"""
    if not ws_clients:
        return

    data = json.dumps(message)
    disconnected = set()

    for ws in list(ws_clients):
        try:
            await ws.send_text(data)
        except Exception:
            disconnected.add(ws)

    # Clean up disconnected clients
    for ws in disconnected:
        ws_clients.discard(ws)


async def publish(kind: str, payload: dict):
    """Notification sink for the tracker"""
    await broadcast({
        "type": kind,
        "data": payload,
        "timestamp": datetime.now().isoformat(),
    })


# ============================================================================
# REST ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/api/trades")
async def get_trades(limit: int = 100, offset: int = 0):
    """Recorded trades, newest first"""
    if not store:
        return {"trades": [], "total": 0}
    limit = max(1, min(limit, 1000))
    offset = max(0, offset)
    trades = await asyncio.to_thread(store.get_trades, limit, offset)
    total = await asyncio.to_thread(store.count_trades)
    return {
        "trades": [t.to_dict() for t in trades],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/trades/active")
async def get_active_trades():
    """Trades currently being sampled"""
    if not tracker:
        return {"trades": []}
    return {"trades": tracker.get_active_trades()}


@app.get("/api/trades/{trade_id}/samples")
async def get_trade_samples(trade_id: str):
    """Color samples recorded for one trade"""
    if not store:
        return {"error": "Store not initialized"}

    trade = await asyncio.to_thread(store.get_trade, trade_id)
    if not trade:
        return JSONResponse({"error": f"Unknown trade: {trade_id}"}, status_code=404)

    samples = await asyncio.to_thread(store.get_trade_samples, trade_id)
    return {"trade": trade.to_dict(), "samples": [s.to_dict() for s in samples]}


@app.get("/api/analysis")
async def get_analysis(timeframe: str = None):
    """Analysis buckets, best win rate first"""
    if not store:
        return {"buckets": []}
    buckets = await asyncio.to_thread(store.get_buckets, timeframe)
    return {"buckets": [b.to_dict() for b in buckets]}


@app.post("/api/analysis/recompute")
async def recompute_analysis(request: dict):
    """
    Recompute one bucket, or every canonical offset of a timeframe when no
    expiration is given.
    """
    if not aggregator:
        return {"error": "Analysis not initialized"}

    timeframe = request.get("timeframe")
    if not timeframe:
        return JSONResponse({"error": "timeframe is required"}, status_code=400)

    expiration = request.get("expiration")
    if expiration is None:
        buckets = await asyncio.to_thread(aggregator.recompute_all, timeframe)
    else:
        try:
            expiration = int(expiration)
        except (TypeError, ValueError):
            return JSONResponse({"error": f"Invalid expiration: {expiration}"}, status_code=400)
        if expiration not in CANONICAL_OFFSETS:
            return JSONResponse(
                {"error": f"expiration must be one of {list(CANONICAL_OFFSETS)}"},
                status_code=400,
            )
        bucket = await asyncio.to_thread(aggregator.recompute_bucket, timeframe, expiration)
        buckets = [bucket] if bucket else []

    for bucket in buckets:
        await publish("analysis_updated", bucket.to_dict())
    return {"buckets": [b.to_dict() for b in buckets]}


@app.get("/api/stats")
async def get_stats():
    """Dashboard headline numbers"""
    if not store:
        return {"error": "Store not initialized"}
    buckets = await asyncio.to_thread(store.get_buckets)
    total = await asyncio.to_thread(store.count_trades)
    stats = aggregator.calculate_stats(total, buckets)
    return stats.to_dict()


@app.get("/api/performance/timeframes")
async def get_timeframe_performance():
    """Win rate per chart timeframe"""
    if not store:
        return {"timeframes": []}
    buckets = await asyncio.to_thread(store.get_buckets)
    return {"timeframes": aggregator.timeframe_performance(buckets)}


@app.get("/api/performance/expirations")
async def get_expiration_performance(timeframe: str = "1m"):
    """Win rate at each expiration offset for one timeframe"""
    if not store:
        return {"timeframe": timeframe, "expirations": []}
    buckets = await asyncio.to_thread(store.get_buckets, timeframe)
    return {
        "timeframe": timeframe,
        "expirations": aggregator.expiration_performance(buckets, timeframe),
    }


# ============================================================================
# MONITORING CONTROL
# ============================================================================

@app.get("/api/monitoring/status")
async def get_monitoring_status():
    """Active session and tracker status"""
    if not tracker:
        return {"error": "Tracker not initialized"}
    session = await asyncio.to_thread(store.get_active_session)
    return {
        "session": session.to_dict() if session else None,
        "tracker": tracker.get_status(),
    }


@app.post("/api/monitoring/start")
async def start_monitoring():
    """Open a monitoring session and start the tracker loop"""
    if not tracker:
        return {"error": "Tracker not initialized"}

    if tracker.is_running:
        session = await asyncio.to_thread(store.get_active_session)
        return {"status": "already_running", "session": session.to_dict() if session else None}

    if not tracker.start():
        return JSONResponse({"error": "Tracker is still stopping"}, status_code=409)

    session = await asyncio.to_thread(store.create_session, tracker.config.to_dict())
    await publish("monitoring_started", session.to_dict())
    return {"status": "started", "session": session.to_dict()}


@app.post("/api/monitoring/stop")
async def stop_monitoring():
    """Stop the tracker loop and close the active session"""
    if not tracker:
        return {"error": "Tracker not initialized"}

    await tracker.stop()
    status = tracker.get_status()

    session = await asyncio.to_thread(store.get_active_session)
    if session:
        await asyncio.to_thread(store.end_session, session.id, status)

    await publish("monitoring_stopped", {
        "session_id": session.id if session else None,
        "status": status,
    })
    return {"status": "stopped", "session_id": session.id if session else None}


@app.get("/api/detection-area")
async def get_detection_area():
    """Current region of interest and available presets"""
    if not tracker:
        return {"error": "Tracker not initialized"}
    return {
        "area": tracker.config.detection_area,
        "presets": DETECTION_AREA_PRESETS,
    }


@app.post("/api/detection-area")
async def set_detection_area(area: dict):
    """Set the region of interest, either explicit bounds or {"preset": name}"""
    if not tracker:
        return {"error": "Tracker not initialized"}

    preset = area.get("preset")
    if preset:
        if preset not in DETECTION_AREA_PRESETS:
            return JSONResponse({"error": f"Unknown preset: {preset}"}, status_code=400)
        area = DETECTION_AREA_PRESETS[preset]

    try:
        detection_area = tracker.set_detection_area(area)
    except (TypeError, ValueError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"status": "ok", "area": detection_area.to_dict()}


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """
    WebSocket endpoint for real-time tracker events.

    Message types sent to client:
    - init: Tracker status and active trades on connect
    - status_update: Latest classification (every tick)
    - trade_detected / sample_collected / trade_completed: Trade lifecycle
    - analysis_updated: A recomputed bucket
    - monitoring_started / monitoring_stopped: Session changes
    """
    await ws.accept()
    ws_clients.add(ws)
    logger.info(f"[WS] Client connected. Total: {len(ws_clients)}")

    try:
        # Send initial data
        await ws.send_json({
            "type": "init",
            "status": tracker.get_status() if tracker else None,
            "active_trades": tracker.get_active_trades() if tracker else [],
        })

        # Keep connection alive
        while True:
            try:
                data = await asyncio.wait_for(ws.receive_text(), timeout=30)
                msg = json.loads(data)

                if msg.get("type") == "ping":
                    await ws.send_json({"type": "pong"})

                elif msg.get("type") == "get_status":
                    await ws.send_json({
                        "type": "status",
                        "data": tracker.get_status() if tracker else None,
                    })

            except asyncio.TimeoutError:
                # Send keepalive ping
                await ws.send_json({"type": "ping"})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"[WS] Error: {e}")
    finally:
        ws_clients.discard(ws)
        logger.info(f"[WS] Client disconnected. Total: {len(ws_clients)}")


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    uvicorn.run(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
