from __future__ import annotations

"""
Apex Lap Backend - apex_backend/server.py
-----------------------------------------
FastAPI surface over the ingest pipeline.

Routes
  POST /api/laps              ingest one session object or a list of them
  GET  /api/best-laps         best lap per (user, track, car)
  GET  /api/lap-summary       totals + fastest lap
  POST /api/set-watch-path    start watching a results folder (persisted)
  GET  /api/watch-path        current watch folder + counters
  POST /api/live-telemetry    decode one hex-encoded telemetry packet (not stored)
  GET  /api/telemetry/status  raw UDP receiver counters
  GET  /healthz, /readyz      health checks

Runtime state (watch service, UDP receiver, db path) lives on app.state and is
handed to routes through dependencies; create_app() builds a fully separate
instance per config, which is what the tests use.

Run:
    python -m uvicorn apex_backend.server:app --host 0.0.0.0 --port 3000
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config_loader import (
    CONFIG,
    get_cors_origins,
    get_db_path,
    get_log_level,
    get_server_bind,
    get_telemetry_udp_cfg,
    get_watch_cfg,
    get_watch_state_path,
    validate_config,
)
from .db_schema import ensure_schema
from .errors import ConfigError, DatabaseError, DecodeError, IngestError, WatchStateError
from .ingest import ingest
from .lap_store import best_laps, lap_summary
from .telemetry_packet import decode_hex
from .telemetry_udp import TelemetryUDPConfig, TelemetryUDPReceiver
from .watch_service import WatchService

log = logging.getLogger("apex")

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


# ------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------

def get_db(request: Request) -> Path:
    return request.app.state.db_path

def get_watch(request: Request) -> WatchService:
    return request.app.state.watch

def get_udp(request: Request) -> TelemetryUDPReceiver:
    return request.app.state.telemetry_udp


# ------------------------------------------------------------
# Lap ingest
# ------------------------------------------------------------

@router.post("/api/laps")
def upload_laps(payload: Any = Body(...), db_path: Path = Depends(get_db)):
    """
    Ingest one raw session object or a list of them.

    Incomplete sessions are skipped and reported, never rejected. A store
    failure returns 500 with whatever was committed before it.
    """
    if not isinstance(payload, (dict, list)):
        return _error(400, "Body must be a session object or a list of sessions")

    try:
        result = ingest(db_path, payload)
    except IngestError as ex:
        partial = ex.result.as_dict() if ex.result is not None else {}
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal Server Error", **partial},
        )

    return {"success": True, **result.as_dict()}


# ------------------------------------------------------------
# Leaderboards
# ------------------------------------------------------------

@router.get("/api/best-laps")
async def get_best_laps(valid_only: bool = False, db_path: Path = Depends(get_db)):
    try:
        return await best_laps(db_path, valid_only=valid_only)
    except DatabaseError as ex:
        log.error("best-laps failed: %s", ex)
        raise HTTPException(status_code=500, detail="Internal Server Error")


@router.get("/api/lap-summary")
async def get_lap_summary(db_path: Path = Depends(get_db)):
    try:
        return await lap_summary(db_path)
    except DatabaseError as ex:
        log.error("lap-summary failed: %s", ex)
        raise HTTPException(status_code=500, detail="Internal Server Error")


# ------------------------------------------------------------
# Watch folder
# ------------------------------------------------------------

@router.post("/api/set-watch-path")
def set_watch_path(payload: Dict[str, Any] = Body(...), watch: WatchService = Depends(get_watch)):
    try:
        folder = watch.set_path(payload.get("folderPath"))
    except WatchStateError as ex:
        log.error("set-watch-path not saved: %s", ex)
        return _error(400, "Could not save watch path")
    except ConfigError as ex:
        log.warning("set-watch-path rejected: %s", ex)
        return _error(400, "Folder does not exist")
    return {"success": True, "message": f"Now watching: {folder}"}


@router.get("/api/watch-path")
def get_watch_path(watch: WatchService = Depends(get_watch)):
    return watch.status()


# ------------------------------------------------------------
# Live telemetry
# ------------------------------------------------------------

@router.post("/api/live-telemetry")
async def live_telemetry(payload: Dict[str, Any] = Body(...)):
    relay_id = payload.get("relayId")
    hex_payload = payload.get("payload")
    if not hex_payload or not relay_id:
        return _error(400, "Missing payload or relayId")
    if not isinstance(hex_payload, str):
        return _error(422, "Invalid telemetry packet")

    log.debug("Raw telemetry payload from %s: %s", relay_id, hex_payload)
    try:
        pkt = decode_hex(hex_payload)
    except DecodeError as ex:
        log.info("Rejected telemetry from %s: %s", relay_id, ex)
        return _error(422, "Invalid telemetry packet")

    log.info("Parsed telemetry from %s: %s", relay_id, pkt)
    return {"success": True, "relayId": relay_id, "telemetry": pkt.as_dict()}


@router.get("/api/telemetry/status")
def telemetry_status(udp: TelemetryUDPReceiver = Depends(get_udp)):
    return udp.status()


# ------------------------------------------------------------
# Health checks
# ------------------------------------------------------------

@router.get("/healthz")
async def healthz():
    """Liveness. Does not touch the database."""
    return {"status": "ok", "service": "apex-backend"}


@router.get("/readyz")
async def readyz(db_path: Path = Depends(get_db)):
    """Readiness: DB reachable and schema present, else 503."""
    try:
        async with aiosqlite.connect(str(db_path)) as db:
            await db.execute("SELECT 1 FROM laps LIMIT 1")
        return {"status": "ok", "db_path": str(db_path)}
    except Exception as e:
        return Response(
            content='{"status":"degraded","error":"%s"}' % type(e).__name__,
            media_type="application/json",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------

def create_app(cfg: Optional[Dict[str, Any]] = None) -> FastAPI:
    cfg = CONFIG if cfg is None else validate_config(cfg)
    db_path = get_db_path(cfg)
    watch_cfg = get_watch_cfg(cfg)

    app = FastAPI(title="Apex Lap Backend", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(cfg),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.cfg = cfg
    app.state.db_path = db_path
    app.state.watch = WatchService(
        db_path,
        get_watch_state_path(cfg),
        poll_interval_s=float(watch_cfg.get("poll_interval_s", 1.0)),
    )
    app.state.telemetry_udp = TelemetryUDPReceiver(
        TelemetryUDPConfig.from_dict(get_telemetry_udp_cfg(cfg))
    )
    app.include_router(router)

    @app.on_event("startup")
    async def prepare_store() -> None:
        ensure_schema(db_path)
        log.info("db_path=%s", db_path)

    @app.on_event("startup")
    async def restore_watch_path() -> None:
        folder = app.state.watch.load_state()
        if folder:
            log.info("Restored watch path: %s", folder)

    @app.on_event("startup")
    async def start_telemetry_udp() -> None:
        udp: TelemetryUDPReceiver = app.state.telemetry_udp
        if not udp.cfg.enabled:
            log.info("Raw telemetry UDP receiver disabled")
            return
        try:
            await udp.start()
        except OSError:
            log.exception("Could not bind telemetry UDP %s:%s", udp.cfg.host, udp.cfg.port)

    @app.on_event("shutdown")
    async def stop_background() -> None:
        app.state.watch.stop()
        app.state.telemetry_udp.stop()
        log.info("Background services stopped.")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO"), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    uvicorn.run(app, host=host, port=port)
