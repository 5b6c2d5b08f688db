"""FastAPI REST and WebSocket interface for the scale auto-detection core.

Single-process, single-scale lifecycle with thread-safe access to:
- Supervisor (authorization, probing, loopback, reading, recovery)
- StatusReporter (status text, active configuration, raw line, weight, log)
- PortWatcher (hot-plug notifications from the serial port list)

Error mapping:
- LinkError → 503
- ScaleError → 500
"""

import asyncio
import logging
import os
from threading import RLock
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from scale_lib import __version__, protocol
from scale_lib.controller import Authorization, Supervisor
from scale_lib.errors import LinkError, ScaleError
from scale_lib.models import SupervisorState
from scale_lib.parsing import DecoderSettings, TelegramDecoder
from scale_lib.ports import PortAuthorization, PortWatcher
from scale_lib.probe import ProbeEngine
from scale_lib.status import StatusReporter

# =============================================================================
# Environment Configuration
# =============================================================================


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
SCALE_PORTS = _env_list("SCALE_PORTS")
PROBE_WINDOW_S = float(os.getenv("PROBE_WINDOW_S", str(protocol.PROBE_WINDOW_S)))
IDLE_TIMEOUT_S = float(os.getenv("IDLE_TIMEOUT_S", str(protocol.IDLE_TIMEOUT_S)))
SCALE_FACTOR = float(os.getenv("SCALE_FACTOR", str(protocol.DEFAULT_SCALE_FACTOR)))
BARE_DIGITS_GRAMS = os.getenv("BARE_DIGITS_GRAMS", "1").lower() in ("1", "true", "yes", "on")
HOTPLUG_POLL_S = float(os.getenv("HOTPLUG_POLL_S", "1.0"))
CORS_ORIGINS = _env_list("CORS_ORIGINS") or ["http://localhost:3000", "http://127.0.0.1:3000"]

STREAM_POLL_S = 0.1

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_reporter = StatusReporter()
_authorization: Optional[Authorization] = None
_supervisor: Optional[Supervisor] = None
_watcher: Optional[PortWatcher] = None
_lock = RLock()  # Protects state-changing operations

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Scale Auto-Detect API",
    description="Serial scale discovery and live weight readout",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Request/Response Models
# =============================================================================


class StatusResponse(BaseModel):
    """Response for GET /status."""
    running: bool
    state: str
    mode: Optional[str]
    status: str
    active: bool
    channel: Optional[str]
    config_label: str
    raw_line: str
    weight: Optional[float]
    weight_text: str
    updated_at: str


class LogResponse(BaseModel):
    """Response for GET /log."""
    entries: List[str]
    capacity: int


class AuthorizeResponse(BaseModel):
    """Response for POST /authorize."""
    status: str
    port: Optional[str]


# =============================================================================
# Factories
# =============================================================================


def _build_authorization() -> Authorization:
    """Port allow-list from SCALE_PORTS."""
    return PortAuthorization(allowed=SCALE_PORTS)


def _build_supervisor(authorization: Authorization, reporter: StatusReporter) -> Supervisor:
    """Supervisor wired with the environment's decoding and timing settings."""
    decoder = TelegramDecoder(
        DecoderSettings(scale_factor=SCALE_FACTOR, bare_digits_are_grams=BARE_DIGITS_GRAMS)
    )
    probe = ProbeEngine(decoder=decoder, window_s=PROBE_WINDOW_S, reporter=reporter)
    return Supervisor(
        authorization,
        decoder=decoder,
        probe_engine=probe,
        reporter=reporter,
        idle_timeout_s=IDLE_TIMEOUT_S,
    )


def _supervisor_running() -> bool:
    return _supervisor is not None and _supervisor.is_running()


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(LinkError)
async def link_error_handler(request: Request, exc: LinkError):
    """Map LinkError to 503 Service Unavailable."""
    logger.error(f"LinkError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ScaleError)
async def scale_error_handler(request: Request, exc: ScaleError):
    """Map other ScaleError to 500 Internal Server Error."""
    logger.error(f"ScaleError: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# =============================================================================
# Read-Only Endpoints
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Current supervisor state and display values.

    Thread-safe read; works whether or not the supervisor is running.
    """
    snap = _reporter.snapshot()
    mode = None
    if _supervisor is not None and _supervisor.active_mode is not None:
        mode = _supervisor.active_mode.value

    return StatusResponse(
        running=_supervisor_running(),
        state=snap.state.value,
        mode=mode,
        status=snap.status,
        active=snap.active,
        channel=snap.channel,
        config_label=snap.config_label,
        raw_line=snap.raw_line,
        weight=snap.weight,
        weight_text=snap.weight_text,
        updated_at=snap.updated_at.isoformat(),
    )


@app.get("/log", response_model=LogResponse)
async def get_log(limit: int = Query(50, ge=1, le=protocol.LOG_CAPACITY)):
    """Diagnostic log entries, newest first."""
    return LogResponse(entries=_reporter.entries(limit), capacity=_reporter.log_capacity)


# =============================================================================
# Control Endpoints
# =============================================================================

@app.post("/start")
async def start_supervisor():
    """Start detection on authorized ports.

    Returns:
        {"status": "started"}

    Raises:
        400: If already running
    """
    global _authorization, _supervisor, _watcher

    with _lock:
        if _supervisor_running():
            raise HTTPException(status_code=400, detail="Supervisor already running")

        if _authorization is None:
            _authorization = _build_authorization()

        logger.info("Starting supervisor...")
        _supervisor = _build_supervisor(_authorization, _reporter)
        _supervisor.start()

        if HOTPLUG_POLL_S > 0:
            _watcher = PortWatcher(
                on_connect=_supervisor.notify_connect,
                on_disconnect=_supervisor.notify_disconnect,
                interval_s=HOTPLUG_POLL_S,
            )
            _watcher.start()

        return {"status": "started"}


@app.post("/stop")
async def stop_supervisor():
    """Stop reading, close the port and stop the supervisor.

    Raises:
        400: If not running
        503: If the worker is still alive after the shutdown timeout
    """
    global _supervisor, _watcher

    with _lock:
        if not _supervisor_running():
            raise HTTPException(status_code=400, detail="Supervisor not running")
        supervisor = _supervisor
        watcher, _watcher = _watcher, None
    assert supervisor is not None

    # Thread joins run off the event loop
    if watcher is not None:
        await run_in_threadpool(watcher.stop)

    logger.info("Stopping supervisor...")
    stopped = await run_in_threadpool(supervisor.shutdown)
    if not stopped:
        # _supervisor stays set while the old worker still owns the port
        raise HTTPException(status_code=503, detail="Supervisor did not stop in time")

    with _lock:
        if _supervisor is supervisor:
            _supervisor = None

    return {"status": "stopped"}


@app.post("/authorize", response_model=AuthorizeResponse)
async def authorize(port: Optional[str] = Query(None, description="Serial port the user picked")):
    """Forward the user's authorization gesture.

    Raises:
        503: If the supervisor is not running
        400: If the supervisor is not waiting for authorization
    """
    with _lock:
        if not _supervisor_running():
            raise HTTPException(status_code=503, detail="Supervisor not running")
        assert _supervisor is not None

        if _supervisor.state is not SupervisorState.AWAITING_AUTHORIZATION:
            raise HTTPException(
                status_code=400,
                detail=f"Not awaiting authorization (state={_supervisor.state.value})",
            )

        _supervisor.authorize(port)
        return AuthorizeResponse(status="requested", port=port)


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """Push the status snapshot whenever it changes.

    Polls at 10 Hz. Client messages are read (and ignored) so a disconnect
    is noticed even while nothing changes.
    """
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    try:
        last_update = None

        while True:
            snap = _reporter.snapshot()
            if snap.updated_at != last_update:
                await websocket.send_json(snap.to_dict())
                last_update = snap.updated_at

            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=STREAM_POLL_S)
            except asyncio.TimeoutError:
                pass

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except RuntimeError:
            pass


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
async def root():
    """Service info."""
    return {
        "service": "Scale Auto-Detect API",
        "version": __version__,
        "status": "online"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "Scale Auto-Detect API",
        "version": __version__,
        "status": "online",
        "supervisor": "running" if _supervisor_running() else "stopped"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup configuration."""
    logger.info("=" * 60)
    logger.info("Scale Auto-Detect API started")
    logger.info(f"Version: {__version__}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Authorized ports: {SCALE_PORTS or 'none (awaiting authorization)'}")
    logger.info(f"Probe window: {PROBE_WINDOW_S}s, idle timeout: {IDLE_TIMEOUT_S}s")
    logger.info(f"Scale factor: {SCALE_FACTOR}, bare digits are grams: {BARE_DIGITS_GRAMS}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the watcher and supervisor."""
    global _supervisor, _watcher

    logger.info("Shutting down Scale Auto-Detect API...")

    if _watcher is not None:
        await run_in_threadpool(_watcher.stop)
        _watcher = None

    if _supervisor is not None:
        logger.info("Stopping supervisor...")
        await run_in_threadpool(_supervisor.shutdown)
        _supervisor = None

    logger.info("Shutdown complete")
