"""
FastAPI server for the Plivo voice-turn orchestrator.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /plivo-xml: Answer XML that opens a bidirectional audio stream
- WS /listen: Plivo audio stream WebSocket (one CallSession per connection)
- GET /api/calls/{call_id}: Live session snapshot
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict
from urllib.parse import parse_qs
from xml.sax.saxutils import escape

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.voiceturn.config import ConfigError, get_config, init_config
from src.voiceturn.errors import DuplicateSession
from src.voiceturn.plivo_protocol import PlivoEventType, parse_plivo_message
from src.voiceturn.registry import SessionRegistry
from src.voiceturn.session import CallSession, SessionDeps
from src.voiceturn.transport import PlivoWebSocketTransport


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide counters."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    rejected_connections: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "rejected_connections": self.rejected_connections,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice-turn server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        app.state.registry = SessionRegistry(SessionDeps.from_config(config))
        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    registry: SessionRegistry = app.state.registry
    await registry.broadcast_shutdown()
    deps = registry.deps
    await deps.generator.close()
    await deps.store.close()


app = FastAPI(
    title="Plivo Voice Turn Orchestrator",
    description="Real-time voice conversations over Plivo audio streams",
    version="1.0.0",
    lifespan=lifespan,
)


def get_registry(app_: FastAPI) -> SessionRegistry:
    return app_.state.registry


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": get_registry(request.app).active_count,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    registry = get_registry(request.app)
    content = metrics.to_dict()
    content.update(
        {
            "active_calls": registry.active_count,
            "call_ids": registry.call_ids(),
            "rate_limit_in_window": registry.deps.rate_limiter.in_window,
        }
    )
    return JSONResponse(content=content)


def build_answer_xml(ws_url: str, call_id: str, sample_rate: int = 8000) -> str:
    stream_url = f"{ws_url}?call_uuid={call_id}" if call_id else ws_url
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Stream bidirectional="true" keepCallAlive="true" audioTrack="inbound" contentType="audio/x-mulaw;rate={sample_rate}">{escape(stream_url)}</Stream>
</Response>"""


@app.post("/plivo-xml")
@app.get("/plivo-xml")
async def plivo_answer(request: Request) -> Response:
    """
    Answer URL for Plivo calls.

    Returns XML that streams the call's audio to our /listen WebSocket.
    """
    config = get_config()

    call_id = request.query_params.get("CallUUID", "")
    if not call_id and request.method == "POST":
        body = (await request.body()).decode("utf-8", errors="replace")
        call_id = (parse_qs(body).get("CallUUID") or [""])[0]

    xml = build_answer_xml(config.ws_url, call_id, config.audio_sample_rate)
    logger.info("Generated Plivo XML", call_id=call_id, ws_url=config.ws_url)
    return Response(content=xml, media_type="application/xml")


@app.get("/api/calls/{call_id}")
async def get_call(call_id: str, request: Request) -> JSONResponse:
    """Snapshot of a live call: state, metrics and transcript."""
    session = get_registry(request.app).get(call_id)
    if session is None:
        return JSONResponse(status_code=404, content={"error": "Call not found", "call_id": call_id})
    return JSONResponse(content=session.snapshot())


async def handle_plivo_message(
    session: CallSession,
    transport: PlivoWebSocketTransport,
    raw_message: str,
) -> bool:
    """
    Dispatch one Plivo stream message to the session.

    Returns False once the stream has stopped.
    """
    try:
        event_type, event = parse_plivo_message(raw_message)
    except ValueError as e:
        logger.warning("Failed to parse Plivo message", call_id=session.call_id, error=str(e))
        return True

    if event_type == PlivoEventType.MEDIA:
        if event.track == "inbound" and event.payload:
            await session.handle_audio(event.payload)

    elif event_type == PlivoEventType.START:
        transport.stream_id = event.stream_id
        logger.info(
            "Plivo stream started",
            call_id=session.call_id,
            stream_id=event.stream_id,
            media_format=event.media_format,
        )

    elif event_type == PlivoEventType.PLAYED_STREAM:
        logger.debug("Checkpoint played", call_id=session.call_id, name=event.name)

    elif event_type == PlivoEventType.CLEARED_AUDIO:
        logger.debug("Playback cleared", call_id=session.call_id)

    elif event_type == PlivoEventType.DTMF:
        logger.info("DTMF received", call_id=session.call_id, digit=event.digit)

    elif event_type == PlivoEventType.STOP:
        logger.info("Plivo stream stopped", call_id=session.call_id)
        return False

    return True


@app.websocket("/listen")
async def listen_endpoint(websocket: WebSocket) -> None:
    """
    Plivo audio stream WebSocket endpoint.

    One CallSession per connection, keyed by the `call_uuid` query parameter.
    """
    await websocket.accept()
    metrics.total_connections += 1

    call_id = websocket.query_params.get("call_uuid", "")
    if not call_id:
        logger.warning("Stream connected without call_uuid")
        metrics.rejected_connections += 1
        await websocket.close(code=1008)
        return

    registry = get_registry(websocket.app)
    config = get_config()
    transport = PlivoWebSocketTransport(websocket, sample_rate=config.audio_sample_rate)
    try:
        session = registry.create(call_id, transport)
    except DuplicateSession as e:
        logger.warning("Rejecting duplicate stream", call_id=call_id, error=str(e))
        metrics.rejected_connections += 1
        await websocket.close(code=1008)
        return

    metrics.active_connections += 1
    logger.info("Stream connected", call_id=call_id, active_calls=registry.active_count)

    start_task = asyncio.create_task(session.start())
    try:
        while True:
            message = await websocket.receive_text()
            if not await handle_plivo_message(session, transport, message):
                break
    except WebSocketDisconnect:
        transport.mark_closed()
        logger.info("Stream disconnected", call_id=call_id)
    except Exception as e:
        logger.error("Stream handler error", call_id=call_id, error=str(e))
        metrics.errors += 1
        await session.fail(e)
    finally:
        await session.on_transport_closed()
        if not start_task.done():
            start_task.cancel()
            await asyncio.gather(start_task, return_exceptions=True)
        registry.remove(call_id)
        metrics.active_connections -= 1
        logger.info("Call ended", call_id=call_id, active_calls=registry.active_count)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
