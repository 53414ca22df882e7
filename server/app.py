"""
FastAPI server for the restock dialer.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /api/calls: Place an outbound restock call
- GET /api/calls, GET /api/calls/{call_id}: Call summaries
- GET /api/calls/{call_id}/conversation: Transcript, order and flags
- POST /api/calls/{call_id}/terminate: Hang up a call
- WS /api/calls/{call_id}/events: Live session events
- GET /api/conversation-history: Saved call histories, newest first
- GET /api/conversation-history/{filename}: One saved call history
- GET|POST /twiml: TwiML that connects the call to the media stream
- POST /api/voice/status: Twilio call status callback
- POST /api/voice/speech, /api/voice/partial-speech: Provider speech results
- GET /audio/{name}: Temporary synthesized audio
- WS /ws: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from src.dialer.call_leg import TwilioMediaLeg
from src.dialer.config import ConfigError, get_config, init_config
from src.dialer.manager import CallInitiationError, CallManager
from src.dialer.orchestrator import StreamOrchestrator
from src.dialer.session import SessionNotFound
from src.dialer.telephony import build_stream_twiml
from src.dialer.twilio_protocol import TwilioEventType, TwilioProtocolHandler, parse_twilio_message


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
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": get_manager().active_calls if manager is not None else 0,
            "errors": self.errors,
        }


metrics = ServerMetrics()

# Process-wide call manager; tests replace it with one built from fakes
manager: Optional[CallManager] = None


def get_manager() -> CallManager:
    global manager
    if manager is None:
        manager = CallManager(get_config())
    return manager


class MakeCallRequest(BaseModel):
    phone_number: str = Field(min_length=1)
    manager_name: str = ""
    system_prompt: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting restock dialer server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.dialer.llm import initialize_llm
        await initialize_llm()

        get_manager()
        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    if manager is not None:
        await manager.shutdown()


app = FastAPI(
    title="Restock Dialer",
    description="Outbound voice agent that takes restock orders over the phone",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": get_manager().active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    content["cache"] = get_manager().cache.stats
    return JSONResponse(content=content)


# Call control API

@app.post("/api/calls")
async def make_call(body: MakeCallRequest) -> JSONResponse:
    try:
        session = await get_manager().initiate_call(
            body.phone_number,
            manager_name=body.manager_name,
            system_prompt=body.system_prompt,
        )
    except CallInitiationError as e:
        metrics.errors += 1
        return JSONResponse(status_code=502, content={"error": str(e)})

    metrics.total_calls += 1
    return JSONResponse(
        content={
            "call_id": session.id,
            "call_sid": session.call_sid,
            "status": session.status.value,
        }
    )


@app.get("/api/calls")
async def list_calls() -> JSONResponse:
    return JSONResponse(content={"calls": get_manager().list_calls()})


@app.get("/api/calls/{call_id}")
async def get_call(call_id: str) -> JSONResponse:
    try:
        session = get_manager().get_session(call_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Call not found")
    return JSONResponse(content=session.summary())


@app.get("/api/calls/{call_id}/conversation")
async def get_conversation(call_id: str) -> JSONResponse:
    try:
        session = get_manager().get_session(call_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Call not found")
    return JSONResponse(
        content={
            "call_id": session.id,
            "status": session.status.value,
            "messages": [m.to_dict() for m in session.transcript],
            "order": session.order.to_dict(),
            "flags": session.flags.to_dict(),
        }
    )


@app.post("/api/calls/{call_id}/terminate")
async def terminate_call(call_id: str) -> JSONResponse:
    try:
        ended = await get_manager().terminate(call_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Call not found")
    return JSONResponse(content={"call_id": call_id, "terminated": ended})


@app.websocket("/api/calls/{call_id}/events")
async def call_events(websocket: WebSocket, call_id: str) -> None:
    """Stream a session's events until the call completes."""
    await websocket.accept()
    session = get_manager().resolve(call_id)
    if session is None:
        await websocket.send_json({"error": "Call not found", "call_id": call_id})
        await websocket.close(code=4404)
        return

    subscriber = session.events.subscribe()
    try:
        while True:
            event = await subscriber.get()
            await websocket.send_json(event.to_dict())
            if event.kind == "completed":
                break
    except WebSocketDisconnect:
        logger.info("Event subscriber disconnected", call_id=call_id)
        return
    finally:
        session.events.unsubscribe(subscriber)
    await websocket.close()


# Saved call history

@app.get("/api/conversation-history")
async def list_call_history() -> JSONResponse:
    files = await asyncio.to_thread(get_manager().history_store.list_files)
    return JSONResponse(
        content={
            "files": [f.model_dump() for f in files],
            "total_files": len(files),
        }
    )


@app.get("/api/conversation-history/{filename}")
async def get_call_history(filename: str) -> JSONResponse:
    record = await asyncio.to_thread(get_manager().history_store.load_by_name, filename)
    if record is None:
        raise HTTPException(status_code=404, detail="History file not found")
    return JSONResponse(content=record.model_dump())


# Twilio webhooks

@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(callId: str = "") -> Response:
    """
    Generate TwiML for the Twilio call webhook.

    Returns TwiML that connects the call to our media stream WebSocket.
    """
    config = get_config()
    twiml = build_stream_twiml(config.ws_url, callId)
    logger.info("Generated TwiML", ws_url=config.ws_url, call_id=callId)
    return Response(content=twiml, media_type="application/xml")


@app.post("/api/voice/status")
async def voice_status(request: Request, callId: str = "") -> Response:
    form = await request.form()
    status = str(form.get("CallStatus", ""))
    call_sid = str(form.get("CallSid", ""))
    await get_manager().handle_status(status, call_id=callId, call_sid=call_sid)
    return Response(status_code=204)


@app.post("/api/voice/speech")
async def voice_speech(request: Request, callId: str = "") -> Response:
    form = await request.form()
    text = str(form.get("SpeechResult", ""))
    try:
        confidence = float(form.get("Confidence", 0.0) or 0.0)
    except ValueError:
        confidence = 0.0
    await get_manager().handle_speech(callId, text, confidence=confidence, final=True)
    return Response(status_code=204)


@app.post("/api/voice/partial-speech")
async def voice_partial_speech(request: Request, callId: str = "") -> Response:
    form = await request.form()
    text = str(form.get("UnstableSpeechResult", ""))
    await get_manager().handle_speech(callId, text, final=False)
    return Response(status_code=204)


@app.get("/audio/{name}")
async def get_audio(name: str) -> FileResponse:
    path = get_manager().artifacts.resolve(name)
    if path is None or not path.exists():
        raise HTTPException(status_code=404, detail="Audio not found")
    return FileResponse(path, media_type="audio/basic")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Binds the stream to its call session, forwards inbound audio to the
    orchestrator and relays playback marks to the call leg.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    calls = get_manager()
    config = get_config()
    protocol = TwilioProtocolHandler()
    leg: Optional[TwilioMediaLeg] = None
    orchestrator: Optional[StreamOrchestrator] = None
    call_id = ""

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", call_id=call_id, error=str(e))

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_id=call_id)
                break

            try:
                event_type, event = parse_twilio_message(message)
            except ValueError:
                metrics.errors += 1
                continue

            try:
                if event_type == TwilioEventType.START:
                    protocol.handle_start(event)
                    leg = TwilioMediaLeg(send_message, protocol, calls.telephony, config.ws_url)
                    orchestrator = await calls.attach_stream(event.call_id, leg, call_sid=event.call_sid)
                    if orchestrator is not None:
                        call_id = orchestrator.session.id
                    logger.info("Media stream started", call_id=call_id, call_sid=event.call_sid)

                elif event_type == TwilioEventType.MEDIA:
                    if orchestrator is not None and event.track == "inbound" and event.payload:
                        await orchestrator.push_audio(event.payload)

                elif event_type == TwilioEventType.MARK:
                    if leg is not None:
                        leg.on_mark(event)

                elif event_type == TwilioEventType.STOP:
                    if leg is not None:
                        leg.on_stop()
                    logger.info("Media stream stopped", call_id=call_id)
                    break

            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_id=call_id,
                    event_type=event_type.value,
                    error=str(e),
                )
                metrics.errors += 1
                continue

    finally:
        if leg is not None and protocol.is_active:
            leg.on_stop()
        if call_id:
            calls.stream_stopped(call_id)
        metrics.active_connections -= 1
        logger.info("WebSocket closed", call_id=call_id, active_connections=metrics.active_connections)


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
