"""
FastAPI Application — voice conversation WebSocket + health.

Provides:
- WebSocket endpoint (/ws) carrying the JSON voice protocol, one session per connection
- Health endpoint with live session count and latency percentiles
- Startup warmup of the synthesis cache and the idle-session sweeper
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings
from voice.errors import ProtocolError
from voice.generation import create_generation_client
from voice.latency import AggregateLatencyTracker
from voice.protocol import parse_client_message
from voice.recognition import create_recognition_backend
from voice.server import SessionRegistry
from voice.session import SessionStateMachine, VoiceServices
from voice.synthesis import create_synthesis_client

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_services(settings: Settings) -> VoiceServices:
    return VoiceServices(
        generator=create_generation_client(settings.llm),
        synthesizer=create_synthesis_client(settings.tts),
        recognizer_factory=lambda: create_recognition_backend(settings.stt),
        latency=AggregateLatencyTracker(),
        default_model=settings.llm.model,
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[VoiceServices] = None,
    warmup: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)
    registry = SessionRegistry(settings.session)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.start_sweeper()
        if warmup and settings.tts.warmup_phrases:
            app.state.warmup_task = asyncio.create_task(
                services.synthesizer.warmup(settings.tts.warmup_phrases + [settings.session.greeting])
            )
        logger.info("voice_agent_started", app=settings.app_name,
                    llm=settings.llm.provider, model=settings.llm.model,
                    stt=settings.stt.provider, tts=settings.tts.provider)
        yield

        warmup_task = getattr(app.state, "warmup_task", None)
        if warmup_task is not None and not warmup_task.done():
            warmup_task.cancel()
        await registry.shutdown()
        logger.info("voice_agent_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Full-duplex Cantonese voice agent with barge-in",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.utcnow().isoformat(),
            "service": settings.app_name,
            "active_sessions": registry.active_count,
            "synthesis_cache": services.synthesizer.cache.to_dict(),
            "latency": services.latency.get_all_stats() if services.latency else {},
        }

    # ══════════════════════════════════════════════════════════
    #  VOICE WEBSOCKET
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws")
    async def voice_socket(websocket: WebSocket):
        """
        One voice session per connection.

        Client sends JSON events:
          {"type": "start", "model": "...", "isMobile": false, "role": "...", "personality": "..."}
          {"type": "audio", "audio": "<base64 PCM16LE 16kHz mono>"}
          {"type": "user_speaking"} | {"type": "ai_finished_speaking"}
          {"type": "user_finished_speaking"} | {"type": "stop"} | {"type": "reset"}
        """
        await websocket.accept()
        session_id = str(uuid.uuid4())
        send_lock = asyncio.Lock()

        async def send(event: dict[str, Any]) -> None:
            async with send_lock:
                try:
                    await websocket.send_json(event)
                except (WebSocketDisconnect, RuntimeError) as e:
                    logger.debug("ws_send_dropped", session_id=session_id,
                                 type=event.get("type"), error=str(e))

        machine = SessionStateMachine(session_id, send, services, settings.session)
        registry.insert(machine)
        logger.info("ws_connected", session_id=session_id)

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                try:
                    raw = frame.get("text")
                    if raw is None:
                        raise ProtocolError("Binary frames are not supported")
                    message = parse_client_message(raw)
                    await machine.dispatch(message)
                except ProtocolError as e:
                    logger.warning("protocol_violation", session_id=session_id, error=str(e))

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", session_id=session_id, error=str(e))
        finally:
            await registry.evict(session_id)
            logger.info("ws_closed", session_id=session_id)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port,
                log_level=settings.server.log_level)
