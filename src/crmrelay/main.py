import logging
import uuid
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .conversation import (
    ConversationEngine,
    FollowUpSynthesizer,
    OpenAICompletionClient,
    get_tool_definitions,
    load_tool_catalog,
)
from .errors import SessionStoreError
from .gateway import ChatGateway
from .models import ChunkType, ClientMessage, MessageType, StreamChunk
from .services.nango import NangoActionBackend
from .services.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from .services.stream_manager import StreamManager
from .services.tool_dispatcher import ToolDispatcher
from .settings import Settings, get_settings


def setup_server_logging(level: str = "INFO", log_dir: Path = Path("logs")) -> logging.Logger:
    """Configure and return the server logger."""
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("crmrelay")
    if logger.handlers:
        return logging.getLogger("crmrelay.server")

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(log_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logging.getLogger("crmrelay.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = logging.getLogger("crmrelay.server")


async def build_session_store(settings: Settings) -> SessionStore:
    """Use Redis when configured and reachable, otherwise keep history in memory."""
    if settings.redis_url and settings.redis_url.strip():
        store = RedisSessionStore(
            settings.redis_url.strip(),
            system_prompt=settings.system_prompt,
            ttl_seconds=settings.session_ttl_seconds,
        )
        try:
            await store.connect()
            return store
        except SessionStoreError as e:
            LOGGER.warning("Falling back to in-memory sessions: %s", e)
    return InMemorySessionStore(settings.system_prompt, ttl_seconds=settings.session_ttl_seconds)


def build_gateway(
    settings: Settings,
    sessions: SessionStore,
    completions: OpenAICompletionClient,
    backend: NangoActionBackend,
) -> ChatGateway:
    tools = (
        load_tool_catalog(settings.tool_config_path)
        if settings.tool_config_path
        else get_tool_definitions()
    )
    engine = ConversationEngine(
        completions,
        sessions,
        tools,
        max_tokens=settings.max_tokens,
        timeout_seconds=settings.completion_timeout_seconds,
    )
    dispatcher = ToolDispatcher(backend, timeout_seconds=settings.tool_timeout_seconds)
    synthesizer = FollowUpSynthesizer(
        completions,
        settings.follow_up_system_prompt,
        flush_threshold=settings.follow_up_flush_threshold,
        max_tokens=settings.follow_up_max_tokens,
        timeout_seconds=settings.completion_timeout_seconds,
    )
    return ChatGateway(
        engine,
        dispatcher,
        synthesizer,
        StreamManager(settings.stream_chunk_size),
        follow_ups_enabled=settings.follow_up_enabled,
    )


def create_app(gateway: ChatGateway | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app. A prebuilt gateway skips provider/backend wiring."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Validate configuration and wire the pipeline at startup; release clients on shutdown."""
        if app.state.gateway is not None:
            yield
            return

        setup_server_logging(settings.log_level, settings.log_dir)
        # Configuration errors are fatal here.
        settings.require_credentials()

        sessions = await build_session_store(settings)
        completions = OpenAICompletionClient.from_settings(settings)
        backend = NangoActionBackend.from_settings(settings)
        app.state.gateway = build_gateway(settings, sessions, completions, backend)
        LOGGER.info("Relay ready model=%s chunk_size=%s", settings.model, settings.stream_chunk_size)

        yield

        LOGGER.info("Shutting down...")
        await backend.close()
        await completions.close()
        if isinstance(sessions, RedisSessionStore):
            await sessions.close()

    app = FastAPI(
        title="CRM Relay",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "healthy"}

    @app.websocket("/ws/{session_id}")
    async def session_ws(websocket: WebSocket, session_id: str) -> None:
        """WebSocket endpoint bound to the session id in the path."""
        await _serve_session(websocket, session_id, bound=True)

    @app.websocket("/ws")
    async def anonymous_ws(websocket: WebSocket) -> None:
        """WebSocket endpoint whose session id comes from the first envelope (or is generated)."""
        await _serve_session(websocket, None, bound=False)

    return app


async def _serve_session(websocket: WebSocket, session_id: str | None, bound: bool) -> None:
    """Read envelopes until the client disconnects and run one turn per USER message.

    Expected Input (JSON):
        {"messageId": str, "content": str, "sessionId": str, "type": "USER"}

    Response Format:
        Streams {"type": content|tool_call|tool_result|error|final,
        "content": str, "toolCallId"?: str} objects. A turn ends with a final
        chunk, or with an error chunk without toolCallId when the turn itself
        failed. Error chunks tagged with toolCallId (failed follow-ups) are
        followed by more chunks of the same turn.
    """
    gateway: ChatGateway = websocket.app.state.gateway
    streams = gateway.streams
    await websocket.accept()

    if session_id is not None:
        streams.add_connection(session_id, websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = ClientMessage.from_payload(raw, default_session_id=session_id or str(uuid.uuid4()))
            except ValueError as e:
                LOGGER.error("Invalid WS payload: %s", e)
                await websocket.send_json(StreamChunk(type=ChunkType.ERROR, content=str(e)).to_dict())
                continue

            if not bound and session_id != message.session_id:
                if session_id is not None:
                    streams.remove_connection(session_id, websocket)
                session_id = message.session_id
                streams.add_connection(session_id, websocket)

            if message.type != MessageType.USER:
                LOGGER.warning("Ignoring %s message session_id=%s", message.type.value, session_id)
                continue

            await gateway.handle_message(session_id, message.content)

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect session_id=%s", session_id)
    finally:
        if session_id is not None:
            streams.remove_connection(session_id, websocket)


app = create_app()


def run() -> None:
    """Console entrypoint: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("crmrelay.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
