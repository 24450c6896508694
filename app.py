from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router
from registry import RoomRegistry
from schemas.rooms import HealthResponse
from sessions import Connection, SessionManager
import protocol
import asyncio
from typing import Optional
from datetime import datetime
from constants import (
    FRONTEND_URL,
    LOG_FILE,
    LOG_LEVEL,
    MAX_CONTENT_BYTES,
    OUTBOX_MAX_MESSAGES,
    ROOM_IDLE_TTL,
    ROOM_SWEEP_INTERVAL,
    SERVICE_NAME,
    SERVICE_VERSION,
)
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def cors_origins(frontend_url: str) -> list:
    if not frontend_url or frontend_url == "*":
        return ["*"]
    return [origin.strip() for origin in frontend_url.split(",") if origin.strip()]


async def sweep_idle_rooms(registry: RoomRegistry, sessions: SessionManager, max_idle: float, interval: float):
    """Background task that drops rooms nobody has touched for ``max_idle`` seconds."""
    logger.info(f"Idle room sweeper started (ttl={max_idle}s, every {interval}s)")
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                registry.prune_idle(max_idle, keep=sessions.active_room_codes())
            except Exception as e:
                logger.error(f"Error while pruning idle rooms: {e}", exc_info=True)
    except asyncio.CancelledError:
        logger.info("Idle room sweeper stopped")
        raise


async def pump_outbox(connection: Connection, websocket: WebSocket):
    """Writer task: send queued messages to one WebSocket in order."""
    while True:
        message = await connection.outbox.get()
        if message is None:
            try:
                await websocket.close(code=1008)
            except Exception as e:
                logger.debug(f"Error closing WebSocket for slow connection {connection.id}: {e}")
            break
        try:
            await websocket.send_text(protocol.encode(message))
        except Exception as e:
            logger.warning(f"Error sending to connection {connection.id}: {e}")
            connection.closed = True
            break


def create_app(
    registry: Optional[RoomRegistry] = None,
    room_idle_ttl: int = ROOM_IDLE_TTL,
    sweep_interval: int = ROOM_SWEEP_INTERVAL,
    max_content_bytes: int = MAX_CONTENT_BYTES,
    outbox_size: int = OUTBOX_MAX_MESSAGES,
) -> FastAPI:
    registry = registry if registry is not None else RoomRegistry()
    sessions = SessionManager(registry, max_content_bytes=max_content_bytes, outbox_size=outbox_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if room_idle_ttl > 0:
            sweeper = asyncio.create_task(sweep_idle_rooms(registry, sessions, room_idle_ttl, sweep_interval))
        try:
            yield
        finally:
            if sweeper:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            logger.info(f"{SERVICE_NAME} shutting down with {len(registry)} rooms in memory")

    app = FastAPI(title=f"{SERVICE_NAME} API", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.registry = registry
    app.state.sessions = sessions

    origins = cors_origins(FRONTEND_URL)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/")
    async def root():
        return {
            "message": f"{SERVICE_NAME} API Server",
            "version": SERVICE_VERSION,
            "endpoints": {
                "health": "/api/health",
                "createRoom": "/api/rooms",
                "createRandomRoom": "/api/rooms/random",
                "checkRoom": "/api/rooms/{roomCode}",
                "realtime": "/ws",
            },
        }

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok",
            message=f"{SERVICE_NAME} backend is running!",
            timestamp=datetime.now().isoformat(),
            rooms=len(registry),
            connections=sessions.connection_count,
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Real-time channel. One per client, multiplexed over any number of rooms."""
        await websocket.accept()
        connection = sessions.connect()
        writer = asyncio.create_task(pump_outbox(connection, websocket))
        message_count = 0
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                data = message.get("text")
                if data is None:
                    data = message.get("bytes") or b""
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.id}")
                sessions.handle_message(connection, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection.id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
            try:
                await websocket.close(code=1011)
            except Exception as close_error:
                logger.debug(f"Error closing WebSocket: {close_error}")
        finally:
            sessions.disconnect(connection)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    logger.info("FastAPI application initialized")
    return app


app = create_app()
