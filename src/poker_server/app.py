# src/poker_server/app.py
import asyncio
import uuid
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .errors import PokerError
from .gateway import SessionGateway
from .logger import logger, set_level
from .models import CreateRoomRequest
from .persistence import InMemoryRoomStore, RoomStore, SQLiteRoomStore
from .registry import RoomRegistry


def make_store(settings: Settings) -> RoomStore:
    if settings.persistence.enabled:
        return SQLiteRoomStore(Path(settings.persistence.database_file))
    logger.info("Persistence disabled; rooms live in memory only.")
    return InMemoryRoomStore()


async def _sweep_forever(gateway: SessionGateway, settings: Settings):
    """Periodically removes rooms idle past the retention age."""
    max_age = timedelta(hours=settings.retention.max_room_age_hours)
    while True:
        await asyncio.sleep(settings.retention.sweep_interval_seconds)
        try:
            gateway.sweep_idle_rooms(max_age)
        except Exception:
            logger.error("Room retention sweep failed.", exc_info=True)


def create_app(settings: Optional[Settings] = None, store: Optional[RoomStore] = None) -> FastAPI:
    """
    Builds the application with its own store, registry and gateway.

    Args:
        settings: Loaded settings; read from settings.yml when omitted.
        store: Durable room store; chosen from settings when omitted.
    """
    settings = settings or load_settings()
    set_level(settings.logging.level)

    store = store or make_store(settings)
    registry = RoomRegistry(store, defaults=settings.poker)
    gateway = SessionGateway(registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(_sweep_forever(gateway, settings))
        logger.info("Planning poker server started.")
        yield
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await gateway.shutdown()
        store.close()
        logger.info("Planning poker server stopped.")

    app = FastAPI(title="Planning Poker", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PokerError)
    async def poker_error_handler(request: Request, exc: PokerError):
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"error": "Invalid request data"})

    # ===================================================================
    # HTTP Endpoints
    # ===================================================================

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "rooms": registry.room_count}

    @app.post("/api/rooms")
    async def create_room(request: CreateRoomRequest):
        room, host = registry.create_room(request.host_name, request.room_name, request.avatar_id)
        return {"room": room.public_view(), "host": host.to_wire()}

    @app.get("/api/rooms/{room_code}")
    async def get_room(room_code: str):
        room = registry.find_room(room_code)
        if room is None:
            return JSONResponse(status_code=404, content={"error": "Room not found", "exists": False})
        return {
            "room": {
                "id": room.code,
                "name": room.name,
                "hostId": room.host_id,
                "settings": room.settings.to_wire(),
                "status": room.status,
            },
            "exists": True,
        }

    # ===================================================================
    # WebSocket Endpoint
    # ===================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection_id = str(uuid.uuid4())
        await gateway.connect(connection_id, websocket)
        try:
            while True:
                data = await websocket.receive_text()
                await gateway.handle_message(connection_id, data)
        except WebSocketDisconnect:
            pass
        finally:
            await gateway.disconnect(connection_id)

    return app
