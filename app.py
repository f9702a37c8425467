from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import RedisRelay
from connection import ConnectionHandle
from constants import IDLE_TIMEOUT_SECONDS, REDIS_ENABLED
from dispatcher import Dispatcher
from errors import ProtocolViolation
from registry import RoomRegistry
from schemas.frames import decode_frame
import asyncio
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One registry and dispatcher per process, shared by every connection
    registry = RoomRegistry()
    relay = RedisRelay.connect(registry) if REDIS_ENABLED else None
    dispatcher = Dispatcher(registry, relay=relay)
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.idle_timeout = IDLE_TIMEOUT_SECONDS
    logger.info(f"Room fanout core started (redis relay: {'on' if relay else 'off'})")
    try:
        yield
    finally:
        await dispatcher.shutdown()
        if relay is not None:
            await relay.close()
        logger.info("Room fanout core stopped")


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for room chat.

    Frames are JSON text:
    - {"type": "init", "room": "...", "nick": "..."} joins a room
    - {"type": "msg", "msg": "..."} sends a chat message to the room
    - {"type": "typing", "typing": true} sends a typing indicator
    """
    await websocket.accept()
    dispatcher = websocket.app.state.dispatcher
    idle_timeout = websocket.app.state.idle_timeout
    handle = ConnectionHandle(websocket)
    await dispatcher.on_connect(handle)

    try:
        message_count = 0
        while not handle.closing:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                await dispatcher.on_idle_timeout(handle)
                continue
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {handle.connection_id}")

            try:
                frame = decode_frame(data)
            except ProtocolViolation as e:
                await dispatcher.report(handle, e)
                continue
            await dispatcher.on_frame(handle, frame)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {handle.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {handle.connection_id}: {e}", exc_info=True)
    finally:
        await dispatcher.on_disconnect(handle)
