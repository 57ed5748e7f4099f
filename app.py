from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import create_room_store
from registry import RoomRegistry
from relay import SignalingRelay
from constants import ALLOWED_ORIGINS, EMPTY_ROOM_POLICY
import uuid
import os
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

# The room map is mutated only from this process's event loop, so no locking is needed
app.state.registry = RoomRegistry(create_room_store(), empty_room_policy=EMPTY_ROOM_POLICY)
# memberships stored by a previous run belong to sockets that no longer exist
app.state.registry.reset_connections()
app.state.relay = SignalingRelay(app.state.registry)

logger.info(f"Rendezvous application initialized (allowed origins: {ALLOWED_ORIGINS})")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling socket. One connection per peer; its id is the member id seen by the other peer."""
    relay: SignalingRelay = websocket.app.state.relay
    connection_id = str(uuid.uuid4())

    await websocket.accept()
    logger.info(f"WebSocket connection accepted: {connection_id}")

    async def send(message: dict):
        await websocket.send_json(message)

    relay.connect(connection_id, send)
    try:
        await websocket.send_json({"event": "connected", "data": {"connectionId": connection_id}})

        message_count = 0
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id}")
            await relay.handle_text(connection_id, data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await relay.disconnect(connection_id)
