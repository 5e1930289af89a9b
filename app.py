from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.sessions import sessions_router
from routers.files import files_router
from backend import create_session_backend
from constants import PUBLIC_URL, STORAGE_DIR
from hub import SessionHub
from registry import SessionRegistry
from rendezvous import Connection
from storage import FileStorage
import json
import asyncio
from typing import Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_hub() -> SessionHub:
    registry = SessionRegistry(create_session_backend())
    storage = FileStorage(STORAGE_DIR) if STORAGE_DIR else None
    return SessionHub(registry, storage=storage)


def server_url_from_headers(websocket: WebSocket) -> str:
    """Best guess of the origin peers should use, as seen in the handshake."""
    if PUBLIC_URL:
        return PUBLIC_URL
    origin = websocket.headers.get("origin")
    if origin:
        return origin
    host = websocket.headers.get("host")
    if host:
        scheme = "https" if websocket.url.scheme == "wss" else "http"
        return f"{scheme}://{host}"
    return f"http://localhost:{os.getenv('PORT', 8000)}"


async def pump_outbox(connection: Connection, websocket: WebSocket):
    """Drain a connection's outbox onto its socket until the close sentinel."""
    while True:
        message = await connection.outbox.get()
        if message is None:
            break
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.warning(f"Channel error sending {message.get('type')} to {connection.connection_id}: {e}")
            break


def create_app(hub: Optional[SessionHub] = None) -> FastAPI:
    app = FastAPI()

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)
    app.include_router(files_router)
    app.state.hub = hub if hub is not None else build_hub()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Event channel between one peer and the relay.

        Frames are JSON text: {"type": "<event>", ...}. Replies and forwarded
        events are written by a separate task draining the connection's outbox.
        """
        session_hub: SessionHub = websocket.app.state.hub
        await websocket.accept()
        connection = session_hub.connect(server_url=server_url_from_headers(websocket))
        writer = asyncio.create_task(pump_outbox(connection, websocket))

        try:
            message_count = 0
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {connection.connection_id}")
                await session_hub.handle(connection, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection.connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
        finally:
            session_hub.disconnect(connection)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
