"""
Dropper node — FastAPI application entry point.

Joins the room on the signaling relay, negotiates direct links with every
peer in it and exchanges files over them. Serves a local REST API and a
WebSocket event stream for the UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventBroadcaster
from config import (
    API_HOST,
    API_PORT,
    CORS_ORIGINS,
    DEFAULT_SAVE_DIR,
    ROOM_CONTEXT,
    SIGNALING_URL,
)
from session.identity import derive_room_id, load_or_create_device
from session.orchestrator import PeerSessionOrchestrator
from signaling.client import SignalingConnectionManager
from transfer.manager import TransferManager
from transfer.service import SaveDirectoryDelivery

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ws_manager = EventBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the signaling, session and transfer services."""
    device = load_or_create_device()
    room_id = derive_room_id(ROOM_CONTEXT)
    logger.info(f"Starting Dropper as {device.device_name} ({device.device_id}) in {room_id}")

    signaling = SignalingConnectionManager(SIGNALING_URL, room_id, device)
    sessions = PeerSessionOrchestrator(device.device_id, signaling.send_signal)
    transfer_manager = TransferManager(device.device_id, SaveDirectoryDelivery(DEFAULT_SAVE_DIR))

    # Presence and signaling drive the sessions
    signaling.on_peers_update(sessions.sync_peers)
    signaling.on_signal(sessions.handle_signal)

    # Sessions hand their channels to the transfer manager
    sessions.on_event(transfer_manager.handle_channel_event)

    # Everything the UI needs to see
    async def on_peers(peers):
        await ws_manager.broadcast("peers", [p.model_dump(by_alias=True) for p in peers])

    async def on_signaling_state(state):
        await ws_manager.broadcast("signaling_state", {"state": state.value})

    async def on_signal_error(error):
        await ws_manager.broadcast("signal_error", error.model_dump(by_alias=True))

    signaling.on_peers_update(on_peers)
    signaling.on_state_change(on_signaling_state)
    signaling.on_signal_error(on_signal_error)
    sessions.on_event(ws_manager.handle_session_event)
    transfer_manager.on_event(ws_manager.handle_event)

    init_routes(signaling, sessions, transfer_manager)

    try:
        await signaling.start()
        logger.info(f"Dropper ready — API: {API_HOST}:{API_PORT}, relay: {SIGNALING_URL}")
        yield
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Dropper services...")
        await signaling.close()
        await transfer_manager.stop()
        await sessions.close()


# --- FastAPI app ---
app = FastAPI(
    title="Dropper",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
