"""
FastAPI application hosting the signaling relay.

The relay listens on the port supplied by the hosting environment (``PORT``).
"""

import logging

from fastapi import FastAPI, WebSocket

from config import RELAY_HOST, RELAY_PORT
from signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)


def create_app(relay: SignalingRelay | None = None) -> FastAPI:
    """Build the relay application around ``relay`` (a fresh one by default)."""
    relay = relay or SignalingRelay()
    app = FastAPI(title="Dropper Relay", version="1.0.0")
    app.state.relay = relay

    @app.get("/health")
    async def health():
        return {"status": "ok", "rooms": len(relay.registry)}

    @app.websocket("/")
    async def signaling_endpoint(websocket: WebSocket):
        await websocket.accept()
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    # Binary frames are not part of the protocol
                    continue
                await relay.handle_message(websocket, text)
        finally:
            await relay.disconnect(websocket)

    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info(f"Signaling relay running on {RELAY_HOST}:{RELAY_PORT}")
    uvicorn.run(create_app(), host=RELAY_HOST, port=RELAY_PORT, log_level="info")


if __name__ == "__main__":
    run()
