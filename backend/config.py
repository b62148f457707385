"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
CONFIG_DIR = Path(os.environ.get("DROPPER_CONFIG_DIR", Path.home() / ".dropper"))
DEVICE_FILE = CONFIG_DIR / "device.json"

# Shared rendezvous context; devices using the same context land in the same room
ROOM_CONTEXT = os.environ.get("DROPPER_ROOM", "dropper://local")

# --- Relay ---
RELAY_HOST = os.environ.get("DROPPER_RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("PORT", "3001"))

# --- Node ---
SIGNALING_URL = os.environ.get("DROPPER_SIGNALING_URL", f"ws://localhost:{RELAY_PORT}")
API_HOST = os.environ.get("DROPPER_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("DROPPER_API_PORT", "8765"))
# Browser UI dev servers allowed to call the local API
CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]
# A UI client that takes longer than this to accept one event is dropped
UI_SEND_TIMEOUT = 1.0  # seconds

# Signaling reconnect backoff (seconds)
RECONNECT_DELAY_INITIAL = 1.0
RECONNECT_DELAY_MULTIPLIER = 1.5
RECONNECT_DELAY_MAX = 10.0

# --- Peer links ---
ICE_SERVERS = ["stun:stun.l.google.com:19302"]
DATA_CHANNEL_LABEL = "files"

# --- Transfer ---
CHUNK_SIZE = 131072  # 128 KB
BUFFER_HIGH_WATER_MARK = 4 * 1024 * 1024  # 4 MB
BUFFER_POLL_INTERVAL = 0.05  # seconds
MAX_SEND_RETRIES = 5

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "DROPPER_SAVE_DIR", str(Path.home() / "Downloads" / "Dropper")
)
