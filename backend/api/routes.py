"""REST API routes for the local peer node."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_signaling = None
_sessions = None
_transfer_manager = None


def init_routes(signaling, sessions, transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _signaling, _sessions, _transfer_manager
    _signaling = signaling
    _sessions = sessions
    _transfer_manager = transfer_manager


# --- Identity & presence ---

@router.get("/identity")
async def get_identity():
    return {
        "device": _signaling.device.model_dump(by_alias=True),
        "roomId": _signaling.room_id,
    }


@router.get("/status")
async def get_status():
    return {"signaling": _signaling.state.value}


@router.get("/devices")
async def list_devices():
    """Return the peers present in the room with their link phase."""
    phases = _sessions.peer_phases()
    devices = []
    for peer in _signaling.peers:
        entry = peer.model_dump(by_alias=True)
        phase = phases.get(peer.device_id)
        entry["phase"] = phase.value if phase else "absent"
        devices.append(entry)
    return {"devices": devices}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    peer_id: str
    file_paths: list[str]


@router.get("/transfers")
async def list_transfers():
    """Return all transfers (queued, active and finished)."""
    transfers = _transfer_manager.get_transfers()
    return {"transfers": [t.model_dump(by_alias=True) for t in transfers]}


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Send files from disk to a peer in the room.

    Files are queued when the peer's data channel is not open yet.
    """
    if not any(p.device_id == body.peer_id for p in _signaling.peers):
        raise HTTPException(status_code=404, detail="Peer not found")

    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    transfers = await _transfer_manager.send_files(body.peer_id, valid_paths)
    return {
        "transfers": [t.model_dump(by_alias=True) for t in transfers],
        "message": f"Queued {len(transfers)} file(s) for transfer",
    }


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": str(_transfer_manager.delivery.save_dir)}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _transfer_manager.delivery.save_dir = body.save_dir
    return {"status": "updated"}
