"""
Device identity: a stable id, a friendly name and a color, created on first
run and reused afterwards. Also derives room ids from a shared context.
"""

import hashlib
import json
import logging
import random
import uuid
from pathlib import Path

from pydantic import ValidationError

from config import DEVICE_FILE
from signaling.protocol import Device

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "Neon", "Cosmic", "Turbo", "Silent", "Electric", "Quantum",
    "Hidden", "Mystic", "Clever", "Swift", "Brave", "Pixel",
    "Sneaky", "Bold", "Lucky", "Happy", "Fierce", "Calm"
]

ANIMALS = [
    "Fox", "Panda", "Gopher", "Bear", "Snail", "Owl",
    "Wolf", "Tiger", "Hawk", "Dolphin", "Penguin", "Falcon",
    "Eagle", "Lion", "Shark", "Whale", "Octopus", "Duck"
]

COLORS = [
    "#f97316", "#22c55e", "#3b82f6", "#a855f7",
    "#ec4899", "#eab308", "#14b8a6", "#ef4444",
]


def generate_device() -> Device:
    return Device(
        device_id=str(uuid.uuid4()),
        device_name=f"{random.choice(ADJECTIVES)} {random.choice(ANIMALS)}",
        color=random.choice(COLORS),
    )


def load_or_create_device(path: Path = DEVICE_FILE) -> Device:
    """Load the persisted device identity, creating it on first run."""
    if path.exists():
        try:
            return Device.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning(f"Failed to load device identity from {path}: {e}. Generating a new one.")

    device = generate_device()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(device.model_dump(by_alias=True)))
    logger.info(f"Created device identity {device.device_name} ({device.device_id})")
    return device


def derive_room_id(context: str) -> str:
    """Map a shared rendezvous context (URL, network name) to a room id."""
    digest = hashlib.sha256(context.encode("utf-8")).hexdigest()
    return f"room-{digest[:16]}"
