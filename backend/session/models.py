"""Models for per-peer session state."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from session.channel import PeerChannel


class PeerPhase(str, Enum):
    """Lifecycle of a direct link. A peer without a session is absent."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class PeerConnectionState:
    peer_id: str
    link: Any
    initiator: bool
    phase: PeerPhase = PeerPhase.CONNECTING
    channel: Optional[PeerChannel] = None
    # Serializes offer/answer/candidate handling for this peer only
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
