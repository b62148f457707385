"""
In-memory room registry of the relay: rooms, devices and sockets.

The registry is the only state shared between concurrently connected sockets.
Every mutation runs under a single lock so join/leave events for the same room
can never interleave half-way. Callers receive snapshots (peer lists, socket
lists) and do their network I/O outside the lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from signaling.protocol import Device

logger = logging.getLogger(__name__)


@dataclass
class RoomState:
    """Membership of one room.

    Every key of ``socket_to_device`` is in ``sockets``, and a device id is in
    ``devices`` iff at least one socket maps to it.
    """
    devices: dict[str, Device] = field(default_factory=dict)
    sockets: set = field(default_factory=set)
    socket_to_device: dict[Any, str] = field(default_factory=dict)


@dataclass
class Departure:
    """Result of removing a socket from its room."""
    room_id: str
    device_id: Optional[str]  # set iff a peer-left notification is owed
    remaining: list


@dataclass
class JoinResult:
    room_id: str
    peers: list[Device]
    others: list
    departure: Optional[Departure] = None


class RoomRegistry:
    """Single-writer registry of rooms keyed by room id."""

    def __init__(self) -> None:
        self._rooms: dict[str, RoomState] = {}
        self._memberships: dict[Any, str] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def room(self, room_id: str) -> RoomState | None:
        return self._rooms.get(room_id)

    def room_of(self, connection) -> str | None:
        return self._memberships.get(connection)

    async def join(
        self, room_id: str, connection, device: Device | None
    ) -> JoinResult:
        """Register ``connection`` (and its device, if any) in ``room_id``.

        A connection already registered elsewhere is moved: its previous
        membership is removed first and reported as ``departure``.
        """
        async with self._lock:
            departure = self._remove(connection)

            room = self._rooms.get(room_id)
            if room is None:
                room = RoomState()
                self._rooms[room_id] = room
                logger.info(f"Room {room_id} created")

            room.sockets.add(connection)
            self._memberships[connection] = room_id

            device_id = device.device_id if device else None
            if device_id:
                room.devices[device_id] = device
                room.socket_to_device[connection] = device_id

            peers = [d for d in room.devices.values() if d.device_id != device_id]
            others = [s for s in room.sockets if s is not connection]

        return JoinResult(room_id=room_id, peers=peers, others=others, departure=departure)

    async def leave(self, connection) -> Departure | None:
        """Remove ``connection`` from its room. None if it never joined."""
        async with self._lock:
            return self._remove(connection)

    async def lookup(self, room_id: str, device_id: str) -> list | None:
        """Sockets currently mapped to ``device_id``, or None if it is not in the room."""
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or device_id not in room.devices:
                return None
            return [s for s, d in room.socket_to_device.items() if d == device_id]

    def _remove(self, connection) -> Departure | None:
        room_id = self._memberships.pop(connection, None)
        if room_id is None:
            return None

        room = self._rooms[room_id]
        room.sockets.discard(connection)
        device_id = room.socket_to_device.pop(connection, None)

        departed = None
        if device_id and device_id not in room.socket_to_device.values():
            room.devices.pop(device_id, None)
            departed = device_id

        remaining = list(room.sockets)
        if not room.sockets:
            del self._rooms[room_id]
            logger.info(f"Room {room_id} closed")

        return Departure(room_id=room_id, device_id=departed, remaining=remaining)
