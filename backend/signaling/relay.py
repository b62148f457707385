"""
Signaling relay.

Tracks room presence and forwards connection-setup messages between devices.
The relay never sees file bytes: only presence metadata and opaque signaling
payloads pass through it.

A *connection* is anything hashable with an ``async send_text(str)`` method
(a Starlette ``WebSocket`` in production).
"""

import logging

from signaling.protocol import (
    Device,
    JoinFrame,
    PeerJoined,
    PeerLeft,
    PeersSync,
    SignalError,
    SignalFrame,
    WireModel,
    encode_frame,
    parse_client_frame,
)
from signaling.registry import Departure, RoomRegistry

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Processes inbound frames and disconnects for every relay connection."""

    def __init__(self, registry: RoomRegistry | None = None) -> None:
        self.registry = registry or RoomRegistry()

    async def handle_message(self, connection, raw: str | bytes) -> None:
        frame = parse_client_frame(raw)
        if isinstance(frame, JoinFrame):
            await self._handle_join(connection, frame)
        elif isinstance(frame, SignalFrame):
            await self._handle_signal(connection, frame)

    async def disconnect(self, connection) -> None:
        """Forget ``connection`` and tell its room if a device left."""
        departure = await self.registry.leave(connection)
        if departure:
            await self._announce_departure(departure)

    async def _handle_join(self, connection, frame: JoinFrame) -> None:
        device = None
        if frame.device_id:
            device = Device(
                device_id=frame.device_id,
                device_name=frame.device_name or "",
                color=frame.color or "",
            )

        result = await self.registry.join(frame.room_id, connection, device)
        if result.departure:
            await self._announce_departure(result.departure)

        logger.info(
            f"Device {frame.device_id or '<anonymous>'} joined {frame.room_id} "
            f"({len(result.peers)} peer(s) present)"
        )
        await self._send(connection, PeersSync(room_id=frame.room_id, peers=result.peers))

        if device:
            joined = PeerJoined(room_id=frame.room_id, peer=device)
            for other in result.others:
                await self._send(other, joined)

    async def _handle_signal(self, connection, frame: SignalFrame) -> None:
        room_id = frame.room_id or self.registry.room_of(connection)
        if not room_id or room_id not in self.registry:
            return

        targets = await self.registry.lookup(room_id, frame.to)
        if targets is None:
            logger.debug(f"Signal {frame.signal_type.value} to unknown device {frame.to} in {room_id}")
            await self._send(
                connection,
                SignalError(to=frame.to, signal_type=frame.signal_type.value),
            )
            return

        # Forwarded as received, with the resolved room filled in
        forwarded = encode_frame(frame.model_copy(update={"room_id": room_id}), exclude_unset=True)
        for target in targets:
            await self._send_text(target, forwarded)

    async def _announce_departure(self, departure: Departure) -> None:
        if not departure.device_id:
            return
        logger.info(f"Device {departure.device_id} left {departure.room_id}")
        left = PeerLeft(room_id=departure.room_id, device_id=departure.device_id)
        for socket in departure.remaining:
            await self._send(socket, left)

    async def _send(self, connection, frame: WireModel) -> None:
        await self._send_text(connection, encode_frame(frame))

    async def _send_text(self, connection, text: str) -> None:
        try:
            await connection.send_text(text)
        except Exception as e:
            logger.debug(f"Dropping frame to dead connection: {e}")
