"""
Signaling connection manager: the peer node's single link to the relay.

Owns one WebSocket connection at a time, joins the room once the socket is
open, keeps the room's peer list up to date and hands ``signal`` frames to
the session layer. Unexpected disconnects are retried with exponential
backoff; a close requested by the caller (or a clean close by the relay) is
final until ``start()`` is called again.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from config import (
    RECONNECT_DELAY_INITIAL,
    RECONNECT_DELAY_MAX,
    RECONNECT_DELAY_MULTIPLIER,
)
from signaling.protocol import (
    Device,
    JoinFrame,
    PeerJoined,
    PeerLeft,
    PeersSync,
    SignalError,
    SignalFrame,
    SignalType,
    encode_frame,
    parse_server_frame,
)

logger = logging.getLogger(__name__)


class SignalingState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class ReconnectBackoff:
    """Exponential reconnect delay: initial, initial*m, initial*m^2, ... capped."""

    def __init__(
        self,
        initial: float = RECONNECT_DELAY_INITIAL,
        multiplier: float = RECONNECT_DELAY_MULTIPLIER,
        maximum: float = RECONNECT_DELAY_MAX,
    ) -> None:
        self.initial = initial
        self.multiplier = multiplier
        self.maximum = maximum
        self._current = initial

    def next_delay(self) -> float:
        delay = min(self._current, self.maximum)
        self._current *= self.multiplier
        return delay

    def reset(self) -> None:
        self._current = self.initial


class SignalingConnectionManager:
    """Maintains the relay connection and the room's presence list."""

    def __init__(
        self,
        url: str,
        room_id: str,
        device: Device,
        connect: Callable[[str], Any] = ws_connect,
        backoff: ReconnectBackoff | None = None,
    ) -> None:
        self.url = url
        self.room_id = room_id
        self.device = device
        self._connect = connect
        self._backoff = backoff or ReconnectBackoff()

        self._state = SignalingState.CLOSED
        self._peers: list[Device] = []
        self._ws = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._identity_key: tuple[str, str] | None = None

        self._signal_callbacks: list = []  # fn(SignalFrame)
        self._signal_error_callbacks: list = []  # fn(SignalError)
        self._peers_callbacks: list = []  # fn(list[Device])
        self._state_callbacks: list = []  # fn(SignalingState)

    @property
    def state(self) -> SignalingState:
        return self._state

    @property
    def peers(self) -> list[Device]:
        return list(self._peers)

    # --- listener registration ---

    def on_signal(self, callback) -> None:
        self._signal_callbacks.append(callback)

    def on_signal_error(self, callback) -> None:
        self._signal_error_callbacks.append(callback)

    def on_peers_update(self, callback) -> None:
        self._peers_callbacks.append(callback)

    def on_state_change(self, callback) -> None:
        self._state_callbacks.append(callback)

    # --- lifecycle ---

    async def start(self) -> None:
        """Connect unless a connection is already being made or open."""
        if self._task and not self._task.done():
            return
        self._closing = False
        self._identity_key = (self.room_id, self.device.device_id)
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Tear down the connection without reconnecting."""
        self._closing = True
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._mark_closed()

    async def set_identity(self, room_id: str, device: Device) -> None:
        """Switch room or device; reconnects only if the identity really changed."""
        if (room_id, device.device_id) == self._identity_key:
            return
        logger.info(f"Signaling identity changed, rejoining as {device.device_id} in {room_id}")
        await self.close()
        self.room_id = room_id
        self.device = device
        await self.start()

    async def send_signal(self, to: str, signal_type: SignalType | str, payload: Any) -> bool:
        """Send a signaling message to ``to``. Returns False when not connected."""
        if self._state != SignalingState.OPEN or self._ws is None:
            logger.debug(f"Not connected, dropping {signal_type} for {to}")
            return False
        frame = SignalFrame(
            room_id=self.room_id,
            from_=self.device.device_id,
            to=to,
            signal_type=SignalType(signal_type),
            payload=payload,
        )
        try:
            await self._ws.send(encode_frame(frame))
        except WebSocketException as e:
            logger.warning(f"Failed to send {frame.signal_type.value} to {to}: {e}")
            return False
        return True

    async def _run(self) -> None:
        while True:
            await self._set_state(SignalingState.CONNECTING)
            clean = False
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self._backoff.reset()
                    await self._set_state(SignalingState.OPEN)
                    await ws.send(encode_frame(JoinFrame(
                        room_id=self.room_id,
                        device_id=self.device.device_id,
                        device_name=self.device.device_name,
                        color=self.device.color,
                    )))
                    async for raw in ws:
                        await self._dispatch(raw)
                clean = True
            except ConnectionClosedOK:
                clean = True
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Signaling connection to {self.url} lost: {e}")
                await self._set_state(SignalingState.ERROR)
            finally:
                self._ws = None

            if clean or self._closing:
                await self._mark_closed()
                return

            delay = self._backoff.next_delay()
            logger.info(f"Reconnecting to {self.url} in {delay:.2f}s")
            await self._set_state(SignalingState.CONNECTING)
            await asyncio.sleep(delay)

    async def _dispatch(self, raw: str | bytes) -> None:
        frame = parse_server_frame(raw)
        own_id = self.device.device_id

        if isinstance(frame, PeersSync):
            self._peers = [p for p in frame.peers if p.device_id != own_id]
            await self._notify(self._peers_callbacks, self.peers)
        elif isinstance(frame, PeerJoined):
            peer = frame.peer
            if peer.device_id == own_id:
                return
            for i, existing in enumerate(self._peers):
                if existing.device_id == peer.device_id:
                    self._peers[i] = peer
                    break
            else:
                self._peers.append(peer)
            await self._notify(self._peers_callbacks, self.peers)
        elif isinstance(frame, PeerLeft):
            self._peers = [p for p in self._peers if p.device_id != frame.device_id]
            await self._notify(self._peers_callbacks, self.peers)
        elif isinstance(frame, SignalFrame):
            await self._notify(self._signal_callbacks, frame)
        elif isinstance(frame, SignalError):
            logger.info(f"Relay could not deliver {frame.signal_type} to {frame.to}")
            await self._notify(self._signal_error_callbacks, frame)

    async def _mark_closed(self) -> None:
        had_peers = bool(self._peers)
        self._peers = []
        await self._set_state(SignalingState.CLOSED)
        if had_peers:
            await self._notify(self._peers_callbacks, [])

    async def _set_state(self, state: SignalingState) -> None:
        if state == self._state:
            return
        self._state = state
        await self._notify(self._state_callbacks, state)

    async def _notify(self, callbacks: list, *args) -> None:
        for cb in callbacks:
            try:
                result = cb(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Signaling callback error: {e}")
