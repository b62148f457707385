"""
Shared fakes for the test suite.

No real sockets or WebRTC stacks are used: data channels, peer links and the
relay connection are replaced by in-memory doubles that mimic the small
surface the code under test relies on.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from session.channel import PeerChannel


# ---------------------------------------------------------------------------
# Data channels
# ---------------------------------------------------------------------------

class FakeRawChannel:
    """Stand-in for an aiortc RTCDataChannel (pyee-style ``on`` handlers)."""

    def __init__(self, label: str = "files") -> None:
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.sent: list = []
        self.peer: FakeRawChannel | None = None
        self._handlers: dict[str, list] = {}

    def on(self, event, handler=None):
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def emit(self, event, *args) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def send(self, data) -> None:
        if self.readyState != "open":
            raise RuntimeError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.peer is not None:
            self.peer.emit("message", data)

    def close(self) -> None:
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()

    @property
    def sent_bytes(self) -> list[bytes]:
        return [d for d in self.sent if isinstance(d, bytes)]

    @property
    def sent_frames(self) -> list[dict]:
        return [json.loads(d) for d in self.sent if isinstance(d, str)]


def raw_channel_pair(label: str = "files") -> tuple[FakeRawChannel, FakeRawChannel]:
    a, b = FakeRawChannel(label), FakeRawChannel(label)
    a.peer, b.peer = b, a
    return a, b


_CHANNEL_EVENTS = {
    "open": "channel_open",
    "message": "channel_message",
    "close": "channel_closed",
}


def manager_listener(manager, remote_id: str):
    """Route PeerChannel notifications into a TransferManager like the orchestrator does."""
    async def listener(kind, channel, data):
        payload = data if kind == "message" else channel
        await manager.handle_channel_event(_CHANNEL_EVENTS[kind], remote_id, payload)
    return listener


class ManagerLink:
    """Two TransferManagers joined by a fake data channel pair."""

    def __init__(self, sender, receiver, sender_id: str = "A", receiver_id: str = "B") -> None:
        self.raw_sender, self.raw_receiver = raw_channel_pair()
        self.sender_channel = PeerChannel(
            receiver_id, self.raw_sender, manager_listener(sender, receiver_id)
        )
        self.receiver_channel = PeerChannel(
            sender_id, self.raw_receiver, manager_listener(receiver, sender_id)
        )

    async def open(self) -> None:
        self.raw_sender.open()
        self.raw_receiver.open()
        await self.flush()

    async def flush(self) -> None:
        await self.sender_channel.flush()
        await self.receiver_channel.flush()


# ---------------------------------------------------------------------------
# Peer links
# ---------------------------------------------------------------------------

class FakeLink:
    """Stand-in for AiortcPeerLink."""

    def __init__(self) -> None:
        self.on_ice_candidate = None
        self.on_data_channel = None
        self.on_connection_state = None
        self.local = None
        self.remote = None
        self.remote_sets = 0
        self.candidates: list = []
        self.created_channels: list[FakeRawChannel] = []
        self.fail_candidates = False
        self.closed = False
        self.connection_state = "new"

    @property
    def has_remote_description(self) -> bool:
        return self.remote is not None

    @property
    def local_description(self):
        return self.local

    def create_data_channel(self, label: str) -> FakeRawChannel:
        raw = FakeRawChannel(label)
        self.created_channels.append(raw)
        return raw

    async def create_offer(self) -> dict:
        return {"type": "offer", "sdp": f"v=0 offer {id(self)}"}

    async def create_answer(self) -> dict:
        if self.remote is None:
            raise RuntimeError("No remote offer")
        return {"type": "answer", "sdp": f"v=0 answer {id(self)}"}

    async def set_local_description(self, desc: dict) -> None:
        self.local = desc

    async def set_remote_description(self, desc: dict) -> None:
        self.remote = desc
        self.remote_sets += 1

    async def add_ice_candidate(self, candidate) -> None:
        if self.fail_candidates:
            raise ValueError("Candidate arrived before the remote description")
        self.candidates.append(candidate)

    def set_connection_state(self, state: str) -> None:
        self.connection_state = state
        if self.on_connection_state:
            self.on_connection_state(state)

    async def close(self) -> None:
        self.closed = True


class LinkFactory:
    """Callable link factory remembering every link it created."""

    def __init__(self) -> None:
        self.links: list[FakeLink] = []

    def __call__(self) -> FakeLink:
        link = FakeLink()
        self.links.append(link)
        return link


# ---------------------------------------------------------------------------
# Relay connections
# ---------------------------------------------------------------------------

class FakeSocket:
    """A relay-side connection collecting everything sent to it."""

    def __init__(self, name: str = "", broken: bool = False) -> None:
        self.name = name
        self.broken = broken
        self.received: list[dict] = []

    async def send_text(self, text: str) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.received.append(json.loads(text))

    def of_type(self, frame_type: str) -> list[dict]:
        return [f for f in self.received if f["type"] == frame_type]

    def __repr__(self) -> str:
        return f"FakeSocket({self.name!r})"


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class MemoryDelivery:
    """Delivery collaborator keeping completed files in memory."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.files: list[tuple[str, str, bytes]] = []

    async def __call__(self, name: str, mime_type: str, data: bytes) -> None:
        if self.fail:
            raise OSError("disk full")
        self.files.append((name, mime_type, data))


class EventRecorder:
    """Async event callback recording (event_type, data) pairs."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def __call__(self, *args) -> None:
        self.events.append(args)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e[0] == event_type]

    def statuses(self, transfer_id: str) -> list[str]:
        """Distinct consecutive statuses seen for a transfer."""
        seen: list[str] = []
        for event_type, data in self.of_type("transfer_state"):
            if data["id"] == transfer_id and (not seen or seen[-1] != data["status"]):
                seen.append(data["status"])
        return seen


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def delivery():
    return MemoryDelivery()


@pytest.fixture
def recorder():
    return EventRecorder()
