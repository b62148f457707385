"""
Peer Session Orchestrator. One direct link per present peer.

For every device in the room the orchestrator decides who offers (the
lexicographically smaller device id), drives the offer/answer/candidate
exchange over the signaling connection, and hands the resulting data channel
to its subscribers (the transfer manager and the UI).

Presence is authoritative: a peer that disappears from the room's peer list is
torn down unconditionally. Link failures only change the reported phase.

Events emitted to ``on_event`` callbacks, ``async fn(event, peer_id, data)``:
    peer_state        data = PeerPhase
    channel_open      data = PeerChannel
    channel_message   data = str | bytes
    channel_closed    data = PeerChannel
    peer_removed      data = None
"""

import asyncio
import functools
import logging

from config import DATA_CHANNEL_LABEL
from session import channel as channel_events
from session.channel import PeerChannel
from session.models import PeerConnectionState, PeerPhase
from session.transport import AiortcPeerLink
from signaling.protocol import Device, SignalFrame, SignalType

logger = logging.getLogger(__name__)


def is_initiator(local_id: str, remote_id: str) -> bool:
    """The smaller of two device ids makes the offer."""
    return local_id < remote_id


class PeerSessionOrchestrator:
    """Owns the per-peer connection state machines."""

    def __init__(
        self,
        device_id: str,
        send_signal,
        link_factory=AiortcPeerLink,
        channel_label: str = DATA_CHANNEL_LABEL,
    ) -> None:
        self.device_id = device_id
        self._send_signal = send_signal  # async fn(to, signal_type, payload)
        self._link_factory = link_factory
        self._channel_label = channel_label
        self._sessions: dict[str, PeerConnectionState] = {}
        self._event_callbacks: list = []
        self._tasks: set[asyncio.Task] = set()

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, peer_id: str, data)."""
        self._event_callbacks.append(callback)

    def get_session(self, peer_id: str) -> PeerConnectionState | None:
        return self._sessions.get(peer_id)

    def channel_for(self, peer_id: str) -> PeerChannel | None:
        session = self._sessions.get(peer_id)
        return session.channel if session else None

    def peer_phases(self) -> dict[str, PeerPhase]:
        return {peer_id: s.phase for peer_id, s in self._sessions.items()}

    async def sync_peers(self, peers: list[Device]) -> None:
        """Reconcile sessions with the room's current peer list."""
        present = [p.device_id for p in peers if p.device_id and p.device_id != self.device_id]

        for peer_id in list(self._sessions):
            if peer_id not in present:
                await self._teardown(peer_id)

        for peer_id in present:
            if peer_id in self._sessions or not is_initiator(self.device_id, peer_id):
                continue
            session = self._create_session(peer_id, initiator=True)
            self._spawn(self._initiate(session))

    async def handle_signal(self, frame: SignalFrame) -> None:
        """Apply an offer, answer or candidate received through the relay."""
        peer_id = frame.from_
        if not peer_id or peer_id == self.device_id:
            return
        session = self._sessions.get(peer_id)
        if session is None:
            # Only an offer opens a session; stray answers and candidates are dropped
            if frame.signal_type != SignalType.OFFER:
                logger.debug(f"Ignoring {frame.signal_type.value} from {peer_id} without a session")
                return
            session = self._create_session(peer_id, initiator=False)
        self._spawn(self._apply_signal(session, frame))

    async def settle(self) -> None:
        """Wait for in-flight negotiation steps to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for peer_id in list(self._sessions):
            await self._teardown(peer_id)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- negotiation ---

    def _create_session(self, peer_id: str, initiator: bool) -> PeerConnectionState:
        link = self._link_factory()
        session = PeerConnectionState(peer_id=peer_id, link=link, initiator=initiator)
        self._sessions[peer_id] = session

        link.on_ice_candidate = functools.partial(self._handle_local_candidate, session)
        link.on_data_channel = functools.partial(self._handle_remote_channel, session)
        link.on_connection_state = functools.partial(self._handle_connection_state, session)

        role = "initiator" if initiator else "responder"
        logger.info(f"Connecting to peer {peer_id} as {role}")
        self._spawn(self._emit("peer_state", peer_id, session.phase))
        return session

    async def _initiate(self, session: PeerConnectionState) -> None:
        async with session.lock:
            if not self._is_current(session):
                return
            raw = session.link.create_data_channel(self._channel_label)
            self._attach_channel(session, raw)
            try:
                offer = await session.link.create_offer()
                await session.link.set_local_description(offer)
            except Exception as e:
                logger.warning(f"Failed to create offer for {session.peer_id}: {e}")
                await self._set_phase(session, PeerPhase.FAILED)
                return
            if self._is_current(session):
                await self._signal(
                    session.peer_id, SignalType.OFFER, session.link.local_description or offer
                )

    async def _apply_signal(self, session: PeerConnectionState, frame: SignalFrame) -> None:
        async with session.lock:
            if not self._is_current(session):
                return
            link = session.link
            try:
                if frame.signal_type == SignalType.OFFER:
                    await link.set_remote_description(frame.payload)
                    answer = await link.create_answer()
                    await link.set_local_description(answer)
                    if self._is_current(session):
                        await self._signal(
                            session.peer_id, SignalType.ANSWER, link.local_description or answer
                        )
                elif frame.signal_type == SignalType.ANSWER:
                    # Duplicate answers are ignored
                    if not link.has_remote_description:
                        await link.set_remote_description(frame.payload)
                elif frame.signal_type == SignalType.ICE_CANDIDATE:
                    await link.add_ice_candidate(frame.payload)
            except Exception as e:
                # Connectivity problems surface through connection state instead
                logger.debug(
                    f"Ignoring {frame.signal_type.value} from {session.peer_id}: {e}"
                )

    def _handle_local_candidate(self, session: PeerConnectionState, candidate) -> None:
        if self._is_current(session):
            self._spawn(self._signal(session.peer_id, SignalType.ICE_CANDIDATE, candidate))

    def _handle_remote_channel(self, session: PeerConnectionState, raw) -> None:
        if raw.label != self._channel_label or not self._is_current(session):
            return
        self._attach_channel(session, raw)

    def _handle_connection_state(self, session: PeerConnectionState, state: str) -> None:
        if not self._is_current(session):
            return
        phase = None
        if state == "failed":
            phase = PeerPhase.FAILED
        elif state == "closed":
            phase = PeerPhase.CLOSED
        elif state == "connected" and session.channel and session.channel.is_open:
            phase = PeerPhase.CONNECTED
        if phase:
            self._spawn(self._set_phase(session, phase))

    # --- channel ---

    def _attach_channel(self, session: PeerConnectionState, raw) -> None:
        if session.channel is not None:
            return
        session.channel = PeerChannel(
            session.peer_id, raw, functools.partial(self._handle_channel_event, session)
        )

    async def _handle_channel_event(
        self, session: PeerConnectionState, kind: str, channel: PeerChannel, data
    ) -> None:
        if not self._is_current(session):
            return
        peer_id = session.peer_id
        if kind == channel_events.OPEN:
            logger.info(f"Data channel to {peer_id} open")
            await self._set_phase(session, PeerPhase.CONNECTED)
            await self._emit("channel_open", peer_id, channel)
        elif kind == channel_events.MESSAGE:
            await self._emit("channel_message", peer_id, data)
        elif kind == channel_events.CLOSE:
            logger.info(f"Data channel to {peer_id} closed")
            if session.channel is channel:
                session.channel = None
            await self._set_phase(session, PeerPhase.CLOSED)
            await self._emit("channel_closed", peer_id, channel)

    # --- teardown ---

    async def _teardown(self, peer_id: str) -> None:
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return
        logger.info(f"Tearing down session with {peer_id}")
        if session.channel:
            await session.channel.close()
            session.channel = None
        try:
            await session.link.close()
        except Exception as e:
            logger.debug(f"Error closing link to {peer_id}: {e}")
        await self._emit("peer_removed", peer_id, None)

    # --- helpers ---

    def _is_current(self, session: PeerConnectionState) -> bool:
        return self._sessions.get(session.peer_id) is session

    async def _set_phase(self, session: PeerConnectionState, phase: PeerPhase) -> None:
        if session.phase == phase:
            return
        session.phase = phase
        await self._emit("peer_state", session.peer_id, phase)

    async def _signal(self, peer_id: str, signal_type: SignalType, payload) -> None:
        try:
            await self._send_signal(peer_id, signal_type, payload)
        except Exception as e:
            logger.warning(f"Failed to send {signal_type.value} to {peer_id}: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, event_type: str, peer_id: str, data) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, peer_id, data)
            except Exception as e:
                logger.error(f"Session event callback error: {e}")
