"""Tests for the peer session orchestrator."""

import pytest

from session.models import PeerPhase
from session.orchestrator import PeerSessionOrchestrator, is_initiator
from signaling.protocol import Device, SignalFrame, SignalType
from conftest import EventRecorder, FakeLink, FakeRawChannel, LinkFactory


class SignalBus:
    """Delivers signals between orchestrators the way the relay would."""

    def __init__(self) -> None:
        self.nodes: dict[str, PeerSessionOrchestrator] = {}
        self.sent: list[tuple] = []

    def sender(self, from_id: str):
        async def send(to, signal_type, payload):
            signal_type = SignalType(signal_type)
            self.sent.append((from_id, to, signal_type, payload))
            node = self.nodes.get(to)
            if node is None:
                return False
            await node.handle_signal(SignalFrame(
                room_id="room-1", from_=from_id, to=to, signal_type=signal_type, payload=payload,
            ))
            return True
        return send

    def types_sent(self) -> list[tuple]:
        return [(f, t, s) for f, t, s, _ in self.sent]


class Pair:
    """Two orchestrators, dev-a (initiator) and dev-b, sharing a bus."""

    def __init__(self) -> None:
        self.bus = SignalBus()
        self.links_a, self.links_b = LinkFactory(), LinkFactory()
        self.a = PeerSessionOrchestrator("dev-a", self.bus.sender("dev-a"), link_factory=self.links_a)
        self.b = PeerSessionOrchestrator("dev-b", self.bus.sender("dev-b"), link_factory=self.links_b)
        self.bus.nodes = {"dev-a": self.a, "dev-b": self.b}
        self.events_a, self.events_b = EventRecorder(), EventRecorder()
        self.a.on_event(self.events_a)
        self.b.on_event(self.events_b)

    async def settle(self) -> None:
        for _ in range(5):
            await self.a.settle()
            await self.b.settle()

    async def negotiate(self) -> None:
        await self.a.sync_peers([Device(device_id="dev-b")])
        await self.b.sync_peers([Device(device_id="dev-a")])
        await self.settle()

    async def open_channels(self) -> None:
        """Play the transport: deliver the initiator's channel to the responder and open both."""
        raw_a = self.links_a.links[0].created_channels[0]
        raw_b = FakeRawChannel(raw_a.label)
        raw_a.peer, raw_b.peer = raw_b, raw_a
        self.links_b.links[0].on_data_channel(raw_b)
        raw_a.open()
        raw_b.open()
        await self.flush()

    async def flush(self) -> None:
        for node, peer_id in ((self.a, "dev-b"), (self.b, "dev-a")):
            channel = node.channel_for(peer_id)
            if channel:
                await channel.flush()
        await self.settle()


# ---------------------------------------------------------------------------
# Role selection
# ---------------------------------------------------------------------------

class TestIsInitiator:
    @pytest.mark.parametrize("x, y", [
        ("dev-a", "dev-b"),
        ("0b4f", "9a00"),
        ("A", "a"),
        ("peer", "peer-2"),
    ])
    def test_exactly_one_side_initiates(self, x, y):
        assert is_initiator(x, y) != is_initiator(y, x)

    def test_same_id_never_initiates(self):
        assert is_initiator("dev-a", "dev-a") is False


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------

class TestNegotiation:
    @pytest.mark.asyncio
    async def test_offer_answer_exchange(self):
        pair = Pair()

        await pair.negotiate()

        assert pair.bus.types_sent() == [
            ("dev-a", "dev-b", SignalType.OFFER),
            ("dev-b", "dev-a", SignalType.ANSWER),
        ]
        link_a, link_b = pair.links_a.links[0], pair.links_b.links[0]
        assert [c.label for c in link_a.created_channels] == ["files"]
        assert link_b.created_channels == []
        assert link_b.remote["type"] == "offer"
        assert link_a.remote["type"] == "answer"
        assert pair.a.get_session("dev-b").initiator is True
        assert pair.b.get_session("dev-a").initiator is False

    @pytest.mark.asyncio
    async def test_responder_waits_for_offer(self):
        pair = Pair()

        await pair.b.sync_peers([Device(device_id="dev-a")])
        await pair.settle()

        assert pair.b.get_session("dev-a") is None
        assert pair.bus.sent == []

    @pytest.mark.asyncio
    async def test_repeated_sync_keeps_single_session(self):
        pair = Pair()
        await pair.negotiate()

        await pair.a.sync_peers([Device(device_id="dev-b")])
        await pair.settle()

        assert len(pair.links_a.links) == 1
        assert len(pair.bus.sent) == 2

    @pytest.mark.asyncio
    async def test_duplicate_answer_applied_once(self):
        pair = Pair()
        await pair.negotiate()

        await pair.a.handle_signal(SignalFrame(
            from_="dev-b", to="dev-a", signal_type=SignalType.ANSWER,
            payload={"type": "answer", "sdp": "v=0 late"},
        ))
        await pair.settle()

        assert pair.links_a.links[0].remote_sets == 1

    @pytest.mark.asyncio
    async def test_candidates_forwarded_both_ways(self):
        pair = Pair()
        await pair.negotiate()
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.2 5000 typ host",
                     "sdpMid": "0", "sdpMLineIndex": 0}

        pair.links_a.links[0].on_ice_candidate(candidate)
        await pair.settle()

        assert pair.bus.sent[-1] == ("dev-a", "dev-b", SignalType.ICE_CANDIDATE, candidate)
        assert pair.links_b.links[0].candidates == [candidate]

    @pytest.mark.asyncio
    async def test_candidate_errors_swallowed(self):
        pair = Pair()
        await pair.negotiate()
        pair.links_b.links[0].fail_candidates = True

        await pair.b.handle_signal(SignalFrame(
            from_="dev-a", to="dev-b", signal_type=SignalType.ICE_CANDIDATE,
            payload={"candidate": "bogus"},
        ))
        await pair.settle()

        assert pair.b.get_session("dev-a").phase == PeerPhase.CONNECTING

    @pytest.mark.asyncio
    async def test_signal_from_self_ignored(self):
        pair = Pair()

        await pair.a.handle_signal(SignalFrame(
            from_="dev-a", to="dev-a", signal_type=SignalType.OFFER, payload={},
        ))
        await pair.settle()

        assert pair.a.get_session("dev-a") is None

    @pytest.mark.asyncio
    async def test_offer_failure_marks_failed(self):
        class BrokenLink(FakeLink):
            async def create_offer(self):
                raise RuntimeError("no codecs")

        events = EventRecorder()
        node = PeerSessionOrchestrator("dev-a", SignalBus().sender("dev-a"), link_factory=BrokenLink)
        node.on_event(events)

        await node.sync_peers([Device(device_id="dev-b")])
        await node.settle()

        assert node.get_session("dev-b").phase == PeerPhase.FAILED
        assert ("peer_state", "dev-b", PeerPhase.FAILED) in events.events
        await node.close()

    @pytest.mark.asyncio
    async def test_link_failure_only_changes_phase(self):
        pair = Pair()
        await pair.negotiate()

        pair.links_a.links[0].set_connection_state("failed")
        await pair.settle()

        assert pair.a.peer_phases() == {"dev-b": PeerPhase.FAILED}
        assert pair.events_a.of_type("peer_removed") == []


# ---------------------------------------------------------------------------
# Data channel
# ---------------------------------------------------------------------------

class TestChannel:
    @pytest.mark.asyncio
    async def test_both_sides_see_channel_open(self):
        pair = Pair()
        await pair.negotiate()

        await pair.open_channels()

        assert [e[1] for e in pair.events_a.of_type("channel_open")] == ["dev-b"]
        assert [e[1] for e in pair.events_b.of_type("channel_open")] == ["dev-a"]
        assert pair.a.peer_phases() == {"dev-b": PeerPhase.CONNECTED}
        assert pair.b.peer_phases() == {"dev-a": PeerPhase.CONNECTED}

    @pytest.mark.asyncio
    async def test_messages_arrive_in_order(self):
        pair = Pair()
        await pair.negotiate()
        await pair.open_channels()
        channel = pair.a.channel_for("dev-b")

        channel.send_bytes(b"one")
        channel.send_bytes(b"two")
        channel.send_bytes(b"three")
        await pair.flush()

        assert [e[2] for e in pair.events_b.of_type("channel_message")] == [b"one", b"two", b"three"]

    @pytest.mark.asyncio
    async def test_responder_ignores_unexpected_label(self):
        pair = Pair()
        await pair.negotiate()

        pair.links_b.links[0].on_data_channel(FakeRawChannel("chat"))

        assert pair.b.channel_for("dev-a") is None

    @pytest.mark.asyncio
    async def test_remote_close_reported(self):
        pair = Pair()
        await pair.negotiate()
        await pair.open_channels()
        raw_b = pair.links_a.links[0].created_channels[0].peer

        raw_b.close()
        await pair.flush()

        assert [e[1] for e in pair.events_a.of_type("channel_closed")] == ["dev-b"]
        assert pair.a.peer_phases() == {"dev-b": PeerPhase.CLOSED}
        assert pair.a.channel_for("dev-b") is None


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class TestTeardown:
    @pytest.mark.asyncio
    async def test_peer_leaving_room_tears_down_session(self):
        pair = Pair()
        await pair.negotiate()
        await pair.open_channels()
        link_a = pair.links_a.links[0]

        await pair.a.sync_peers([])
        await pair.flush()

        assert pair.a.get_session("dev-b") is None
        assert link_a.closed
        assert link_a.created_channels[0].readyState == "closed"
        assert pair.events_a.of_type("peer_removed") == [("peer_removed", "dev-b", None)]
        # Tearing down locally never reports a channel close for the removed peer
        assert pair.events_a.of_type("channel_closed") == []
        # The remote side only sees its channel close
        assert [e[1] for e in pair.events_b.of_type("channel_closed")] == ["dev-a"]

    @pytest.mark.asyncio
    async def test_late_signal_after_teardown_creates_fresh_session(self):
        pair = Pair()
        await pair.negotiate()
        await pair.b.sync_peers([])

        await pair.b.handle_signal(SignalFrame(
            from_="dev-a", to="dev-b", signal_type=SignalType.OFFER,
            payload={"type": "offer", "sdp": "v=0 again"},
        ))
        await pair.settle()

        assert len(pair.links_b.links) == 2
        assert pair.links_b.links[1].remote["sdp"] == "v=0 again"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal_type, payload", [
        (SignalType.ANSWER, {"type": "answer", "sdp": "v=0 stale"}),
        (SignalType.ICE_CANDIDATE, {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}),
    ])
    async def test_stray_signal_does_not_block_rejoin(self, signal_type, payload):
        pair = Pair()

        await pair.a.handle_signal(SignalFrame(
            from_="dev-b", to="dev-a", signal_type=signal_type, payload=payload,
        ))
        await pair.settle()

        assert pair.a.get_session("dev-b") is None
        assert pair.links_a.links == []

        await pair.negotiate()

        session = pair.a.get_session("dev-b")
        assert session.initiator
        assert [t for _, _, t in pair.bus.types_sent()][0] == SignalType.OFFER

    @pytest.mark.asyncio
    async def test_close_tears_down_everything(self):
        pair = Pair()
        await pair.negotiate()

        await pair.a.close()

        assert pair.a.peer_phases() == {}
        assert pair.links_a.links[0].closed
