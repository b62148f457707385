"""
Direct peer links backed by aiortc.

``AiortcPeerLink`` is the narrow surface the session layer drives:

    create_data_channel(label) -> raw channel
    create_offer() / create_answer() -> {"type", "sdp"}
    set_local_description(desc) / set_remote_description(desc)
    add_ice_candidate(candidate)
    local_description, has_remote_description, connection_state
    close()

and three plain callbacks: ``on_ice_candidate(candidate_dict)``,
``on_data_channel(raw_channel)`` and ``on_connection_state(state)``.

aiortc gathers all candidates before ``setLocalDescription`` returns, so its
local description already carries them and ``on_ice_candidate`` never fires;
remote candidates trickled by browsers are still accepted.
"""

import logging

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from config import ICE_SERVERS

logger = logging.getLogger(__name__)


def _description_dict(desc: RTCSessionDescription | None) -> dict | None:
    if desc is None:
        return None
    return {"type": desc.type, "sdp": desc.sdp}


class AiortcPeerLink:
    """One RTCPeerConnection to one remote device."""

    def __init__(self, ice_servers: list[str] = ICE_SERVERS) -> None:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=config)

        self.on_ice_candidate = None
        self.on_data_channel = None
        self.on_connection_state = None

        self._pc.on("datachannel", self._handle_datachannel)
        self._pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def local_description(self) -> dict | None:
        return _description_dict(self._pc.localDescription)

    def create_data_channel(self, label: str):
        return self._pc.createDataChannel(label)

    async def create_offer(self) -> dict:
        return _description_dict(await self._pc.createOffer())

    async def create_answer(self) -> dict:
        return _description_dict(await self._pc.createAnswer())

    async def set_local_description(self, desc: dict) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=desc["sdp"], type=desc["type"])
        )

    async def set_remote_description(self, desc: dict) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=desc["sdp"], type=desc["type"])
        )

    async def add_ice_candidate(self, payload: dict | None) -> None:
        if not payload or not payload.get("candidate"):
            # End-of-candidates marker
            return
        sdp = payload["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        candidate = candidate_from_sdp(sdp)
        candidate.sdpMid = payload.get("sdpMid")
        candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
        await self._pc.addIceCandidate(candidate)

    async def close(self) -> None:
        await self._pc.close()

    def _handle_datachannel(self, channel) -> None:
        if self.on_data_channel:
            self.on_data_channel(channel)

    def _handle_connection_state(self) -> None:
        logger.debug(f"Peer connection state: {self._pc.connectionState}")
        if self.on_connection_state:
            self.on_connection_state(self._pc.connectionState)
