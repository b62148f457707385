"""
Signaling wire protocol.

JSON text frames exchanged between peer nodes and the relay. Every frame
carries a ``type`` tag; the two directions are closed unions:

    client -> relay:  join | signal
    relay -> client:  peers-sync | peer-joined | peer-left | signal | signal-error

Keys are camelCase on the wire and snake_case in Python.
"""

import logging
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    """Base for every frame: camelCase aliases, construction by field name."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignalType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class Device(WireModel):
    """A device present in a room."""
    device_id: str = Field(min_length=1)
    device_name: str = ""
    color: str = ""


# --- client -> relay ---

class JoinFrame(WireModel):
    type: Literal["join"] = "join"
    room_id: str = Field(min_length=1)
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    color: Optional[str] = None


class SignalFrame(WireModel):
    """Connection-setup message addressed to one device. Also relayed back out.

    Unknown keys are kept so the relay can pass the frame on untouched.
    """
    model_config = ConfigDict(extra="allow")

    type: Literal["signal"] = "signal"
    room_id: Optional[str] = None
    from_: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    signal_type: SignalType
    payload: Any = None


# --- relay -> client ---

class PeersSync(WireModel):
    type: Literal["peers-sync"] = "peers-sync"
    room_id: str
    peers: list[Device] = []


class PeerJoined(WireModel):
    type: Literal["peer-joined"] = "peer-joined"
    room_id: str
    peer: Device


class PeerLeft(WireModel):
    type: Literal["peer-left"] = "peer-left"
    room_id: str
    device_id: str


class SignalError(WireModel):
    type: Literal["signal-error"] = "signal-error"
    reason: Literal["TARGET_NOT_FOUND"] = "TARGET_NOT_FOUND"
    to: str
    signal_type: Optional[str] = None


ClientFrame = Annotated[Union[JoinFrame, SignalFrame], Field(discriminator="type")]
ServerFrame = Annotated[
    Union[PeersSync, PeerJoined, PeerLeft, SignalFrame, SignalError],
    Field(discriminator="type"),
]

_CLIENT_FRAME = TypeAdapter(ClientFrame)
_SERVER_FRAME = TypeAdapter(ServerFrame)


def parse_client_frame(raw: str | bytes) -> JoinFrame | SignalFrame | None:
    """Parse a frame sent to the relay. Returns None for anything malformed."""
    try:
        return _CLIENT_FRAME.validate_json(raw)
    except ValidationError as e:
        logger.debug(f"Dropping malformed client frame: {e.error_count()} error(s)")
        return None


def parse_server_frame(raw: str | bytes):
    """Parse a frame sent by the relay. Returns None for anything unrecognised."""
    try:
        return _SERVER_FRAME.validate_json(raw)
    except ValidationError as e:
        logger.debug(f"Ignoring unrecognised server frame: {e.error_count()} error(s)")
        return None


def encode_frame(frame: WireModel, exclude_unset: bool = False) -> str:
    """Serialize a frame to its JSON wire form.

    With ``exclude_unset`` only the keys the frame was built or parsed with
    are written.
    """
    return frame.model_dump_json(by_alias=True, exclude_unset=exclude_unset)
