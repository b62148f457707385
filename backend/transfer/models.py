"""Models for file transfer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from signaling.protocol import WireModel


class TransferStatus(str, Enum):
    """All possible states for a file transfer."""
    QUEUED = "queued"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED})


class TransferDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class Transfer(WireModel):
    """Full state of a single file transfer, exposed to the UI."""
    id: str
    direction: TransferDirection
    peer_id: str
    name: str
    size: int
    status: TransferStatus = TransferStatus.QUEUED
    progress: float = 0.0
    speed_bps: float = 0.0
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class PendingSend:
    """A send waiting for its peer's channel to open."""
    source: Any
    transfer_id: str
    retry_count: int = 0


@dataclass
class IncomingAssembly:
    """Chunks received so far for one announced transfer."""
    peer_id: str
    name: str
    size: int
    mime_type: str
    started_at: float
    received_bytes: int = 0
    chunks: list[bytes] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.received_bytes >= self.size


# --- Data channel control frames ---
# Binary frames between file-meta and file-complete are the file's chunks.

class FileMeta(WireModel):
    type: Literal["file-meta"] = "file-meta"
    id: str = Field(min_length=1)
    name: str
    size: int = Field(ge=0)
    mime_type: str = ""
    from_: str = Field(alias="from", default="")


class FileComplete(WireModel):
    type: Literal["file-complete"] = "file-complete"
    id: str = Field(min_length=1)


_CHANNEL_FRAME = TypeAdapter(
    Annotated[Union[FileMeta, FileComplete], Field(discriminator="type")]
)


def parse_channel_frame(raw: str) -> FileMeta | FileComplete | None:
    """Parse a control frame. Returns None for malformed or unknown frames."""
    try:
        return _CHANNEL_FRAME.validate_json(raw)
    except ValidationError:
        return None
