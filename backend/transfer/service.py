"""
Chunk streaming helpers for the data-channel transfer protocol.

Sources hand out file objects to read chunks from, the drain wait implements
the sender's backpressure, and the delivery collaborator stores completed
incoming files.
"""

import asyncio
import io
import logging
import mimetypes
import os
import time
from pathlib import Path

from config import BUFFER_HIGH_WATER_MARK, BUFFER_POLL_INTERVAL
from session.channel import ChannelClosedError, PeerChannel

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileSource:
    """A file on disk to be sent."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.mime_type = mimetypes.guess_type(self.name)[0] or DEFAULT_MIME_TYPE

    def open(self):
        return open(self.path, "rb")


class BytesSource:
    """In-memory content to be sent."""

    def __init__(self, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> None:
        self.name = name
        self.size = len(data)
        self.mime_type = mime_type
        self._data = data

    def open(self):
        return io.BytesIO(self._data)


def throughput(byte_count: int, started_at: float, now: float | None = None) -> float:
    """Average bytes/sec since ``started_at`` (monotonic seconds)."""
    now = time.monotonic() if now is None else now
    elapsed = now - started_at
    if elapsed <= 0:
        elapsed = 1.0
    return byte_count / elapsed


async def wait_for_drain(
    channel: PeerChannel,
    high_water_mark: int = BUFFER_HIGH_WATER_MARK,
    poll_interval: float = BUFFER_POLL_INTERVAL,
) -> None:
    """Block while the channel's outbound buffer is above ``high_water_mark``."""
    while channel.buffered_amount > high_water_mark:
        if not channel.is_open:
            raise ChannelClosedError(f"Channel to {channel.peer_id} closed while draining")
        await asyncio.sleep(poll_interval)


def _unique_path(directory: Path, name: str) -> Path:
    candidate = directory / name
    stem, suffix = candidate.stem, candidate.suffix
    n = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


class SaveDirectoryDelivery:
    """Writes completed incoming files into a directory."""

    def __init__(self, save_dir: str | os.PathLike) -> None:
        self._save_dir = Path(save_dir)

    @property
    def save_dir(self) -> Path:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str | os.PathLike) -> None:
        self._save_dir = Path(path)

    async def __call__(self, name: str, mime_type: str, data: bytes) -> Path:
        safe_name = os.path.basename(name.replace("\\", "/")) or "file"
        self.save_dir.mkdir(parents=True, exist_ok=True)
        path = _unique_path(self.save_dir, safe_name)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info(f"Saved {safe_name} ({len(data)} bytes, {mime_type or DEFAULT_MIME_TYPE}) to {path}")
        return path
