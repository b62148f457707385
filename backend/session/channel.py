"""
Data channel wrapper.

Built exactly once per peer around the raw transport channel. The raw
channel's handlers are installed in the constructor; open, message and close
notifications are queued and delivered to the listener by a single pump task,
so the listener observes them strictly in arrival order even when it awaits.
"""

import asyncio
import logging

from signaling.protocol import WireModel, encode_frame

logger = logging.getLogger(__name__)

OPEN = "open"
MESSAGE = "message"
CLOSE = "close"


class ChannelClosedError(Exception):
    """The data channel is not open."""


class PeerChannel:
    """Owns one raw data channel to ``peer_id``.

    ``listener`` is ``async fn(kind, channel, data)`` with kind one of
    ``open``, ``message`` (data is ``str`` or ``bytes``) and ``close``.
    """

    def __init__(self, peer_id: str, raw, listener) -> None:
        self.peer_id = peer_id
        self._raw = raw
        self._listener = listener
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False

        raw.on("open", self._handle_open)
        raw.on("message", self._handle_message)
        raw.on("close", self._handle_close)

        if raw.readyState == "open":
            self._inbox.put_nowait((OPEN, None))

        self._pump = asyncio.create_task(self._run())

    @property
    def label(self) -> str:
        return self._raw.label

    @property
    def is_open(self) -> bool:
        return not self._closed and self._raw.readyState == "open"

    @property
    def buffered_amount(self) -> int:
        return self._raw.bufferedAmount

    def send_frame(self, frame: WireModel) -> None:
        self._send(encode_frame(frame))

    def send_bytes(self, data: bytes) -> None:
        self._send(data)

    def _send(self, data: str | bytes) -> None:
        if not self.is_open:
            raise ChannelClosedError(f"Channel to {self.peer_id} is not open")
        self._raw.send(data)

    async def flush(self) -> None:
        """Wait until every queued notification has been handled."""
        if not self._pump.done():
            await self._inbox.join()

    async def close(self) -> None:
        """Close the raw channel and stop delivering notifications."""
        self._closed = True
        try:
            self._raw.close()
        except Exception as e:
            logger.debug(f"Error closing channel to {self.peer_id}: {e}")
        if not self._pump.done():
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass

    def _handle_open(self) -> None:
        if not self._closed:
            self._inbox.put_nowait((OPEN, None))

    def _handle_message(self, data) -> None:
        if not self._closed:
            self._inbox.put_nowait((MESSAGE, data))

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait((CLOSE, None))

    async def _run(self) -> None:
        while True:
            kind, data = await self._inbox.get()
            try:
                await self._listener(kind, self, data)
            except Exception as e:
                logger.error(f"Channel listener error for {self.peer_id} ({kind}): {e}")
            finally:
                self._inbox.task_done()
            if kind == CLOSE:
                return
