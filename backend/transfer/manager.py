"""
Transfer Manager — sends and receives files over peer data channels.

Outbound files are announced with a ``file-meta`` frame, streamed as 128 KB
binary chunks with buffer-level backpressure and closed with
``file-complete``. Sends requested while the peer's channel is not open are
queued and retried whenever channel availability changes. Inbound chunks are
reassembled per transfer id and handed to the delivery collaborator.
"""

import asyncio
import logging
import time
import uuid

from config import (
    BUFFER_HIGH_WATER_MARK,
    BUFFER_POLL_INTERVAL,
    CHUNK_SIZE,
    MAX_SEND_RETRIES,
)
from session.channel import PeerChannel
from transfer.models import (
    FileComplete,
    FileMeta,
    IncomingAssembly,
    PendingSend,
    Transfer,
    TransferDirection,
    TransferStatus,
    parse_channel_frame,
)
from transfer.service import FileSource, throughput, wait_for_drain

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages all queued, active and finished file transfers."""

    def __init__(
        self,
        device_id: str,
        delivery,
        chunk_size: int = CHUNK_SIZE,
        high_water_mark: int = BUFFER_HIGH_WATER_MARK,
        poll_interval: float = BUFFER_POLL_INTERVAL,
        max_retries: int = MAX_SEND_RETRIES,
    ) -> None:
        self.device_id = device_id
        self.delivery = delivery  # async fn(name, mime_type, data)
        self._chunk_size = chunk_size
        self._high_water_mark = high_water_mark
        self._poll_interval = poll_interval
        self._max_retries = max_retries

        self._transfers: dict[str, Transfer] = {}
        self._channels: dict[str, PeerChannel] = {}
        self._pending: dict[str, list[PendingSend]] = {}
        self._incoming: dict[str, IncomingAssembly] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()  # guards _pending
        self._event_callbacks: list = []  # async fn(event_type, data)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get_transfers(self) -> list[Transfer]:
        """Return all transfers."""
        return list(self._transfers.values())

    def get_transfer(self, transfer_id: str) -> Transfer | None:
        return self._transfers.get(transfer_id)

    def pending_for(self, peer_id: str) -> list[PendingSend]:
        return list(self._pending.get(peer_id, []))

    async def stop(self) -> None:
        """Cancel all in-flight sends."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Transfer manager stopped")

    async def wait_sends(self) -> None:
        """Wait until every dispatched send has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # --- channel events (from the session orchestrator) ---

    async def handle_channel_event(self, event_type: str, peer_id: str, data) -> None:
        if event_type == "channel_open":
            self._channels[peer_id] = data
            await self.reconcile_pending(peer_id)
        elif event_type == "channel_message":
            await self.handle_message(peer_id, data)
        elif event_type == "channel_closed":
            if self._channels.get(peer_id) is data:
                self._channels.pop(peer_id, None)
            await self._abandon_incoming(peer_id, "Channel closed")
            await self.reconcile_pending(peer_id)
        elif event_type == "peer_removed":
            await self.drop_peer(peer_id)

    # --- send path ---

    async def send_files(self, peer_id: str, file_paths: list[str]) -> list[Transfer]:
        """Send several files from disk to a peer."""
        transfers = []
        for path in file_paths:
            try:
                source = FileSource(path)
            except OSError as e:
                logger.warning(f"Skipping unreadable file {path}: {e}")
                continue
            transfers.append(await self.send_file(peer_id, source))
        return transfers

    async def send_file(self, peer_id: str, source) -> Transfer:
        """Start sending ``source`` to ``peer_id``, or queue it until the channel opens."""
        transfer = Transfer(
            id=str(uuid.uuid4()),
            direction=TransferDirection.SEND,
            peer_id=peer_id,
            name=source.name,
            size=source.size,
            status=TransferStatus.QUEUED,
        )
        self._transfers[transfer.id] = transfer

        async with self._lock:
            channel = self._open_channel(peer_id)
            if channel is None:
                self._pending.setdefault(peer_id, []).append(
                    PendingSend(source=source, transfer_id=transfer.id)
                )
                logger.info(f"Queued {transfer.name} for {peer_id} until its channel opens")
            else:
                self._dispatch(channel, source, transfer)

        await self._emit("transfer_state", transfer.model_dump(by_alias=True))
        return transfer

    async def reconcile_pending(self, peer_id: str | None = None) -> None:
        """Retry queued sends whose peer channel is now open.

        A pass triggered by one peer's channel change only looks at that
        peer's queue; without ``peer_id`` every queue is retried. Each pass
        counts as one attempt for the sends it looks at. A send still without
        an open channel after ``max_retries`` attempts fails for good.
        """
        exhausted: list[Transfer] = []
        async with self._lock:
            targets = [peer_id] if peer_id is not None else list(self._pending)
            for target in targets:
                if target not in self._pending:
                    continue
                channel = self._open_channel(target)
                remaining = []
                for pending in self._pending[target]:
                    transfer = self._transfers.get(pending.transfer_id)
                    if transfer is None or transfer.is_terminal:
                        continue
                    pending.retry_count += 1
                    if channel is not None:
                        logger.info(
                            f"Dispatching queued {transfer.name} to {target} "
                            f"(attempt {pending.retry_count})"
                        )
                        self._dispatch(channel, pending.source, transfer)
                    elif pending.retry_count >= self._max_retries:
                        exhausted.append(transfer)
                    else:
                        remaining.append(pending)
                if remaining:
                    self._pending[target] = remaining
                else:
                    del self._pending[target]

        for transfer in exhausted:
            await self._fail(transfer, f"Peer channel not ready after {self._max_retries} attempts")

    def _open_channel(self, peer_id: str) -> PeerChannel | None:
        channel = self._channels.get(peer_id)
        if channel is not None and channel.is_open:
            return channel
        return None

    def _dispatch(self, channel: PeerChannel, source, transfer: Transfer) -> None:
        task = asyncio.create_task(self._stream(channel, source, transfer))
        self._tasks[transfer.id] = task
        task.add_done_callback(lambda _t, tid=transfer.id: self._tasks.pop(tid, None))

    async def _stream(self, channel: PeerChannel, source, transfer: Transfer) -> None:
        """Stream one file. Sends to the same peer run one at a time."""
        lock = self._send_locks.setdefault(transfer.peer_id, asyncio.Lock())
        try:
            async with lock:
                await self._stream_locked(channel, source, transfer)
        except asyncio.CancelledError:
            await self._fail(transfer, "Transfer cancelled")
            raise

    async def _stream_locked(self, channel: PeerChannel, source, transfer: Transfer) -> None:
        if transfer.is_terminal:
            return
        if not channel.is_open:
            await self._fail(transfer, "Channel closed before sending")
            return

        try:
            f = source.open()
        except OSError as e:
            await self._fail(transfer, f"Cannot read {transfer.name}: {e}")
            return

        transfer.status = TransferStatus.IN_PROGRESS
        transfer.progress = 0.0
        transfer.speed_bps = 0.0
        await self._emit("transfer_state", transfer.model_dump(by_alias=True))

        started_at = time.monotonic()
        sent = 0
        try:
            with f:
                channel.send_frame(FileMeta(
                    id=transfer.id,
                    name=transfer.name,
                    size=transfer.size,
                    mime_type=source.mime_type,
                    from_=self.device_id,
                ))
                while True:
                    chunk = await asyncio.to_thread(f.read, self._chunk_size)
                    if not chunk:
                        break

                    await wait_for_drain(channel, self._high_water_mark, self._poll_interval)
                    channel.send_bytes(chunk)

                    sent += len(chunk)
                    transfer.progress = sent / transfer.size if transfer.size else 0.0
                    transfer.speed_bps = throughput(sent, started_at)
                    await self._emit("transfer_progress", transfer.model_dump(by_alias=True))

                channel.send_frame(FileComplete(id=transfer.id))
        except Exception as e:
            logger.error(f"Send error for {transfer.name}: {e}")
            await self._fail(transfer, str(e))
            return

        await self._complete(transfer)

    # --- receive path ---

    async def handle_message(self, peer_id: str, data: str | bytes) -> None:
        """Process one frame received on ``peer_id``'s channel."""
        if isinstance(data, str):
            frame = parse_channel_frame(data)
            if isinstance(frame, FileMeta):
                await self._start_incoming(peer_id, frame)
            elif isinstance(frame, FileComplete):
                await self._finish_incoming(peer_id, frame)
            else:
                logger.debug(f"Ignoring malformed control frame from {peer_id}")
            return
        await self._append_chunk(peer_id, bytes(data))

    async def _start_incoming(self, peer_id: str, meta: FileMeta) -> None:
        if meta.id in self._transfers:
            logger.warning(f"Ignoring duplicate announcement of transfer {meta.id} from {peer_id}")
            return

        self._incoming[meta.id] = IncomingAssembly(
            peer_id=peer_id,
            name=meta.name,
            size=meta.size,
            mime_type=meta.mime_type,
            started_at=time.monotonic(),
        )
        transfer = Transfer(
            id=meta.id,
            direction=TransferDirection.RECEIVE,
            peer_id=peer_id,
            name=meta.name,
            size=meta.size,
            status=TransferStatus.IN_PROGRESS,
        )
        self._transfers[transfer.id] = transfer
        logger.info(f"Receiving {meta.name} ({meta.size} bytes) from {peer_id}")
        await self._emit("transfer_state", transfer.model_dump(by_alias=True))

    async def _append_chunk(self, peer_id: str, data: bytes) -> None:
        # Chunks belong to the oldest announced transfer from this peer still short of its size
        for transfer_id, assembly in self._incoming.items():
            if assembly.peer_id == peer_id and not assembly.is_complete:
                break
        else:
            logger.debug(f"Dropping unattributable chunk ({len(data)} bytes) from {peer_id}")
            return

        assembly.chunks.append(data)
        assembly.received_bytes += len(data)

        transfer = self._transfers[transfer_id]
        transfer.progress = assembly.received_bytes / assembly.size if assembly.size else 0.0
        transfer.speed_bps = throughput(assembly.received_bytes, assembly.started_at)
        await self._emit("transfer_progress", transfer.model_dump(by_alias=True))

    async def _finish_incoming(self, peer_id: str, frame: FileComplete) -> None:
        assembly = self._incoming.get(frame.id)
        if assembly is None or assembly.peer_id != peer_id:
            return
        del self._incoming[frame.id]
        transfer = self._transfers[frame.id]

        if assembly.received_bytes != assembly.size:
            await self._fail(
                transfer, f"Received {assembly.received_bytes} of {assembly.size} bytes"
            )
            return

        data = b"".join(assembly.chunks)
        try:
            await self.delivery(assembly.name, assembly.mime_type, data)
        except Exception as e:
            logger.error(f"Delivery of {assembly.name} failed: {e}")
            await self._fail(transfer, f"Delivery failed: {e}")
            return

        await self._complete(transfer)

    async def _abandon_incoming(self, peer_id: str, reason: str) -> None:
        for transfer_id, assembly in list(self._incoming.items()):
            if assembly.peer_id == peer_id:
                del self._incoming[transfer_id]
                await self._fail(self._transfers[transfer_id], reason)

    # --- peer teardown ---

    async def drop_peer(self, peer_id: str) -> None:
        """Release every queue, stream and assembly belonging to ``peer_id``."""
        self._channels.pop(peer_id, None)

        async with self._lock:
            pending = self._pending.pop(peer_id, [])
        for entry in pending:
            transfer = self._transfers.get(entry.transfer_id)
            if transfer:
                await self._fail(transfer, "Peer left")

        tasks = [
            task for transfer_id, task in self._tasks.items()
            if self._transfers[transfer_id].peer_id == peer_id
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for transfer in list(self._transfers.values()):
            if transfer.peer_id == peer_id and transfer.direction == TransferDirection.SEND:
                await self._fail(transfer, "Peer left")

        await self._abandon_incoming(peer_id, "Peer left")
        self._send_locks.pop(peer_id, None)

    # --- status changes ---

    async def _complete(self, transfer: Transfer) -> None:
        if transfer.is_terminal:
            return
        transfer.status = TransferStatus.COMPLETED
        transfer.progress = 1.0
        await self._emit("transfer_state", transfer.model_dump(by_alias=True))

        direction = "sent" if transfer.direction == TransferDirection.SEND else "received"
        await self._emit("notification", {
            "type": "success",
            "message": f"'{transfer.name}' {direction} successfully!",
        })

    async def _fail(self, transfer: Transfer, message: str) -> None:
        if transfer.is_terminal:
            return
        transfer.status = TransferStatus.FAILED
        transfer.error_message = message
        await self._emit("transfer_state", transfer.model_dump(by_alias=True))
        await self._emit("notification", {
            "type": "error",
            "message": f"Transfer of '{transfer.name}' failed: {message}",
        })
