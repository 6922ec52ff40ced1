"""Chunked, encrypted file and text transfer over a data channel or the relay.

Wire protocol (same records on both carriers):

* ``file-start`` / ``file-end`` / ``text`` are JSON control records, never
  encrypted (metadata only).
* On a direct channel each chunk is a binary frame ``nonce || ciphertext``.
* On the relay each chunk is a ``chunk`` record whose ``data`` is the base64 of
  that same frame.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Union

from aiortc.exceptions import InvalidStateError

from .config import Settings
from .connection import ConnectionManager
from .crypto import SecureChannel
from .errors import AuthenticationFailed, ConnectFailed, NoSharedKey
from .models import (
    ChunkRecord,
    ControlRecord,
    FileEnd,
    FileStart,
    SignalMessage,
    SignalType,
    TextRecord,
    WireModel,
    parse_record,
)
from .signaling import Signaling

logger = logging.getLogger(__name__)


@dataclass
class Progress:
    peer_id: str
    file_id: str
    name: str
    total: int
    sent: int
    percent: float
    speed: float  # bytes per second since the transfer started


@dataclass
class Transfer:
    file_id: str
    name: str
    size: int
    started_at: float = field(default_factory=time.monotonic)
    transferred: int = 0

    def progress(self, peer_id: str) -> Progress:
        elapsed = time.monotonic() - self.started_at
        percent = 100.0 if self.size == 0 else min(self.transferred / self.size * 100, 100.0)
        return Progress(
            peer_id=peer_id,
            file_id=self.file_id,
            name=self.name,
            total=self.size,
            sent=self.transferred,
            percent=percent,
            speed=self.transferred / elapsed if elapsed > 0 else 0.0,
        )


@dataclass
class OutboundTransfer(Transfer):
    chunk_size: int = 0


@dataclass
class InboundTransfer(Transfer):
    total_chunks: int = 0
    chunks: List[bytes] = field(default_factory=list)


def _stream_size(stream: BinaryIO) -> int:
    position = stream.tell()
    stream.seek(0, 2)
    size = stream.tell() - position
    stream.seek(position)
    return size


class TransferEngine:
    def __init__(
        self,
        connections: ConnectionManager,
        secure: SecureChannel,
        signaling: Signaling,
        settings: Optional[Settings] = None,
    ) -> None:
        self.connections = connections
        self.secure = secure
        self.signaling = signaling
        self.settings = settings or Settings()
        self.outgoing: Dict[str, OutboundTransfer] = {}
        self.incoming: Dict[str, InboundTransfer] = {}
        # one outbound file per peer at a time; direct binary frames carry no file id
        self._send_locks: Dict[str, asyncio.Lock] = {}

        self.on_file_offered: Optional[Callable[[str, FileStart], None]] = None
        self.on_file_received: Optional[Callable[[str, str, bytes], None]] = None
        self.on_progress: Optional[Callable[[Progress], None]] = None
        self.on_text_received: Optional[Callable[[str, str], None]] = None
        self.on_transfer_failed: Optional[Callable[[str, str, str, str], None]] = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _resolve_channel(self, peer_id: str) -> Any:
        """Open direct channel for the peer, or None when the relay must be used."""
        if self.connections.is_relay(peer_id):
            logger.info(f"Using relay mode for {peer_id}")
            return None
        try:
            return await self.connections.ensure_ready(peer_id)
        except ConnectFailed as e:
            logger.warning(f"Connection failed, falling back to relay mode: {e}")
            self.connections.enable_relay(peer_id)
            return None

    async def _emit(self, peer_id: str, channel: Any, record: WireModel) -> None:
        if channel is None:
            await self.signaling.send(
                SignalMessage(type=SignalType.RELAY_DATA.value, to=peer_id, data=record.to_wire())
            )
        else:
            self._channel_send(peer_id, channel, json.dumps(record.to_wire()))

    def _channel_send(self, peer_id: str, channel: Any, frame: Union[str, bytes]) -> None:
        try:
            channel.send(frame)
        except (InvalidStateError, ConnectionError) as e:
            logger.error(f"Send to {peer_id} failed on direct channel: {e}")
            self.connections.enable_relay(peer_id)
            raise ConnectFailed(f"Direct channel to {peer_id} failed during send") from e

    async def _wait_for_drain(self, channel: Any) -> None:
        while (
            channel.bufferedAmount > self.settings.buffer_threshold
            and channel.readyState == "open"
        ):
            await asyncio.sleep(self.settings.drain_poll_interval)

    async def send_file(
        self, peer_id: str, source: Union[str, Path, BinaryIO], name: Optional[str] = None
    ) -> str:
        """Send a file path or binary stream; returns the transfer id."""
        if isinstance(source, (str, Path)):
            path = Path(source)
            with path.open("rb") as f:
                return await self._send_stream(peer_id, f, name or path.name, path.stat().st_size)
        stream_name = name or Path(getattr(source, "name", "file") or "file").name
        return await self._send_stream(peer_id, source, stream_name, _stream_size(source))

    async def _send_stream(self, peer_id: str, stream: BinaryIO, name: str, size: int) -> str:
        lock = self._send_locks.setdefault(peer_id, asyncio.Lock())
        async with lock:
            return await self._send_locked(peer_id, stream, name, size)

    async def _send_locked(self, peer_id: str, stream: BinaryIO, name: str, size: int) -> str:
        channel = await self._resolve_channel(peer_id)
        if not self.secure.has_key(peer_id):
            raise NoSharedKey(peer_id)
        chunk_size = self.settings.chunk_size
        transfer = OutboundTransfer(
            file_id=str(uuid.uuid4()), name=name, size=size, chunk_size=chunk_size
        )
        self.outgoing[transfer.file_id] = transfer
        carrier = "relay" if channel is None else "direct channel"
        logger.info(f"Sending {name} ({size} bytes) to {peer_id} via {carrier}")

        digest = hashlib.sha256()
        try:
            await self._emit(
                peer_id,
                channel,
                FileStart(
                    file_id=transfer.file_id,
                    name=name,
                    size=size,
                    total_chunks=math.ceil(size / chunk_size),
                ),
            )
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                digest.update(chunk)
                framed = self.secure.encrypt_framed(peer_id, chunk)
                if channel is None:
                    await self._emit(
                        peer_id,
                        None,
                        ChunkRecord(
                            file_id=transfer.file_id,
                            data=base64.b64encode(framed).decode("ascii"),
                        ),
                    )
                    await asyncio.sleep(self.settings.relay_chunk_delay)
                else:
                    await self._wait_for_drain(channel)
                    self._channel_send(peer_id, channel, framed)
                transfer.transferred += len(chunk)
                if self.on_progress:
                    self.on_progress(transfer.progress(peer_id))

            await self._emit(
                peer_id, channel, FileEnd(file_id=transfer.file_id, sha256=digest.hexdigest())
            )
        finally:
            self.outgoing.pop(transfer.file_id, None)
        logger.info(f"Finished sending {name} to {peer_id}")
        return transfer.file_id

    async def send_text(self, peer_id: str, text: str) -> None:
        channel = await self._resolve_channel(peer_id)
        record = TextRecord(content=text)
        if channel is None:
            await self._emit(peer_id, None, record)
            return
        try:
            await self._emit(peer_id, channel, record)
        except ConnectFailed:
            logger.info(f"Resending text to {peer_id} via relay")
            await self._emit(peer_id, None, record)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_channel_message(self, peer_id: str, message: Union[str, bytes]) -> None:
        """Frame received on a direct data channel."""
        if isinstance(message, str):
            try:
                record = parse_record(message)
            except ValueError as e:
                logger.warning(f"Ignoring malformed control record from {peer_id}: {e}")
                return
            self._handle_record(peer_id, record)
            return

        transfer = self.incoming.get(peer_id)
        if transfer is None:
            logger.debug(f"Dropping chunk from {peer_id}: no transfer in progress")
            return
        self._accept_chunk(peer_id, transfer, bytes(message))

    def handle_relay_data(self, peer_id: str, data: Dict[str, Any]) -> None:
        """``relay-data`` payload received through the signaling carrier."""
        if not self.connections.is_relay(peer_id):
            logger.info(f"Received relay data from {peer_id}, switching to relay mode")
            self.connections.enable_relay(peer_id)
        try:
            record = parse_record(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed relay record from {peer_id}: {e}")
            return
        self._handle_record(peer_id, record)

    def _handle_record(self, peer_id: str, record: ControlRecord) -> None:
        if isinstance(record, FileStart):
            if peer_id in self.incoming:
                logger.warning(f"New transfer from {peer_id} replaces an unfinished one")
            self.incoming[peer_id] = InboundTransfer(
                file_id=record.file_id,
                name=record.name,
                size=record.size,
                total_chunks=record.total_chunks,
            )
            logger.info(f"{peer_id} offers {record.name} ({record.size} bytes)")
            if self.on_file_offered:
                self.on_file_offered(peer_id, record)

        elif isinstance(record, ChunkRecord):
            transfer = self._current(peer_id, record.file_id)
            if transfer is None:
                return
            try:
                framed = base64.b64decode(record.data, validate=True)
            except binascii.Error:
                self._fail(peer_id, transfer, "chunk is not valid base64")
                return
            self._accept_chunk(peer_id, transfer, framed)

        elif isinstance(record, FileEnd):
            transfer = self._current(peer_id, record.file_id)
            if transfer is None:
                return
            del self.incoming[peer_id]
            self._complete(peer_id, transfer, record)

        elif isinstance(record, TextRecord):
            if self.on_text_received:
                self.on_text_received(peer_id, record.content)

    def _current(self, peer_id: str, file_id: str) -> Optional[InboundTransfer]:
        transfer = self.incoming.get(peer_id)
        if transfer is None or transfer.file_id != file_id:
            logger.debug(f"Dropping record for unknown transfer {file_id} from {peer_id}")
            return None
        return transfer

    def _accept_chunk(self, peer_id: str, transfer: InboundTransfer, framed: bytes) -> None:
        try:
            plaintext = self.secure.decrypt_framed(peer_id, framed)
        except (AuthenticationFailed, NoSharedKey) as e:
            logger.error(f"Dropping chunk of {transfer.name} from {peer_id}: {e}")
            self._fail(peer_id, transfer, str(e))
            return
        transfer.chunks.append(plaintext)
        transfer.transferred += len(plaintext)
        if self.on_progress:
            self.on_progress(transfer.progress(peer_id))

    def _complete(self, peer_id: str, transfer: InboundTransfer, end: FileEnd) -> None:
        payload = b"".join(transfer.chunks)
        if end.sha256 and self.secure.digest(payload) != end.sha256:
            self._fail(peer_id, transfer, "SHA-256 digest mismatch")
            return
        logger.info(f"Received {transfer.name} ({len(payload)} bytes) from {peer_id}")
        if self.on_file_received:
            self.on_file_received(peer_id, transfer.name, payload)

    def _fail(self, peer_id: str, transfer: InboundTransfer, reason: str) -> None:
        if self.incoming.get(peer_id) is transfer:
            del self.incoming[peer_id]
        logger.error(f"Transfer {transfer.name} from {peer_id} failed: {reason}")
        if self.on_transfer_failed:
            self.on_transfer_failed(peer_id, transfer.file_id, transfer.name, reason)
