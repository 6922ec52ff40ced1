"""Signaling carriers: opaque, ordered message relay between two peer ids."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import SignalingError
from .models import SignalMessage, SignalType

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalMessage], Awaitable[None]]


class Signaling:
    """Carrier interface consumed by the connection manager and transfer engine.

    ``on_message`` is awaited for every inbound message, one at a time, in
    arrival order.
    """

    peer_id: Optional[str] = None
    on_message: Optional[MessageHandler] = None

    async def send(self, message: SignalMessage) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def _dispatch(self, message: SignalMessage) -> None:
        if self.on_message is None:
            logger.debug(f"Dropping {message.type} from {message.sender}: no handler")
            return
        await self.on_message(message)


class WebSocketSignaling(Signaling):
    """JSON envelopes over a WebSocket to the signaling relay.

    The relay greets us with ``{"type": "welcome", "data": {"peerId": ...}}``.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self.welcomed = asyncio.Event()

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, InvalidURI, InvalidHandshake) as e:
            raise SignalingError(f"Could not reach signaling server {self.url}: {e}") from e
        self._reader = asyncio.ensure_future(self._read_loop())
        logger.info(f"Connected to signaling server {self.url}")

    async def send(self, message: SignalMessage) -> None:
        if self._ws is None:
            raise SignalingError("Signaling socket is not connected")
        try:
            await self._ws.send(json.dumps(message.to_wire()))
        except ConnectionClosed as e:
            raise SignalingError(f"Signaling socket closed: {e}") from e

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = SignalMessage.model_validate_json(raw)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed signaling message: {e}")
                    continue
                if message.type == SignalType.WELCOME.value:
                    self.peer_id = message.data.get("peerId")
                    self.welcomed.set()
                try:
                    await self._dispatch(message)
                except Exception:
                    logger.exception(f"Handler failed for {message.type} from {message.sender}")
        except ConnectionClosed as e:
            logger.warning(f"Signaling connection closed: {e}")

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class LoopbackSignaling(Signaling):
    """In-process carrier; ``pair()`` returns two connected endpoints."""

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self.remote: Optional[LoopbackSignaling] = None
        self.sent: list = []
        self._queue: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None

    @classmethod
    def pair(cls, first: str, second: str) -> Tuple["LoopbackSignaling", "LoopbackSignaling"]:
        a, b = cls(first), cls(second)
        a.remote, b.remote = b, a
        return a, b

    def _ensure_pump(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._pump = asyncio.ensure_future(self._drain())
        return self._queue

    async def send(self, message: SignalMessage) -> None:
        if self.remote is None:
            raise SignalingError("Loopback endpoint is not paired")
        self.sent.append(message)
        if message.to != self.remote.peer_id:
            logger.warning(f"Dropping {message.type} for unknown peer {message.to}")
            return
        wire: Dict = message.to_wire()
        wire.pop("to", None)
        wire["from"] = self.peer_id
        self.remote._ensure_pump().put_nowait(SignalMessage.model_validate(wire))

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            except Exception:
                logger.exception(f"Handler failed for {message.type} from {message.sender}")
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every delivered message has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None
