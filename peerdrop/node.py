"""A peer endpoint: wires crypto, ICE servers, negotiation and transfers together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Optional, Union

from pydantic import ValidationError

from .config import Settings
from .connection import ConnectionManager
from .crypto import SecureChannel
from .ice_servers import IceServerCache
from .models import (
    AnswerPayload,
    IceCandidatePayload,
    OfferPayload,
    SignalMessage,
    SignalType,
)
from .rtc import PeerConnectionFactory, create_peer_connection
from .signaling import Signaling
from .transfer import TransferEngine

logger = logging.getLogger(__name__)


class PeerNode:
    """One local endpoint attached to a signaling carrier.

    Caller events are registered on the components: file offered / received,
    progress, text and transfer-failed handlers on ``transfers``; the
    connection-state handler on ``connections.on_state_change``.
    """

    def __init__(
        self,
        signaling: Signaling,
        settings: Optional[Settings] = None,
        servers: Optional[IceServerCache] = None,
        pc_factory: PeerConnectionFactory = create_peer_connection,
    ) -> None:
        self.settings = settings or Settings()
        self.signaling = signaling
        self.secure = SecureChannel()
        self.secure.generate_identity()
        self.servers = servers or IceServerCache(self.settings)
        self.connections = ConnectionManager(
            signaling, self.secure, self.servers, self.settings, pc_factory
        )
        self.transfers = TransferEngine(self.connections, self.secure, signaling, self.settings)

        self.connections.on_channel_message = self.transfers.handle_channel_message
        signaling.on_message = self.handle_signal
        if signaling.peer_id:
            self.connections.set_local_peer_id(signaling.peer_id)

    @property
    def peer_id(self) -> Optional[str]:
        return self.connections.local_peer_id

    async def handle_signal(self, message: SignalMessage) -> None:
        if message.type == SignalType.WELCOME.value:
            peer_id = message.data.get("peerId")
            if peer_id:
                self.connections.set_local_peer_id(peer_id)
            return

        sender = message.sender
        if not sender:
            logger.warning(f"Ignoring {message.type} message without sender")
            return

        try:
            if message.type == SignalType.OFFER.value:
                await self.connections.handle_remote_offer(
                    sender, OfferPayload.model_validate(message.data)
                )
            elif message.type == SignalType.ANSWER.value:
                await self.connections.handle_remote_answer(
                    sender, AnswerPayload.model_validate(message.data)
                )
            elif message.type == SignalType.ICE_CANDIDATE.value:
                await self.connections.handle_remote_candidate(
                    sender, IceCandidatePayload.model_validate(message.data)
                )
            elif message.type == SignalType.RELAY_DATA.value:
                self.transfers.handle_relay_data(sender, message.data)
            else:
                logger.debug(f"Unhandled signaling message {message.type} from {sender}")
        except ValidationError as e:
            logger.warning(f"Malformed {message.type} from {sender}: {e}")

    async def send_file(
        self, peer_id: str, source: Union[str, Path, BinaryIO], name: Optional[str] = None
    ) -> str:
        return await self.transfers.send_file(peer_id, source, name)

    async def send_text(self, peer_id: str, text: str) -> None:
        await self.transfers.send_text(peer_id, text)

    async def close(self) -> None:
        await self.connections.close_all()
        await self.signaling.close()
