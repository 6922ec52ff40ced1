"""Per-peer WebRTC negotiation: perfect negotiation, ICE restarts, readiness.

Every remote peer gets one :class:`PeerSession`. All mutation happens on the
event loop; races between a local offer under construction and a remote offer
arriving are resolved with the ``making_offer``/``ignore_offer`` flags and the
polite/impolite roles derived from the peer ids.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .config import Settings
from .crypto import SecureChannel
from .errors import (
    ChannelTimeout,
    ConnectFailed,
    EncryptionKeyTimeout,
    KeyImportError,
    PeerDropError,
)
from .ice_servers import IceServerCache
from .models import (
    AnswerPayload,
    IceCandidatePayload,
    OfferPayload,
    SignalMessage,
    SignalType,
)
from .rtc import (
    PeerConnectionFactory,
    candidate_to_rtc,
    create_peer_connection,
    description_from_rtc,
    description_to_rtc,
)
from .signaling import Signaling

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "file-transfer"


class IceState(str, Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    SLOW = "slow"
    CONNECTED = "connected"
    RELAY = "relay"


@dataclass
class PeerSession:
    peer_id: str
    pc: Any = None
    channel: Any = None
    making_offer: bool = False
    ignore_offer: bool = False
    ice_state: IceState = IceState.NEW
    restart_count: int = 0
    pending_candidates: List[IceCandidatePayload] = field(default_factory=list)
    relay_mode: bool = False
    pending: Optional[asyncio.Future] = None
    channel_open: asyncio.Event = field(default_factory=asyncio.Event)
    key_ready: asyncio.Event = field(default_factory=asyncio.Event)
    # Set once the session gave up on a direct transport (or was closed).
    terminated: asyncio.Event = field(default_factory=asyncio.Event)
    disconnect_timer: Optional[asyncio.TimerHandle] = None
    restart_task: Optional[asyncio.Task] = None

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState if self.pc is not None else "stable"

    @property
    def has_open_channel(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"


class ConnectionManager:
    def __init__(
        self,
        signaling: Signaling,
        secure: SecureChannel,
        servers: IceServerCache,
        settings: Optional[Settings] = None,
        pc_factory: PeerConnectionFactory = create_peer_connection,
    ) -> None:
        self.signaling = signaling
        self.secure = secure
        self.servers = servers
        self.settings = settings or Settings()
        self.pc_factory = pc_factory
        self.sessions: Dict[str, PeerSession] = {}
        self.local_peer_id: Optional[str] = None
        # (peer_id, message) for every frame received on a direct channel
        self.on_channel_message: Optional[Callable[[str, Union[str, bytes]], None]] = None
        # (peer_id, status, hint)
        self.on_state_change: Optional[Callable[[str, str, Optional[str]], None]] = None
        self._tasks: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Roles and per-peer state
    # ------------------------------------------------------------------

    def set_local_peer_id(self, peer_id: str) -> None:
        self.local_peer_id = peer_id
        logger.info(f"Local peer ID set to: {peer_id}")

    def is_polite(self, peer_id: str) -> bool:
        """The lexicographically smaller id is polite; unknown local id is polite."""
        if not self.local_peer_id:
            return True
        return self.local_peer_id < peer_id

    def session(self, peer_id: str) -> PeerSession:
        session = self.sessions.get(peer_id)
        if session is None:
            session = self.sessions[peer_id] = PeerSession(peer_id)
        return session

    def is_relay(self, peer_id: str) -> bool:
        session = self.sessions.get(peer_id)
        return session is not None and session.relay_mode

    def enable_relay(self, peer_id: str) -> None:
        session = self.session(peer_id)
        if not session.relay_mode:
            logger.info(f"Switching {peer_id} to relay mode")
            session.relay_mode = True
            self.notify(peer_id, ConnectionStatus.RELAY, "Switched to relay transfer")

    def channel(self, peer_id: str) -> Any:
        session = self.sessions.get(peer_id)
        if session is not None and session.has_open_channel:
            return session.channel
        return None

    def notify(self, peer_id: str, status: ConnectionStatus, hint: Optional[str]) -> None:
        if self.on_state_change:
            self.on_state_change(peer_id, status.value, hint)

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def ensure_ready(self, peer_id: str) -> Any:
        """Return an open data channel with a derived key, negotiating if needed.

        Concurrent callers share one negotiation. Raises ConnectFailed (after
        switching the peer to relay mode) when negotiation fails or times out.
        """
        session = self.session(peer_id)
        if session.has_open_channel and self.secure.has_key(peer_id):
            return session.channel
        if session.terminated.is_set():
            raise ConnectFailed(f"Direct connection to {peer_id} was abandoned")

        if session.pending is None:
            logger.info(f"Starting new connection to {peer_id}")
            pending = asyncio.ensure_future(self._connect(session))
            session.pending = pending

            def _clear(future: asyncio.Future) -> None:
                if session.pending is future:
                    session.pending = None

            pending.add_done_callback(_clear)
        else:
            logger.debug(f"Waiting for pending connection to {peer_id}")
        return await asyncio.shield(session.pending)

    async def _connect(self, session: PeerSession) -> Any:
        peer_id = session.peer_id
        self.notify(peer_id, ConnectionStatus.CONNECTING, "Establishing connection...")
        slow_timer = asyncio.get_running_loop().call_later(
            self.settings.slow_connection_threshold,
            self.notify,
            peer_id,
            ConnectionStatus.SLOW,
            "Network is slow, please wait...",
        )
        try:
            if session.channel is None or session.channel.readyState == "closed":
                await self.initiate_offer(peer_id)
            await self._wait_ready(session, self.settings.connection_timeout)
        except (ChannelTimeout, EncryptionKeyTimeout, ConnectFailed) as e:
            logger.warning(f"Connection to {peer_id} failed, falling back to relay: {e}")
            self.enable_relay(peer_id)
            if isinstance(e, ConnectFailed):
                raise
            raise ConnectFailed(f"Could not connect to {peer_id}: {e}") from e
        finally:
            slow_timer.cancel()

        logger.info(f"Connection established with {peer_id}")
        self.notify(peer_id, ConnectionStatus.CONNECTED, None)
        return session.channel

    async def _wait_ready(self, session: PeerSession, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        if self.secure.has_key(session.peer_id):
            session.key_ready.set()
        await self._wait_event(
            session,
            session.channel_open,
            deadline,
            ChannelTimeout(f"Channel to {session.peer_id} did not open within {timeout}s"),
        )
        await self._wait_event(
            session,
            session.key_ready,
            deadline,
            EncryptionKeyTimeout(f"No encryption key from {session.peer_id} within {timeout}s"),
        )

    async def _wait_event(
        self,
        session: PeerSession,
        event: asyncio.Event,
        deadline: float,
        error: PeerDropError,
    ) -> None:
        if event.is_set():
            return
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        waiter = asyncio.ensure_future(event.wait())
        abandoned = asyncio.ensure_future(session.terminated.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, abandoned}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            abandoned.cancel()
        if waiter in done:
            return
        if abandoned in done:
            raise ConnectFailed(f"Connection to {session.peer_id} was closed")
        raise error

    # ------------------------------------------------------------------
    # Offer / answer / candidates
    # ------------------------------------------------------------------

    async def _new_peer_connection(self, session: PeerSession, only_if_current: bool = False) -> Any:
        """Give the session a fresh peer connection, discarding the old one.

        Used for the first connection, for rollback of a local offer and for
        ICE restarts: the session (counters, key, relay flag) survives. With
        ``only_if_current``, returns None instead when another negotiation
        replaced the peer connection while the server list was loading.
        """
        current = session.pc
        servers = await self.servers.get()
        if only_if_current and session.pc is not current:
            return None
        old_pc = self._release_transport(session)
        if old_pc is not None:
            self._spawn(old_pc.close())

        pc = self.pc_factory(servers)
        session.pc = pc
        session.ice_state = IceState.NEW

        @pc.on("iceconnectionstatechange")
        def on_ice_state_change():
            logger.debug(f"ICE connection state with {session.peer_id}: {pc.iceConnectionState}")
            if session.pc is pc:
                self._on_ice_state(session, pc.iceConnectionState)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            logger.debug(f"Connection state with {session.peer_id}: {pc.connectionState}")

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Received data channel from {session.peer_id}")
            if session.pc is pc:
                self._attach_channel(session, channel)

        return pc

    def _public_key(self) -> str:
        return base64.b64encode(self.secure.export_public_key()).decode()

    async def initiate_offer(self, peer_id: str, ice_restart: bool = False) -> None:
        session = self.session(peer_id)
        # Must be set before the first suspension point.
        session.making_offer = True
        pc = session.pc
        try:
            if pc is None or ice_restart:
                pc = await self._new_peer_connection(session, only_if_current=True)
                if pc is None:
                    logger.debug(f"Offer to {peer_id} superseded by a remote offer")
                    return
            elif session.channel is not None and session.channel.readyState in ("open", "connecting"):
                return

            channel = pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True)
            self._attach_channel(session, channel)
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            if session.pc is not pc:
                logger.debug(f"Offer to {peer_id} superseded by a newer negotiation")
                return

            payload = OfferPayload(
                sdp=description_from_rtc(pc.localDescription),
                public_key=self._public_key(),
                ice_restart=ice_restart,
            )
            logger.info(f"Sending {'ICE restart ' if ice_restart else ''}offer to {peer_id}")
            await self.signaling.send(
                SignalMessage(type=SignalType.OFFER.value, to=peer_id, data=payload.to_wire())
            )
        except Exception as e:
            if pc is not None and session.pc is not pc:
                logger.debug(f"Abandoned offer to {peer_id} failed after rollback: {e}")
                return
            logger.error(f"Error creating offer for {peer_id}: {e}")
            raise ConnectFailed(f"Could not create offer for {peer_id}: {e}") from e
        finally:
            session.making_offer = False

    async def handle_remote_offer(self, peer_id: str, payload: OfferPayload) -> None:
        logger.info(f"Received {'ICE restart ' if payload.ice_restart else ''}offer from {peer_id}")
        session = self.session(peer_id)
        polite = self.is_polite(peer_id)
        collision = session.making_offer or session.signaling_state != "stable"

        session.ignore_offer = not polite and collision
        if session.ignore_offer:
            logger.info(f"Ignoring offer from {peer_id} due to collision (impolite peer)")
            return

        try:
            pc = session.pc
            if pc is None or collision or payload.ice_restart or session.terminated.is_set():
                if collision:
                    logger.info(f"Rolling back local offer for {peer_id}")
                session.terminated.clear()
                pc = await self._new_peer_connection(session)

            await pc.setRemoteDescription(description_to_rtc(payload.sdp))
            await self._flush_candidates(session, pc)
            if payload.public_key:
                self._import_key(session, payload.public_key)

            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            if session.pc is not pc:
                return

            reply = AnswerPayload(
                sdp=description_from_rtc(pc.localDescription), public_key=self._public_key()
            )
            logger.info(f"Sending answer to {peer_id}")
            await self.signaling.send(
                SignalMessage(type=SignalType.ANSWER.value, to=peer_id, data=reply.to_wire())
            )
        except Exception as e:
            logger.error(f"Error handling offer from {peer_id}: {e}")

    async def handle_remote_answer(self, peer_id: str, payload: AnswerPayload) -> None:
        logger.info(f"Received answer from {peer_id}")
        session = self.sessions.get(peer_id)
        pc = session.pc if session is not None else None
        if pc is None:
            logger.warning(f"No connection found for {peer_id} when receiving answer")
            return
        if pc.signalingState != "have-local-offer":
            # Expected after a rollback: the remote answered an offer we abandoned.
            logger.debug(f"Received answer in wrong state: {pc.signalingState} (ignoring)")
            return

        try:
            await pc.setRemoteDescription(description_to_rtc(payload.sdp))
            await self._flush_candidates(session, pc)
            if payload.public_key:
                self._import_key(session, payload.public_key)
        except Exception as e:
            logger.error(f"Error handling answer from {peer_id}: {e}")

    async def handle_remote_candidate(self, peer_id: str, payload: IceCandidatePayload) -> None:
        session = self.session(peer_id)
        pc = session.pc
        if pc is not None and pc.remoteDescription is not None:
            try:
                await pc.addIceCandidate(candidate_to_rtc(payload))
                logger.debug(f"Added ICE candidate from {peer_id}")
            except Exception as e:
                if not session.ignore_offer:
                    logger.warning(f"Error adding ICE candidate from {peer_id}: {e}")
            return

        logger.debug(f"Buffering ICE candidate from {peer_id} (no remote description yet)")
        session.pending_candidates.append(payload)

    async def _flush_candidates(self, session: PeerSession, pc: Any) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        if pending:
            logger.debug(f"Flushing {len(pending)} pending ICE candidates for {session.peer_id}")
        for payload in pending:
            try:
                await pc.addIceCandidate(candidate_to_rtc(payload))
            except Exception as e:
                logger.warning(f"Failed to add buffered candidate: {e}")

    def _import_key(self, session: PeerSession, public_key: str) -> None:
        try:
            self.secure.import_peer_key(session.peer_id, base64.b64decode(public_key))
        except (KeyImportError, ValueError) as e:
            logger.error(f"Could not import public key from {session.peer_id}: {e}")
            return
        logger.debug(f"Imported public key from {session.peer_id}")
        session.key_ready.set()

    # ------------------------------------------------------------------
    # Data channel
    # ------------------------------------------------------------------

    def _attach_channel(self, session: PeerSession, channel: Any) -> None:
        session.channel = channel
        session.channel_open.clear()

        @channel.on("open")
        def on_open():
            if session.channel is channel:
                self._on_channel_open(session)

        @channel.on("message")
        def on_message(message):
            if self.on_channel_message:
                self.on_channel_message(session.peer_id, message)

        @channel.on("close")
        def on_close():
            logger.info(f"DataChannel closed with {session.peer_id}")
            if session.channel is channel:
                session.channel = None
                session.channel_open.clear()

        if channel.readyState == "open":
            self._on_channel_open(session)

    def _on_channel_open(self, session: PeerSession) -> None:
        logger.info(f"DataChannel opened with {session.peer_id}")
        session.channel_open.set()
        session.relay_mode = False

    # ------------------------------------------------------------------
    # Connectivity state machine
    # ------------------------------------------------------------------

    def _on_ice_state(self, session: PeerSession, raw_state: str) -> None:
        try:
            state = IceState(raw_state)
        except ValueError:
            logger.warning(f"Unknown ICE state {raw_state!r} for {session.peer_id}")
            return
        previous, session.ice_state = session.ice_state, state
        self._cancel_disconnect_timer(session)

        if state is IceState.DISCONNECTED:
            logger.info(f"ICE disconnected with {session.peer_id}, waiting for recovery...")
            session.disconnect_timer = asyncio.get_running_loop().call_later(
                self.settings.disconnected_timeout,
                self._on_disconnect_timeout,
                session,
                session.pc,
            )
        elif state is IceState.FAILED:
            logger.info(f"ICE failed with {session.peer_id}, attempting restart...")
            self._schedule_restart(session)
        elif state in (IceState.CONNECTED, IceState.COMPLETED):
            if previous is IceState.DISCONNECTED:
                logger.info(f"ICE recovered with {session.peer_id}")
            session.restart_count = 0

    def _cancel_disconnect_timer(self, session: PeerSession) -> None:
        if session.disconnect_timer is not None:
            session.disconnect_timer.cancel()
            session.disconnect_timer = None

    def _on_disconnect_timeout(self, session: PeerSession, pc: Any) -> None:
        session.disconnect_timer = None
        if session.pc is pc and session.ice_state is IceState.DISCONNECTED:
            logger.info(f"ICE still disconnected with {session.peer_id}, attempting restart...")
            self._schedule_restart(session)

    def _schedule_restart(self, session: PeerSession) -> None:
        if session.restart_task is not None and not session.restart_task.done():
            return
        if session.restart_count >= self.settings.max_ice_restarts:
            logger.warning(
                f"Max ICE restarts ({self.settings.max_ice_restarts}) reached for {session.peer_id}"
            )
            self._give_up(session)
            return
        session.restart_count += 1
        logger.info(
            f"Attempting ICE restart {session.restart_count}/{self.settings.max_ice_restarts}"
            f" for {session.peer_id}"
        )
        session.restart_task = self._spawn(self._restart(session))

    async def _restart(self, session: PeerSession) -> None:
        await asyncio.sleep(self.settings.ice_restart_delay)
        if self.sessions.get(session.peer_id) is not session or session.terminated.is_set():
            return
        try:
            await self.initiate_offer(session.peer_id, ice_restart=True)
        except ConnectFailed as e:
            logger.warning(f"ICE restart failed for {session.peer_id}: {e}")

    def _give_up(self, session: PeerSession) -> None:
        pc = self._release_transport(session)
        if pc is not None:
            self._spawn(pc.close())
        session.ice_state = IceState.CLOSED
        session.terminated.set()
        self.enable_relay(session.peer_id)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _release_transport(self, session: PeerSession) -> Any:
        """Detach channel and peer connection; returns the pc for closing."""
        self._cancel_disconnect_timer(session)
        channel, session.channel = session.channel, None
        session.channel_open.clear()
        if channel is not None:
            channel.close()
        pc, session.pc = session.pc, None
        return pc

    async def close(self, peer_id: str) -> None:
        session = self.sessions.pop(peer_id, None)
        self.secure.remove_peer(peer_id)
        if session is None:
            return
        if session.restart_task is not None:
            session.restart_task.cancel()
        session.terminated.set()
        session.ice_state = IceState.CLOSED
        session.pending_candidates.clear()
        pc = self._release_transport(session)
        if pc is not None:
            await pc.close()
        logger.info(f"Closed connection with {peer_id}")

    async def close_all(self) -> None:
        for peer_id in list(self.sessions):
            await self.close(peer_id)
