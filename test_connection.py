import asyncio
import base64

import pytest

from fake_rtc import FakeNetwork, RecordingSignaling, node_pair, static_servers
from peerdrop.config import Settings
from peerdrop.connection import ConnectionManager, IceState
from peerdrop.crypto import SecureChannel
from peerdrop.errors import ConnectFailed
from peerdrop.models import (
    AnswerPayload,
    IceCandidatePayload,
    OfferPayload,
    SessionDescription,
    SignalType,
)

CANDIDATE = "candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host"


def _manager(local_id, network, settings=None):
    settings = settings or Settings()
    signaling = RecordingSignaling(local_id)
    secure = SecureChannel()
    secure.generate_identity()
    manager = ConnectionManager(
        signaling, secure, static_servers(settings), settings, network.factory
    )
    manager.set_local_peer_id(local_id)
    return manager, signaling


def _remote_key():
    return base64.b64encode(SecureChannel().export_public_key()).decode()


def _offer(network, ice_restart=False):
    remote_pc = network.factory([])
    return OfferPayload(
        sdp=SessionDescription(type="offer", sdp=f"fake:{remote_pc.pc_id}"),
        public_key=_remote_key(),
        ice_restart=ice_restart,
    )


def test_politeness_is_symmetric():
    network = FakeNetwork()
    a, _ = _manager("peer-a", network)
    b, _ = _manager("peer-b", network)
    assert a.is_polite("peer-b") is True
    assert b.is_polite("peer-a") is False


def test_unknown_local_id_is_polite():
    manager = ConnectionManager(RecordingSignaling(), SecureChannel(), static_servers(Settings()))
    assert manager.is_polite("anyone") is True


def test_impolite_peer_ignores_colliding_offer():
    network = FakeNetwork()
    manager, signaling = _manager("peer-b", network)

    async def run():
        await manager.initiate_offer("peer-a")
        session = manager.session("peer-a")
        pc = session.pc
        assert session.signaling_state == "have-local-offer"

        await manager.handle_remote_offer("peer-a", _offer(network))

        assert session.ignore_offer is True
        assert session.pc is pc
        assert session.signaling_state == "have-local-offer"
        assert signaling.of_type(SignalType.ANSWER.value) == []
        assert not manager.secure.has_key("peer-a")

    asyncio.run(run())


def test_polite_peer_rolls_back_on_collision():
    network = FakeNetwork()
    manager, signaling = _manager("peer-a", network)

    async def run():
        await manager.initiate_offer("peer-b")
        session = manager.session("peer-b")
        old_pc = session.pc

        await manager.handle_remote_offer("peer-b", _offer(network))
        await asyncio.sleep(0.01)

        assert session.ignore_offer is False
        assert session.pc is not old_pc
        assert old_pc.closed
        assert session.signaling_state == "stable"
        answers = signaling.of_type(SignalType.ANSWER.value)
        assert len(answers) == 1
        assert answers[0].to == "peer-b"
        assert answers[0].data["publicKey"] == base64.b64encode(
            manager.secure.export_public_key()
        ).decode()
        assert manager.secure.has_key("peer-b")
        assert session.key_ready.is_set()

    asyncio.run(run())


def test_local_offer_yields_to_remote_offer_accepted_meanwhile():
    network = FakeNetwork()
    manager, signaling = _manager("peer-a", network)
    delays = [0.02, 0]
    cached_get = manager.servers.get

    async def slow_first_get(force_refresh=False):
        await asyncio.sleep(delays.pop(0))
        return await cached_get(force_refresh)

    manager.servers.get = slow_first_get

    async def run():
        offering = asyncio.ensure_future(manager.initiate_offer("peer-b"))
        await asyncio.sleep(0)
        await manager.handle_remote_offer("peer-b", _offer(network))
        answering_pc = manager.session("peer-b").pc
        await offering

        session = manager.session("peer-b")
        assert session.pc is answering_pc
        assert session.making_offer is False
        assert signaling.of_type(SignalType.OFFER.value) == []
        assert len(signaling.of_type(SignalType.ANSWER.value)) == 1

    asyncio.run(run())


def test_answer_in_wrong_state_is_dropped():
    network = FakeNetwork()
    manager, _ = _manager("peer-a", network)

    async def run():
        await manager.initiate_offer("peer-b")
        pc = manager.session("peer-b").pc
        first = AnswerPayload(
            sdp=SessionDescription(type="answer", sdp="fake:0"), public_key=_remote_key()
        )
        await manager.handle_remote_answer("peer-b", first)
        applied = pc.remoteDescription
        assert pc.signalingState == "stable"

        late = AnswerPayload(sdp=SessionDescription(type="answer", sdp="fake:1"))
        await manager.handle_remote_answer("peer-b", late)
        assert pc.remoteDescription is applied

    asyncio.run(run())


def test_answer_without_session_is_ignored():
    network = FakeNetwork()
    manager, _ = _manager("peer-a", network)
    payload = AnswerPayload(sdp=SessionDescription(type="answer", sdp="fake:0"))
    asyncio.run(manager.handle_remote_answer("stranger", payload))
    assert "stranger" not in manager.sessions


def test_candidates_buffered_until_remote_description():
    network = FakeNetwork()
    manager, _ = _manager("peer-b", network)
    candidate = IceCandidatePayload(candidate=CANDIDATE, sdp_mid="0", sdp_mline_index=0)

    async def run():
        await manager.handle_remote_candidate("peer-a", candidate)
        session = manager.session("peer-a")
        assert len(session.pending_candidates) == 1

        await manager.handle_remote_offer("peer-a", _offer(network))
        assert session.pending_candidates == []
        assert len(session.pc.candidates) == 1
        added = session.pc.candidates[0]
        assert added.ip == "192.168.1.2"
        assert added.port == 54321
        assert added.sdpMid == "0"

        await manager.handle_remote_candidate("peer-a", candidate)
        assert len(session.pc.candidates) == 2

    asyncio.run(run())


def test_ice_restarts_are_bounded_then_relay():
    network = FakeNetwork()
    settings = Settings(ice_restart_delay=0, max_ice_restarts=2)
    manager, signaling = _manager("peer-a", network, settings)
    manager.secure.import_peer_key("peer-b", SecureChannel().export_public_key())
    states = []
    manager.on_state_change = lambda peer, status, hint: states.append(status)

    async def run():
        await manager.initiate_offer("peer-b")
        session = manager.session("peer-b")
        for expected in (1, 2):
            failed_pc = session.pc
            failed_pc.set_ice_state("failed")
            await asyncio.sleep(0.02)
            assert session.restart_count == expected
            assert session.pc is not failed_pc
            assert failed_pc.closed

        last_pc = session.pc
        last_pc.set_ice_state("failed")
        await asyncio.sleep(0.02)

        assert session.restart_count == 2
        assert session.terminated.is_set()
        assert session.pc is None
        assert session.ice_state is IceState.CLOSED
        assert last_pc.closed
        assert manager.is_relay("peer-b")
        assert manager.secure.has_key("peer-b")
        offers = signaling.of_type(SignalType.OFFER.value)
        assert [o.data["iceRestart"] for o in offers] == [False, True, True]

    asyncio.run(run())
    assert states == ["relay"]


def test_connected_resets_restart_count():
    network = FakeNetwork()
    manager, _ = _manager("peer-a", network, Settings(ice_restart_delay=0))

    async def run():
        await manager.initiate_offer("peer-b")
        session = manager.session("peer-b")
        session.pc.set_ice_state("failed")
        await asyncio.sleep(0.02)
        assert session.restart_count == 1
        session.pc.set_ice_state("connected")
        assert session.restart_count == 0

    asyncio.run(run())


def test_disconnected_waits_for_recovery_before_restarting():
    network = FakeNetwork()
    settings = Settings(disconnected_timeout=0.02, ice_restart_delay=0)
    manager, _ = _manager("peer-a", network, settings)

    async def run():
        await manager.initiate_offer("peer-b")
        session = manager.session("peer-b")
        pc = session.pc

        pc.set_ice_state("disconnected")
        pc.set_ice_state("connected")
        await asyncio.sleep(0.05)
        assert session.pc is pc
        assert session.restart_count == 0

        pc.set_ice_state("disconnected")
        await asyncio.sleep(0.05)
        assert session.pc is not pc
        assert session.restart_count == 1

    asyncio.run(run())


def test_stale_peer_connection_events_are_ignored():
    network = FakeNetwork()
    manager, _ = _manager("peer-a", network, Settings(ice_restart_delay=0))

    async def run():
        await manager.initiate_offer("peer-b")
        session = manager.session("peer-b")
        old_pc = session.pc
        await manager.initiate_offer("peer-b", ice_restart=True)
        old_pc.set_ice_state("failed")
        await asyncio.sleep(0.02)
        assert session.restart_count == 0

    asyncio.run(run())


def test_ensure_ready_shares_one_negotiation():
    network = FakeNetwork()
    alice, bob = node_pair(network, Settings())

    async def run():
        channels = await asyncio.gather(
            *(alice.connections.ensure_ready("bob") for _ in range(3))
        )
        assert channels[0] is channels[1] is channels[2]
        assert channels[0].readyState == "open"
        offers = [m for m in alice.signaling.sent if m.type == SignalType.OFFER.value]
        assert len(offers) == 1
        assert alice.secure.has_key("bob")
        assert bob.secure.has_key("alice")
        assert await alice.connections.ensure_ready("bob") is channels[0]
        await alice.close()
        await bob.close()

    asyncio.run(run())


def test_ensure_ready_timeout_switches_to_relay():
    network = FakeNetwork()
    network.blocked = True
    settings = Settings(connection_timeout=0.1, slow_connection_threshold=0.05)
    alice, bob = node_pair(network, settings)
    states = []
    alice.connections.on_state_change = lambda peer, status, hint: states.append(status)

    async def run():
        with pytest.raises(ConnectFailed):
            await alice.connections.ensure_ready("bob")
        assert alice.connections.is_relay("bob")
        assert alice.connections.session("bob").pending is None
        await alice.close()
        await bob.close()

    asyncio.run(run())
    assert states == ["connecting", "slow", "relay"]


def test_simultaneous_offers_settle_on_one_session():
    network = FakeNetwork()
    alice, bob = node_pair(network, Settings())

    async def run():
        alice_channel, bob_channel = await asyncio.gather(
            alice.connections.ensure_ready("bob"), bob.connections.ensure_ready("alice")
        )
        assert alice_channel.remote is bob_channel
        assert bob_channel.remote is alice_channel

        alice_answers = [m for m in alice.signaling.sent if m.type == SignalType.ANSWER.value]
        bob_answers = [m for m in bob.signaling.sent if m.type == SignalType.ANSWER.value]
        assert len(alice_answers) == 1
        assert bob_answers == []

        bob_pc = bob.connections.session("alice").pc
        assert bob_pc.localDescription.type == "offer"
        assert alice.connections.session("bob").pc.localDescription.type == "answer"
        assert bob.connections.session("alice").ignore_offer is True
        await alice.close()
        await bob.close()

    asyncio.run(run())


def test_close_forgets_peer():
    network = FakeNetwork()
    alice, bob = node_pair(network, Settings())

    async def run():
        await alice.connections.ensure_ready("bob")
        pc = alice.connections.session("bob").pc
        await alice.connections.close("bob")
        assert "bob" not in alice.connections.sessions
        assert not alice.secure.has_key("bob")
        assert pc.closed
        await alice.connections.close("bob")
        await bob.close()

    asyncio.run(run())
