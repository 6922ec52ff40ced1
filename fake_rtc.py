"""In-memory stand-ins for aiortc peer connections and data channels.

``FakeNetwork.factory`` plugs into ``ConnectionManager(pc_factory=...)``. Two
fake peer connections created on the same network link up once the offerer
applies the answer, unless ``network.blocked`` is set.
"""

import asyncio
import itertools
from collections import defaultdict
from typing import List

from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError

from peerdrop.ice_servers import IceServerCache
from peerdrop.models import TraversalServer
from peerdrop.node import PeerNode
from peerdrop.signaling import LoopbackSignaling, Signaling

_ids = itertools.count(1)


class FakeEmitter:
    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event, f=None):
        def register(handler):
            self._handlers[event].append(handler)
            return handler

        return register(f) if f is not None else register

    def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            handler(*args)


class FakeDataChannel(FakeEmitter):
    def __init__(self, label="file-transfer", ready_state="connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.remote = None
        self.sent: List = []

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote.emit, "message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.remote is not None and self.remote.readyState != "closed":
            asyncio.get_running_loop().call_soon(self.remote.close)


class FakePeerConnection(FakeEmitter):
    def __init__(self, network, servers):
        super().__init__()
        self.pc_id = next(_ids)
        self.network = network
        self.servers = servers
        self.signalingState = "stable"
        self.iceConnectionState = "new"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.remote_pc = None
        self.channels: List[FakeDataChannel] = []
        self.candidates: List = []
        self.closed = False

    def createDataChannel(self, label, ordered=True):
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"fake:{self.pc_id}", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=f"fake:{self.pc_id}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.remote_pc = self.network.lookup(description.sdp)
        if description.type == "offer":
            self.signalingState = "have-remote-offer"
            return
        self.signalingState = "stable"
        if not self.network.blocked:
            asyncio.get_running_loop().call_soon(self._link)

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    def set_ice_state(self, state):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def _link(self):
        answerer = self.remote_pc
        if self.closed or answerer is None or answerer.closed:
            return
        for channel in self.channels:
            if channel.readyState != "connecting":
                continue
            peer_channel = FakeDataChannel(channel.label)
            channel.remote, peer_channel.remote = peer_channel, channel
            channel.readyState = peer_channel.readyState = "open"
            answerer.emit("datachannel", peer_channel)
            channel.emit("open")
        self.set_ice_state("connected")
        answerer.set_ice_state("connected")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.iceConnectionState = "closed"
        for channel in self.channels:
            channel.close()


class FakeNetwork:
    def __init__(self):
        self.blocked = False
        self.created: List[FakePeerConnection] = []

    def factory(self, servers):
        pc = FakePeerConnection(self, servers)
        self.created.append(pc)
        return pc

    def lookup(self, sdp):
        pc_id = int(sdp.split(":", 1)[1])
        for pc in self.created:
            if pc.pc_id == pc_id:
                return pc
        return None


class RecordingSignaling(Signaling):
    """Signaling carrier that only records what is sent."""

    def __init__(self, peer_id=None):
        self.peer_id = peer_id
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    def of_type(self, kind):
        return [m for m in self.sent if m.type == kind]


def static_servers(settings):
    """IceServerCache that never touches the network."""

    async def directory():
        return [TraversalServer(urls=["stun:stun.test:3478"])]

    async def probe(server, timeout):
        return 0.01

    return IceServerCache(settings, probe=probe, directory=directory)


def node_pair(network, settings, first="alice", second="bob"):
    """Two PeerNodes joined by loopback signaling and the fake network."""
    sig_a, sig_b = LoopbackSignaling.pair(first, second)
    nodes = [
        PeerNode(sig, settings, servers=static_servers(settings), pc_factory=network.factory)
        for sig in (sig_a, sig_b)
    ]
    return nodes[0], nodes[1]
