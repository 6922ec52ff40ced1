"""Adapters between peerdrop wire models and aiortc objects."""

from __future__ import annotations

from typing import Any, Callable, List

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from .models import IceCandidatePayload, SessionDescription, TraversalServer

# Builds a peer connection for the given ranked ICE servers.
PeerConnectionFactory = Callable[[List[TraversalServer]], Any]


def to_rtc_configuration(servers: List[TraversalServer]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=s.urls, username=s.username, credential=s.credential)
            for s in servers
        ]
    )


def create_peer_connection(servers: List[TraversalServer]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=to_rtc_configuration(servers))


def description_to_rtc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def description_from_rtc(description: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)


def candidate_to_rtc(payload: IceCandidatePayload) -> RTCIceCandidate:
    sdp = payload.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate
