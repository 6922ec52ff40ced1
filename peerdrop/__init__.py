"""Encrypted peer-to-peer file and text transfer over WebRTC with relay fallback."""

from .config import Settings
from .connection import ConnectionManager, ConnectionStatus, IceState, PeerSession
from .crypto import SecureChannel
from .errors import (
    AuthenticationFailed,
    ChannelTimeout,
    ConnectFailed,
    EncryptionKeyTimeout,
    KeyImportError,
    NoSharedKey,
    PeerDropError,
    SignalingError,
)
from .ice_servers import IceServerCache
from .node import PeerNode
from .signaling import LoopbackSignaling, Signaling, WebSocketSignaling
from .transfer import Progress, TransferEngine

__version__ = "0.1.0"

__all__ = [
    "AuthenticationFailed",
    "ChannelTimeout",
    "ConnectFailed",
    "ConnectionManager",
    "ConnectionStatus",
    "EncryptionKeyTimeout",
    "IceServerCache",
    "IceState",
    "KeyImportError",
    "LoopbackSignaling",
    "NoSharedKey",
    "PeerDropError",
    "PeerNode",
    "PeerSession",
    "Progress",
    "SecureChannel",
    "Settings",
    "Signaling",
    "SignalingError",
    "TransferEngine",
    "WebSocketSignaling",
]
