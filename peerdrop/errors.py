"""Exception taxonomy shared by the negotiation, crypto and transfer layers."""


class PeerDropError(Exception):
    """Base class for every error raised by peerdrop."""


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoError(PeerDropError):
    pass


class NoSharedKey(CryptoError):
    def __init__(self, peer_id: str) -> None:
        super().__init__(f"No shared key for peer: {peer_id}")
        self.peer_id = peer_id


class AuthenticationFailed(CryptoError):
    """Ciphertext did not verify: corrupted, tampered or wrong key/nonce."""


class KeyImportError(CryptoError):
    """Peer public key bytes could not be parsed as a P-256 key."""


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


class ConnectFailed(PeerDropError, ConnectionError):
    """No direct channel could be established; callers fall back to relay."""


class ChannelTimeout(PeerDropError):
    pass


class EncryptionKeyTimeout(PeerDropError):
    pass


class SignalingError(PeerDropError, ConnectionError):
    """The signaling carrier could not deliver a message."""
