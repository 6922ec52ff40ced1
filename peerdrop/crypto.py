"""Per-peer ECDH (P-256) key agreement and AES-256-GCM encryption.

Each session generates one ephemeral key pair. Importing a peer's public key
derives a symmetric key bound to that peer id; every encryption draws a fresh
random 12-byte nonce and the wire form of a chunk is ``nonce || ciphertext``.
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailed, KeyImportError, NoSharedKey

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


class SecureChannel:
    def __init__(self) -> None:
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._shared_keys: Dict[str, AESGCM] = {}

    def generate_identity(self) -> ec.EllipticCurvePrivateKey:
        """Create the session key pair, reusing it if it already exists."""
        if self._private_key is None:
            self._private_key = ec.generate_private_key(ec.SECP256R1())
            logger.debug("Generated session ECDH key pair")
        return self._private_key

    def export_public_key(self) -> bytes:
        """Local public key as DER SubjectPublicKeyInfo."""
        private_key = self.generate_identity()
        return private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def import_peer_key(self, peer_id: str, public_key: bytes) -> None:
        """Derive and store the AES-256-GCM key shared with ``peer_id``.

        The raw ECDH secret (32 bytes on P-256) is the AES key, matching what
        WebCrypto's ``deriveKey(ECDH -> AES-GCM 256)`` produces.
        """
        try:
            peer_key = serialization.load_der_public_key(public_key)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyImportError(f"Malformed public key from {peer_id}: {e}") from e
        if not isinstance(peer_key, ec.EllipticCurvePublicKey) or not isinstance(
            peer_key.curve, ec.SECP256R1
        ):
            raise KeyImportError(f"Public key from {peer_id} is not a P-256 key")

        shared_secret = self.generate_identity().exchange(ec.ECDH(), peer_key)
        self._shared_keys[peer_id] = AESGCM(shared_secret)
        logger.debug(f"Derived shared key for {peer_id}")

    def has_key(self, peer_id: str) -> bool:
        return peer_id in self._shared_keys

    def remove_peer(self, peer_id: str) -> None:
        self._shared_keys.pop(peer_id, None)

    def _cipher(self, peer_id: str) -> AESGCM:
        cipher = self._shared_keys.get(peer_id)
        if cipher is None:
            raise NoSharedKey(peer_id)
        return cipher

    def encrypt(self, peer_id: str, plaintext: bytes) -> Tuple[bytes, bytes]:
        """Return ``(ciphertext, nonce)``; the ciphertext ends with the 16-byte tag."""
        cipher = self._cipher(peer_id)
        nonce = os.urandom(NONCE_SIZE)
        return cipher.encrypt(nonce, plaintext, None), nonce

    def decrypt(self, peer_id: str, ciphertext: bytes, nonce: bytes) -> bytes:
        cipher = self._cipher(peer_id)
        try:
            return cipher.decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise AuthenticationFailed(f"Chunk from {peer_id} failed authentication") from e

    def encrypt_framed(self, peer_id: str, plaintext: bytes) -> bytes:
        ciphertext, nonce = self.encrypt(peer_id, plaintext)
        return nonce + ciphertext

    def decrypt_framed(self, peer_id: str, framed: bytes) -> bytes:
        if len(framed) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailed(f"Frame from {peer_id} is too short ({len(framed)} bytes)")
        return self.decrypt(peer_id, framed[NONCE_SIZE:], framed[:NONCE_SIZE])

    @staticmethod
    def digest(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
