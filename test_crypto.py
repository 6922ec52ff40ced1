import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from peerdrop.crypto import NONCE_SIZE, TAG_SIZE, SecureChannel
from peerdrop.errors import AuthenticationFailed, KeyImportError, NoSharedKey


def _paired():
    alice, bob = SecureChannel(), SecureChannel()
    alice.import_peer_key("bob", bob.export_public_key())
    bob.import_peer_key("alice", alice.export_public_key())
    return alice, bob


def test_generate_identity_is_idempotent():
    channel = SecureChannel()
    assert channel.generate_identity() is channel.generate_identity()
    assert channel.export_public_key() == channel.export_public_key()


def test_public_key_is_der_spki_p256():
    key = serialization.load_der_public_key(SecureChannel().export_public_key())
    assert isinstance(key.curve, ec.SECP256R1)


def test_round_trip_between_peers():
    alice, bob = _paired()
    ciphertext, nonce = alice.encrypt("bob", b"hello bob")
    assert len(nonce) == NONCE_SIZE
    assert len(ciphertext) == len(b"hello bob") + TAG_SIZE
    assert bob.decrypt("alice", ciphertext, nonce) == b"hello bob"


def test_framed_round_trip_and_empty_chunk():
    alice, bob = _paired()
    assert bob.decrypt_framed("alice", alice.encrypt_framed("bob", b"x" * 1000)) == b"x" * 1000
    framed = alice.encrypt_framed("bob", b"")
    assert len(framed) == NONCE_SIZE + TAG_SIZE
    assert bob.decrypt_framed("alice", framed) == b""


def test_nonce_is_fresh_per_encryption():
    alice, _bob = _paired()
    nonces = {alice.encrypt("bob", b"same")[1] for _ in range(50)}
    assert len(nonces) == 50


def test_tampered_ciphertext_fails_authentication():
    alice, bob = _paired()
    framed = bytearray(alice.encrypt_framed("bob", b"secret payload"))
    framed[-1] ^= 0x01
    with pytest.raises(AuthenticationFailed):
        bob.decrypt_framed("alice", bytes(framed))


def test_wrong_nonce_fails_authentication():
    alice, bob = _paired()
    ciphertext, nonce = alice.encrypt("bob", b"payload")
    wrong = bytes([nonce[0] ^ 0xFF]) + nonce[1:]
    with pytest.raises(AuthenticationFailed):
        bob.decrypt("alice", ciphertext, wrong)


def test_short_frame_fails_authentication():
    _alice, bob = _paired()
    with pytest.raises(AuthenticationFailed):
        bob.decrypt_framed("alice", b"\x00" * (NONCE_SIZE + TAG_SIZE - 1))


def test_third_party_key_cannot_decrypt():
    alice, _bob = _paired()
    mallory = SecureChannel()
    mallory.import_peer_key("alice", alice.export_public_key())
    framed = alice.encrypt_framed("bob", b"for bob only")
    with pytest.raises(AuthenticationFailed):
        mallory.decrypt_framed("alice", framed)


def test_missing_key_raises_no_shared_key():
    channel = SecureChannel()
    with pytest.raises(NoSharedKey) as excinfo:
        channel.encrypt("nobody", b"data")
    assert excinfo.value.peer_id == "nobody"
    assert "nobody" in str(excinfo.value)


def test_remove_peer_forgets_key():
    alice, _bob = _paired()
    assert alice.has_key("bob")
    alice.remove_peer("bob")
    assert not alice.has_key("bob")
    alice.remove_peer("bob")


def test_malformed_public_key_is_rejected():
    with pytest.raises(KeyImportError):
        SecureChannel().import_peer_key("bob", b"not a key")


def test_non_p256_key_is_rejected():
    other = ec.generate_private_key(ec.SECP384R1()).public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    channel = SecureChannel()
    with pytest.raises(KeyImportError):
        channel.import_peer_key("bob", other)
    assert not channel.has_key("bob")


def test_digest_is_sha256_hex():
    assert SecureChannel.digest(b"") == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )
