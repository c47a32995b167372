"""Tests for the encryption and key agreement helpers."""

import base64
from dataclasses import replace

import pytest

from parley.services.crypto import (
    ALGORITHM,
    CryptoService,
    DecryptionError,
    EncryptedPayload,
    EncryptionError,
    KeyExchangeError,
    generate_signing_key_pair,
    sign_message,
    verify_signature,
)


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


def test_encrypt_decrypt_round_trip() -> None:
    key = CryptoService.generate_key()
    payload = CryptoService.encrypt("héllo wörld", key)

    assert payload.algorithm == ALGORITHM
    assert len(base64.b64decode(payload.iv)) == 12
    assert len(base64.b64decode(payload.auth_tag)) == 16
    assert CryptoService.decrypt(payload, key) == "héllo wörld"


def test_encrypt_uses_fresh_iv_each_time() -> None:
    key = CryptoService.generate_key()
    first = CryptoService.encrypt("same text", key)
    second = CryptoService.encrypt("same text", key)

    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_wire_form_round_trip() -> None:
    key = CryptoService.generate_key()
    wire = CryptoService.encrypt("over the wire", key).to_wire()

    assert set(wire) == {"encrypted", "iv", "authTag", "algorithm"}
    assert CryptoService.decrypt(EncryptedPayload.from_wire(wire), key) == "over the wire"


@pytest.mark.parametrize("field", ["ciphertext", "iv", "auth_tag"])
def test_tampering_is_detected(field: str) -> None:
    key = CryptoService.generate_key()
    payload = CryptoService.encrypt("do not touch", key)
    tampered = replace(payload, **{field: _flip_first_byte(getattr(payload, field))})

    with pytest.raises(DecryptionError):
        CryptoService.decrypt(tampered, key)


def test_wrong_key_fails() -> None:
    payload = CryptoService.encrypt("secret", CryptoService.generate_key())

    with pytest.raises(DecryptionError):
        CryptoService.decrypt(payload, CryptoService.generate_key())


def test_short_key_is_rejected() -> None:
    with pytest.raises(EncryptionError):
        CryptoService.encrypt("text", b"too short")
    payload = CryptoService.encrypt("text", CryptoService.generate_key())
    with pytest.raises(DecryptionError):
        CryptoService.decrypt(payload, b"too short")


def test_unknown_algorithm_is_rejected() -> None:
    key = CryptoService.generate_key()
    payload = replace(CryptoService.encrypt("text", key), algorithm="rot13")

    with pytest.raises(DecryptionError):
        CryptoService.decrypt(payload, key)


def test_from_wire_requires_all_fields() -> None:
    with pytest.raises(DecryptionError):
        EncryptedPayload.from_wire({"encrypted": "abc", "iv": "def"})


def test_ecdh_derivation_is_symmetric() -> None:
    alice = CryptoService.generate_key_pair()
    bob = CryptoService.generate_key_pair()

    alice_key = CryptoService.derive_shared_key(alice.private_key, bob.public_key)
    bob_key = CryptoService.derive_shared_key(bob.private_key, alice.public_key)

    assert alice_key == bob_key
    assert len(alice_key) == 32

    payload = CryptoService.encrypt("from alice", alice_key)
    assert CryptoService.decrypt(payload, bob_key) == "from alice"


def test_different_peers_derive_different_keys() -> None:
    alice = CryptoService.generate_key_pair()
    bob = CryptoService.generate_key_pair()
    carol = CryptoService.generate_key_pair()

    assert CryptoService.derive_shared_key(
        alice.private_key, bob.public_key
    ) != CryptoService.derive_shared_key(alice.private_key, carol.public_key)


@pytest.mark.parametrize(
    "bad_key",
    ["", "   ", "not base64!!", base64.b64encode(b"garbage der bytes").decode()],
)
def test_invalid_public_key_is_rejected(bad_key: str) -> None:
    with pytest.raises(KeyExchangeError):
        CryptoService.load_public_key(bad_key)


def test_derive_rejects_invalid_peer_key() -> None:
    alice = CryptoService.generate_key_pair()

    with pytest.raises(KeyExchangeError):
        CryptoService.derive_shared_key(alice.private_key, "bm90IGEga2V5")


def test_sign_and_verify() -> None:
    signing_key, verify_key = generate_signing_key_pair()
    signature = sign_message(signing_key, b"payload")

    assert verify_signature(verify_key, b"payload", signature)
    assert not verify_signature(verify_key, b"other payload", signature)
    assert not verify_signature(verify_key, b"payload", "00" * 64)
    assert not verify_signature("zz", b"payload", signature)
