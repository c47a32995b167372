# src/parley/services/crypto.py
"""Cryptographic primitives for end-to-end encrypted messaging.

Both the client session and the server use this module. The server only
validates public keys; it never holds a conversation key and never decrypts.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

ALGORITHM = "aes-256-gcm"
KEY_LENGTH_BYTES = 32
IV_LENGTH_BYTES = 12
TAG_LENGTH_BYTES = 16
HKDF_INFO = b"parley conversation key v1"


class CryptoError(ValueError):
    """Base error for cryptographic failures."""


class EncryptionError(CryptoError):
    """Raised when plaintext cannot be encrypted (bad key)."""


class DecryptionError(CryptoError):
    """Raised when a payload cannot be authenticated or decoded."""


class KeyExchangeError(CryptoError):
    """Raised when a peer public key or private key is unusable."""


@dataclass(frozen=True)
class KeyPair:
    """ECDH P-256 key pair encoded as base64 DER."""

    public_key: str   # SubjectPublicKeyInfo
    private_key: str  # PKCS8


@dataclass(frozen=True)
class EncryptedPayload:
    """AES-GCM output with every field base64 encoded."""

    ciphertext: str
    iv: str
    auth_tag: str
    algorithm: str = ALGORITHM

    def to_wire(self) -> dict[str, str]:
        return {
            "encrypted": self.ciphertext,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> EncryptedPayload:
        """Build a payload from the `{encrypted, iv, authTag}` wire form."""
        if not isinstance(data, dict):
            raise DecryptionError("Encrypted content must be an object")
        ciphertext = data.get("encrypted")
        iv = data.get("iv")
        auth_tag = data.get("authTag")
        if not ciphertext or not iv or not auth_tag:
            raise DecryptionError("Encrypted content is missing fields")
        return cls(
            ciphertext=ciphertext,
            iv=iv,
            auth_tag=auth_tag,
            algorithm=data.get("algorithm") or ALGORITHM,
        )


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str, error: type[CryptoError]) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as err:
        raise error(f"Invalid base64 encoding: {err}") from err


class CryptoService:
    """Key agreement and authenticated encryption helpers."""

    @staticmethod
    def generate_key_pair() -> KeyPair:
        """Generate a fresh ECDH P-256 key pair for a session."""
        private_key = ec.generate_private_key(ec.SECP256R1())
        public_der = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        private_der = private_key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return KeyPair(public_key=_b64encode(public_der), private_key=_b64encode(private_der))

    @staticmethod
    def load_public_key(public_key_b64: str) -> ec.EllipticCurvePublicKey:
        """Decode and validate a peer's base64 SPKI public key."""
        if not isinstance(public_key_b64, str) or not public_key_b64.strip():
            raise KeyExchangeError("Public key must be a non-empty string")
        der = _b64decode(public_key_b64.strip(), KeyExchangeError)
        try:
            public_key = serialization.load_der_public_key(der)
        except (ValueError, TypeError) as err:
            raise KeyExchangeError(f"Invalid public key: {err}") from err
        if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(
            public_key.curve, ec.SECP256R1
        ):
            raise KeyExchangeError("Public key must be an ECDH P-256 key")
        return public_key

    @staticmethod
    def _load_private_key(private_key_b64: str) -> ec.EllipticCurvePrivateKey:
        der = _b64decode(private_key_b64, KeyExchangeError)
        try:
            private_key = serialization.load_der_private_key(der, password=None)
        except (ValueError, TypeError) as err:
            raise KeyExchangeError(f"Invalid private key: {err}") from err
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise KeyExchangeError("Private key must be an ECDH P-256 key")
        return private_key

    @staticmethod
    def derive_shared_key(my_private_key: str, peer_public_key: str) -> bytes:
        """Derive the 32-byte conversation key shared with a peer.

        ECDH over P-256 followed by HKDF-SHA256, so
        ``derive(priv_a, pub_b) == derive(priv_b, pub_a)``.
        """
        private_key = CryptoService._load_private_key(my_private_key)
        public_key = CryptoService.load_public_key(peer_public_key)
        try:
            shared_secret = private_key.exchange(ec.ECDH(), public_key)
        except ValueError as err:
            raise KeyExchangeError(f"Key agreement failed: {err}") from err
        return HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH_BYTES,
            salt=None,
            info=HKDF_INFO,
        ).derive(shared_secret)

    @staticmethod
    def generate_key() -> bytes:
        """Return a random 256-bit symmetric key."""
        return AESGCM.generate_key(bit_length=256)

    @staticmethod
    def encrypt_bytes(
        plaintext: bytes,
        key: bytes,
        associated_data: bytes | None = None,
    ) -> EncryptedPayload:
        """Encrypt raw bytes with AES-256-GCM under a fresh random IV."""
        if not isinstance(key, bytes | bytearray) or len(key) != KEY_LENGTH_BYTES:
            raise EncryptionError("Encryption key must be 32 bytes")
        iv = os.urandom(IV_LENGTH_BYTES)
        sealed = AESGCM(bytes(key)).encrypt(iv, plaintext, associated_data)
        # AESGCM appends the tag to the ciphertext; the wire form keeps it separate.
        return EncryptedPayload(
            ciphertext=_b64encode(sealed[:-TAG_LENGTH_BYTES]),
            iv=_b64encode(iv),
            auth_tag=_b64encode(sealed[-TAG_LENGTH_BYTES:]),
        )

    @staticmethod
    def encrypt(
        plaintext: str,
        key: bytes,
        associated_data: bytes | None = None,
    ) -> EncryptedPayload:
        """Encrypt a UTF-8 string.

        Args:
            plaintext: Message text
            key: 32-byte conversation key
            associated_data: Optional data authenticated but not encrypted

        Returns:
            Base64-encoded ciphertext, IV and auth tag

        Raises:
            EncryptionError: If the key is unusable
        """
        return CryptoService.encrypt_bytes(plaintext.encode("utf-8"), key, associated_data)

    @staticmethod
    def decrypt_bytes(
        payload: EncryptedPayload,
        key: bytes,
        associated_data: bytes | None = None,
    ) -> bytes:
        """Authenticate and decrypt a payload, returning raw bytes."""
        if not isinstance(key, bytes | bytearray) or len(key) != KEY_LENGTH_BYTES:
            raise DecryptionError("Decryption key must be 32 bytes")
        if payload.algorithm != ALGORITHM:
            raise DecryptionError(f"Unsupported algorithm: {payload.algorithm}")
        if not payload.ciphertext or not payload.iv or not payload.auth_tag:
            raise DecryptionError("Encrypted content is missing fields")

        ciphertext = _b64decode(payload.ciphertext, DecryptionError)
        iv = _b64decode(payload.iv, DecryptionError)
        auth_tag = _b64decode(payload.auth_tag, DecryptionError)
        if len(iv) != IV_LENGTH_BYTES:
            raise DecryptionError("IV must be 12 bytes")
        if len(auth_tag) != TAG_LENGTH_BYTES:
            raise DecryptionError("Auth tag must be 16 bytes")

        try:
            return AESGCM(bytes(key)).decrypt(iv, ciphertext + auth_tag, associated_data)
        except InvalidTag as err:
            raise DecryptionError("Message authentication failed") from err

    @staticmethod
    def decrypt(
        payload: EncryptedPayload,
        key: bytes,
        associated_data: bytes | None = None,
    ) -> str:
        """Decrypt a payload produced by :meth:`encrypt`.

        Raises:
            DecryptionError: On tampering, a wrong key, malformed fields or
                plaintext that is not valid UTF-8
        """
        raw = CryptoService.decrypt_bytes(payload, key, associated_data)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionError("Decrypted content is not valid UTF-8") from err


def generate_signing_key_pair() -> tuple[str, str]:
    """Generate an Ed25519 key pair.

    Returns:
        Tuple of (signing_key_hex, verify_key_hex)
    """
    signing_key = SigningKey.generate()
    return (
        signing_key.encode(encoder=HexEncoder).decode(),
        signing_key.verify_key.encode(encoder=HexEncoder).decode(),
    )


def sign_message(signing_key_hex: str, message: bytes) -> str:
    """Sign `message` and return the hex-encoded detached signature."""
    try:
        signing_key = SigningKey(signing_key_hex, encoder=HexEncoder)
    except (ValueError, TypeError) as err:
        raise ValueError(f"Invalid signing key: {err}") from err
    return signing_key.sign(message).signature.hex()


def verify_signature(verify_key_hex: str, message: bytes, signature_hex: str) -> bool:
    """Verify an Ed25519 signature.

    Returns:
        True if the signature is valid for `message` under `verify_key_hex`; False otherwise.
    """
    try:
        verify_key = VerifyKey(binascii.unhexlify(verify_key_hex))
        verify_key.verify(message, binascii.unhexlify(signature_hex))
        return True
    except (BadSignatureError, binascii.Error, ValueError, TypeError):
        return False
