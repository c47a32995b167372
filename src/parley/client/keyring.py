"""Client-side key storage.

Holds the session's ECDH key pair and the symmetric keys derived or
generated for peers and conversations. Nothing here is ever sent to the
server except the public half of the key pair.
"""

from __future__ import annotations

from parley.services.crypto import CryptoService, KeyPair


def conversation_slot(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def peer_slot(user_id: int) -> str:
    return f"user:{user_id}"


class KeyRing:
    """In-memory key store for one messaging session."""

    def __init__(self, key_pair: KeyPair | None = None) -> None:
        self.key_pair = key_pair or CryptoService.generate_key_pair()
        self._keys: dict[str, bytes] = {}

    @property
    def public_key(self) -> str:
        return self.key_pair.public_key

    def get(self, slot: str) -> bytes | None:
        return self._keys.get(slot)

    def set(self, slot: str, key: bytes) -> None:
        self._keys[slot] = key

    def key_for(self, conversation_id: int | None, peer_id: int | None) -> bytes | None:
        """Return the conversation key, falling back to the key shared with the peer."""
        if conversation_id is not None:
            key = self._keys.get(conversation_slot(conversation_id))
            if key is not None:
                return key
        if peer_id is not None:
            return self._keys.get(peer_slot(peer_id))
        return None

    def derive_for_peer(self, peer_id: int, peer_public_key: str) -> bytes:
        """Derive and remember the key shared with `peer_id`.

        Raises:
            KeyExchangeError: If the peer key is unusable.
        """
        key = CryptoService.derive_shared_key(self.key_pair.private_key, peer_public_key)
        self._keys[peer_slot(peer_id)] = key
        return key

    def __len__(self) -> int:
        return len(self._keys)
